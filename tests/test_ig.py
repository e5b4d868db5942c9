import pytest
from igadget import IG, IGError, parse_version
from igadget.harness import OutputMismatch

IMAGE = "ghcr.io/inspektor-gadget/gadget/trace_tcpconnect:latest"
ENV = "IG_EXPERIMENTAL=true IGADGET_TEST="


def test_parse_version():
    assert parse_version("v0.26.0") == (0, 26, 0)
    assert parse_version("ig version v1.12.3-rc1 (abcdef)") == (1, 12, 3)
    # first occurrence wins
    assert parse_version("v0.1.2 built with v9.9.9") == (0, 1, 2)
    with pytest.raises(ValueError, match="no ig version found"):
        parse_version("v1.2")


def test_ig_discovery(fake_ig, ig_calls):
    ig = IG(path=str(fake_ig), image=IMAGE)
    assert ig.path == str(fake_ig)
    assert ig.version == (0, 26, 0)
    assert ig.version_string.strip() == "ig version v0.26.0-2-g1f2a3b4"
    assert ig_calls() == [("version", ENV)]


def test_ig_path_from_env(fake_ig, monkeypatch):
    monkeypatch.setenv("IG_PATH", str(fake_ig))
    assert IG().path == str(fake_ig)


def test_ig_not_found(tmp_path):
    with pytest.raises(FileNotFoundError):
        IG(path=str(tmp_path / "nope"))


def test_ig_bad_version(make_fake_ig):
    path = make_fake_ig(version="development build")
    with pytest.raises(ValueError, match="development build"):
        IG(path=str(path))


def test_ig_version_fails(make_fake_ig):
    path = make_fake_ig(status=2)
    with pytest.raises(IGError, match="could not get ig version") as excinfo:
        IG(path=str(path))
    assert excinfo.value.returncode == 2


def test_image_operations(fake_ig, ig_calls):
    ig = IG(path=str(fake_ig), image=IMAGE)
    ig.pull("--insecure")
    ig.push()
    ig.remove()
    assert [args for args, _ in ig_calls()] == [
        "version",
        f"image pull {IMAGE} --insecure",
        f"image push {IMAGE}",
        f"image remove {IMAGE}",
    ]
    assert all(env == ENV for _, env in ig_calls())


def test_image_failure(fake_ig):
    ig = IG(path=str(fake_ig), image="example.com/broken:latest")
    with pytest.raises(IGError) as excinfo:
        ig.pull()
    assert excinfo.value.returncode == 3
    assert excinfo.value.command == (
        str(fake_ig),
        "image",
        "pull",
        "example.com/broken:latest",
    )


def test_no_image(fake_ig):
    ig = IG(path=str(fake_ig))
    with pytest.raises(ValueError):
        ig.pull()
    with pytest.raises(ValueError):
        ig.run()


def test_env(fake_ig, ig_calls):
    ig = IG(path=str(fake_ig), image=IMAGE, env={"IGADGET_TEST": "yes"})
    assert ig.environ()["IG_EXPERIMENTAL"] == "true"
    ig.remove()
    assert ig_calls()[-1] == (
        f"image remove {IMAGE}",
        "IG_EXPERIMENTAL=true IGADGET_TEST=yes",
    )


def test_run(fake_ig, ig_calls):
    ig = IG(path=str(fake_ig), image=IMAGE)
    output = ig.run("--timeout", "1")
    assert '"comm": "curl"' in output
    assert ig_calls()[-1][0] == f"run {IMAGE} --timeout 1"
    assert ig.run(capture=False) is None


def test_run_json(fake_ig, ig_calls):
    ig = IG(path=str(fake_ig), image=IMAGE)
    assert ig.run_json() == [
        {"comm": "curl", "pid": 42},
        {"comm": "wget", "pid": 43},
    ]
    assert ig_calls()[-1][0] == f"run {IMAGE} -o json"


async def test_run_command(fake_ig, ig_calls):
    ig = IG(path=str(fake_ig), image=IMAGE, env={"IGADGET_TEST": "cmd"})
    cmd = ig.run_command("trace", "-o", "json", expected_regexp=r'"pid": 43')
    await cmd.run()
    assert ig_calls()[-1] == (
        f"run {IMAGE} -o json",
        "IG_EXPERIMENTAL=true IGADGET_TEST=cmd",
    )

    cmd = ig.command("version", "version", expected_string="v0.25.0\n")
    with pytest.raises(OutputMismatch):
        await cmd.run()
