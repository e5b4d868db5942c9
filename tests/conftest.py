import logging
import pytest

from igadget.harness import get_seed

# stands in for ig, every call is appended to a log file as two lines:
# the arguments, then the environment seen by ig
FAKE_IG = r"""#!/bin/sh
printf '%s\n' "$*" >> "@LOG@"
printf 'IG_EXPERIMENTAL=%s IGADGET_TEST=%s\n' "$IG_EXPERIMENTAL" "$IGADGET_TEST" >> "@LOG@"
case "$1" in
version)
    echo "@VERSION@"
    exit @STATUS@
    ;;
image)
    case "$3" in
    *broken*)
        echo "failed to $2 $3" >&2
        exit 3
        ;;
    esac
    echo "$2 $3"
    ;;
run)
    echo '{"comm": "curl", "pid": 42}'
    echo
    echo '{"comm": "wget", "pid": 43}'
    ;;
*)
    exit 1
    ;;
esac
"""


def pytest_report_header(config):
    return f"igadget seed: {get_seed()}"


@pytest.fixture(autouse=True)
def logconf(caplog):
    caplog.set_level(logging.DEBUG)


@pytest.fixture
def ig_log(tmp_path):
    return tmp_path / "ig.log"


@pytest.fixture
def make_fake_ig(tmp_path, ig_log):
    def factory(version="ig version v0.26.0-2-g1f2a3b4", status=0):
        path = tmp_path / "ig"
        script = (
            FAKE_IG.replace("@LOG@", str(ig_log))
            .replace("@VERSION@", version)
            .replace("@STATUS@", str(status))
        )
        path.write_text(script)
        path.chmod(0o755)
        return path

    return factory


@pytest.fixture
def fake_ig(make_fake_ig):
    return make_fake_ig()


@pytest.fixture
def ig_calls(ig_log):
    """returns (arguments, environment) of every ig call so far"""

    def calls():
        if not ig_log.exists():
            return []
        lines = ig_log.read_text().splitlines()
        return list(zip(lines[::2], lines[1::2]))

    return calls
