from typing import Optional, Iterable
import os
import sys
import re
import json
import shlex
import shutil
import signal
import asyncio
import subprocess
import contextlib
import logging

# ------------------------------------------------------------------------------
# Constants
# ------------------------------------------------------------------------------
# make sure we follow https://packaging.python.org/en/latest/specifications/version-specifiers/#version-scheme
__version__ = "0.1.0"
logger = logging.getLogger("igadget")

if sys.version_info[0] != 3 or sys.version_info[1] < 9:
    logger.warning("untested Python interpreter %s", sys.version)

DEFAULT_IG = "ig"
# ig gates image management behind this flag on older releases
IG_ENV = {"IG_EXPERIMENTAL": "true"}

# ------------------------------------------------------------------------------
# Utilities
# ------------------------------------------------------------------------------
VERSION_PARSER = re.compile(r"v([0-9]+)\.([0-9]+)\.([0-9]+)")


def parse_version(text: str) -> tuple[int, int, int]:
    """
    extract the first three version components from ig output,
    e.g. "v0.26.0" gives (0, 26, 0)
    """
    m = VERSION_PARSER.search(text)
    if not m:
        raise ValueError(f"no ig version found in string: {text!r}")
    return tuple(int(g) for g in m.groups())


def sanitize_name(name: str):
    """
    Try to sanitize the given name so it can be used as a logger name.
    """
    return re.sub(r"[^a-z0-9_-]", "", re.sub(r"\s+", "_", name.strip().lower())).strip(
        "_-"
    )[:255]


def signal_group(p, sig, logger=logger):
    """send sig to the process group led by p, tolerating a vanished group"""
    try:
        os.killpg(p.pid, sig)
    except ProcessLookupError:
        logger.debug("process group %s already gone", p.pid)


@contextlib.asynccontextmanager
async def subprocess_teardown(p, terminate_timeout, kill_timeout, logger=logger):
    """this context manager tears down the process group of a asyncio.Process
    when any exception occurs and the subprocess is not complete. The process
    is expected to lead its own session. Users should wait with timeout in the
    context block"""
    try:
        yield p
    finally:
        if p.returncode is None:
            logger.info(
                "tearing down subprocess %r with timeouts %s and %s",
                p,
                terminate_timeout,
                kill_timeout,
            )
            signal_group(p, signal.SIGTERM, logger)
            try:
                await asyncio.wait_for(p.wait(), timeout=terminate_timeout)
            except asyncio.TimeoutError:
                logger.warning("terminate timed out")
                logger.info("sending kill")
                signal_group(p, signal.SIGKILL, logger)
                try:
                    await asyncio.wait_for(p.wait(), timeout=kill_timeout)
                except asyncio.TimeoutError:
                    logger.warning("kill timed out")
                else:
                    logger.info("kill complete")
            else:
                logger.info("terminate complete")


# ------------------------------------------------------------------------------
# ig binding
# ------------------------------------------------------------------------------


class IGError(RuntimeError):
    """an ig invocation failed"""

    def __init__(self, message, command=(), returncode=None, stdout=None, stderr=None):
        super().__init__(message)
        self.command = tuple(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class IG:
    """Drives the ig binary for one gadget image.

    The executable is looked up in PATH on construction and its version is
    recorded, so an unusable ig fails early. All invocations inherit the
    current environment plus ``IG_EXPERIMENTAL=true`` and ``env``.
    """

    def __init__(
        self,
        path: Optional[str] = None,
        image: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
    ):
        cmd = path or os.environ.get("IG_PATH") or DEFAULT_IG
        found = shutil.which(cmd)
        if not found:
            raise FileNotFoundError(f"ig executable {cmd!r} not found")
        self.path = found
        self.image = image
        self.env = dict(env or {})
        self.logger = logger.getChild("IG")

        try:
            self.version_string = self._run(("version",), capture=True)
        except IGError as e:
            raise IGError(
                f"could not get ig version: {e}",
                e.command,
                e.returncode,
                e.stdout,
                e.stderr,
            ) from e
        self.version = parse_version(self.version_string)
        self.logger.debug("found ig %s version %s", self.path, self.version)

    def __repr__(self):
        return f"IG(path={self.path!r}, image={self.image!r}, version={self.version!r})"

    def environ(self):
        return os.environ | IG_ENV | self.env

    def _require_image(self):
        if not self.image:
            raise ValueError("no gadget image configured")
        return self.image

    def _run(self, args: Iterable[str], capture=False, timeout=None):
        command = (self.path,) + tuple(args)
        self.logger.debug("executing command %r", command)
        pipe = subprocess.PIPE if capture else None
        result = subprocess.run(
            command,
            env=self.environ(),
            text=True,
            stdout=pipe,
            stderr=pipe,
            timeout=timeout,
        )
        if result.returncode != 0:
            self.logger.warning(
                "ig returncode: %r stdout: %r stderr: %r",
                result.returncode,
                result.stdout,
                result.stderr,
            )
            raise IGError(
                f"ig command {command!r} got return code {result.returncode}",
                command,
                result.returncode,
                result.stdout,
                result.stderr,
            )
        return result.stdout

    def pull(self, *flags: str):
        self._run(("image", "pull", self._require_image()) + flags)

    def push(self, *flags: str):
        self._run(("image", "push", self._require_image()) + flags)

    def remove(self, *flags: str):
        self._run(("image", "remove", self._require_image()) + flags)

    def run(self, *flags: str, capture=True, timeout=None):
        """run the gadget, returns its stdout when captured"""
        return self._run(
            ("run", self._require_image()) + flags, capture=capture, timeout=timeout
        )

    def run_json(self, *flags: str, timeout=None):
        """run the gadget with json output, one event per line"""
        output = self.run(*flags, "-o", "json", timeout=timeout)
        events = []
        for line in output.splitlines():
            if not line.strip():
                continue
            try:
                events.append(json.loads(line))
            except json.JSONDecodeError:
                self.logger.error("failed when decoding ig output line: %r", line)
                raise
        return events

    def command(self, name, *args: str, **kwargs):
        """build a harness Command invoking ig with args"""
        from igadget.harness import Command

        env = kwargs.pop("env", None) or {}
        return Command(
            name,
            shlex.join((self.path,) + args),
            env=self.environ() | env,
            **kwargs,
        )

    def run_command(self, name, *flags: str, **kwargs):
        """build a harness Command running the gadget"""
        return self.command(name, "run", self._require_image(), *flags, **kwargs)
