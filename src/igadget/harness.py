"""drives shell commands for integration tests

A Command either runs to completion, or is started in the background and
stopped later, which suits gadgets that trace until interrupted. Each command
leads its own process group, so stopping it kills the shell together with
everything the shell spawned, without touching the test process itself.
"""

from typing import Optional, Iterable
from collections.abc import Callable
import asyncio
import asyncio.subprocess
import difflib
import signal
import time
import re

from igadget import logger, sanitize_name, signal_group, subprocess_teardown

SEED = time.time_ns()


def get_seed():
    """seed of this test process, report it to reproduce randomized runs"""
    return SEED


class CommandError(RuntimeError):
    pass


class OutputMismatch(AssertionError):
    pass


class Command:
    """a shell command with expectations on its output

    ``validate_output`` receives stdout and should raise AssertionError when
    the output is not acceptable.
    """

    def __init__(
        self,
        name: str,
        cmd: str,
        *,
        expected_string: Optional[str] = None,
        expected_regexp: Optional[str] = None,
        validate_output: Optional[Callable[[str], None]] = None,
        cleanup: bool = False,
        start_and_stop: bool = False,
        shell_command: Iterable[str] = ("/bin/sh", "-c"),
        env: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
        encoding: str = "utf-8",
        errors: str = "replace",
        terminate_timeout: float = 5,
        kill_timeout: float = 1,
    ):
        self.name = name
        self.cmd = cmd
        self.expected_string = expected_string
        self.expected_regexp = expected_regexp
        # fail on construction rather than after the command ran
        self._pattern = re.compile(expected_regexp) if expected_regexp else None
        self.validate_output = validate_output
        self.cleanup = cleanup
        self.start_and_stop = start_and_stop
        self.shell_command = tuple(shell_command)
        self.env = env
        self.timeout = timeout
        self.encoding = encoding
        self.errors = errors
        self.terminate_timeout = terminate_timeout
        self.kill_timeout = kill_timeout
        self.logger = logger.getChild("Command").getChild(
            sanitize_name(name) or "unnamed"
        )
        self._process = None
        self._readers = []
        self._stdout = bytearray()
        self._stderr = bytearray()
        self._started = False

    def __repr__(self):
        return f"Command({self.name!r}, {self.cmd!r})"

    @property
    def running(self):
        return self._started

    @property
    def stdout(self):
        return self._stdout.decode(self.encoding, errors=self.errors)

    @property
    def stderr(self):
        return self._stderr.decode(self.encoding, errors=self.errors)

    async def _spawn(self):
        args = self.shell_command + (self.cmd,)
        self._stdout.clear()
        self._stderr.clear()
        try:
            # a new session makes the shell lead its own process group
            self._process = await asyncio.subprocess.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
                start_new_session=True,
            )
        except OSError as e:
            raise CommandError(f"starting command({self.name}): {e}") from e
        return self._process

    async def _drain(self, stream, buffer):
        while True:
            data = await stream.read(65536)
            if not data:
                break
            buffer.extend(data)

    async def _join_readers(self):
        if self._readers:
            await asyncio.gather(*self._readers)
            self._readers = []

    def _log_output(self):
        self.logger.info(
            "command returned(%s):\n%s\n%s", self.name, self.stderr, self.stdout
        )

    def verify_output(self, validate=True):
        """check stdout against the expectations of this command"""
        output = self.stdout

        if self._pattern and not self._pattern.search(output):
            raise OutputMismatch(
                f"output of command({self.name}) didn't match the expected "
                f"regexp: {self.expected_regexp}"
            )

        if self.expected_string is not None and output != self.expected_string:
            diff = "".join(
                difflib.unified_diff(
                    self.expected_string.splitlines(keepends=True),
                    output.splitlines(keepends=True),
                    fromfile="expected",
                    tofile="output",
                )
            )
            raise OutputMismatch(
                f"output of command({self.name}) didn't match the expected "
                f"string: {self.expected_string!r}\n{diff}"
            )

        if validate and self.validate_output is not None:
            self.validate_output(output)

    async def run(self):
        """run the command to completion, then verify its output"""
        if self._started:
            self.logger.warning(
                "trying to run command(%s) but it was already started", self.name
            )
            return

        self.logger.info("run command(%s):\n%s", self.name, self.cmd)
        p = await self._spawn()
        async with subprocess_teardown(
            p, self.terminate_timeout, self.kill_timeout, self.logger
        ):
            try:
                stdout, stderr = await asyncio.wait_for(
                    p.communicate(), timeout=self.timeout
                )
            except asyncio.TimeoutError as e:
                self.logger.warning(
                    "command(%s) timed out in %r secs", self.name, self.timeout
                )
                raise TimeoutError(
                    f"command({self.name}) timed out in {self.timeout} secs"
                ) from e
        self._stdout.extend(stdout)
        self._stderr.extend(stderr)
        self._log_output()

        if p.returncode != 0:
            raise CommandError(
                f"running command({self.name}): exit status {p.returncode}"
            )

        self.verify_output()

    async def start(self):
        """start the command in background, use stop() or wait() afterwards"""
        if self._started:
            self.logger.warning(
                "trying to start command(%s) but it was already started", self.name
            )
            return

        self.logger.info("start command(%s): %s", self.name, self.cmd)
        p = await self._spawn()
        self._readers = [
            asyncio.create_task(
                self._drain(p.stdout, self._stdout), name=f"{self.name}-stdout"
            ),
            asyncio.create_task(
                self._drain(p.stderr, self._stderr), name=f"{self.name}-stderr"
            ),
        ]
        self._started = True

    async def wait(self):
        """wait for a started command, output is not verified"""
        if not self._started:
            self.logger.warning(
                "trying to wait for command(%s) that has not been started yet",
                self.name,
            )
            return

        self.logger.info("wait for command(%s)", self.name)
        returncode = await self._process.wait()
        await self._join_readers()
        self._log_output()
        if returncode != 0:
            raise CommandError(
                f"waiting for command({self.name}): exit status {returncode}"
            )

        self._started = False

    async def kill(self):
        """kill the process group of the command with SIGKILL

        SIGKILL cannot be trapped, the command stops immediately.
        """
        sig = signal.SIGKILL
        p = self._process
        # run() already waited for its process
        if p is None or not self._started:
            return

        # the shell may be gone while children in its group still hold the
        # output pipes, the group is signalled regardless
        self.logger.info("kill command(%s)", self.name)
        signal_group(p, sig, self.logger)
        returncode = await p.wait()
        await self._join_readers()
        if returncode not in (0, -sig):
            raise CommandError(
                f"killing command({self.name}): exit status {returncode}"
            )

    async def stop(self):
        """kill a started command, then verify its output"""
        if not self._started:
            self.logger.warning(
                "trying to stop command(%s) but it was not started", self.name
            )
            return

        self.logger.info("stop command(%s)", self.name)
        try:
            await self.kill()
        finally:
            self._log_output()

        self.verify_output()
        self._started = False


async def run_steps(commands: Iterable[Command], logger=logger):
    """run commands in order, background ones get stopped at the end

    Once a command fails, only cleanup commands keep running. The first
    failure is raised after all commands were stopped.
    """
    commands = list(commands)
    failure = None
    for command in commands:
        if failure is not None and not command.cleanup:
            logger.info("skipping command(%s) after failure", command.name)
            continue
        try:
            if command.start_and_stop:
                await command.start()
            else:
                await command.run()
        except Exception as e:
            logger.error("command(%s) failed: %s", command.name, e)
            failure = failure or e

    for command in commands:
        if command.start_and_stop and command.running:
            try:
                await command.stop()
            except Exception as e:
                logger.error("stopping command(%s) failed: %s", command.name, e)
                failure = failure or e

    if failure is not None:
        raise failure
