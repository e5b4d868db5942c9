# ruff: noqa: F403, F405
import asyncio
import logging
from igadget import IG
from igadget.harness import *

ig = IG(image="ghcr.io/inspektor-gadget/gadget/trace_open:latest")


steps = [
    ig.command("pull", "image", "pull", ig.image),
    ig.run_command(
        "trace-open",
        "-o",
        "json",
        start_and_stop=True,
        # the gadget traces until killed, we only check cat got caught
        expected_regexp=r'"comm":\s*"cat".*"/etc/hostname"',
    ),
    Command("open-file", "sleep 3; cat /etc/hostname"),
    ig.command("remove", "image", "remove", ig.image, cleanup=True),
]


if __name__ == "__main__":
    logging.basicConfig(level=logging.DEBUG)
    asyncio.run(run_steps(steps))
