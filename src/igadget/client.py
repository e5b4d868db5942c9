"""igadget client that manages and runs gadget images through ig

Unknown arguments are forwarded to ig, so ig flags can be given directly::

    igadget run --image ghcr.io/inspektor-gadget/gadget/trace_open:latest --timeout 5
"""

import os
import logging
import argparse
import pprint
from pathlib import Path
import yaml
import igadget

logger = logging.getLogger("igadget.client")

CONFIG_KEYS = {"ig_path", "image", "env"}


def load_config(path):
    """read client configuration from a yaml file"""
    with Path(path).open("r") as f:
        config = yaml.safe_load(f) or {}
    if not isinstance(config, dict):
        raise ValueError(f"config file {path} should contain a mapping")
    unknown = set(config) - CONFIG_KEYS
    if unknown:
        logger.warning("ignoring unknown config keys %s", sorted(unknown))
    env = config.get("env") or {}
    if not isinstance(env, dict):
        raise ValueError(f"env in config file {path} should be a mapping")
    config["env"] = dict((str(k), str(v)) for k, v in env.items())
    return config


class Client:
    def __init__(self):
        parser = argparse.ArgumentParser("igadget")
        parser.add_argument(
            "--verbosity",
            default="INFO",
            choices=["DEBUG", "INFO", "WARNING", "ERROR"],
            help="verbosity of igadget",
        )
        parser.add_argument(
            "--ig-path", help="ig executable, defaults to $IG_PATH or ig in PATH"
        )
        parser.add_argument(
            "--config",
            type=Path,
            default=os.environ.get("IGADGET_CONFIG"),
            help="yaml config file, defaults to $IGADGET_CONFIG",
        )
        image = argparse.ArgumentParser(add_help=False)
        # an option, so forwarded ig flags and their values are never taken
        # for the image
        image.add_argument(
            "--image", help="gadget image, defaults to image in config"
        )
        subparsers = parser.add_subparsers(title="command", required=True)
        version = subparsers.add_parser("version", help="show ig version")
        version.set_defaults(func=self.cmd_version)
        pull = subparsers.add_parser(
            "pull", help="pull a gadget image", parents=[image]
        )
        pull.set_defaults(func=self.cmd_pull)
        push = subparsers.add_parser(
            "push", help="push a gadget image", parents=[image]
        )
        push.set_defaults(func=self.cmd_push)
        remove = subparsers.add_parser(
            "remove", help="remove a gadget image", parents=[image]
        )
        remove.set_defaults(func=self.cmd_remove)
        run = subparsers.add_parser("run", help="run a gadget", parents=[image])
        run.add_argument(
            "--json",
            action="store_true",
            help="ask ig for json output and print decoded events",
        )
        run.set_defaults(func=self.cmd_run)
        self.parser = parser

    def main(self, *args):
        # we only parse known args, all unknown args are forwarded to ig
        args, ig_flags = self.parser.parse_known_args(args or None)
        logging.basicConfig(level=getattr(logging, args.verbosity))
        logger.debug("args: %s, ig_flags: %s", args, ig_flags)
        self.args = args
        self.ig_flags = tuple(ig_flags)
        try:
            self.config = load_config(args.config) if args.config else {}
        except (OSError, ValueError, yaml.YAMLError) as e:
            self.parser.exit(2, f"failed loading config {args.config}: {e}\n")

        try:
            args.func()
        except igadget.IGError as e:
            logger.error("%s", e)
            return 1
        return 0

    @property
    def ig(self):
        if not hasattr(self, "_ig"):
            image = getattr(self.args, "image", None) or self.config.get("image")
            try:
                self._ig = igadget.IG(
                    path=self.args.ig_path or self.config.get("ig_path"),
                    image=image,
                    env=self.config.get("env"),
                )
            except (FileNotFoundError, ValueError) as e:
                self.parser.exit(1, f"{e}\n")
        return self._ig

    def require_image(self):
        ig = self.ig
        if not ig.image:
            self.parser.exit(2, "gadget image must be given or set in config\n")
        return ig

    def cmd_version(self):
        print(self.ig.version_string.strip())

    def cmd_pull(self):
        self.require_image().pull(*self.ig_flags)

    def cmd_push(self):
        self.require_image().push(*self.ig_flags)

    def cmd_remove(self):
        self.require_image().remove(*self.ig_flags)

    def cmd_run(self):
        ig = self.require_image()
        if self.args.json:
            for event in ig.run_json(*self.ig_flags):
                pprint.pprint(event)
        else:
            ig.run(*self.ig_flags, capture=False)


def main(*args):
    return Client().main(*args)


if __name__ == "__main__":
    raise SystemExit(main())
