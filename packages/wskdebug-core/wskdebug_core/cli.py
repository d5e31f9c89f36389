"""Command-line entry point.

::

    wskdebug myaction                   # run the deployed code locally
    wskdebug myaction action.js -p 9229 # run local sources, debugger on 9229
    wskdebug myaction lib/action.js -P '{"name": "test"}'   # invoke on change
    wskdebug myaction src/ -r           # restart the container on change
    wskdebug myaction src/action.ts --on-build "npm run build" --build-path build/action.js

Exit code 0 after a clean stop, 1 if the session failed.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Any

from wskdebug_core.config import BridgeOptions, PlatformConfig
from wskdebug_core.container import DockerEngine
from wskdebug_core.debugger import Debugger, SessionContext
from wskdebug_core.errors import BridgeError
from wskdebug_core.formatters import format_error, format_ready
from wskdebug_core.openwhisk_client import OpenWhiskClient

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wskdebug",
        description="Debug an OpenWhisk action by forwarding its activations "
                    "to a local docker container.",
    )
    parser.add_argument("action", help="name of the action, e.g. myaction or /ns/pkg/myaction")
    parser.add_argument("source", nargs="?", help="local source file or directory to mount")

    group = parser.add_argument_group("action options")
    group.add_argument("--root", help="directory the source path is relative to (default: cwd)")
    group.add_argument("--packaged", action="store_true",
                       help="load the source with require(), as for a zipped action")
    group.add_argument("--image", help="container image to use instead of the kind's default")
    group.add_argument("--timeout", type=float,
                       help="local execution budget in seconds (never below the action timeout)")

    group = parser.add_argument_group("source change options")
    group.add_argument("-P", "--invoke-params", metavar="JSON",
                       help="invoke the action with these parameters when sources change")
    group.add_argument("-a", "--invoke-action", metavar="ACTION",
                       help="invoke this action instead when sources change")
    group.add_argument("-r", "--restart", action="store_true",
                       help="restart the local container when sources change")
    group.add_argument("--on-build", metavar="CMD",
                       help="shell command to build the sources, run at start and on every change")
    group.add_argument("--build-path", metavar="PATH",
                       help="build output to mount instead of the source path")

    group = parser.add_argument_group("debugger options")
    group.add_argument("-p", "--port", type=int, help="local debugger port")

    group = parser.add_argument_group("agent options")
    group.add_argument("--condition", metavar="EXPR",
                       help="only forward activations whose params satisfy this JS expression")
    group.add_argument("--force", action="store_true",
                       help="take over an action that another session is debugging")

    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="more logging (-vv for debug)")
    return parser


def options_from_args(args: argparse.Namespace) -> BridgeOptions:
    invoke_params: dict[str, Any] | None = None
    if args.invoke_params is not None:
        try:
            invoke_params = json.loads(args.invoke_params)
        except json.JSONDecodeError as exc:
            raise SystemExit(f"--invoke-params is not valid JSON: {exc}") from exc
        if not isinstance(invoke_params, dict):
            raise SystemExit("--invoke-params must be a JSON object")

    return BridgeOptions(
        action=args.action,
        source_path=args.source,
        source_root=args.root,
        port=args.port,
        image=args.image,
        packaged=args.packaged,
        force=args.force,
        invoke_params=invoke_params,
        invoke_action=args.invoke_action,
        restart_on_change=args.restart,
        on_build=args.on_build,
        build_path=args.build_path,
        condition=args.condition,
        timeout=args.timeout,
    )


async def run_session(options: BridgeOptions, config: PlatformConfig) -> int:
    """Run one session until Ctrl-C or until it ends on its own."""
    async with OpenWhiskClient(config) as client:
        ctx = SessionContext.create(options, client, DockerEngine(), config.namespace)
        dbg = Debugger(ctx)

        try:
            await dbg.start()
        except BridgeError as exc:
            print(f"Error: {format_error(exc)}", file=sys.stderr)
            if dbg.restore_warning:
                print(f"WARNING: {dbg.restore_warning}", file=sys.stderr)
            return 1

        dbg.run()
        print(format_ready(dbg.status()), file=sys.stderr)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, lambda: asyncio.ensure_future(dbg.stop()))
            except NotImplementedError:  # Windows
                pass

        try:
            await dbg.wait()
        finally:
            await dbg.stop()

        if dbg.restore_warning:
            print(f"WARNING: {dbg.restore_warning}", file=sys.stderr)
        if dbg.error is not None:
            print(f"Error: {format_error(dbg.error)}", file=sys.stderr)
        return dbg.exit_code


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    level = logging.WARNING
    if args.verbose == 1:
        level = logging.INFO
    elif args.verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, stream=sys.stderr,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    options = options_from_args(args)
    try:
        config = PlatformConfig.load()
    except BridgeError as exc:
        print(f"Error: {format_error(exc)}", file=sys.stderr)
        return 1

    return asyncio.run(run_session(options, config))


if __name__ == "__main__":
    sys.exit(main())
