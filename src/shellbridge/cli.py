from __future__ import annotations

import argparse
import json
from typing import Any

from . import __version__
from .kernel.settings import dump_settings, load_settings
from .runners.shells import ShellDiscovery


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2))


def cmd_version(_: argparse.Namespace) -> int:
    print(__version__)
    return 0


def cmd_config(_: argparse.Namespace) -> int:
    print(dump_settings(load_settings()), end="")
    return 0


def cmd_shells(args: argparse.Namespace) -> int:
    cfg = load_settings().terminal
    discovery = ShellDiscovery(probe_timeout=cfg.shell_probe_timeout_seconds)
    discovery.initialize()
    info = discovery.info()
    _print_json(info)
    return 0 if info.get("default") else 1


def cmd_web(args: argparse.Namespace) -> int:
    from .ports.web.main import main as web_main

    argv = ["--host", str(args.host), "--port", str(args.port), "--log-level", str(args.log_level)]
    if args.reload:
        argv.append("--reload")
    return web_main(argv)


def build_parser() -> argparse.ArgumentParser:
    settings = load_settings()
    p = argparse.ArgumentParser(prog="shellbridge", description="Remote terminal sessions over websockets")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_web = sub.add_parser("web", help="Run the HTTP/websocket server")
    p_web.add_argument("--host", default=settings.web.host, help="Bind host")
    p_web.add_argument("--port", type=int, default=settings.web.port, help="Bind port")
    p_web.add_argument("--reload", action="store_true", help="Enable autoreload (dev)")
    p_web.add_argument("--log-level", default=settings.web.log_level.lower(), help="Log level")
    p_web.set_defaults(func=cmd_web)

    p_shells = sub.add_parser("shells", help="Probe shells and print what would be used")
    p_shells.set_defaults(func=cmd_shells)

    p_config = sub.add_parser("config", help="Print effective settings as YAML")
    p_config.set_defaults(func=cmd_config)

    p_version = sub.add_parser("version", help="Print version")
    p_version.set_defaults(func=cmd_version)
    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
