from __future__ import annotations

import argparse
from typing import Optional

import uvicorn

from ...kernel.settings import load_settings
from ...util.obslog import setup_root_json_logging


def main(argv: Optional[list[str]] = None) -> int:
    settings = load_settings()
    parser = argparse.ArgumentParser(prog="shellbridge web", description="shellbridge web port (FastAPI)")
    parser.add_argument("--host", default=settings.web.host, help=f"Bind host (default: {settings.web.host})")
    parser.add_argument("--port", type=int, default=settings.web.port, help=f"Bind port (default: {settings.web.port})")
    parser.add_argument("--reload", action="store_true", help="Enable autoreload (dev)")
    parser.add_argument("--log-level", default=settings.web.log_level.lower(), help="Log level (default: info)")
    args = parser.parse_args(argv)

    setup_root_json_logging(component="web", level=str(args.log_level))

    try:
        uvicorn.run(
            "shellbridge.ports.web.app:create_app",
            factory=True,
            host=str(args.host),
            port=int(args.port),
            log_level=str(args.log_level).lower(),
            reload=bool(args.reload),
        )
    except (KeyboardInterrupt, SystemExit):
        pass

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
