from __future__ import annotations

import argparse
import json
import logging

import uvicorn
from dotenv import load_dotenv

from authcore.core.config import AppConfig
from authcore.core.logging import setup_logging
from authcore.web_api import build_auth_service


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="authcore",
        description="Session and credential authentication service.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Run the HTTP API with uvicorn.")
    serve.add_argument("--host", default="127.0.0.1", help="Interface to bind.")
    serve.add_argument("--port", type=int, default=8000, help="Port to listen on.")
    serve.add_argument(
        "--reload",
        action="store_true",
        help="Restart the server when source files change (development only).",
    )

    commands.add_parser(
        "sweep",
        help="Delete expired sessions, challenges and rate-limit buckets; revoke idle passkeys.",
    )
    return parser


def run_sweep(config: AppConfig) -> dict[str, int]:
    service, state_db, dispatcher = build_auth_service(config)
    try:
        return service.sweep(
            rate_limit_grace_seconds=config.security.rate_limit_grace_seconds
        )
    finally:
        dispatcher.close()
        state_db.close()


def main(argv: list[str] | None = None) -> None:
    load_dotenv()
    args = build_parser().parse_args(argv)
    config = AppConfig.from_env()
    setup_logging(config.logging.level)
    logger = logging.getLogger("authcore.cli")

    if args.command == "serve":
        uvicorn.run(
            "authcore.web_api:create_app",
            factory=True,
            host=args.host,
            port=args.port,
            reload=args.reload,
        )
        return

    removed = run_sweep(config)
    logger.info("sweep_completed", extra={"action": "sweep"})
    print(json.dumps(removed, indent=2))


if __name__ == "__main__":
    main()
