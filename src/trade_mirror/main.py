from __future__ import annotations

import argparse
import json

import uvicorn
from loguru import logger

from .db import initialize_database
from .logging_config import configure_logging
from .settings import settings


def run_service(host: str = "0.0.0.0", port: int = 8000) -> None:
    configure_logging(settings.log_level, settings.log_file)
    initialize_database()
    logger.info("Trade mirror API starting in {} ({} broker)", settings.app_env, settings.tradovate_env)
    uvicorn.run(
        "trade_mirror.api:app",
        host=host,
        port=port,
        reload=False,
        log_level=settings.log_level.lower(),
    )


def run_once(force: bool = False) -> dict:
    configure_logging(settings.log_level, settings.log_file)
    initialize_database()

    from .api import controller

    report = controller.liveness.poll(force=force)
    return report.to_dict()


def main() -> None:
    parser = argparse.ArgumentParser(description="Quota-aware stream poller and trade copier")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--once", action="store_true", help="run one liveness poll, print the report and exit")
    parser.add_argument("--force", action="store_true", help="poll even when quota is low")
    args = parser.parse_args()

    if args.once:
        print(json.dumps(run_once(force=args.force), indent=2))
        return
    run_service(host=args.host, port=args.port)


if __name__ == "__main__":
    main()
