"""Environment-driven entry point for the agent bridge server.

Reads settings from the process environment (and a local ``.env`` file
when present), builds the FastAPI app and serves it with uvicorn.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
import uvicorn

from bridge_module import BridgeConfig, StreamSettings, create_app
from bridge_module.errors import ConfigError
from bridge_module.utils import setup_logging

logger = logging.getLogger(__name__)


def build_app(log_dir: Optional[str] = None) -> FastAPI:
    config = BridgeConfig.from_env()
    settings = StreamSettings.from_env()
    if not config.inference.base_url:
        logger.warning("GRADIO_BASE_URL is not set; agent start requests will fail until it is")
    return create_app(config, stream_settings=settings, log_dir=log_dir)


def main() -> None:
    load_dotenv()
    log_dir = os.getenv("LOG_DIR", "./logs")
    setup_logging(log_dir, logging.INFO)
    try:
        app = build_app(log_dir)
    except ConfigError as exc:
        logger.critical("Configuration error: %s", exc)
        raise SystemExit(1)

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "3000"))
    logger.info("Starting agent bridge server on %s:%d", host, port)
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
