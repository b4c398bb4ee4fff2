#!/usr/bin/env python3
"""Run the accounts API under uvicorn."""
from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Optional, Sequence

import uvicorn

from backend.app.config import AppConfig, ConfigError, load_config
from backend.app.main import create_app

LOGGER = logging.getLogger(__name__)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command line arguments for the server.

    Returns:
        argparse.Namespace: Parsed command line arguments.
    """
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000)")
    parser.add_argument(
        "--config",
        type=Path,
        default=AppConfig.default_path(),
        help="Path to the YAML configuration (default: config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Log level for the application and uvicorn (default: info)",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point for the server script.

    Returns:
        int: Exit status code where ``0`` indicates a clean shutdown.
    """
    args = parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        LOGGER.error("Unable to start: %s", exc)
        return 1

    LOGGER.info("Starting %s %s on %s:%d", config.service.name, config.service.version, args.host, args.port)
    uvicorn.run(create_app(config), host=args.host, port=args.port, log_level=args.log_level)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
