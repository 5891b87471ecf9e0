"""agent-relay main application entry point."""

from __future__ import annotations

import asyncio
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from agentrelay.engine.config import RelayConfig
from agentrelay.engine.errors import ConfigError


def _log_runtime_versions() -> None:
    logger = logging.getLogger(__name__)
    sdk_version = "unknown"
    try:
        from importlib.metadata import version

        sdk_version = version("claude-agent-sdk")
    except Exception:
        logger.debug("Could not resolve claude-agent-sdk version", exc_info=True)
    logger.info("Runtime versions: claude-agent-sdk=%s", sdk_version)


def configure_logging(level: str, log_dir: Path) -> Path:
    """Send records to a rotating file under *log_dir* and to stderr."""
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "relay.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=5_000_000, backupCount=3, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def load_config(config_path: str | None) -> RelayConfig:
    if not config_path:
        return RelayConfig.from_env()
    from agentrelay.engine.yaml_config import load_yaml_config

    return load_yaml_config(config_path)


def main(argv: list[str] | None = None) -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="agent-relay",
        description="Stream coding-agent runs over HTTP + Server-Sent Events",
    )
    parser.add_argument(
        "--host", default=None,
        help="Interface to bind (default: 127.0.0.1 or RELAY_HOST)",
    )
    parser.add_argument(
        "--port", type=int, default=None,
        help="Port to listen on (default: 2026 or RELAY_PORT)",
    )
    parser.add_argument(
        "--config", metavar="FILE", default=None,
        help="YAML config file layered over RELAY_* environment settings",
    )
    parser.add_argument(
        "--log-level", default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        help="Logging level (default: INFO or RELAY_LOG_LEVEL)",
    )
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except (FileNotFoundError, ConfigError) as exc:
        parser.error(str(exc))

    if args.host:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.log_level:
        config.log_level = args.log_level

    log_file = configure_logging(config.log_level, config.log_dir)
    logging.getLogger(__name__).info(
        "Starting agent-relay host=%s port=%s config=%s log=%s",
        config.host, config.port, args.config or "<none>", log_file,
    )
    _log_runtime_versions()

    from agentrelay.server.server import RelayServer

    server = RelayServer(config)
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("Interrupted")
    sys.exit(0)


if __name__ == "__main__":
    main()
