"""chatbridge: main application entry point."""

from __future__ import annotations

import asyncio
import logging
import shutil
import sys
from dataclasses import replace
from logging.handlers import RotatingFileHandler
from pathlib import Path

from chatbridge.engine.config import BridgeConfig


def _configure_logging(log_dir: Path, log_level: str) -> Path:
    """Root logger → rotating file under log_dir plus stderr."""
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "chatbridge.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    # aiohttp.access duplicates the request middleware's log lines.
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    return log_file


def _log_agent_availability(config: BridgeConfig) -> None:
    """Warn early about configured CLIs that are not on PATH."""
    from chatbridge.engine.model_registry import ModelRegistry

    logger = logging.getLogger(__name__)
    registry = ModelRegistry(config.models_path)
    for provider, info in registry.load().items():
        if not isinstance(info, dict) or not info.get("cmd"):
            continue
        resolved = registry.resolve(next(iter(info.get("models") or []), ""))
        if resolved is None:
            continue
        executable = resolved.argv_prefix()[0]
        if shutil.which(executable) is None and not Path(executable).exists():
            logger.warning("Provider '%s': command %r not found on PATH", provider, executable)


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="chatbridge",
        description="chatbridge: browser chat front end for agent CLIs",
    )
    parser.add_argument(
        "--host",
        help="Interface to bind (default: 127.0.0.1 or CHATBRIDGE_HOST)",
    )
    parser.add_argument(
        "--port", type=int,
        help="Port to listen on (default: 3000 or CHATBRIDGE_PORT)",
    )
    parser.add_argument(
        "--data-dir", metavar="DIR",
        help="Directory holding conversations/, uploads/, logs/ and cli-params.json",
    )
    parser.add_argument(
        "--models", metavar="PATH",
        help="Models registry file (YAML or JSON)",
    )
    parser.add_argument(
        "--static-dir", metavar="DIR",
        help="Directory with the browser client (default: DATA_DIR/public)",
    )
    parser.add_argument(
        "--log-level",
        help="Logging level (DEBUG, INFO, WARNING, ...)",
    )
    args = parser.parse_args()

    config = BridgeConfig.from_env()
    overrides: dict[str, object] = {}
    if args.host:
        overrides["host"] = args.host
    if args.port is not None:
        overrides["port"] = args.port
    if args.data_dir:
        overrides["data_dir"] = Path(args.data_dir)
        # Re-derive the paths that default relative to data_dir.
        if not args.models and config.models_path.parent == config.data_dir:
            overrides["models_path"] = None
        if config.agent_cwd == config.data_dir:
            overrides["agent_cwd"] = None
        if not args.static_dir and config.static_dir == config.data_dir / "public":
            overrides["static_dir"] = None
    if args.models:
        overrides["models_path"] = Path(args.models)
    if args.static_dir:
        overrides["static_dir"] = Path(args.static_dir)
    if args.log_level:
        overrides["log_level"] = args.log_level
    if overrides:
        config = replace(config, **overrides)

    log_file = _configure_logging(config.log_dir, config.log_level)
    logger = logging.getLogger(__name__)
    logger.info(
        "Starting chatbridge host=%s port=%s data_dir=%s models=%s log=%s",
        config.host, config.port, config.data_dir, config.models_path, log_file,
    )
    _log_agent_availability(config)

    from chatbridge.web.server import BridgeServer

    server = BridgeServer(config)
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        logger.info("Interrupted; shutting down")


if __name__ == "__main__":
    main()
