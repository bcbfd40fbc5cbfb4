"""Gateway entrypoint. Loads config, builds the broker adapter and runs the locker gateway."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any

from loguru import logger

from lockergw import __version__
from lockergw.adapters import create_broker
from lockergw.config import Config, cfg, load_config_with_env
from lockergw.core.errors import GatewayConfigurationError
from lockergw.directory import AccessPolicy, CachedUserDirectory, DirectoryClient, StaticUserDirectory, UserDirectory
from lockergw.events import config_reload
from lockergw.gateway import Bus, EventLogger, LockerGateway

# Third-party libraries to intercept and route through loguru
_INTERCEPTED_LIBRARIES = ["aiomqtt", "paho", "paho.mqtt", "paho.mqtt.client", "httpx", "httpcore"]


def _intercept_logging(level: str) -> None:
    """Route third-party library logs to loguru."""

    class InterceptHandler(logging.Handler):
        def emit(self, record: logging.LogRecord) -> None:
            try:
                log_level = logger.level(record.levelname).name
            except ValueError:
                log_level = str(record.levelno)
            msg = record.getMessage().replace("{", "{{").replace("}", "}}")
            logger.patch(
                lambda r: r.update(
                    name=record.name,
                    function=record.funcName,
                    line=record.lineno,
                ),
            ).opt(exception=record.exc_info).log(log_level, msg)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for lib in _INTERCEPTED_LIBRARIES:
        lib_logger = logging.getLogger(lib)
        lib_logger.handlers = [InterceptHandler()]
        lib_logger.propagate = False
        # httpx logs every request at INFO
        lib_logger.setLevel(level if level == "DEBUG" else "WARNING")


def _safe_message_filter(record: Any) -> bool:
    """Escape braces/angles in log messages to prevent format/tag errors."""
    if isinstance(record.get("message"), str):
        msg = record["message"]
        msg = msg.replace("{", "{{").replace("}", "}}").replace("<", "\\<")
        record["message"] = msg
    return True


def setup_logging(verbose: bool = False) -> None:
    """Configure loguru. Replace default logging.
    Level: verbose=True or LOG_LEVEL=DEBUG enables DEBUG; otherwise INFO."""
    level = "INFO"
    if verbose:
        level = "DEBUG"
    else:
        env_level = (os.environ.get("LOG_LEVEL") or "").upper()
        if env_level in ("DEBUG", "INFO", "WARNING", "ERROR"):
            level = env_level

    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format=("<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan> | {message}"),
        filter=_safe_message_filter,
    )
    _intercept_logging(level)


def reload_config(config_path: Path) -> Config:
    """Load config from path and update global cfg."""
    data = load_config_with_env(config_path)
    cfg.reload(data)
    return cfg


def build_directory(config: Config) -> UserDirectory | None:
    """Remote directory when directory.url is set, else static users from config, else none."""
    if config.directory_url:
        client = DirectoryClient(config.directory_url, token=config.directory_token)
        logger.info("User directory: {}", config.directory_url)
        return CachedUserDirectory(client, ttl=config.directory_cache_ttl_seconds)
    if config.users:
        directory = StaticUserDirectory.from_config(config.users)
        logger.info("User directory: {} static entries", len(directory))
        return directory
    logger.warning("No user directory configured; relying on controller access decisions only")
    return None


def main() -> None:
    """Main entrypoint."""
    parser = argparse.ArgumentParser(description="Locker gateway: controller heartbeats, RFID access and commands")
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    args = parser.parse_args()

    setup_logging(args.verbose)

    if not args.config.exists():
        logger.error("Config file not found: {}", args.config)
        sys.exit(1)

    try:
        config = reload_config(args.config)
    except GatewayConfigurationError as exc:
        logger.error("Invalid config {}: {} ({})", args.config, exc, exc.code)
        sys.exit(1)
    logger.info("Config loaded from {}", args.config)

    # Run async main (uvloop if available for better I/O throughput)
    try:
        import uvloop

        uvloop.run(_run(config, args.config))
    except ImportError:
        asyncio.run(_run(config, args.config))


async def _run(config: Config, config_path: Path) -> None:
    """Async run loop. Start the gateway and wait for a stop signal."""
    bus = Bus()
    bus.register(EventLogger())
    broker = create_broker(config)
    gateway = LockerGateway.create(broker, bus, config, build_directory(config))

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()

    def on_sighup() -> None:
        try:
            config = reload_config(config_path)
        except GatewayConfigurationError as exc:
            logger.error("Config reload rejected, keeping previous settings: {}", exc)
            return
        gateway.apply_settings(config.heartbeat_timeout, config.unlock_delay)
        gateway.evaluator.policy = AccessPolicy(config.allowed_access_values)
        gateway.evaluator.directory = build_directory(config)
        _, evt = config_reload()
        bus.publish("main", evt)
        logger.info("Config reloaded (SIGHUP)")

    loop.add_signal_handler(signal.SIGHUP, on_sighup)
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    logger.info("Starting locker gateway ({} broker)", broker.name)
    await gateway.start()
    try:
        await stop.wait()
    finally:
        logger.info("Locker gateway shutting down")
        await gateway.stop()


if __name__ == "__main__":
    main()
