"""
Application bootstrap: configuration, logging, store, service and HTTP server.

Usage:
    rrd-server                              # defaults from rrd_config.json + environment
    rrd-server --config my_config.json
    rrd-server --port 9000 --max-records 5000 --backend memory
"""

import argparse
from typing import Optional

from aiohttp import web

from .config import RRDConfig, BACKEND_CHOICES
from .logger import RRDLogger, get_logger
from .rrd import RoundRobinStore
from .service import RRDService
from .server import RRDHandlers, setup_routes

STORE_KEY = web.AppKey("store", RoundRobinStore)
SERVICE_KEY = web.AppKey("service", RRDService)


async def _open_store(app: web.Application):
    await app[STORE_KEY].open()


async def _close_store(app: web.Application):
    await app[STORE_KEY].cleanup()


def create_app(config: Optional[RRDConfig] = None, store: Optional[RoundRobinStore] = None) -> web.Application:
    """Build the aiohttp application. The store is opened on startup and closed on cleanup."""
    config = config if config is not None else RRDConfig()
    store = store if store is not None else RoundRobinStore(config=config)
    service = RRDService(store)

    app = web.Application()
    app[STORE_KEY] = store
    app[SERVICE_KEY] = service
    setup_routes(app, RRDHandlers(service, request_timeout=config.server.request_timeout))
    app.on_startup.append(_open_store)
    app.on_cleanup.append(_close_store)
    return app


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Round-robin time-series metric store")
    parser.add_argument("--config", type=str, help="Path to a JSON config file")
    parser.add_argument("--host", type=str, help="Listen address")
    parser.add_argument("--port", type=int, help="Listen port")
    parser.add_argument("--max-records", type=int, help="Store capacity")
    parser.add_argument("--backend", choices=BACKEND_CHOICES, help="Backing store")
    parser.add_argument("--storage", type=str, help="Storage directory")
    parser.add_argument("--log-level", type=str, help="DEBUG, INFO, WARNING, ERROR")
    return parser


def config_from_args(args: argparse.Namespace) -> RRDConfig:
    overrides = {}
    if args.host:
        overrides.setdefault("server", {})["host"] = args.host
    if args.port:
        overrides.setdefault("server", {})["port"] = args.port
    if args.max_records:
        overrides.setdefault("capacity", {})["max_records"] = args.max_records
    if args.backend:
        overrides.setdefault("storage", {})["backend"] = args.backend
    if args.storage:
        overrides.setdefault("storage", {})["base_path"] = args.storage
    if args.log_level:
        overrides.setdefault("logging", {})["level"] = args.log_level
    return RRDConfig(args.config, overrides=overrides)


def main(argv=None):
    """Parse arguments and run the HTTP server."""
    args = build_parser().parse_args(argv)
    config = config_from_args(args)

    RRDLogger.setup(
        log_dir=str(config.get_logs_path()),
        log_level=config.logging.level,
        console_output=config.logging.console_output,
        console_level=config.logging.level
    )
    logger = get_logger("App")
    logger.info(f"Starting server on {config.server.host}:{config.server.port}")

    web.run_app(create_app(config), host=config.server.host, port=config.server.port, print=None)


if __name__ == "__main__":
    main()
