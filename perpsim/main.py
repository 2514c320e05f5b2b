"""Simulator entry point: feed, co-pilot and operator API on one event loop."""

from __future__ import annotations

import argparse
import asyncio
import sys
from uuid import uuid4

import structlog
import uvicorn

from perpsim.api.operator import create_app
from perpsim.config.settings import create_default_config, load_settings
from perpsim.ledger.events import EventType
from perpsim.monitoring import bind_session, configure_logging
from perpsim.runtime import Runtime, build_runtime

log = structlog.get_logger(__name__)


async def main_async(config_path: str | None = None, live_feed: bool = True) -> None:
    settings = load_settings(config_path)
    configure_logging(settings.monitoring.log_level, settings.storage.logs_path, settings.monitoring)
    bind_session(service="perpsim", session_id=uuid4().hex[:8])
    if sys.version_info < (3, 10):
        log.warning(
            "python_version_unverified",
            version=f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
        )

    runtime = build_runtime(settings, live_feed=live_feed)
    if settings.monitoring.metrics_enabled:
        try:
            runtime.metrics.start(settings.monitoring.metrics_port)
        except Exception as exc:
            log.warning("metrics_start_failed", error=str(exc))

    await runtime.bus.publish(
        EventType.SYSTEM_STARTED,
        {
            "version": "0.1.0",
            "start_balance": settings.engine.start_balance,
            "symbols": settings.copilot.symbols,
        },
    )

    try:
        await asyncio.gather(
            runtime.feed.run(settings.copilot.symbols, settings.copilot.candle_interval),
            runtime.copilot.run(settings.copilot.symbols),
            _api_server(runtime),
        )
    finally:
        await runtime.bus.publish(EventType.SYSTEM_STOPPED, {"reason": "shutdown"})
        await runtime.aclose()


async def _api_server(runtime: Runtime) -> None:
    """Run the operator API; stop the other loops when it exits."""
    monitoring = runtime.settings.monitoring
    try:
        config = uvicorn.Config(
            create_app(runtime),
            host=monitoring.api_host,
            port=monitoring.api_port,
            log_level=monitoring.log_level.lower(),
        )
        server = uvicorn.Server(config)
        await server.serve()
    except Exception as exc:
        log.warning("api_server_failed", error=str(exc))
    finally:
        runtime.copilot.stop()
        runtime.feed.stop()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="perpsim", description="Perpetual futures paper simulator")
    parser.add_argument("--config", help="Path to config.yaml (defaults to $CONFIG_PATH)")
    parser.add_argument("--offline", action="store_true", help="Use synthetic prices only")
    parser.add_argument("--init-config", metavar="PATH", help="Write a default config file and exit")
    args = parser.parse_args(argv)

    if args.init_config:
        create_default_config(args.init_config)
        print(f"Wrote {args.init_config}")
        return
    try:
        asyncio.run(main_async(args.config, live_feed=not args.offline))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
