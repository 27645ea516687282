"""
Process entry point for the WhatsApp session keeper.

Responsibilities:
- Build the runtime (config, stores, transport, manager, health)
- Connect once at startup and keep the session alive
- Serve /health while the manager runs
- Shut down cleanly and return the supervisor's exit code
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import uvicorn
from dotenv import load_dotenv

from adapters.transport.base import TransportProtocol
from adapters.transport.websocket_bridge import WebSocketBridgeTransport
from config import AppConfig
from health.reporter import AUTH_PATH_NAME, HealthReporter
from observability import logger
from observability.logger import log_event
from persistence.credential_store import FileCredentialStore
from persistence.message_history import MessageHistoryStore
from server.app import create_app
from server.supervisor import FatalSupervisor
from session.connection_manager import ConnectionManager
from session.errors import AuthMissing


@dataclass
class Runtime:
    """Everything one process owns. Built once, started once."""

    config: AppConfig
    supervisor: FatalSupervisor
    manager: ConnectionManager
    history: MessageHistoryStore
    reporter: HealthReporter


def build_runtime(
    config: AppConfig,
    *,
    transport: TransportProtocol | None = None,
) -> Runtime:
    hardened = config.is_production
    supervisor = FatalSupervisor(hardened=hardened)

    credential_store = FileCredentialStore(config.auth_path)
    history = MessageHistoryStore(config.store_path)

    manager = ConnectionManager(
        config=config.connection,
        transport=transport or WebSocketBridgeTransport(url=config.transport_bridge_url),
        credential_store=credential_store,
        hardened=hardened,
        on_terminal=supervisor.on_terminal,
    )
    manager.add_handler(history)

    reporter = HealthReporter(
        status_source=manager.get_status,
        required_paths={AUTH_PATH_NAME: config.auth_path, "store": config.store_path},
        hardened=hardened,
        environment=config.env,
    )

    return Runtime(
        config=config,
        supervisor=supervisor,
        manager=manager,
        history=history,
        reporter=reporter,
    )


async def start_runtime(runtime: Runtime) -> None:
    """
    Load history, start snapshot flushing and connect.

    Raises:
        AuthMissing if credentials are required and absent.
    """
    config = runtime.config

    log_event({
        "event_type": "STARTING",
        "environment": config.env,
        "health_check_port": config.health_check_port,
        "max_reconnect_attempts": config.connection.max_reconnect_attempts,
    })

    runtime.history.load()
    await runtime.history.start(config.store_flush_interval_s)
    await runtime.manager.connect()


async def stop_runtime(runtime: Runtime) -> None:
    await runtime.manager.shutdown()
    await runtime.history.stop()
    log_event({"event_type": "STOPPED", "reason": runtime.supervisor.reason})


async def run(config: AppConfig | None = None) -> int:
    """Run until shutdown (signal) or a fatal fault. Returns the exit code."""
    config = config or AppConfig.load_from_env()
    logger.set_level(config.log_level)

    runtime = build_runtime(config)
    loop = asyncio.get_running_loop()
    runtime.supervisor.install(loop)

    try:
        try:
            await start_runtime(runtime)
        except AuthMissing as exc:
            runtime.supervisor.report(exc, "startup")
            await stop_runtime(runtime)
            return runtime.supervisor.exit_code or 1

        app = create_app(config, runtime.reporter)
        server = uvicorn.Server(
            uvicorn.Config(
                app,
                host="0.0.0.0",
                port=config.health_check_port,
                log_level="warning",
                lifespan="off",
            )
        )

        log_event({
            "event_type": "HEALTH_SERVER_STARTING",
            "port": config.health_check_port,
            "endpoint": f"http://localhost:{config.health_check_port}/health",
        })

        server_task = asyncio.create_task(server.serve())
        fatal_task = asyncio.create_task(runtime.supervisor.wait())

        await asyncio.wait({server_task, fatal_task}, return_when=asyncio.FIRST_COMPLETED)

        server.should_exit = True
        await stop_runtime(runtime)
        await asyncio.gather(server_task, return_exceptions=True)

        fatal_task.cancel()
        await asyncio.gather(fatal_task, return_exceptions=True)

        return runtime.supervisor.exit_code or 0
    finally:
        runtime.supervisor.uninstall(loop)


def main() -> None:
    load_dotenv()
    raise SystemExit(asyncio.run(run()))


if __name__ == "__main__":
    main()
