"""
ASGI entry point.

Used by uvicorn / gunicorn when the process is started by an external ASGI
server instead of server.main. The session keeper runs inside the app
lifespan; a fatal fault stops the runtime and terminates the process with
the supervisor's exit code.
"""

from dotenv import load_dotenv

load_dotenv()

# pylint: disable=wrong-import-position
import asyncio
import contextlib
import os
from typing import AsyncIterator

from fastapi import FastAPI

from config import AppConfig
from observability import logger
from server.app import create_app
from server.main import build_runtime, start_runtime, stop_runtime

config = AppConfig.load_from_env()
logger.set_level(config.log_level)

runtime = build_runtime(config)


async def _exit_on_fatal() -> None:
    code = await runtime.supervisor.wait()
    await stop_runtime(runtime)
    os._exit(code)


@contextlib.asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    runtime.supervisor.install(asyncio.get_running_loop())
    await start_runtime(runtime)
    watcher = asyncio.create_task(_exit_on_fatal())
    try:
        yield
    finally:
        watcher.cancel()
        await stop_runtime(runtime)


app = create_app(config, runtime.reporter, lifespan=lifespan)
