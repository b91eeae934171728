"""FastAPI application for the code playground runner."""

# Annotations stay evaluated here: FastAPI reads the handler signature, and
# `Request` is only bound inside create_app.

import asyncio
import logging
import sys
import threading
from typing import Any

from . import __version__
from .config import RunnerSettings, load_settings
from .coordinator import ExecutionCoordinator, parse_request, to_response
from .engine import DockerEngine
from .errors import ValidationError
from .images import ImageCache
from .logging_utils import LOGGER_NAME, configure_logging
from .models import ExecutionResult
from .profiles import ProfileRegistry
from .runtime import SandboxRuntime
from .snippets import default_snippets

logger = logging.getLogger(LOGGER_NAME)

_DISCONNECT_POLL_S = 0.5
_ERROR_STATUS = {
    "image_unavailable": 502,
    "launch_failed": 503,
    "internal": 500,
}


def build_coordinator(settings: RunnerSettings) -> ExecutionCoordinator:
    registry = ProfileRegistry.with_image_overrides(settings.images)
    engine = DockerEngine(settings.docker)
    runtime = SandboxRuntime(
        engine,
        ImageCache(engine, settings.pull),
        max_concurrency=settings.max_concurrency,
        admission_timeout_s=settings.admission_timeout_s,
        keepalive_grace_s=settings.docker.keepalive_grace_s,
        container_prefix=settings.docker.container_prefix,
    )
    return ExecutionCoordinator(settings, registry, runtime)


def create_app(settings: RunnerSettings | None = None, coordinator: ExecutionCoordinator | None = None):
    try:
        from fastapi import FastAPI, HTTPException, Request
        from fastapi.middleware.cors import CORSMiddleware
        from fastapi.responses import JSONResponse
        from starlette.concurrency import run_in_threadpool
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("請先安裝 server 依賴：pip install -e .[server]") from exc

    runtime_settings = settings or load_settings()
    service = coordinator or build_coordinator(runtime_settings)
    prefix = runtime_settings.route_prefix

    app = FastAPI(title="Code Playground Runner", version=__version__)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(runtime_settings.cors_origins),
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    @app.get(prefix or "/")
    def root() -> dict[str, Any]:
        return {"message": f"Welcome to code execution API. Send POST request to {prefix}/execute"}

    @app.get(f"{prefix}/default")
    def default_code() -> dict[str, str]:
        return default_snippets(service.registry)

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "service": "playground-runner",
            "version": __version__,
            "languages": service.registry.languages(),
            **service.runtime.health_snapshot(),
        }

    @app.post(f"{prefix}/execute")
    async def execute(request: Request):
        try:
            payload = await request.json()
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="request body 必須是合法 JSON") from exc

        try:
            exec_request = parse_request(payload)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        cancel_event = threading.Event()
        watcher = asyncio.create_task(_watch_disconnect(request, cancel_event))
        try:
            result = await run_in_threadpool(service.execute, exec_request, cancel_event)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        finally:
            watcher.cancel()

        return JSONResponse(status_code=_status_code(result), content=dict(to_response(result)))

    return app


async def _watch_disconnect(request: Any, cancel_event: threading.Event) -> None:
    while not cancel_event.is_set():
        if await request.is_disconnected():
            logger.info("client disconnected, cancelling sandbox job")
            cancel_event.set()
            return
        await asyncio.sleep(_DISCONNECT_POLL_S)


def _status_code(result: ExecutionResult) -> int:
    if result.error is None:
        return 200
    return _ERROR_STATUS.get(result.error.kind, 500)


def main() -> None:
    try:
        import uvicorn

        settings = load_settings()
        configure_logging(settings.log_level, settings.log_json)
        coordinator = build_coordinator(settings)
        version = coordinator.runtime.engine.version()
        logger.info("Docker found: %s", version)
        app = create_app(settings, coordinator)
        logger.info("Starting server on %s:%s", settings.host, settings.port)
        uvicorn.run(app, host=settings.host, port=settings.port)
    except Exception as exc:  # noqa: BLE001
        logger.exception("runner 啟動失敗")
        print(f"runner 啟動失敗：{exc}", file=sys.stderr)
        raise


if __name__ == "__main__":
    main()
