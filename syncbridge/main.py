from __future__ import annotations

import asyncio
from contextlib import AsyncExitStack, asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from syncbridge.api.router import api_router
from syncbridge.core.config import settings
from syncbridge.core.exceptions import ConfigurationError, UnsupportedEntityError
from syncbridge.core.logger import configure_logging, get_logger
from syncbridge.events.publisher import SqsDeadLetterPublisher
from syncbridge.workers.sync_pipeline import SyncPipeline, build_pipelines_from_env

configure_logging()
logger = get_logger(component="FastAPI")


async def _stop_pipelines(pipelines: list[SyncPipeline], tasks: list[asyncio.Task]) -> None:
    logger.info("Shutting down sync pipelines", count=len(pipelines))
    # Let each pipeline finish its in-flight event before the tasks are torn down.
    await asyncio.gather(*(pipeline.shutdown() for pipeline in pipelines), return_exceptions=True)
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    logger.info("Sync pipelines shutdown complete")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start both replication directions on startup and drain them on shutdown.

    A configuration problem aborts startup instead of leaving a half-running engine.
    """
    async with AsyncExitStack() as stack:
        publisher = None
        if settings.enable_sync_pipelines and settings.dead_letter_queue_url:
            publisher = await stack.enter_async_context(
                SqsDeadLetterPublisher(
                    queue_url=settings.dead_letter_queue_url,
                    region_name=settings.aws_region,
                    endpoint_url=str(settings.sqs_endpoint_url) if settings.sqs_endpoint_url else None,
                )
            )

        try:
            pipelines = await build_pipelines_from_env(publisher)
        except ConfigurationError as exc:
            logger.critical("Sync engine misconfigured, refusing to start", error=str(exc))
            raise

        tasks = [asyncio.create_task(pipeline.run_forever(), name=f"sync-{pipeline.name}") for pipeline in pipelines]
        app.state.pipelines = pipelines
        if pipelines:
            logger.info("Sync pipelines started as background tasks", directions=[p.name for p in pipelines])
        else:
            logger.info("Sync pipelines not started (disabled)")

        try:
            yield
        finally:
            if pipelines:
                await _stop_pipelines(pipelines, tasks)


def create_app() -> FastAPI:
    app = FastAPI(title=settings.project_name, version="1.0.0", lifespan=lifespan)
    app.state.pipelines = []

    @app.exception_handler(UnsupportedEntityError)
    async def handle_unsupported_entity(_: Request, exc: UnsupportedEntityError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc), "error_code": "UNSUPPORTED_ENTITY"})

    app.include_router(api_router, prefix=settings.api_v1_prefix)

    @app.get("/healthz", tags=["health"])
    async def healthcheck(request: Request) -> dict[str, object]:
        return {
            "status": "ok",
            "pipelines": [pipeline.name for pipeline in request.app.state.pipelines],
        }

    return app


app = create_app()
