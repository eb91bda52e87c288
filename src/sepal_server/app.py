import logging
import traceback
from contextlib import asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from sepal_server.database import check_database_setup, create_all_tables, create_session_maker, get_session
from sepal_server.providers.chat_completions import ChatCompletionsClient
from sepal_server.router import router
from sepal_server.runs.driver import RunDriver
from sepal_server.runs.errors import RecordNotFoundError, RunError, RunNotFoundError
from sepal_server.settings import Settings

logger = logging.getLogger("sepal_server")


@asynccontextmanager
async def lifespan(app: FastAPI) -> Any:
    settings = Settings()
    app.state.settings = settings

    try:
        app.state.engine, app.state.db_session_maker = create_session_maker(settings.database_url)
        app.state.get_db_session = lambda read_only=False: get_session(app.state.db_session_maker, read_only)
        await create_all_tables(app.state.engine)
        if not await check_database_setup(app.state.engine):
            raise RuntimeError(f"Database at {settings.database_url} is not reachable")
    except Exception as e:
        logger.warning(f"Failed to create database session: {e}")
        raise

    headers: dict[str, str] = {}
    if settings.provider_api_key:
        headers["Authorization"] = f"Bearer {settings.provider_api_key}"

    app.state.provider_client = httpx.AsyncClient(
        base_url=settings.provider_base_url, headers=headers, timeout=settings.provider_timeout
    )
    app.state.run_driver = RunDriver(
        app.state.db_session_maker,
        ChatCompletionsClient(app.state.provider_client),
        stream=settings.provider_stream,
    )
    logger.info(f"Provider base URL: {settings.provider_base_url}")

    yield

    await app.state.run_driver.wait_idle()
    await app.state.provider_client.aclose()
    await app.state.engine.dispose()
    logger.info("Application shutdown completed")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Sepal",
        description="Run execution server for OpenAI-compatible backends",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, e: HTTPException) -> JSONResponse:
        logger.error(f"HTTP {e.status_code}: {e.detail} - {request.method} {request.url}")
        return JSONResponse(
            status_code=e.status_code,
            content={"detail": e.detail},
        )

    @app.exception_handler(RunError)
    async def run_error_handler(request: Request, e: RunError) -> JSONResponse:
        status_code = 404 if isinstance(e, (RunNotFoundError, RecordNotFoundError)) else 400
        logger.error(f"{type(e).__name__} on {request.method} {request.url}: {e}")
        return JSONResponse(
            status_code=status_code,
            content={"detail": str(e)},
        )

    @app.exception_handler(ValidationError)
    async def validation_exception_handler(request: Request, e: ValidationError) -> JSONResponse:
        logger.error(f"Validation error on {request.method} {request.url}: {e}")
        return JSONResponse(
            status_code=422,
            content={"detail": "Validation error", "errors": e.errors(include_url=False, include_context=False)},
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, e: ValueError) -> JSONResponse:
        logger.error(f"ValueError on {request.method} {request.url}: {e}")
        return JSONResponse(
            status_code=400,
            content={"detail": str(e)},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, e: Exception) -> JSONResponse:
        logger.error(f"Unhandled exception on {request.method} {request.url}:")
        logger.error(traceback.format_exc())
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error", "error": str(e)},
        )

    app.include_router(router)

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()
