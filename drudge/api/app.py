from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from starlette.concurrency import run_in_threadpool

from drudge.api.routes import router
from drudge.config import Settings
from drudge.core.engine import Engine
from drudge.errors import ValidationError


def create_app(
    engine: Engine, settings: Settings | None = None, start_engine: bool = True
) -> FastAPI:
    """Build the operations API around an engine.

    With ``start_engine`` the application lifespan starts the engine's
    workers, stall monitor and scheduler on startup and stops them on
    shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_engine:
            engine.start()
        try:
            yield
        finally:
            if start_engine:
                await run_in_threadpool(engine.stop)

    app = FastAPI(title="drudge", lifespan=lifespan)
    app.state.engine = engine
    app.state.settings = settings or engine.settings

    @app.exception_handler(ValidationError)
    async def handle_validation_error(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(
        request: Request, exc: RequestValidationError
    ):
        return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})

    app.include_router(router)
    app.mount("/metrics", make_asgi_app(registry=engine.monitor.registry))
    return app
