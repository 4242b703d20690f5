from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tabrelay.api.rest import router as rest_router
from tabrelay.api.ws import router as ws_router
from tabrelay.core.config import Settings, settings as default_settings
from tabrelay.core.errors import RelayError
from tabrelay.core.logs import get_logger, setup_logging
from tabrelay.models.messages import ErrorMessage
from tabrelay.services.capture import ClientCaptureSource
from tabrelay.services.session_store import SessionRegistry
from tabrelay.services.transcriber import build_adapter

log = get_logger("app")


def create_app(settings: Optional[Settings] = None, registry: Optional[SessionRegistry] = None) -> FastAPI:
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(level=settings.LOG_LEVEL, json_output=settings.JSON_LOGS)
        if app.state.registry is None:
            app.state.registry = SessionRegistry(ClientCaptureSource(), build_adapter(settings), settings)
        log.info("relay ready", mode=settings.TRANSCRIPTION_MODE, adapter=app.state.registry.adapter.name)
        yield
        await app.state.registry.stop_all()
        await app.state.registry.adapter.aclose()

    app = FastAPI(title="Tab Transcription Relay", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.registry = registry

    # The extension calls from a chrome-extension:// origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ALLOW_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError):
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorMessage(code=exc.code, message=exc.message).model_dump(),
        )

    @app.get("/health")
    def health():
        return {"ok": True, "mode": settings.TRANSCRIPTION_MODE}

    app.include_router(rest_router)
    # WebSocket router
    app.include_router(ws_router)
    return app


app = create_app()
