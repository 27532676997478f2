import time
import logging
from dotenv import load_dotenv

# Load environment variables from .env file before anything else
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from app.core import errors
from app.core.config import settings
from app.core.db import init_models
from app.core.logging import setup_logging, request_id_ctx
from app.api.router import api_router
from app.platform.provider_registry import ProviderRegistry

setup_logging()
logger = logging.getLogger(__name__)

def create_app(registry: ProviderRegistry | None = None) -> FastAPI:
    app = FastAPI(title=settings.APP_NAME)
    app.state.registry = registry or ProviderRegistry(settings)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.time()
        response = await call_next(request)
        process_time = (time.time() - start_time) * 1000
        logger.info(
            f"Request: {request.method} {request.url.path} - Response: {response.status_code} - Time: {process_time:.2f}ms"
        )
        return response

    # registered last so it runs first and the id is set for the log line above
    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        rid = request.headers.get("x-request-id", "-")
        token = request_id_ctx.set(rid)
        try:
            response = await call_next(request)
        finally:
            request_id_ctx.reset(token)
        return response

    @app.exception_handler(errors.MediaError)
    async def media_error_handler(request: Request, exc: errors.MediaError):
        if exc.status_code >= 500:
            logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
        headers = {"Retry-After": "30"} if isinstance(exc, (errors.NotReady, errors.TransientStorageError)) else None
        body = {"error": exc.code, "message": exc.message}
        if isinstance(exc, errors.ValidationError) and exc.bound:
            body["bound"] = exc.bound
        return JSONResponse(status_code=exc.status_code, content=body, headers=headers)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.critical(f"Unhandled exception for request {request.method} {request.url.path}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"message": "An internal server error occurred."},
        )

    @app.on_event("startup")
    async def on_startup():
        reg: ProviderRegistry = app.state.registry
        await init_models(reg.engine)
        # surface misconfiguration now rather than on the first upload
        if not reg.transcoder_available():
            logger.error("Audio encoder missing: uploads will fail until ffmpeg/ffprobe are installed")
        signer = reg.url_signer  # raises SigningError on unusable key material
        if not signer.is_fully_secure():
            logger.warning(f"Playback URLs are not CDN-signed (strategy={signer.strategy.value})")

    @app.on_event("shutdown")
    async def on_shutdown():
        reg: ProviderRegistry = app.state.registry
        await reg.orchestrator.shutdown()
        await reg.event_bus.close()

    app.include_router(api_router, prefix=settings.API_PREFIX)
    return app

app = create_app()
