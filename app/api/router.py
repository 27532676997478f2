import asyncio
from fastapi import APIRouter, Request
from app.modules.media.router import router as media_router
from app.modules.media.schemas import HealthOut, SigningStatusOut

api_router = APIRouter()
api_router.include_router(media_router, prefix="/media", tags=["media"])

@api_router.get("/health", response_model=HealthOut, tags=["health"])
async def health(request: Request):
    registry = request.app.state.registry
    transcoder_ok = registry.transcoder_available()
    storage_ok = await asyncio.to_thread(registry.storage_available)
    signer = registry.url_signer
    return HealthOut(
        status="ok" if transcoder_ok and storage_ok else "degraded",
        transcoder=transcoder_ok,
        storage=storage_ok,
        signing=SigningStatusOut(
            strategy=signer.strategy.value,
            fully_secure=signer.is_fully_secure(),
            delivery=registry.settings.STREAM_DELIVERY_MODE,
        ),
    )
