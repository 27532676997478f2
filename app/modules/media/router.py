from datetime import timedelta
from fastapi import APIRouter, UploadFile, File, Form, Depends, HTTPException, Query, Request, Response
from fastapi.responses import RedirectResponse, StreamingResponse
from app.core import errors
from app.core.security import get_principal, require_scopes, Principal, MEDIA_READ, MEDIA_WRITE
from app.modules.media.keys import MediaCategory
from app.modules.media.schemas import MediaAssetOut, PlaybackOut, SegmentUrlOut
from app.modules.media.service import HlsResponse, StreamingOrchestrator, UploadSource
from app.modules.media.signing import REFRESH_MARGIN_SECONDS
from app.platform.adapters.storage_local import LocalFilesystemStorage

router = APIRouter()

def svc(request: Request) -> StreamingOrchestrator:
    return request.app.state.registry.orchestrator

def _respond(res: HlsResponse) -> Response:
    headers = {"Cache-Control": res.cache_control}
    if res.redirect_to:
        return RedirectResponse(res.redirect_to, status_code=307, headers=headers)
    if res.stream is not None:
        if res.stream.content_length is not None:
            headers["Content-Length"] = str(res.stream.content_length)
        return StreamingResponse(res.stream.body, media_type=res.content_type, headers=headers)
    return Response(content=res.body, media_type=res.content_type, headers=headers)

# ---- Local static mapping (presigned reads for the filesystem backend) ----

@router.get("/files/{key:path}")
async def serve_local_file(
    key: str,
    request: Request,
    expires: int = Query(...),
    signature: str = Query(...),
    service: StreamingOrchestrator = Depends(svc),
):
    storage = request.app.state.registry.object_storage
    if not isinstance(storage, LocalFilesystemStorage):
        raise HTTPException(status_code=404, detail="Not found")
    storage.verify(key, expires, signature)
    try:
        res = await service.open_presigned(key, expires)
    except errors.StorageNotFound:
        raise HTTPException(status_code=404, detail="Not found")
    return _respond(res)

# ---- Upload ----

@router.post("/{category}/upload", response_model=MediaAssetOut, status_code=202, dependencies=[Depends(require_scopes(MEDIA_WRITE))])
async def upload_media(
    category: MediaCategory,
    audio: UploadFile = File(...),
    cover: UploadFile | None = File(default=None),
    cover_public: bool = Form(default=False),
    principal: Principal = Depends(get_principal),
    service: StreamingOrchestrator = Depends(svc),
):
    limit = service.max_upload_bytes
    if limit is not None and audio.size is not None and audio.size > limit:
        raise errors.PayloadTooLarge(f"Upload exceeds {limit // (1024 * 1024)}MB limit", bound="max_upload_bytes")
    cover_src = UploadSource(cover.file, cover.filename, cover.content_type) if cover and cover.filename else None
    return await service.accept_upload(
        principal.org_id,
        category.value,
        UploadSource(audio.file, audio.filename, audio.content_type),
        cover=cover_src,
        cover_public=cover_public,
    )

# ---- Status ----

@router.get("/{asset_id}", response_model=MediaAssetOut, dependencies=[Depends(require_scopes(MEDIA_READ))])
async def get_media(asset_id: str, principal: Principal = Depends(get_principal), service: StreamingOrchestrator = Depends(svc)):
    return await service.get_asset(principal.org_id, asset_id)

@router.delete("/{asset_id}", dependencies=[Depends(require_scopes(MEDIA_WRITE))])
async def delete_media(asset_id: str, principal: Principal = Depends(get_principal), service: StreamingOrchestrator = Depends(svc)):
    removed = await service.delete_asset(principal.org_id, asset_id)
    return {"id": asset_id, "deleted_objects": len(removed)}

# ---- Playback ----

@router.get("/{asset_id}/stream", response_model=PlaybackOut, dependencies=[Depends(require_scopes(MEDIA_READ))])
async def get_stream(
    asset_id: str,
    ttl: int | None = Query(default=None, ge=1, le=7 * 24 * 3600),
    principal: Principal = Depends(get_principal),
    service: StreamingOrchestrator = Depends(svc),
):
    playback = await service.stream(principal.org_id, asset_id, ttl)
    grant = playback.grant
    return PlaybackOut(
        asset_id=playback.asset.id,
        delivery=playback.delivery,
        url=playback.url,
        storage_key=playback.storage_key,
        strategy=grant.strategy.value if grant else None,
        expires_at=grant.expires_at if grant else None,
        refresh_after=grant.expires_at - timedelta(seconds=REFRESH_MARGIN_SECONDS) if grant else None,
        segments=[SegmentUrlOut(name=name, url=g.url, expires_at=g.expires_at) for name, g in playback.segments],
        cover_url=playback.cover_url,
    )

@router.get("/{asset_id}/cover", dependencies=[Depends(require_scopes(MEDIA_READ))])
async def get_cover(asset_id: str, principal: Principal = Depends(get_principal), service: StreamingOrchestrator = Depends(svc)):
    url = await service.cover_url(principal.org_id, asset_id)
    return RedirectResponse(url, status_code=307, headers={"Cache-Control": "no-store"})

@router.get("/{asset_id}/hls/{filename}", dependencies=[Depends(require_scopes(MEDIA_READ))])
async def get_hls_file(
    asset_id: str,
    filename: str,
    ttl: int | None = Query(default=None, ge=1, le=7 * 24 * 3600),
    principal: Principal = Depends(get_principal),
    service: StreamingOrchestrator = Depends(svc),
):
    try:
        res = await service.fetch(principal.org_id, asset_id, filename, ttl)
    except errors.StorageNotFound:
        raise HTTPException(status_code=404, detail="HLS file not found")
    return _respond(res)
