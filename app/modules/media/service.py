import asyncio
import logging
import os
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import BinaryIO, Literal
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from app.core import errors
from app.modules.media import keys
from app.modules.media.models import MediaAsset, MediaStatus
from app.modules.media.playlist import sign_playlist
from app.modules.media.repository import MediaRepository
from app.modules.media.scratch import ScratchSpace
from app.modules.media.signing import SignedAccessGrant, UrlSigner
from app.modules.media.transcoder import SegmentResult, Transcoder
from app.platform.ports.event_bus import EventBusPort, MEDIA_TOPIC
from app.platform.ports.object_storage import ObjectStoragePort, StoredObject, Visibility

log = logging.getLogger("media.orchestrator")

PLAYLIST_CACHE_CONTROL = "public, max-age=60"
SEGMENT_CACHE_CONTROL = "public, max-age=86400"
# signed responses are or embed bearer URLs; keep them out of shared caches
PRIVATE_CACHE_CONTROL = "private, max-age=60"
COVER_TTL_SECONDS = 24 * 3600

class _Cancelled(Exception):
    pass

@dataclass
class UploadSource:
    file: BinaryIO
    filename: str | None = None
    content_type: str | None = None

@dataclass
class UploadJob:
    asset_id: uuid.UUID
    org_id: uuid.UUID
    category: str
    source_path: str
    scratch: ScratchSpace
    cover_path: str | None = None
    cover_content_type: str | None = None
    cover_visibility: Visibility = "private"
    cancel: threading.Event = field(default_factory=threading.Event)
    started: bool = False

@dataclass
class HlsResponse:
    """What the router should send back for /hls/{filename}."""
    content_type: str
    cache_control: str
    body: bytes | None = None
    stream: StoredObject | None = None
    redirect_to: str | None = None

@dataclass
class Playback:
    asset: MediaAsset
    delivery: Literal["signed", "proxy"]
    url: str
    storage_key: str
    grant: SignedAccessGrant | None = None
    # (filename, grant) per segment; a canned CDN policy never covers them via the playlist grant
    segments: list[tuple[str, SignedAccessGrant]] = field(default_factory=list)
    cover_url: str | None = None

class StreamingOrchestrator:
    """Upload-to-playable pipeline and the playback path for HLS audio.

    One instance per process. Transcodes run as background tasks, at most
    ``max_workers`` at a time; callers poll the asset status (or listen on
    the event bus) for completion.
    """

    def __init__(
        self,
        storage: ObjectStoragePort,
        transcoder: Transcoder,
        signer: UrlSigner,
        session_factory: async_sessionmaker[AsyncSession],
        event_bus: EventBusPort,
        *,
        scratch_dir: str,
        delivery_mode: Literal["signed", "proxy"] = "signed",
        proxy_base_url: str = "",
        max_workers: int = 2,
        max_upload_bytes: int | None = None,
    ):
        self.storage = storage
        self.transcoder = transcoder
        self.signer = signer
        self.session_factory = session_factory
        self.event_bus = event_bus
        self.scratch_dir = os.path.abspath(scratch_dir)
        self.delivery_mode = delivery_mode
        self.proxy_base_url = proxy_base_url.rstrip("/")
        self.max_upload_bytes = max_upload_bytes
        self._slots = asyncio.Semaphore(max_workers)
        self._jobs: dict[uuid.UUID, tuple[asyncio.Task, UploadJob]] = {}
        os.makedirs(self.scratch_dir, exist_ok=True)

    # ---- Upload ----

    async def accept_upload(
        self,
        org_id: uuid.UUID,
        category: str,
        audio: UploadSource,
        cover: UploadSource | None = None,
        cover_public: bool = False,
    ) -> MediaAsset:
        """Validate and register an upload, then hand it to a background job.

        Everything up to the returned ``pending`` asset happens in the caller's
        request, so bad input is reported synchronously and nothing is written
        to the object store for it.
        """
        try:
            category = keys.MediaCategory(category).value
        except ValueError:
            raise errors.ValidationError(f"Unknown category: {category}", bound="category")
        if audio is None or audio.file is None:
            raise errors.ValidationError("Audio file is required", bound="required_file")

        scratch = ScratchSpace(self.scratch_dir)
        handed_off = False
        try:
            source = await asyncio.to_thread(scratch.save, audio.file, audio.filename or "", self.max_upload_bytes)
            cover_path = None
            if cover is not None and cover.file is not None:
                cover_path = await asyncio.to_thread(scratch.save, cover.file, cover.filename or "", self.max_upload_bytes, "cover")

            probe = await asyncio.to_thread(self.transcoder.validate, source)

            # id first: every storage key is namespaced by it
            asset_id = uuid.uuid4()
            job = UploadJob(
                asset_id=asset_id,
                org_id=org_id,
                category=category,
                source_path=source,
                scratch=scratch,
                cover_path=cover_path,
                cover_content_type=cover.content_type if cover_path else None,
                cover_visibility="public" if cover_public else "private",
            )
            try:
                async with self.session_factory() as session:
                    asset = await MediaRepository(session).create(
                        org_id,
                        asset_id=asset_id,
                        category=category,
                        probe=probe,
                        storage_key_prefix=keys.hls_prefix(category, asset_id),
                        original_filename=(audio.filename or "")[:255] or None,
                    )
                    await session.commit()
                    await session.refresh(asset)
            except (Exception, asyncio.CancelledError):
                # the row may be committed already; it must not stay pending with no job behind it
                await asyncio.shield(self._abort(job, "Upload aborted before processing started"))
                raise

            self._dispatch(job)
            handed_off = True
            log.info(f"Accepted {category} upload {asset_id} ({probe.duration_seconds:.1f}s, {probe.codec})")
            return asset
        finally:
            if not handed_off:
                scratch.cleanup()

    def _dispatch(self, job: UploadJob) -> None:
        task = asyncio.create_task(self._run_pipeline(job), name=f"transcode-{job.asset_id}")
        self._jobs[job.asset_id] = (task, job)
        task.add_done_callback(lambda _t: self._jobs.pop(job.asset_id, None))

    async def _blocking(self, job: UploadJob, fn, *args):
        # Blocking steps run in a worker thread. On cancellation the thread is
        # told to stop and awaited, so cleanup never races a live upload.
        fut = asyncio.get_running_loop().run_in_executor(None, fn, *args)
        try:
            return await asyncio.shield(fut)
        except asyncio.CancelledError:
            job.cancel.set()
            try:
                await fut
            except Exception:
                pass  # the cancellation is what gets reported
            raise

    async def _run_pipeline(self, job: UploadJob) -> None:
        job.started = True
        ready = False
        try:
            async with self._slots:
                await self._transition(job.asset_id, MediaStatus.processing)
                result = await self._blocking(
                    job, self.transcoder.segment, job.source_path, job.scratch.path("hls"), job.cancel
                )
                cover_key = None
                if job.cover_path:
                    cover_key = keys.cover_key(job.category, job.asset_id, os.path.splitext(job.cover_path)[1])
                    await self._blocking(
                        job, self._put_file, cover_key, job.cover_path,
                        job.cover_content_type or keys.content_type_for(job.cover_path), job.cover_visibility,
                    )
                playlist_key = await self._blocking(job, self._persist_hls, job, result)

                async with self.session_factory() as session:
                    repo = MediaRepository(session)
                    asset = await repo.get_by_id(job.asset_id)
                    if asset is None:
                        raise errors.NotFound(f"Asset {job.asset_id} vanished during processing")
                    await repo.mark_ready(
                        asset, playlist_key=playlist_key,
                        segment_count=len(result.segment_filenames), cover_key=cover_key,
                        cover_public=job.cover_visibility == "public",
                    )
                    await session.commit()
                ready = True
            log.info(f"Asset {job.asset_id} ready: {len(result.segment_filenames)} segment(s)")
        except asyncio.CancelledError:
            await self._abort(job, "Upload cancelled before completion")
            raise
        except Exception as e:
            if isinstance(e, errors.MediaError):
                log.warning(f"Pipeline for {job.asset_id} failed: {e}")
            else:
                log.exception(f"Pipeline for {job.asset_id} crashed")
            await self._abort(job, str(e) or e.__class__.__name__)
        finally:
            job.scratch.cleanup()

        if ready:
            await self._publish("media.asset.ready", job, status=MediaStatus.ready.value, playlist_key=playlist_key)

    def _put_file(self, key: str, path: str, content_type: str, visibility: Visibility) -> None:
        with open(path, "rb") as f:
            self.storage.put(key, f, content_type, visibility)

    def _persist_hls(self, job: UploadJob, result: SegmentResult) -> str:
        # Segments first, playlist last: a stored playlist never names a
        # segment that is not already there. HLS media is always private.
        for name in result.segment_filenames:
            if job.cancel.is_set():
                raise _Cancelled()
            self._put_file(
                keys.hls_key(job.category, job.asset_id, name),
                os.path.join(result.output_dir, name),
                keys.SEGMENT_CONTENT_TYPE,
                "private",
            )
        if job.cancel.is_set():
            raise _Cancelled()
        playlist_key = keys.hls_key(job.category, job.asset_id, result.playlist_filename)
        self._put_file(
            playlist_key,
            os.path.join(result.output_dir, result.playlist_filename),
            keys.PLAYLIST_CONTENT_TYPE,
            "private",
        )
        return playlist_key

    async def _abort(self, job: UploadJob, reason: str) -> None:
        # best effort: failures here are logged so the original error stands
        prefix = keys.asset_prefix(job.category, job.asset_id)
        try:
            removed = await asyncio.to_thread(self.storage.delete_prefix, prefix)
            if removed:
                log.info(f"Removed {len(removed)} partial object(s) under {prefix}")
        except errors.DeletePrefixError as e:
            log.error(f"Orphaned objects under {prefix}: {e.remaining_keys}")
        except Exception:
            log.exception(f"Cleanup of {prefix} failed")

        try:
            async with self.session_factory() as session:
                repo = MediaRepository(session)
                asset = await repo.get_by_id(job.asset_id)
                if asset is not None and asset.status in (MediaStatus.pending.value, MediaStatus.processing.value):
                    await repo.mark_failed(asset, reason)
                    await session.commit()
        except Exception:
            log.exception(f"Could not mark {job.asset_id} failed")

        await self._publish("media.asset.failed", job, status=MediaStatus.failed.value, reason=reason)

    async def _transition(self, asset_id: uuid.UUID, to: MediaStatus) -> None:
        async with self.session_factory() as session:
            repo = MediaRepository(session)
            asset = await repo.get_by_id(asset_id)
            if asset is None:
                raise errors.NotFound(f"Asset {asset_id} not found")
            if to is MediaStatus.processing:
                await repo.mark_processing(asset)
            await session.commit()

    async def _publish(self, event_type: str, job: UploadJob, **payload) -> None:
        try:
            await self.event_bus.publish(
                topic=MEDIA_TOPIC,
                key=str(job.asset_id),
                value={
                    "event_type": event_type,
                    "asset_id": str(job.asset_id),
                    "org_id": str(job.org_id),
                    "category": job.category,
                    **payload,
                },
            )
        except Exception:
            log.exception(f"Publishing {event_type} for {job.asset_id} failed")

    async def wait_idle(self) -> None:
        """Block until every in-flight job has finished."""
        while self._jobs:
            await asyncio.gather(*(task for task, _job in list(self._jobs.values())), return_exceptions=True)

    async def _cancel(self, task: asyncio.Task, job: UploadJob) -> None:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        if not job.started:
            # cancelled before its first step, so none of its own cleanup ran
            job.scratch.cleanup()
            await self._abort(job, "Upload cancelled before completion")

    async def shutdown(self) -> None:
        jobs = list(self._jobs.values())
        if jobs:
            log.info(f"Cancelling {len(jobs)} in-flight transcode job(s)")
            await asyncio.gather(*(self._cancel(task, job) for task, job in jobs))

    # ---- Status & lifecycle ----

    async def get_asset(self, org_id: uuid.UUID, asset_id: str | uuid.UUID) -> MediaAsset:
        aid = keys.parse_asset_id(asset_id)
        async with self.session_factory() as session:
            asset = await MediaRepository(session).get(org_id, aid)
        if asset is None:
            raise errors.NotFound(f"Asset {aid} not found")
        return asset

    async def delete_asset(self, org_id: uuid.UUID, asset_id: str | uuid.UUID) -> list[str]:
        asset = await self.get_asset(org_id, asset_id)
        running = self._jobs.get(asset.id)
        if running is not None:
            await self._cancel(*running)
        removed = await asyncio.to_thread(self.storage.delete_prefix, keys.asset_prefix(asset.category, asset.id))
        async with self.session_factory() as session:
            repo = MediaRepository(session)
            obj = await repo.get(org_id, asset.id)
            if obj is not None:
                await repo.soft_delete(obj)
                await session.commit()
        log.info(f"Deleted asset {asset.id} ({len(removed)} object(s))")
        return removed

    # ---- Playback ----

    async def resolve_playback(
        self, org_id: uuid.UUID, asset_id: str | uuid.UUID, filename: str = keys.PLAYLIST_FILENAME
    ) -> tuple[MediaAsset, str]:
        if not keys.is_hls_filename(filename):
            raise errors.ValidationError(f"Invalid HLS path: {filename!r}")
        asset = await self.get_asset(org_id, asset_id)
        if asset.status != MediaStatus.ready.value or not asset.playlist_key:
            raise errors.NotReady(f"Asset {asset.id} is {asset.status}, not playable yet")
        if filename == keys.PLAYLIST_FILENAME:
            return asset, asset.playlist_key
        index = keys.segment_index(filename)
        if asset.segment_count is not None and index >= asset.segment_count:
            raise errors.NotFound(f"Segment {filename} not found")
        return asset, keys.hls_key(asset.category, asset.id, filename)

    def proxy_url(self, asset: MediaAsset, filename: str = keys.PLAYLIST_FILENAME) -> str:
        return f"{self.proxy_base_url}/{asset.id}/hls/{filename}"

    async def stream(self, org_id: uuid.UUID, asset_id: str | uuid.UUID, ttl_seconds: int | None = None) -> Playback:
        asset, key = await self.resolve_playback(org_id, asset_id)
        cover_url = await asyncio.to_thread(self._cover_url, asset)
        if self.delivery_mode == "proxy":
            return Playback(
                asset=asset, delivery="proxy", url=self.proxy_url(asset), storage_key=key, cover_url=cover_url,
            )
        grant = await asyncio.to_thread(self.signer.mint, key, ttl_seconds)
        segments = await asyncio.to_thread(self._segment_grants, asset, ttl_seconds)
        return Playback(
            asset=asset, delivery="signed", url=grant.url, storage_key=key,
            grant=grant, segments=segments, cover_url=cover_url,
        )

    def _segment_grants(self, asset: MediaAsset, ttl_seconds: int | None) -> list[tuple[str, SignedAccessGrant]]:
        names = [keys.segment_filename(i) for i in range(asset.segment_count or 0)]
        return [(name, self.signer.mint(keys.hls_key(asset.category, asset.id, name), ttl_seconds)) for name in names]

    def _cover_url(self, asset: MediaAsset) -> str | None:
        if not asset.cover_key:
            return None
        if asset.cover_public and self.signer.cdn_domain:
            return self.signer.cdn_url(asset.cover_key)
        return self.signer.mint(asset.cover_key, COVER_TTL_SECONDS).url

    async def cover_url(self, org_id: uuid.UUID, asset_id: str | uuid.UUID) -> str:
        asset = await self.get_asset(org_id, asset_id)
        if asset.status != MediaStatus.ready.value:
            raise errors.NotReady(f"Asset {asset.id} is {asset.status}, not playable yet")
        if not asset.cover_key:
            raise errors.NotFound(f"Asset {asset.id} has no cover")
        return await asyncio.to_thread(self._cover_url, asset)

    async def open_presigned(self, key: str, expires: int) -> HlsResponse:
        """Body for an already verified static-mapping read.

        Playlists are rewritten so each segment line carries its own signature
        with the same expiry, which lets a player that only holds the playlist
        URL fetch every segment.
        """
        if not key.endswith(".m3u8"):
            obj = await asyncio.to_thread(self.storage.open, key)
            return HlsResponse(content_type=obj.content_type, cache_control=PRIVATE_CACHE_CONTROL, stream=obj)

        raw = await asyncio.to_thread(self.storage.get, key)
        folder = key.strip("/").rsplit("/", 1)[0]
        ttl = max(1, expires - int(time.time()))

        def resolve(uri: str) -> str:
            if not keys.is_hls_filename(uri):
                return uri
            return self.storage.presign(f"{folder}/{uri}", ttl)

        body = await asyncio.to_thread(sign_playlist, raw.decode("utf-8"), resolve)
        return HlsResponse(
            content_type=keys.PLAYLIST_CONTENT_TYPE,
            cache_control=PRIVATE_CACHE_CONTROL,
            body=body.encode("utf-8"),
        )

    async def fetch(
        self, org_id: uuid.UUID, asset_id: str | uuid.UUID, filename: str, ttl_seconds: int | None = None
    ) -> HlsResponse:
        asset, key = await self.resolve_playback(org_id, asset_id, filename)
        is_playlist = filename == keys.PLAYLIST_FILENAME
        content_type = keys.PLAYLIST_CONTENT_TYPE if is_playlist else keys.SEGMENT_CONTENT_TYPE

        if self.delivery_mode == "proxy":
            obj = await asyncio.to_thread(self.storage.open, key)
            return HlsResponse(
                content_type=content_type,
                cache_control=PLAYLIST_CACHE_CONTROL if is_playlist else SEGMENT_CACHE_CONTROL,
                stream=obj,
            )

        if not is_playlist:
            grant = await asyncio.to_thread(self.signer.mint, key, ttl_seconds)
            return HlsResponse(content_type=content_type, cache_control="no-store", redirect_to=grant.url)

        raw = await asyncio.to_thread(self.storage.get, key)

        def resolve(uri: str) -> str:
            if not keys.is_hls_filename(uri):
                return uri
            return self.signer.mint(keys.hls_key(asset.category, asset.id, uri), ttl_seconds).url

        body = await asyncio.to_thread(sign_playlist, raw.decode("utf-8"), resolve)
        return HlsResponse(
            content_type=content_type,
            cache_control=PRIVATE_CACHE_CONTROL,
            body=body.encode("utf-8"),
        )
