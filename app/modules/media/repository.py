import uuid
from datetime import datetime, timezone
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from app.modules.media.models import MediaAsset, MediaStatus, TRANSITIONS
from app.modules.media.transcoder import ProbeResult

class InvalidTransition(Exception):
    pass

class MediaRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self, org_id: uuid.UUID, *, asset_id: uuid.UUID, category: str, probe: ProbeResult,
        storage_key_prefix: str, original_filename: str | None = None,
    ) -> MediaAsset:
        obj = MediaAsset(
            id=asset_id, org_id=org_id, category=category, status=MediaStatus.pending.value,
            duration_seconds=probe.duration_seconds, sample_rate=probe.sample_rate,
            channels=probe.channels, bitrate=probe.bitrate, codec=probe.codec,
            format_name=probe.format_name or None,
            storage_key_prefix=storage_key_prefix, original_filename=original_filename,
        )
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def get(self, org_id: uuid.UUID, media_id: uuid.UUID) -> MediaAsset | None:
        q = select(MediaAsset).where(
            MediaAsset.id == media_id,
            MediaAsset.org_id == org_id,
            MediaAsset.deleted_at.is_(None),
        )
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def get_by_id(self, media_id: uuid.UUID) -> MediaAsset | None:
        q = select(MediaAsset).where(MediaAsset.id == media_id, MediaAsset.deleted_at.is_(None))
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    def _move(self, obj: MediaAsset, to: MediaStatus) -> None:
        current = MediaStatus(obj.status)
        if to not in TRANSITIONS[current]:
            raise InvalidTransition(f"MediaAsset {obj.id}: {current.value} -> {to.value}")
        obj.status = to.value
        obj.version = (obj.version or 0) + 1

    async def mark_processing(self, obj: MediaAsset) -> MediaAsset:
        self._move(obj, MediaStatus.processing)
        await self.session.flush()
        return obj

    async def mark_ready(
        self, obj: MediaAsset, *, playlist_key: str, segment_count: int,
        cover_key: str | None = None, cover_public: bool = False,
    ) -> MediaAsset:
        self._move(obj, MediaStatus.ready)
        obj.playlist_key = playlist_key
        obj.segment_count = segment_count
        obj.cover_key = cover_key
        obj.cover_public = bool(cover_key) and cover_public
        await self.session.flush()
        return obj

    async def mark_failed(self, obj: MediaAsset, reason: str) -> MediaAsset:
        if obj.status == MediaStatus.pending.value:
            # cancelled before the job picked it up; still pass through processing
            self._move(obj, MediaStatus.processing)
        self._move(obj, MediaStatus.failed)
        obj.playlist_key = None
        obj.failure_reason = reason[:2000]  # truncate
        await self.session.flush()
        return obj

    async def soft_delete(self, obj: MediaAsset) -> None:
        obj.deleted_at = datetime.now(timezone.utc)
        await self.session.flush()
