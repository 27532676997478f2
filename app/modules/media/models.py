from enum import Enum
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, BigInteger, Boolean, Float, Text
from app.core.base import Base, TimestampedTenantMixin

class MediaStatus(str, Enum):
    pending = "pending"          # row created, no media yet
    processing = "processing"    # transcode/upload in flight
    ready = "ready"              # playlist + every segment persisted
    failed = "failed"            # terminal

# pending -> processing -> ready | failed; nothing else
TRANSITIONS = {
    MediaStatus.pending: {MediaStatus.processing},
    MediaStatus.processing: {MediaStatus.ready, MediaStatus.failed},
    MediaStatus.ready: set(),
    MediaStatus.failed: set(),
}

class MediaAsset(Base, TimestampedTenantMixin):
    category: Mapped[str] = mapped_column(String(32))  # songs, podcasts
    status: Mapped[str] = mapped_column(String(16), default=MediaStatus.pending.value, index=True)

    # probe output; written once at creation
    duration_seconds: Mapped[float] = mapped_column(Float)
    sample_rate: Mapped[int] = mapped_column(Integer)
    channels: Mapped[int] = mapped_column(Integer)
    bitrate: Mapped[int] = mapped_column(BigInteger)
    codec: Mapped[str] = mapped_column(String(32))
    format_name: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # "{category}/{id}/hls/"; owns the playlist and all segment objects
    storage_key_prefix: Mapped[str] = mapped_column(String(512))
    # only set together with status=ready
    playlist_key: Mapped[str | None] = mapped_column(String(512), nullable=True)
    segment_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cover_key: Mapped[str | None] = mapped_column(String(512), nullable=True)
    cover_public: Mapped[bool] = mapped_column(Boolean, default=False)

    original_filename: Mapped[str | None] = mapped_column(String(255), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
