import uuid
from datetime import datetime
from typing import Literal
from pydantic import BaseModel, ConfigDict

class MediaAssetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    org_id: uuid.UUID
    category: str
    status: str
    duration_seconds: float
    sample_rate: int
    channels: int
    bitrate: int
    codec: str
    storage_key_prefix: str
    playlist_key: str | None = None
    segment_count: int | None = None
    cover_key: str | None = None
    cover_public: bool = False
    failure_reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

class SegmentUrlOut(BaseModel):
    name: str
    url: str
    expires_at: datetime

class PlaybackOut(BaseModel):
    asset_id: uuid.UUID
    delivery: Literal["signed", "proxy"]
    url: str
    storage_key: str
    strategy: str | None = None
    expires_at: datetime | None = None
    refresh_after: datetime | None = None
    segments: list[SegmentUrlOut] = []
    cover_url: str | None = None
    type: str = "hls"
    protocol: str = "application/vnd.apple.mpegurl"

class SigningStatusOut(BaseModel):
    strategy: str
    fully_secure: bool
    delivery: str

class HealthOut(BaseModel):
    status: Literal["ok", "degraded"]
    transcoder: bool
    storage: bool
    signing: SigningStatusOut
