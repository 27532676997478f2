import logging
from functools import cached_property
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from app.core import errors
from app.core.config import Settings
from app.platform.ports.object_storage import ObjectStoragePort
from app.platform.adapters.storage_local import LocalFilesystemStorage
from app.platform.adapters.storage_s3 import S3Storage
from app.platform.ports.event_bus import EventBusPort
from app.platform.adapters.bus_noop import NoopEventBus
from app.platform.adapters.bus_redis import RedisEventBus
from app.modules.media.service import StreamingOrchestrator
from app.modules.media.signing import UrlSigner
from app.modules.media.transcoder import Transcoder

log = logging.getLogger("platform.registry")

class ProviderRegistry:
    """Process-scoped services, each built once from the settings it was given.

    Created in ``app.main`` and reached through ``request.app.state.registry``;
    tests build their own with a different engine or storage root.
    """

    def __init__(self, settings: Settings, engine: AsyncEngine | None = None):
        self.settings = settings
        if engine is None:
            from app.core.db import engine as default_engine
            engine = default_engine
        self.engine = engine
        self.session_factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    @cached_property
    def object_storage(self) -> ObjectStoragePort:
        s = self.settings
        if s.OBJECT_STORAGE_PROVIDER == "s3":
            log.info(f"Object storage: s3://{s.S3_BUCKET} ({s.S3_REGION})")
            return S3Storage(
                bucket=s.S3_BUCKET,
                region=s.S3_REGION,
                endpoint_url=s.S3_ENDPOINT_URL,
                access_key=s.S3_ACCESS_KEY,
                secret_key=s.S3_SECRET_KEY,
            )
        log.info(f"Object storage: local filesystem at {s.LOCAL_STORAGE_ROOT}")
        return LocalFilesystemStorage(
            s.LOCAL_STORAGE_ROOT,
            base_url=s.LOCAL_STORAGE_BASE_URL,
            signing_secret=s.LOCAL_STORAGE_SIGNING_SECRET,
        )

    @cached_property
    def event_bus(self) -> EventBusPort:
        prov = (self.settings.EVENT_BUS_PROVIDER or "noop").lower()
        if prov == "redis":
            return RedisEventBus(self.settings.REDIS_URL, self.settings.REDIS_STREAM, self.settings.REDIS_STREAM_MAXLEN)
        return NoopEventBus()

    @cached_property
    def transcoder(self) -> Transcoder:
        s = self.settings
        return Transcoder(
            ffmpeg_path=s.FFMPEG_PATH,
            ffprobe_path=s.FFPROBE_PATH,
            min_duration=s.MIN_DURATION_SECONDS,
            max_duration=s.MAX_DURATION_SECONDS,
            timeout=s.TRANSCODE_TIMEOUT_SECONDS,
        )

    def _cloudfront_private_key(self) -> str | None:
        s = self.settings
        if s.CLOUDFRONT_PRIVATE_KEY:
            return s.CLOUDFRONT_PRIVATE_KEY
        if s.CLOUDFRONT_PRIVATE_KEY_PATH:
            try:
                with open(s.CLOUDFRONT_PRIVATE_KEY_PATH, "r", encoding="utf-8") as f:
                    return f.read()
            except OSError as e:
                raise errors.SigningError(f"Cannot read CloudFront private key: {e}") from e
        return None

    @cached_property
    def url_signer(self) -> UrlSigner:
        s = self.settings
        return UrlSigner(
            self.object_storage,
            cdn_domain=s.CLOUDFRONT_DOMAIN,
            key_pair_id=s.CLOUDFRONT_KEY_PAIR_ID,
            private_key=self._cloudfront_private_key(),
            default_ttl=s.SIGNED_URL_TTL_SECONDS,
        )

    @cached_property
    def orchestrator(self) -> StreamingOrchestrator:
        s = self.settings
        return StreamingOrchestrator(
            self.object_storage,
            self.transcoder,
            self.url_signer,
            self.session_factory,
            self.event_bus,
            scratch_dir=s.SCRATCH_DIR,
            delivery_mode=s.STREAM_DELIVERY_MODE,
            proxy_base_url=f"{s.PUBLIC_BASE_URL.rstrip('/')}{s.API_PREFIX}/media",
            max_workers=s.TRANSCODE_MAX_WORKERS,
            max_upload_bytes=s.MAX_UPLOAD_BYTES,
        )

    def transcoder_available(self) -> bool:
        try:
            self.transcoder.check_available()
            return True
        except errors.ToolUnavailable as e:
            log.error(str(e))
            return False

    def storage_available(self) -> bool:
        try:
            self.object_storage.check()
            return True
        except errors.StorageError as e:
            log.error(f"Object storage check failed: {e}")
            return False
