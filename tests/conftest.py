"""Test configuration and fixtures"""

import math
import os
import threading
import uuid
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core import errors
from app.core.base import Base
from app.modules.media import models  # noqa: F401  (registers MediaAsset)
from app.modules.media.keys import PLAYLIST_FILENAME, segment_filename
from app.modules.media.service import StreamingOrchestrator
from app.modules.media.signing import UrlSigner
from app.modules.media.transcoder import ProbeResult, SegmentResult, Transcoder
from app.platform.adapters.bus_noop import NoopEventBus
from app.platform.adapters.storage_local import LocalFilesystemStorage

ORG_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")
FILES_BASE_URL = "http://testserver/api/v1/media/files"


def write_hls(output_dir: str, count: int, duration: float) -> list[str]:
    """Lay down what ffmpeg would: numbered .ts files and a VOD playlist."""
    os.makedirs(output_dir, exist_ok=True)
    names = []
    lines = ["#EXTM3U", "#EXT-X-VERSION:3", "#EXT-X-TARGETDURATION:10", "#EXT-X-MEDIA-SEQUENCE:0"]
    for i in range(count):
        name = segment_filename(i)
        with open(os.path.join(output_dir, name), "wb") as f:
            f.write(f"ts-{i}".encode())
        names.append(name)
        lines.append(f"#EXTINF:{min(10.0, duration - i * 10):.6f},")
        lines.append(name)
    lines.append("#EXT-X-ENDLIST")
    with open(os.path.join(output_dir, PLAYLIST_FILENAME), "w") as f:
        f.write("\n".join(lines) + "\n")
    return names


class FakeTranscoder(Transcoder):
    """Transcoder with canned probe output and file-writing segmenting."""

    def __init__(self, duration: float = 30.0, fail_after: int | None = None, total: int | None = None, block: bool = False):
        super().__init__(ffmpeg_path="ffmpeg-fake", ffprobe_path="ffprobe-fake")
        self.duration = duration
        self.fail_after = fail_after
        self.total = total
        self.block = block
        self.started = threading.Event()
        self.segment_calls = 0

    def check_available(self) -> None:
        return None

    def probe(self, input_path: str) -> ProbeResult:
        if not os.path.isfile(input_path):
            raise errors.DecodeError("missing input")
        return ProbeResult(
            duration_seconds=self.duration, bitrate=192000, sample_rate=44100,
            channels=2, codec="mp3", format_name="mp3",
        )

    def segment(self, input_path: str, output_dir: str, cancel: threading.Event | None = None) -> SegmentResult:
        self.segment_calls += 1
        self.started.set()
        if self.block:
            while not cancel.is_set():
                cancel.wait(0.01)
            raise errors.TranscodeError("Transcode cancelled")
        if self.fail_after is not None:
            os.makedirs(output_dir, exist_ok=True)
            for i in range(self.fail_after):
                with open(os.path.join(output_dir, segment_filename(i)), "wb") as f:
                    f.write(b"partial")
            raise errors.TranscodeError("Encoder failed with exit code 1", diagnostic="Conversion failed!")
        count = self.total or math.ceil(self.duration / 10)
        names = write_hls(output_dir, count, self.duration)
        return SegmentResult(playlist_filename=PLAYLIST_FILENAME, segment_filenames=names, output_dir=output_dir)


@pytest.fixture
def rsa_private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def rsa_private_pem(rsa_private_key) -> str:
    return rsa_private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


@pytest.fixture
def storage(tmp_path) -> LocalFilesystemStorage:
    return LocalFilesystemStorage(str(tmp_path / "store"), base_url=FILES_BASE_URL, signing_secret="test-secret")


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'media.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
def event_bus() -> NoopEventBus:
    return NoopEventBus()


@pytest.fixture
async def make_orchestrator(tmp_path, storage, session_factory, event_bus):
    created = []

    def build(transcoder=None, signer=None, store=None, delivery_mode="signed", max_workers=2):
        store = store or storage
        orch = StreamingOrchestrator(
            store,
            transcoder or FakeTranscoder(),
            signer or UrlSigner(store),
            session_factory,
            event_bus,
            scratch_dir=str(tmp_path / "scratch"),
            delivery_mode=delivery_mode,
            proxy_base_url="http://testserver/api/v1/media",
            max_workers=max_workers,
        )
        created.append(orch)
        return orch

    yield build
    for orch in created:
        await orch.shutdown()
