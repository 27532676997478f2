import asyncio
import io
import os
import threading
import time
import uuid
from urllib.parse import parse_qs, urlsplit

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import errors
from app.modules.media.models import MediaAsset, MediaStatus
from app.modules.media.playlist import segment_uris
from app.modules.media.repository import MediaRepository
from app.modules.media.service import UploadSource
from app.modules.media.signing import SigningStrategy, UrlSigner
from app.platform.adapters.storage_local import LocalFilesystemStorage

from .conftest import FILES_BASE_URL, ORG_ID, FakeTranscoder

CDN = "d111111abcdef8.cloudfront.net"


async def upload(orch, data=b"ID3-fake-audio", filename="track.mp3", category="songs", cover=None, cover_public=False):
    return await orch.accept_upload(
        ORG_ID, category, UploadSource(io.BytesIO(data), filename, "audio/mpeg"), cover=cover, cover_public=cover_public
    )


def jpeg():
    return UploadSource(io.BytesIO(b"\xff\xd8jpeg"), "front.jpg", "image/jpeg")


async def finish(orch, asset):
    await orch.wait_idle()
    return await orch.get_asset(ORG_ID, asset.id)


class FlakyStorage(LocalFilesystemStorage):
    """Fails the Nth put with a transient error."""

    def __init__(self, *args, fail_on: int, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_on = fail_on
        self.puts = 0

    def put(self, key, data, content_type, visibility="private"):
        self.puts += 1
        if self.puts == self.fail_on:
            raise errors.TransientStorageError(f"S3 put failed for {key}: SlowDown")
        return super().put(key, data, content_type, visibility)


@pytest.fixture
def transitions(monkeypatch):
    seen = []
    original = MediaRepository._move

    def record(self, obj, to):
        seen.append((obj.status, to.value))
        return original(self, obj, to)

    monkeypatch.setattr(MediaRepository, "_move", record)
    return seen


class TestUploadToReady:
    async def test_thirty_seconds_makes_three_segments(self, make_orchestrator, storage, event_bus, transitions):
        orch = make_orchestrator(transcoder=FakeTranscoder(duration=30))
        asset = await upload(orch)
        assert asset.status == "pending"
        assert asset.playlist_key is None
        assert asset.storage_key_prefix == f"songs/{asset.id}/hls/"

        done = await finish(orch, asset)
        assert done.status == "ready"
        assert done.segment_count == 3
        assert done.playlist_key == f"songs/{asset.id}/hls/playlist.m3u8"
        assert done.duration_seconds == 30

        stored = storage.list_keys(f"songs/{asset.id}/hls/")
        assert len([k for k in stored if k.endswith(".ts")]) == 3
        assert len([k for k in stored if k.endswith(".m3u8")]) == 1
        assert transitions == [("pending", "processing"), ("processing", "ready")]

        event_types = [v["event_type"] for _t, key, v in event_bus.published if key == str(asset.id)]
        assert event_types == ["media.asset.ready"]

    async def test_every_listed_segment_is_stored_when_ready(self, make_orchestrator, storage):
        orch = make_orchestrator(transcoder=FakeTranscoder(duration=125))
        done = await finish(orch, await upload(orch))
        body = storage.get(done.playlist_key).decode()
        uris = segment_uris(body)
        assert len(uris) == 13
        for uri in uris:
            assert storage.exists(f"songs/{done.id}/hls/{uri}")

    async def test_scratch_is_removed(self, make_orchestrator):
        orch = make_orchestrator()
        await finish(orch, await upload(orch))
        assert os.listdir(orch.scratch_dir) == []

    async def test_cover_is_stored_beside_hls(self, make_orchestrator, storage):
        orch = make_orchestrator()
        cover = UploadSource(io.BytesIO(b"\xff\xd8jpeg"), "Front.JPG", "image/jpeg")
        done = await finish(orch, await upload(orch, category="podcasts", cover=cover))
        assert done.cover_key == f"podcasts/{done.id}/cover.jpg"
        assert storage.get(done.cover_key) == b"\xff\xd8jpeg"

    async def test_concurrency_is_bounded(self, make_orchestrator):
        active, peak = [0], [0]
        lock = threading.Lock()

        class SlowTranscoder(FakeTranscoder):
            def segment(self, input_path, output_dir, cancel=None):
                with lock:
                    active[0] += 1
                    peak[0] = max(peak[0], active[0])
                time.sleep(0.05)
                try:
                    return super().segment(input_path, output_dir, cancel)
                finally:
                    with lock:
                        active[0] -= 1

        orch = make_orchestrator(transcoder=SlowTranscoder(), max_workers=1)
        assets = [await upload(orch) for _ in range(3)]
        await orch.wait_idle()
        assert peak[0] == 1
        for a in assets:
            assert (await orch.get_asset(ORG_ID, a.id)).status == "ready"


class TestUploadRejected:
    @pytest.mark.parametrize("duration,bound", [(0.5, "min_duration"), (601, "max_duration")])
    async def test_duration_bounds(self, make_orchestrator, storage, session_factory, duration, bound):
        orch = make_orchestrator(transcoder=FakeTranscoder(duration=duration))
        with pytest.raises(errors.ValidationError) as exc:
            await upload(orch)
        assert exc.value.bound == bound
        assert storage.list_keys("") == []
        assert os.listdir(orch.scratch_dir) == []
        async with session_factory() as session:
            assert (await session.execute(select(func.count()).select_from(MediaAsset))).scalar_one() == 0

    async def test_unknown_category(self, make_orchestrator):
        orch = make_orchestrator()
        with pytest.raises(errors.ValidationError) as exc:
            await upload(orch, category="videos")
        assert exc.value.bound == "category"

    async def test_empty_file(self, make_orchestrator):
        orch = make_orchestrator()
        with pytest.raises(errors.ValidationError) as exc:
            await upload(orch, data=b"")
        assert exc.value.bound == "required_file"

    async def test_size_limit(self, tmp_path, storage, session_factory, event_bus):
        from app.modules.media.service import StreamingOrchestrator

        orch = StreamingOrchestrator(
            storage, FakeTranscoder(), UrlSigner(storage), session_factory, event_bus,
            scratch_dir=str(tmp_path / "scratch"), max_upload_bytes=8,
        )
        with pytest.raises(errors.ValidationError) as exc:
            await upload(orch, data=b"x" * 9)
        assert exc.value.bound == "max_upload_bytes"
        assert exc.value.status_code == 413
        assert os.listdir(orch.scratch_dir) == []


class TestFailureCleanup:
    async def test_encoder_failure_leaves_nothing(self, make_orchestrator, storage, event_bus, transitions):
        orch = make_orchestrator(transcoder=FakeTranscoder(duration=100, fail_after=3))
        done = await finish(orch, await upload(orch))
        assert done.status == "failed"
        assert done.playlist_key is None
        assert "exit code 1" in done.failure_reason
        assert storage.list_keys("songs/") == []
        assert os.listdir(orch.scratch_dir) == []
        assert transitions[-1] == ("processing", "failed")
        failed = [v for _t, key, v in event_bus.published if key == str(done.id)]
        assert failed[-1]["event_type"] == "media.asset.failed"

    async def test_upload_failure_removes_partial_objects(self, make_orchestrator, tmp_path):
        flaky = FlakyStorage(str(tmp_path / "flaky"), base_url=FILES_BASE_URL, signing_secret="s", fail_on=3)
        orch = make_orchestrator(transcoder=FakeTranscoder(duration=60), store=flaky)
        done = await finish(orch, await upload(orch))
        assert flaky.puts == 3
        assert done.status == "failed"
        assert done.playlist_key is None
        assert flaky.list_keys("songs/") == []
        assert os.listdir(orch.scratch_dir) == []

    async def test_shutdown_cancels_in_flight_job(self, make_orchestrator, storage):
        transcoder = FakeTranscoder(block=True)
        orch = make_orchestrator(transcoder=transcoder)
        asset = await upload(orch)
        assert await asyncio.to_thread(transcoder.started.wait, 5)

        await orch.shutdown()
        done = await orch.get_asset(ORG_ID, asset.id)
        assert done.status == "failed"
        assert "cancelled" in done.failure_reason
        assert storage.list_keys("songs/") == []
        assert os.listdir(orch.scratch_dir) == []

    async def test_cancel_while_registering_marks_row_failed(self, make_orchestrator, session_factory, monkeypatch):
        async def cancelled(self, instance, *args, **kwargs):
            raise asyncio.CancelledError()

        monkeypatch.setattr(AsyncSession, "refresh", cancelled)
        orch = make_orchestrator()
        with pytest.raises(asyncio.CancelledError):
            await upload(orch)

        async with session_factory() as session:
            rows = (await session.execute(select(MediaAsset))).scalars().all()
        assert [row.status for row in rows] == ["failed"]
        assert rows[0].failure_reason == "Upload aborted before processing started"
        assert os.listdir(orch.scratch_dir) == []
        assert orch._jobs == {}


class TestPlayback:
    async def test_not_found_vs_not_ready(self, make_orchestrator, session_factory):
        orch = make_orchestrator()
        with pytest.raises(errors.NotFound):
            await orch.stream(ORG_ID, uuid.uuid4())
        with pytest.raises(errors.ValidationError):
            await orch.stream(ORG_ID, "not-a-uuid")

        transcoder = FakeTranscoder(block=True)
        orch = make_orchestrator(transcoder=transcoder)
        asset = await upload(orch)
        with pytest.raises(errors.NotReady):
            await orch.stream(ORG_ID, asset.id)
        await orch.shutdown()
        with pytest.raises(errors.NotReady):
            await orch.stream(ORG_ID, asset.id)

    async def test_other_tenant_cannot_see_asset(self, make_orchestrator):
        orch = make_orchestrator()
        done = await finish(orch, await upload(orch))
        with pytest.raises(errors.NotFound):
            await orch.stream(uuid.uuid4(), done.id)

    async def test_cdn_signed_stream(self, make_orchestrator, storage, rsa_private_pem):
        signer = UrlSigner(storage, cdn_domain=CDN, key_pair_id="K2JCJMDEHXQW5F", private_key=rsa_private_pem)
        orch = make_orchestrator(signer=signer)
        done = await finish(orch, await upload(orch))
        playback = await orch.stream(ORG_ID, done.id, ttl_seconds=3600)
        assert playback.delivery == "signed"
        assert playback.url.startswith(f"https://{CDN}/songs/{done.id}/hls/playlist.m3u8?Expires=")
        assert playback.grant.strategy is SigningStrategy.cdn_signed
        assert playback.grant.seconds_remaining() >= 3590

    async def test_cdn_signed_stream_signs_every_segment(self, make_orchestrator, storage, rsa_private_pem):
        signer = UrlSigner(storage, cdn_domain=CDN, key_pair_id="K2JCJMDEHXQW5F", private_key=rsa_private_pem)
        orch = make_orchestrator(signer=signer)
        done = await finish(orch, await upload(orch))
        playback = await orch.stream(ORG_ID, done.id, ttl_seconds=3600)
        assert [name for name, _grant in playback.segments] == ["segment000.ts", "segment001.ts", "segment002.ts"]
        for name, grant in playback.segments:
            assert grant.url.startswith(f"https://{CDN}/songs/{done.id}/hls/{name}?Expires=")
            assert grant.strategy is SigningStrategy.cdn_signed
            assert grant.seconds_remaining() >= 3590

    async def test_presigned_playlist_read_signs_segment_lines(self, make_orchestrator, storage):
        orch = make_orchestrator()
        done = await finish(orch, await upload(orch))
        expires = int(time.time()) + 600
        res = await orch.open_presigned(done.playlist_key, expires)
        assert res.content_type == "application/vnd.apple.mpegurl"
        assert res.cache_control == "private, max-age=60"
        uris = segment_uris(res.body.decode())
        assert len(uris) == 3
        assert uris[1].startswith(f"{FILES_BASE_URL}/songs/{done.id}/hls/segment001.ts?expires=")
        query = parse_qs(urlsplit(uris[1]).query)
        storage.verify(f"songs/{done.id}/hls/segment001.ts", int(query["expires"][0]), query["signature"][0])

        seg = await orch.open_presigned(f"songs/{done.id}/hls/segment001.ts", expires)
        assert b"".join(seg.stream.body) == b"ts-1"

    async def test_private_cover_gets_day_long_url(self, make_orchestrator):
        orch = make_orchestrator()
        done = await finish(orch, await upload(orch, cover=jpeg()))
        assert done.cover_public is False
        url = await orch.cover_url(ORG_ID, done.id)
        assert url.startswith(f"{FILES_BASE_URL}/songs/{done.id}/cover.jpg?expires=")
        expires = int(parse_qs(urlsplit(url).query)["expires"][0])
        assert abs(expires - (time.time() + 24 * 3600)) < 60

        playback = await orch.stream(ORG_ID, done.id)
        assert playback.cover_url.startswith(f"{FILES_BASE_URL}/songs/{done.id}/cover.jpg?expires=")

    async def test_cover_on_cdn(self, make_orchestrator, storage, rsa_private_pem):
        signer = UrlSigner(storage, cdn_domain=CDN, key_pair_id="K2JCJMDEHXQW5F", private_key=rsa_private_pem)
        orch = make_orchestrator(signer=signer)
        public = await finish(orch, await upload(orch, cover=jpeg(), cover_public=True))
        assert public.cover_public is True
        assert await orch.cover_url(ORG_ID, public.id) == f"https://{CDN}/songs/{public.id}/cover.jpg"

        private = await finish(orch, await upload(orch, cover=jpeg()))
        assert (await orch.cover_url(ORG_ID, private.id)).startswith(f"https://{CDN}/songs/{private.id}/cover.jpg?Expires=")

    async def test_no_cover(self, make_orchestrator):
        orch = make_orchestrator()
        done = await finish(orch, await upload(orch))
        with pytest.raises(errors.NotFound):
            await orch.cover_url(ORG_ID, done.id)
        assert (await orch.stream(ORG_ID, done.id)).cover_url is None

    async def test_signed_playlist_embeds_signed_segments(self, make_orchestrator):
        orch = make_orchestrator()
        done = await finish(orch, await upload(orch))
        res = await orch.fetch(ORG_ID, done.id, "playlist.m3u8")
        assert res.content_type == "application/vnd.apple.mpegurl"
        assert res.cache_control.startswith("private")
        uris = segment_uris(res.body.decode())
        assert len(uris) == 3
        assert uris[0].startswith(f"{FILES_BASE_URL}/songs/{done.id}/hls/segment000.ts?expires=")

    async def test_signed_segment_redirects(self, make_orchestrator):
        orch = make_orchestrator()
        done = await finish(orch, await upload(orch))
        res = await orch.fetch(ORG_ID, done.id, "segment001.ts")
        assert res.redirect_to.startswith(f"{FILES_BASE_URL}/songs/{done.id}/hls/segment001.ts?")
        with pytest.raises(errors.NotFound):
            await orch.fetch(ORG_ID, done.id, "segment003.ts")
        with pytest.raises(errors.ValidationError):
            await orch.fetch(ORG_ID, done.id, "../cover.jpg")

    async def test_proxy_delivery(self, make_orchestrator, storage):
        orch = make_orchestrator(delivery_mode="proxy")
        done = await finish(orch, await upload(orch))
        playback = await orch.stream(ORG_ID, done.id)
        assert playback.delivery == "proxy"
        assert playback.grant is None
        assert playback.url == f"http://testserver/api/v1/media/{done.id}/hls/playlist.m3u8"

        playlist = await orch.fetch(ORG_ID, done.id, "playlist.m3u8")
        assert playlist.cache_control == "public, max-age=60"
        assert b"".join(playlist.stream.body) == storage.get(done.playlist_key)

        seg = await orch.fetch(ORG_ID, done.id, "segment000.ts")
        assert seg.content_type == "video/MP2T"
        assert seg.cache_control == "public, max-age=86400"
        assert b"".join(seg.stream.body) == b"ts-0"


class TestDelete:
    async def test_delete_removes_objects_and_hides_row(self, make_orchestrator, storage):
        orch = make_orchestrator()
        done = await finish(orch, await upload(orch))
        removed = await orch.delete_asset(ORG_ID, done.id)
        assert len(removed) == 4
        assert storage.list_keys("songs/") == []
        with pytest.raises(errors.NotFound):
            await orch.get_asset(ORG_ID, done.id)


async def test_repository_refuses_illegal_transition(session_factory):
    from app.modules.media.repository import InvalidTransition
    from app.modules.media.transcoder import ProbeResult

    probe = ProbeResult(duration_seconds=5, bitrate=1, sample_rate=44100, channels=2, codec="mp3")
    async with session_factory() as session:
        repo = MediaRepository(session)
        aid = uuid.uuid4()
        obj = await repo.create(ORG_ID, asset_id=aid, category="songs", probe=probe, storage_key_prefix=f"songs/{aid}/hls/")
        with pytest.raises(InvalidTransition):
            await repo.mark_ready(obj, playlist_key="x", segment_count=1)
        assert obj.status == MediaStatus.pending.value
