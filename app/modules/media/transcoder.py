"""ffprobe/ffmpeg adapter: probe, validate and cut audio into HLS on scratch disk."""

import json
import logging
import os
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass, asdict
from app.core import errors
from app.modules.media.keys import PLAYLIST_FILENAME, SEGMENT_PATTERN, segment_index

log = logging.getLogger("media.transcoder")

SEGMENT_SECONDS = 10
AUDIO_CODEC = "aac"
AUDIO_BITRATE = "128k"
AUDIO_CHANNELS = 2
AUDIO_SAMPLE_RATE = 44100
POLL_SECONDS = 1

@dataclass(frozen=True)
class ProbeResult:
    duration_seconds: float
    bitrate: int
    sample_rate: int
    channels: int
    codec: str
    format_name: str = ""

    def as_dict(self) -> dict:
        return asdict(self)

@dataclass(frozen=True)
class SegmentResult:
    playlist_filename: str
    segment_filenames: list[str]
    output_dir: str

    @property
    def files(self) -> list[str]:
        return [*self.segment_filenames, self.playlist_filename]

def _int(value, default: int = 0) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default

def _tail(text: str, limit: int = 2000) -> str:
    text = (text or "").strip()
    return text[-limit:]

class Transcoder:
    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        ffprobe_path: str = "ffprobe",
        min_duration: float = 1,
        max_duration: float = 600,
        timeout: int = 900,
        probe_timeout: int = 30,
    ):
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.min_duration = min_duration
        self.max_duration = max_duration
        self.timeout = timeout
        self.probe_timeout = probe_timeout

    def check_available(self) -> None:
        """Raise ToolUnavailable unless both binaries resolve; run at startup."""
        for binary in (self.ffmpeg_path, self.ffprobe_path):
            if shutil.which(binary) is None:
                raise errors.ToolUnavailable(f"Audio encoder unavailable: {binary} not found")

    def probe(self, input_path: str) -> ProbeResult:
        cmd = [
            self.ffprobe_path,
            "-hide_banner",
            "-loglevel", "error",
            "-show_format",
            "-show_streams",
            "-print_format", "json",
            input_path,
        ]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.probe_timeout)
        except FileNotFoundError:
            raise errors.ToolUnavailable(f"Audio encoder unavailable: {self.ffprobe_path} not found")
        except subprocess.TimeoutExpired:
            raise errors.DecodeError(f"ffprobe timed out after {self.probe_timeout}s")

        if result.returncode != 0:
            log.warning(f"ffprobe error (code {result.returncode}): {_tail(result.stderr, 300)}")
            raise errors.DecodeError(f"Unreadable audio file: {_tail(result.stderr, 300) or 'ffprobe failed'}")
        try:
            raw = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as e:
            raise errors.DecodeError(f"Failed to parse ffprobe output: {e}")
        return self._parse(raw)

    def _parse(self, raw: dict) -> ProbeResult:
        audio = next((s for s in raw.get("streams", []) if s.get("codec_type") == "audio"), None)
        if audio is None:
            raise errors.DecodeError("No audio stream found")
        fmt = raw.get("format", {})
        try:
            duration = float(fmt.get("duration") or audio.get("duration") or 0)
        except (TypeError, ValueError):
            duration = 0.0
        return ProbeResult(
            duration_seconds=duration,
            bitrate=_int(fmt.get("bit_rate") or audio.get("bit_rate")),
            sample_rate=_int(audio.get("sample_rate")),
            channels=_int(audio.get("channels")),
            codec=audio.get("codec_name", ""),
            format_name=fmt.get("format_name", ""),
        )

    def validate(self, input_path: str) -> ProbeResult:
        info = self.probe(input_path)
        if info.duration_seconds < self.min_duration:
            raise errors.ValidationError(
                f"Audio too short: {info.duration_seconds:.1f}s (minimum {self.min_duration:g}s)",
                bound="min_duration",
            )
        if info.duration_seconds > self.max_duration:
            raise errors.ValidationError(
                f"Audio too long: {info.duration_seconds:.1f}s (maximum {self.max_duration:g}s)",
                bound="max_duration",
            )
        return info

    def build_command(self, input_path: str, output_dir: str) -> list[str]:
        return [
            self.ffmpeg_path,
            "-hide_banner",
            "-loglevel", "error",
            "-y",
            "-i", input_path,
            "-vn",  # drop embedded cover art streams
            "-map_metadata", "-1",
            "-c:a", AUDIO_CODEC,
            "-b:a", AUDIO_BITRATE,
            "-ac", str(AUDIO_CHANNELS),
            "-ar", str(AUDIO_SAMPLE_RATE),
            "-f", "hls",
            "-hls_time", str(SEGMENT_SECONDS),
            "-hls_list_size", "0",
            "-hls_playlist_type", "vod",
            "-hls_segment_type", "mpegts",
            "-hls_segment_filename", os.path.join(output_dir, SEGMENT_PATTERN),
            "-start_number", "0",
            os.path.join(output_dir, PLAYLIST_FILENAME),
        ]

    def segment(self, input_path: str, output_dir: str, cancel: threading.Event | None = None) -> SegmentResult:
        os.makedirs(output_dir, exist_ok=True)
        cmd = self.build_command(input_path, output_dir)
        log.debug(f"ffmpeg command: {' '.join(cmd)}")
        try:
            proc = subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE, text=True)
        except FileNotFoundError:
            raise errors.ToolUnavailable(f"Audio encoder unavailable: {self.ffmpeg_path} not found")

        deadline = time.monotonic() + self.timeout
        while True:
            try:
                _, stderr = proc.communicate(timeout=POLL_SECONDS)
                break
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.is_set():
                    proc.kill()
                    proc.communicate()
                    raise errors.TranscodeError("Transcode cancelled")
                if time.monotonic() > deadline:
                    proc.kill()
                    _, stderr = proc.communicate()
                    raise errors.TranscodeError(f"Encoder timed out after {self.timeout}s", diagnostic=_tail(stderr))

        if proc.returncode != 0:
            diagnostic = _tail(stderr)
            log.warning(f"ffmpeg exited with {proc.returncode}: {diagnostic[-300:]}")
            raise errors.TranscodeError(f"Encoder failed with exit code {proc.returncode}", diagnostic=diagnostic)

        if not os.path.isfile(os.path.join(output_dir, PLAYLIST_FILENAME)):
            raise errors.TranscodeError("Encoder produced no playlist", diagnostic=_tail(stderr))
        segments = sorted(
            (f for f in os.listdir(output_dir) if segment_index(f) is not None),
            key=segment_index,
        )
        if not segments:
            raise errors.TranscodeError("Encoder produced no segments", diagnostic=_tail(stderr))
        log.info(f"Segmented {os.path.basename(input_path)} into {len(segments)} segment(s)")
        return SegmentResult(
            playlist_filename=PLAYLIST_FILENAME,
            segment_filenames=segments,
            output_dir=output_dir,
        )
