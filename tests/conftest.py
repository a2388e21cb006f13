from pathlib import Path

import pytest

from video_transcode.errors import DownloadError
from video_transcode.ffmpeg_runner import FfmpegErrorType, FfmpegResult
from video_transcode.models import TranscoderConfig
from video_transcode.pipeline import VideoPipeline
from video_transcode.queue import SQLiteVideoStore
from video_transcode.storage import BlobStore, UploadResult

SOURCE_BYTES = b"\x00\x00\x00\x18ftypmp42" * 512


def probe_payload(width=1920, height=1080, duration="60.000000", bit_rate="4500000"):
    """ffprobe JSON for a single-video-stream source."""
    return {
        "streams": [
            {
                "codec_type": "video",
                "codec_name": "h264",
                "width": width,
                "height": height,
                "avg_frame_rate": "30000/1001",
                "r_frame_rate": "30/1",
            },
            {"codec_type": "audio", "codec_name": "aac"},
        ],
        "format": {"duration": duration, "bit_rate": bit_rate},
    }


class FakeRunner:
    """Stands in for FfmpegRunner: writes small files instead of encoding."""

    def __init__(self, probe_data=None):
        self.probe_data = probe_data or probe_payload()
        self.fail_qualities = set()
        self.fail_frames = set()
        self.transcode_calls = []
        self.frame_calls = []

    def probe(self, source_path):
        if isinstance(self.probe_data, Exception):
            raise self.probe_data
        return self.probe_data

    def transcode(self, source_path, output_path, **kwargs):
        self.transcode_calls.append((output_path, kwargs))
        if Path(output_path).stem in self.fail_qualities:
            return _failed("Invalid data found when processing input")
        Path(output_path).write_bytes(b"\x01" * 2048)
        return _succeeded()

    def extract_frame(self, source_path, output_path, timestamp, **kwargs):
        self.frame_calls.append((timestamp, kwargs))
        if Path(output_path).name in self.fail_frames:
            return _failed("Conversion failed")
        Path(output_path).write_bytes(b"\xff\xd8" * 256)
        return _succeeded()


def _succeeded():
    return FfmpegResult(success=True, returncode=0, stderr="", duration_s=0.1)


def _failed(stderr):
    return FfmpegResult(
        success=False,
        returncode=1,
        stderr=stderr,
        duration_s=0.1,
        error_type=FfmpegErrorType.PERMANENT,
    )


class MemoryBlobStore(BlobStore):
    """Keeps uploads in a dict; destinations ending in a failing suffix raise."""

    def __init__(self):
        self.uploads = {}
        self.fail_suffixes = set()

    def upload(self, local_path, destination):
        if any(destination.endswith(suffix) for suffix in self.fail_suffixes):
            raise OSError("bucket unavailable")
        data = Path(local_path).read_bytes()
        self.uploads[destination] = data
        return UploadResult(url=f"https://cdn.test/{destination}", size=len(data), id=destination)


class FakeDownloader:
    """Writes a fixed payload into the scratch directory."""

    def __init__(self):
        self.fail = False
        self.scratch_dirs = []

    def download(self, source_url, dest_dir):
        self.scratch_dirs.append(Path(dest_dir))
        if self.fail:
            raise DownloadError(f"Failed to download {source_url}: 404 Not Found")
        target = Path(dest_dir) / "source.mp4"
        target.write_bytes(SOURCE_BYTES)
        return target


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def blob_store():
    return MemoryBlobStore()


@pytest.fixture
def downloader():
    return FakeDownloader()


@pytest.fixture
def scratch_root(tmp_path):
    root = tmp_path / "scratch"
    root.mkdir()
    return root


@pytest.fixture
def pipeline(fake_runner, blob_store, downloader, scratch_root):
    """Pipeline wired to in-memory collaborators."""
    config = TranscoderConfig(scratch_root=str(scratch_root))
    return VideoPipeline(
        config,
        runner_factory=lambda: fake_runner,
        blob_store=blob_store,
        downloader=downloader,
    )


@pytest.fixture
def store():
    """In-memory status store."""
    return SQLiteVideoStore(":memory:")
