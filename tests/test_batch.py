"""Tests for the chunked batch runner."""

import asyncio
import subprocess
import sys

import pytest

from video_transcode.batch import process_batch
from video_transcode.errors import DownloadError
from video_transcode.models import ProcessedVideo, ProcessingOptions


def _manifest(duration):
    return ProcessedVideo(duration=duration, original_size=100, processing_time=1)


class TestProcessBatch:
    """Test chunking, settle-all semantics and result collection."""

    async def test_five_sources_chunk_of_three(self):
        """At most 3 concurrent calls, and every source is attempted."""
        active = 0
        peak = 0
        seen = []

        async def processor(source_url, options):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            seen.append(source_url)
            await asyncio.sleep(0.01)
            active -= 1
            return _manifest(len(seen))

        urls = [f"https://media.test/{i}.mp4" for i in range(5)]
        results = await process_batch(urls, processor=processor, chunk_size=3, show_progress=False)

        assert peak == 3
        assert sorted(seen) == sorted(urls)
        assert len(results) == 5

    async def test_failures_are_dropped(self):
        """Only sources that did not raise produce manifests, in input order."""

        async def processor(source_url, options):
            if "bad" in source_url:
                raise DownloadError(f"Failed to download {source_url}")
            return _manifest(float(source_url.rsplit("/", 1)[-1]))

        urls = [
            "https://media.test/1",
            "https://media.test/bad-2",
            "https://media.test/3",
            "https://media.test/4",
            "https://media.test/bad-5",
        ]
        results = await process_batch(urls, processor=processor, chunk_size=3, show_progress=False)

        assert [r.duration for r in results] == [1.0, 3.0, 4.0]

    async def test_failure_does_not_cancel_siblings(self):
        """A fast failure in a chunk leaves slower siblings running to completion."""
        finished = []

        async def processor(source_url, options):
            if source_url == "fail":
                raise DownloadError("boom")
            await asyncio.sleep(0.02)
            finished.append(source_url)
            return _manifest(1.0)

        results = await process_batch(
            ["fail", "slow-1", "slow-2"], processor=processor, show_progress=False
        )

        assert finished == ["slow-1", "slow-2"]
        assert len(results) == 2

    async def test_shared_options(self):
        received = []

        async def processor(source_url, options):
            received.append(options)
            return _manifest(1.0)

        options = ProcessingOptions(renditions=["480p"])
        await process_batch(["a", "b"], options=options, processor=processor, show_progress=False)

        assert all(o.renditions == ["480p"] for o in received)

    async def test_empty_input(self):
        async def processor(source_url, options):
            raise AssertionError("should not be called")

        assert await process_batch([], processor=processor, show_progress=False) == []

    async def test_invalid_chunk_size(self):
        with pytest.raises(ValueError):
            await process_batch(["a"], processor=None, chunk_size=0)


def test_batch_import_does_not_load_queue():
    """The batch runner works without the queue or its database layer."""
    code = (
        "import sys, video_transcode.batch; "
        "assert 'video_transcode.queue' not in sys.modules; "
        "assert 'sqlite_utils' not in sys.modules"
    )
    subprocess.run([sys.executable, "-c", code], check=True)
