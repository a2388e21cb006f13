"""Pipeline orchestrator: one source URL in, one manifest out.

Stages (each hard failure aborts the run):
    download -> probe -> duration check -> plan -> transcode (soft per rendition)
    -> upload (soft per artifact) -> thumbnails (soft per frame) -> manifest

The per-job scratch directory is removed on every exit path.
"""

import asyncio
import logging
import shutil
import tempfile
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Sequence, Tuple

from .errors import DurationLimitExceeded, UploadError
from .ffmpeg_runner import FfmpegRunner
from .models import (
    ManifestMetadata,
    ProcessedVideo,
    ProcessingOptions,
    RenditionSpec,
    TranscoderConfig,
    VideoFormat,
    VideoThumbnail,
)
from .prober import probe_video
from .renditions import plan_renditions, quality_for_height
from .storage import BlobStore, SourceDownloader, build_blob_store, upload_artifact
from .thumbnails import generate_thumbnails
from .transcoder import transcode_renditions

logger = logging.getLogger(__name__)


@contextmanager
def scratch_directory(root: Optional[str] = None) -> Iterator[Path]:
    """Create a job-exclusive temp directory and always remove it."""
    if root:
        Path(root).mkdir(parents=True, exist_ok=True)
    path = Path(tempfile.mkdtemp(prefix="transcode_", dir=root))
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)
        if path.exists():
            logger.error("Scratch directory %s could not be removed", path)


class VideoPipeline:
    """Runs the full transcoding pipeline for one source at a time.

    Collaborators are injectable; defaults are built from the config.
    Concurrent calls are safe: each call gets its own scratch directory
    and its own engine runner.
    """

    def __init__(
        self,
        config: Optional[TranscoderConfig] = None,
        runner_factory: Optional[Callable[[], object]] = None,
        blob_store: Optional[BlobStore] = None,
        downloader: Optional[SourceDownloader] = None,
    ):
        self.config = config or TranscoderConfig()
        self.runner_factory = runner_factory or (
            lambda: FfmpegRunner.from_config(self.config.runner)
        )
        self.blob_store = blob_store or build_blob_store(self.config.storage)
        self.downloader = downloader or SourceDownloader.from_config(self.config.storage)

    async def process_video(
        self, source_url: str, options: Optional[ProcessingOptions] = None
    ) -> ProcessedVideo:
        """Process one source into renditions and thumbnails.

        Raises:
            DownloadError: Source could not be fetched
            ProbeError: Source unreadable or without a video stream
            DurationLimitExceeded: Source longer than options.max_duration
        """
        options = options or ProcessingOptions()
        start = time.monotonic()
        job_key = uuid.uuid4().hex
        runner = self.runner_factory()

        with scratch_directory(self.config.scratch_root) as scratch:
            logger.info("Pipeline %s started for %s", job_key, source_url)

            source = await asyncio.to_thread(self.downloader.download, source_url, scratch)
            metadata = await asyncio.to_thread(probe_video, source, runner)

            if options.max_duration is not None and metadata.duration > options.max_duration:
                raise DurationLimitExceeded(metadata.duration, options.max_duration)

            original_size = source.stat().st_size

            specs = plan_renditions(
                metadata,
                options.renditions or self.config.transcode.default_qualities,
                self.config.transcode.default_codec,
            )
            logger.info(
                "Source is %s; planned renditions: %s",
                quality_for_height(metadata.height),
                ", ".join(s.quality for s in specs),
            )

            encoded = await transcode_renditions(
                runner,
                source,
                specs,
                scratch / "renditions",
                watermark=options.watermark,
                settings=self.config.transcode,
                duration=metadata.duration,
            )
            formats = await self._upload_formats(job_key, encoded)
            if not formats:
                logger.warning("Pipeline %s produced no renditions for %s", job_key, source_url)

            thumbnails: List[VideoThumbnail] = []
            if options.generate_thumbnails:
                frames = await generate_thumbnails(
                    runner,
                    source,
                    metadata.duration,
                    options.thumbnail_count,
                    scratch / "thumbnails",
                    settings=self.config.thumbnails,
                )
                thumbnails = await self._upload_thumbnails(job_key, frames)

            processing_time = int((time.monotonic() - start) * 1000)
            logger.info(
                "Pipeline %s finished in %dms: %d formats, %d thumbnails",
                job_key, processing_time, len(formats), len(thumbnails),
            )

            return ProcessedVideo(
                duration=metadata.duration,
                original_size=original_size,
                formats=formats,
                thumbnails=thumbnails,
                metadata=ManifestMetadata(
                    width=metadata.width,
                    height=metadata.height,
                    fps=metadata.fps,
                    codec=metadata.codec,
                    bitrate=metadata.bitrate,
                ),
                processing_time=processing_time,
            )

    async def _upload_formats(
        self, job_key: str, encoded: Sequence[Tuple[RenditionSpec, Path]]
    ) -> List[VideoFormat]:
        formats = []
        for spec, path in encoded:
            destination = f"videos/{job_key}/{spec.quality}.mp4"
            try:
                uploaded = await asyncio.to_thread(upload_artifact, self.blob_store, path, destination)
            except UploadError as e:
                logger.warning("Dropping rendition %s: %s", spec.quality, e)
                continue
            formats.append(
                VideoFormat(
                    quality=spec.quality,
                    resolution=spec.resolution,
                    bitrate=spec.bitrate,
                    codec=spec.codec,
                    url=uploaded.url,
                    size=uploaded.size,
                )
            )
        return formats

    async def _upload_thumbnails(
        self, job_key: str, frames: Sequence[Tuple[float, Path]]
    ) -> List[VideoThumbnail]:
        thumbnails = []
        for timestamp, path in frames:
            destination = f"videos/{job_key}/thumbs/{path.name}"
            try:
                uploaded = await asyncio.to_thread(upload_artifact, self.blob_store, path, destination)
            except UploadError as e:
                logger.warning("Dropping thumbnail at %.2fs: %s", timestamp, e)
                continue
            thumbnails.append(
                VideoThumbnail(
                    url=uploaded.url,
                    timestamp=timestamp,
                    width=self.config.thumbnails.width,
                    height=self.config.thumbnails.height,
                    size=uploaded.size,
                )
            )
        return thumbnails


_default_pipeline: Optional[VideoPipeline] = None


def get_default_pipeline() -> VideoPipeline:
    """Process-wide pipeline built from the resolved config."""
    global _default_pipeline
    if _default_pipeline is None:
        from .config import resolve_config

        _default_pipeline = VideoPipeline(resolve_config())
    return _default_pipeline


async def process_video(
    source_url: str, options: Optional[ProcessingOptions] = None
) -> ProcessedVideo:
    """Run the default pipeline on one source."""
    return await get_default_pipeline().process_video(source_url, options)
