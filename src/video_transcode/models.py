"""Pydantic models for configuration and pipeline data."""

from typing import Awaitable, Callable, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

WatermarkPosition = Literal["top-left", "top-right", "bottom-left", "bottom-right", "center"]


# ============================================================================
# Processing request
# ============================================================================


class WatermarkOptions(BaseModel):
    """Overlay drawn on every rendition (text or image, never both)."""

    text: Optional[str] = Field(default=None, description="Text to draw on the video")
    image_path: Optional[str] = Field(default=None, description="Path to a PNG/JPEG overlay")
    position: WatermarkPosition = Field(
        default="bottom-right", description="Anchor for the overlay"
    )
    opacity: float = Field(default=0.7, ge=0.0, le=1.0, description="Overlay opacity")
    font_size: int = Field(default=24, gt=0, description="Font size for text watermarks")
    margin: int = Field(default=10, ge=0, description="Distance from the anchored edges in pixels")

    @model_validator(mode="after")
    def exactly_one_source(self) -> "WatermarkOptions":
        """Validate that either text or image_path is set."""
        if bool(self.text) == bool(self.image_path):
            raise ValueError("watermark requires exactly one of 'text' or 'image_path'")
        return self


class ProcessingOptions(BaseModel):
    """Per-job processing request."""

    renditions: List[str] = Field(
        default_factory=list,
        description="Requested quality labels (empty = configured default ladder subset)",
    )
    thumbnail_count: int = Field(default=5, ge=1, description="Number of thumbnails to extract")
    generate_thumbnails: bool = Field(default=True, description="Extract thumbnails at all")
    max_duration: Optional[float] = Field(
        default=None, gt=0.0, description="Reject sources longer than this many seconds"
    )
    watermark: Optional[WatermarkOptions] = Field(default=None, description="Optional overlay")


# ============================================================================
# Pipeline data
# ============================================================================


class SourceMetadata(BaseModel):
    """Probe result for the source file."""

    duration: float = Field(default=0.0, ge=0.0, description="Duration in seconds")
    width: int = Field(default=0, ge=0, description="Frame width in pixels")
    height: int = Field(default=0, ge=0, description="Frame height in pixels")
    fps: float = Field(default=0.0, ge=0.0, description="Frame rate (0 if unparseable)")
    codec: str = Field(default="unknown", description="Video codec name")
    bitrate: str = Field(default="0", description="Container bitrate in bits/s")


class RenditionSpec(BaseModel):
    """One row of the rendition ladder."""

    model_config = {"frozen": True}

    quality: str = Field(..., description="Quality label, e.g. 720p")
    resolution: str = Field(..., description="Target resolution as WxH")
    bitrate: str = Field(..., description="Target video bitrate, e.g. 2500k")
    codec: str = Field(default="libx264", description="Video encoder")

    @field_validator("resolution")
    @classmethod
    def resolution_format(cls, v: str) -> str:
        """Validate WxH format."""
        parts = v.lower().split("x")
        if len(parts) != 2 or not all(p.isdigit() for p in parts):
            raise ValueError(f"resolution must look like WxH, got {v!r}")
        return v

    @property
    def width(self) -> int:
        return int(self.resolution.lower().split("x")[0])

    @property
    def height(self) -> int:
        return int(self.resolution.lower().split("x")[1])


class VideoFormat(BaseModel):
    """Completed rendition stored in the blob store."""

    quality: str
    resolution: str
    bitrate: str
    codec: str
    url: str = Field(..., min_length=1, description="Public URL of the encoded file")
    size: int = Field(..., gt=0, description="Encoded size in bytes")


class VideoThumbnail(BaseModel):
    """Extracted still frame stored in the blob store."""

    url: str = Field(..., min_length=1, description="Public URL of the image")
    timestamp: float = Field(..., ge=0.0, description="Seconds into the source")
    width: int = Field(..., gt=0)
    height: int = Field(..., gt=0)
    size: int = Field(..., gt=0, description="Image size in bytes")


class ManifestMetadata(BaseModel):
    """Subset of SourceMetadata carried in the manifest."""

    width: int = 0
    height: int = 0
    fps: float = 0.0
    codec: str = "unknown"
    bitrate: str = "0"


class ProcessedVideo(BaseModel):
    """Manifest returned by a successful pipeline run."""

    duration: float = Field(..., ge=0.0, description="Source duration in seconds")
    original_size: int = Field(..., ge=0, description="Source file size in bytes")
    formats: List[VideoFormat] = Field(default_factory=list)
    thumbnails: List[VideoThumbnail] = Field(default_factory=list)
    metadata: ManifestMetadata = Field(default_factory=ManifestMetadata)
    processing_time: int = Field(..., ge=0, description="Wall-clock processing time in ms")


# Anything that turns (source_url, options) into a manifest, e.g. VideoPipeline.process_video
Processor = Callable[[str, ProcessingOptions], Awaitable[ProcessedVideo]]


# ============================================================================
# Configuration
# ============================================================================


class RunnerConfig(BaseModel):
    """Media engine process controls."""

    ffmpeg_path: Optional[str] = Field(
        default=None, description="ffmpeg executable (None = bundled imageio-ffmpeg binary)"
    )
    ffprobe_path: Optional[str] = Field(
        default=None, description="ffprobe executable (None = search PATH)"
    )
    global_timeout_s: int = Field(
        default=1800,
        gt=0,
        description="Maximum duration for any engine invocation in seconds (30 min default)",
    )
    no_progress_timeout_s: int = Field(
        default=120,
        gt=0,
        description="Timeout if no progress update in N seconds (stall detection)",
    )
    probe_timeout_s: int = Field(default=30, gt=0, description="ffprobe timeout in seconds")
    kill_grace_period_s: int = Field(
        default=5, gt=0, description="Grace period between SIGTERM and SIGKILL"
    )
    save_artifacts_on_failure: bool = Field(
        default=True, description="Save engine logs and commands on failure for debugging"
    )
    artifacts_dir: Optional[str] = Field(
        default=None, description="Where failure artifacts go (None = system temp dir)"
    )
    ffmpeg_loglevel: str = Field(
        default="info", description="FFmpeg log level: error, warning, info, verbose"
    )


class TranscodeConfig(BaseModel):
    """Encoding parameters shared by all renditions."""

    default_qualities: List[str] = Field(
        default_factory=lambda: ["360p", "720p"],
        description="Qualities used when a job requests none",
    )
    default_codec: str = Field(default="libx264", description="Encoder for the original fallback")
    preset: Literal[
        "ultrafast",
        "superfast",
        "veryfast",
        "faster",
        "fast",
        "medium",
        "slow",
        "slower",
        "veryslow",
    ] = Field(default="fast", description="Encoding speed preset")
    crf: int = Field(
        default=23, ge=0, le=51, description="Constant Rate Factor (0-51, lower = better quality)"
    )
    pixel_format: str = Field(
        default="yuv420p", description="Pixel format (yuv420p for broad compatibility)"
    )
    audio_codec: str = Field(default="aac", description="Audio codec name")
    audio_bitrate: str = Field(default="128k", description="Audio bitrate")
    movflags: str = Field(
        default="+faststart", description="MP4 flags (moov atom up front for progressive playback)"
    )


class ThumbnailConfig(BaseModel):
    """Thumbnail canvas settings."""

    width: int = Field(default=320, gt=0, description="Canvas width in pixels")
    height: int = Field(default=180, gt=0, description="Canvas height in pixels")
    quality: int = Field(default=2, ge=1, le=31, description="JPEG qscale (lower = better)")


class QueueConfig(BaseModel):
    """In-process job queue settings."""

    concurrency: int = Field(default=2, ge=1, description="Pipelines run at the same time")
    max_retries: int = Field(default=3, ge=1, description="Attempts before a job is failed")
    retry_base_delay_s: float = Field(
        default=5.0, ge=0.0, description="Backoff is base * retry_count seconds"
    )
    stale_after_s: int = Field(
        default=7200, gt=0, description="Age after which a 'processing' row is considered orphaned"
    )


class BatchConfig(BaseModel):
    """Batch runner settings."""

    chunk_size: int = Field(default=3, ge=1, description="Sources processed together per chunk")


class StorageConfig(BaseModel):
    """Blob store selection."""

    backend: Literal["local", "s3"] = Field(default="local", description="Blob store backend")
    local_root: str = Field(default="outputs", description="Root directory for the local backend")
    public_base_url: Optional[str] = Field(
        default=None, description="URL prefix for uploaded artifacts"
    )
    s3_bucket: Optional[str] = Field(default=None, description="Bucket for the s3 backend")
    s3_prefix: str = Field(default="", description="Key prefix inside the bucket")
    s3_region: str = Field(default="us-east-1", description="AWS region")
    s3_sse: Optional[str] = Field(
        default="AES256", description="ServerSideEncryption header (None to omit)"
    )
    download_attempts: int = Field(default=3, ge=1, description="Attempts for s3:// downloads")
    download_timeout_s: int = Field(default=60, gt=0, description="HTTP read timeout")

    @model_validator(mode="after")
    def bucket_for_s3(self) -> "StorageConfig":
        """Validate that the s3 backend has a bucket."""
        if self.backend == "s3" and not self.s3_bucket:
            raise ValueError("storage.s3_bucket is required when storage.backend is 's3'")
        return self


class TranscoderConfig(BaseModel):
    """Complete application configuration with validation."""

    runner: RunnerConfig = Field(default_factory=RunnerConfig)
    transcode: TranscodeConfig = Field(default_factory=TranscodeConfig)
    thumbnails: ThumbnailConfig = Field(default_factory=ThumbnailConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    db_path: str = Field(default="transcoder.db", description="SQLite status database")
    scratch_root: Optional[str] = Field(
        default=None, description="Parent of per-job scratch directories (None = system temp)"
    )

    @classmethod
    def from_dict(cls, data: dict) -> "TranscoderConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)
