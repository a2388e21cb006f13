"""Source metadata extraction via ffprobe."""

import logging
from typing import Any, Dict

from .errors import ProbeError
from .models import SourceMetadata

logger = logging.getLogger(__name__)


def fraction_to_float(rate_str: str) -> float:
    """Convert '60/1' or '30000/1001' to float (0.0 if unparseable)."""
    try:
        if "/" in rate_str:
            num, denom = rate_str.split("/")
            return float(num) / float(denom) if float(denom) != 0 else 0.0
        return float(rate_str)
    except (TypeError, ValueError):
        return 0.0


def parse_probe_output(data: Dict[str, Any], source: str = "<source>") -> SourceMetadata:
    """Build SourceMetadata from ffprobe JSON.

    Raises:
        ProbeError: If the file has no video stream
    """
    video_stream = next(
        (s for s in data.get("streams", []) if s.get("codec_type") == "video"), None
    )
    if not video_stream:
        raise ProbeError(f"No video stream found in {source}")

    format_info = data.get("format", {})

    duration = fraction_to_float(str(format_info.get("duration") or "0"))
    if duration <= 0:
        duration = fraction_to_float(str(video_stream.get("duration") or "0"))

    fps = fraction_to_float(str(video_stream.get("avg_frame_rate") or "0"))
    if fps <= 0:
        fps = fraction_to_float(str(video_stream.get("r_frame_rate") or "0"))

    bitrate = format_info.get("bit_rate") or video_stream.get("bit_rate") or "0"

    return SourceMetadata(
        duration=max(0.0, duration),
        width=int(video_stream.get("width") or 0),
        height=int(video_stream.get("height") or 0),
        fps=max(0.0, fps),
        codec=video_stream.get("codec_name") or "unknown",
        bitrate=str(bitrate),
    )


def probe_video(path: str, runner) -> SourceMetadata:
    """Probe a local file and return its metadata.

    Args:
        path: Local path to the source video
        runner: FfmpegRunner (or compatible) providing probe()

    Raises:
        ProbeError: If ffprobe fails or the file has no video stream
    """
    data = runner.probe(str(path))
    metadata = parse_probe_output(data, source=str(path))
    logger.info(
        "Probed %s: %dx%d %.2ffps %s, %.2fs",
        path, metadata.width, metadata.height, metadata.fps, metadata.codec, metadata.duration,
    )
    return metadata
