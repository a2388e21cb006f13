import asyncio
import logging
from pathlib import Path
from typing import List, Optional, Tuple

from .errors import ThumbnailError
from .models import ThumbnailConfig

logger = logging.getLogger(__name__)


def thumbnail_timestamps(duration: float, count: int) -> List[float]:
    """Evenly spaced timestamps, excluding the very start and end.

    >>> thumbnail_timestamps(60, 5)
    [10.0, 20.0, 30.0, 40.0, 50.0]
    """
    if count <= 0 or duration <= 0:
        return []
    step = duration / (count + 1)
    return [step * (i + 1) for i in range(count)]


def thumbnail_filter(width: int, height: int) -> str:
    """Scale into a fixed canvas and pad the rest (letterbox/pillarbox)."""
    return (
        f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
        f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2"
    )


def extract_thumbnail(
    runner,
    source_path: Path,
    timestamp: float,
    output_path: Path,
    settings: Optional[ThumbnailConfig] = None,
) -> Path:
    """Extract one frame.

    Raises:
        ThumbnailError: If the engine fails or writes nothing
    """
    settings = settings or ThumbnailConfig()
    result = runner.extract_frame(
        str(source_path),
        str(output_path),
        timestamp,
        video_filter=thumbnail_filter(settings.width, settings.height),
        quality=settings.quality,
    )
    if not result.success:
        raise ThumbnailError(f"t={timestamp:.2f}s: {result.error_summary()}")
    if not output_path.exists() or output_path.stat().st_size == 0:
        raise ThumbnailError(f"t={timestamp:.2f}s: no frame written")
    return output_path


async def generate_thumbnails(
    runner,
    source_path: Path,
    duration: float,
    count: int,
    output_dir: Path,
    settings: Optional[ThumbnailConfig] = None,
) -> List[Tuple[float, Path]]:
    """Extract `count` thumbnails, skipping the ones that fail.

    Returns:
        (timestamp, image path) for each extracted frame
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    produced = []
    timestamps = thumbnail_timestamps(duration, count)
    for i, timestamp in enumerate(timestamps):
        output_path = output_dir / f"thumb_{i}.jpg"
        try:
            await asyncio.to_thread(
                extract_thumbnail, runner, source_path, timestamp, output_path, settings
            )
        except Exception as e:
            logger.warning("Skipping thumbnail %d at %.2fs: %s", i, timestamp, e)
            continue
        produced.append((timestamp, output_path))

    logger.info("Extracted %d/%d thumbnails", len(produced), len(timestamps))
    return produced
