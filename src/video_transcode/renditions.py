"""Rendition ladder and per-job rendition selection."""

from typing import List, Optional, Sequence

from .models import RenditionSpec, SourceMetadata

DEFAULT_QUALITIES = ("360p", "720p")

# Ordered lowest to highest
RENDITION_LADDER = (
    RenditionSpec(quality="240p", resolution="426x240", bitrate="400k", codec="libx264"),
    RenditionSpec(quality="360p", resolution="640x360", bitrate="800k", codec="libx264"),
    RenditionSpec(quality="480p", resolution="854x480", bitrate="1200k", codec="libx264"),
    RenditionSpec(quality="720p", resolution="1280x720", bitrate="2500k", codec="libx264"),
    RenditionSpec(quality="1080p", resolution="1920x1080", bitrate="5000k", codec="libx264"),
)

ORIGINAL_QUALITY = "original"


def quality_for_height(height: int) -> str:
    """Map a frame height to its ladder label."""
    if height >= 1080:
        return "1080p"
    if height >= 720:
        return "720p"
    if height >= 480:
        return "480p"
    if height >= 360:
        return "360p"
    return "240p"


def plan_renditions(
    metadata: SourceMetadata,
    requested_qualities: Optional[Sequence[str]] = None,
    default_codec: str = "libx264",
) -> List[RenditionSpec]:
    """Select the renditions to encode for a source.

    Ladder entries are kept (in ladder order) when they are requested and do
    not upscale the source. If nothing qualifies, a single "original" entry
    at the source's native resolution and bitrate is returned instead, so the
    plan is never empty.

    Example:
        >>> meta = SourceMetadata(height=1080, width=1920)
        >>> [r.quality for r in plan_renditions(meta, ["360p", "720p"])]
        ['360p', '720p']
    """
    requested = set(requested_qualities or DEFAULT_QUALITIES)

    planned = [
        spec for spec in RENDITION_LADDER
        if spec.height <= metadata.height and spec.quality in requested
    ]

    if not planned:
        planned.append(
            RenditionSpec(
                quality=ORIGINAL_QUALITY,
                resolution=f"{metadata.width}x{metadata.height}",
                bitrate=metadata.bitrate,
                codec=default_codec,
            )
        )

    return planned
