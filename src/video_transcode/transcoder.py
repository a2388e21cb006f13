"""Per-rendition encoding with optional watermark overlay."""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from .errors import RenditionError
from .models import RenditionSpec, TranscodeConfig, WatermarkOptions

logger = logging.getLogger(__name__)

# (x, y) templates per anchor. {W}/{H} = frame size, {w}/{h} = overlay size.
WATERMARK_OFFSETS: Dict[str, Tuple[str, str]] = {
    "top-left": ("{m}", "{m}"),
    "top-right": ("{W}-{w}-{m}", "{m}"),
    "bottom-left": ("{m}", "{H}-{h}-{m}"),
    "bottom-right": ("{W}-{w}-{m}", "{H}-{h}-{m}"),
    "center": ("({W}-{w})/2", "({H}-{h})/2"),
}

# Variable names each filter exposes for frame and overlay dimensions
_DRAWTEXT_VARS = {"W": "w", "H": "h", "w": "tw", "h": "th"}
_OVERLAY_VARS = {"W": "W", "H": "H", "w": "w", "h": "h"}


@dataclass
class FilterPlan:
    """Filter arguments for one rendition."""
    video_filter: str
    filter_complex: bool = False
    extra_inputs: List[str] = field(default_factory=list)


def watermark_offsets(position: str, margin: int, for_text: bool) -> Tuple[str, str]:
    """Resolve the x/y expressions for a named anchor."""
    if position not in WATERMARK_OFFSETS:
        raise ValueError(f"Unknown watermark position: {position}")
    names = _DRAWTEXT_VARS if for_text else _OVERLAY_VARS
    x_tpl, y_tpl = WATERMARK_OFFSETS[position]
    return x_tpl.format(m=margin, **names), y_tpl.format(m=margin, **names)


def _escape_drawtext(text: str) -> str:
    for char in ("\\", ":", "'", "%", ","):
        text = text.replace(char, "\\" + char)
    return text


def scale_filter(spec: RenditionSpec) -> str:
    """Fit inside the rendition box, keeping aspect ratio and even dimensions."""
    return (
        f"scale=w={spec.width}:h={spec.height}"
        ":force_original_aspect_ratio=decrease:force_divisible_by=2"
    )


def build_filter_plan(
    spec: RenditionSpec, watermark: Optional[WatermarkOptions] = None
) -> FilterPlan:
    """Compose the scale filter and, if requested, the watermark overlay."""
    scale = scale_filter(spec)
    if watermark is None:
        return FilterPlan(video_filter=scale)

    if watermark.text:
        x, y = watermark_offsets(watermark.position, watermark.margin, for_text=True)
        drawtext = (
            f"drawtext=text={_escape_drawtext(watermark.text)}"
            f":fontsize={watermark.font_size}"
            f":fontcolor=white@{watermark.opacity}"
            f":x={x}:y={y}"
        )
        return FilterPlan(video_filter=f"{scale},{drawtext}")

    x, y = watermark_offsets(watermark.position, watermark.margin, for_text=False)
    graph = (
        f"[0:v]{scale}[base];"
        f"[1:v]format=rgba,colorchannelmixer=aa={watermark.opacity}[wm];"
        f"[base][wm]overlay={x}:{y}[v]"
    )
    return FilterPlan(video_filter=graph, filter_complex=True, extra_inputs=[watermark.image_path])


def transcode_rendition(
    runner,
    source_path: Path,
    spec: RenditionSpec,
    output_dir: Path,
    watermark: Optional[WatermarkOptions] = None,
    settings: Optional[TranscodeConfig] = None,
    duration: Optional[float] = None,
) -> Path:
    """Encode one rendition into output_dir.

    Returns:
        Path of the encoded file

    Raises:
        RenditionError: If the engine fails or produces no output
    """
    settings = settings or TranscodeConfig()
    output_path = Path(output_dir) / f"{spec.quality}.mp4"
    plan = build_filter_plan(spec, watermark)

    logger.info("Encoding %s (%s @ %s)", spec.quality, spec.resolution, spec.bitrate)
    result = runner.transcode(
        str(source_path),
        str(output_path),
        codec=spec.codec,
        bitrate=spec.bitrate,
        video_filter=plan.video_filter,
        filter_complex=plan.filter_complex,
        extra_inputs=plan.extra_inputs,
        preset=settings.preset,
        crf=settings.crf,
        pixel_format=settings.pixel_format,
        audio_codec=settings.audio_codec,
        audio_bitrate=settings.audio_bitrate,
        movflags=settings.movflags,
        expected_duration=duration,
    )

    if not result.success:
        raise RenditionError(f"{spec.quality}: {result.error_summary()}")
    if not output_path.exists() or output_path.stat().st_size == 0:
        raise RenditionError(f"{spec.quality}: encoder produced no output")

    return output_path


async def transcode_renditions(
    runner,
    source_path: Path,
    specs: Sequence[RenditionSpec],
    output_dir: Path,
    watermark: Optional[WatermarkOptions] = None,
    settings: Optional[TranscodeConfig] = None,
    duration: Optional[float] = None,
) -> List[Tuple[RenditionSpec, Path]]:
    """Encode every planned rendition, skipping the ones that fail.

    Returns:
        (spec, output path) for each rendition that succeeded, in plan order
    """
    Path(output_dir).mkdir(parents=True, exist_ok=True)

    produced = []
    for spec in specs:
        try:
            path = await asyncio.to_thread(
                transcode_rendition,
                runner, source_path, spec, output_dir, watermark, settings, duration,
            )
        except Exception as e:
            logger.warning("Skipping rendition %s: %s", spec.quality, e)
            continue
        produced.append((spec, path))

    logger.info("Encoded %d/%d renditions", len(produced), len(specs))
    return produced
