"""Chunked fan-out over the pipeline, without queue, persistence or retry."""

import asyncio
import logging
from typing import List, Optional, Sequence

from tqdm import tqdm

from .models import ProcessedVideo, ProcessingOptions, Processor

logger = logging.getLogger(__name__)


async def process_batch(
    source_urls: Sequence[str],
    options: Optional[ProcessingOptions] = None,
    processor: Optional[Processor] = None,
    chunk_size: int = 3,
    show_progress: bool = True,
) -> List[ProcessedVideo]:
    """Process sources `chunk_size` at a time.

    Every item of a chunk settles before the next chunk starts. A failing
    item never cancels its siblings; failures are logged and dropped.

    Returns:
        Manifests of the sources that succeeded, in input order
    """
    if chunk_size < 1:
        raise ValueError("chunk_size must be >= 1")

    if processor is None:
        from .pipeline import get_default_pipeline

        processor = get_default_pipeline().process_video

    options = options or ProcessingOptions()
    results: List[ProcessedVideo] = []
    failed = 0

    with tqdm(total=len(source_urls), desc="Transcoding", disable=not show_progress) as pbar:
        for start in range(0, len(source_urls), chunk_size):
            chunk = source_urls[start:start + chunk_size]
            outcomes = await asyncio.gather(
                *(processor(url, options) for url in chunk), return_exceptions=True
            )

            for url, outcome in zip(chunk, outcomes):
                if isinstance(outcome, BaseException):
                    failed += 1
                    logger.error("Batch item %s failed: %s: %s", url, type(outcome).__name__, outcome)
                else:
                    results.append(outcome)
                pbar.update(1)

    logger.info("Batch finished: %d succeeded, %d failed", len(results), failed)
    return results
