"""Bounded-concurrency in-process queue for video processing jobs.

Jobs live in memory only. Their status is mirrored into a VideoStatusStore
so failures are visible to pollers and stranded rows can be recovered on
startup with recover_stale().
"""

import asyncio
import logging
from collections import deque
from typing import Deque, Dict, List, Optional, Set

from ..models import ProcessingOptions, Processor
from .models import Job, ProcessingStatus
from .store import VideoStatusStore

logger = logging.getLogger(__name__)

ERROR_SNIPPET_CHARS = 500


class VideoProcessingQueue:
    """FIFO job queue that runs at most `concurrency` pipelines at a time.

    Draining pops up to `concurrency` jobs from the head, runs them together
    and waits for every one of them to settle before taking the next batch.
    A failed job is reinserted at the head after `retry_base_delay_s *
    retry_count` seconds until it has failed `max_retries` times.
    """

    def __init__(
        self,
        store: VideoStatusStore,
        processor: Processor,
        concurrency: int = 2,
        max_retries: int = 3,
        retry_base_delay_s: float = 5.0,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")

        self.store = store
        self.processor = processor
        self.concurrency = concurrency
        self.max_retries = max_retries
        self.retry_base_delay_s = retry_base_delay_s

        self._queue: Deque[Job] = deque()
        self._processing = False
        self._active = 0
        self._drain_task: Optional[asyncio.Task] = None
        self._retry_tasks: Set[asyncio.Task] = set()
        self._in_flight: Dict[str, Job] = {}

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    async def add_job(
        self,
        video_id: str,
        source_url: str,
        options: Optional[ProcessingOptions] = None,
    ) -> Job:
        """Append a new job to the tail and start draining if idle."""
        job = Job(
            video_id=video_id,
            source_url=source_url,
            options=options or ProcessingOptions(),
            max_retries=self.max_retries,
        )
        self.store.register(video_id, source_url, job.options)
        self._queue.append(job)
        self._in_flight[video_id] = job

        logger.info("Queued %s for video %s (queue length %d)", job.id, video_id, len(self._queue))
        self._ensure_draining()
        return job

    async def retry_video(self, video_id: str) -> Job:
        """Re-admit a permanently failed video with a fresh job.

        Raises:
            LookupError: If the video is unknown
            ValueError: If the video is not in 'failed' state
        """
        record = self.store.get(video_id)
        if record is None:
            raise LookupError(f"Unknown video: {video_id}")
        if record.status != ProcessingStatus.FAILED:
            raise ValueError(f"Video {video_id} is {record.status.value}, not failed")
        if not record.source_url:
            raise ValueError(f"Video {video_id} has no stored source url")

        logger.info("Admin retry for video %s", video_id)
        return await self.add_job(
            video_id, record.source_url, ProcessingOptions(**record.options)
        )

    async def recover_stale(self, stale_after_s: int = 7200) -> int:
        """Re-admit rows stranded by a previous process.

        Rows stuck in 'processing' for longer than stale_after_s are reset
        to 'pending'. Those and all other 'pending' rows that this queue does
        not already hold are enqueued again.

        Returns:
            Number of jobs admitted
        """
        for record in self.store.find_stale_processing(stale_after_s):
            if record.video_id in self._in_flight:
                continue
            logger.warning("Resetting stale video %s (last update %s)", record.video_id, record.updated_at)
            self.store.mark_pending(record.video_id, reason="stale processing reset")

        admitted = 0
        for record in self.store.list_by_status(ProcessingStatus.PENDING):
            if record.video_id in self._in_flight or not record.source_url:
                continue
            await self.add_job(
                record.video_id, record.source_url, ProcessingOptions(**record.options)
            )
            admitted += 1

        if admitted:
            logger.info("Recovered %d pending videos", admitted)
        return admitted

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def get_queue_status(self) -> dict:
        """Instantaneous snapshot for dashboards."""
        return {
            "queue_length": len(self._queue),
            "processing": self._processing,
            "active_jobs": self._active,
            "scheduled_retries": len(self._retry_tasks),
        }

    async def join(self) -> None:
        """Wait until the queue is empty, idle and has no pending retries."""
        while True:
            if self._drain_task is not None and not self._drain_task.done():
                await self._drain_task
            elif self._retry_tasks:
                await asyncio.gather(*list(self._retry_tasks))
            elif self._queue:
                self._ensure_draining()
            else:
                return

    # ------------------------------------------------------------------
    # Draining
    # ------------------------------------------------------------------

    def _ensure_draining(self) -> None:
        if self._processing:
            return
        self._processing = True
        self._drain_task = asyncio.create_task(self._drain())

    async def _drain(self) -> None:
        try:
            while self._queue:
                batch: List[Job] = []
                while self._queue and len(batch) < self.concurrency:
                    batch.append(self._queue.popleft())

                self._active = len(batch)
                outcomes = await asyncio.gather(
                    *(self._run_job(job) for job in batch), return_exceptions=True
                )
                for job, outcome in zip(batch, outcomes):
                    if isinstance(outcome, Exception):
                        logger.error(
                            "Could not record outcome of video %s", job.video_id, exc_info=outcome
                        )
                self._active = 0
        finally:
            self._processing = False
            self._active = 0

    async def _run_job(self, job: Job) -> None:
        logger.info(
            "Starting %s for video %s (attempt %d/%d)",
            job.id, job.video_id, job.retry_count + 1, job.max_retries,
        )
        try:
            self.store.mark_processing(job.video_id)
            result = await self.processor(job.source_url, job.options)
            self.store.mark_completed(job.video_id, result)
        except Exception as e:
            self._handle_failure(job, e)
            return

        self._in_flight.pop(job.video_id, None)
        logger.info(
            "Completed video %s: %d formats, %d thumbnails in %dms",
            job.video_id, len(result.formats), len(result.thumbnails), result.processing_time,
        )

    def _handle_failure(self, job: Job, error: Exception) -> None:
        job.retry_count += 1
        snippet = f"{type(error).__name__}: {error}"[:ERROR_SNIPPET_CHARS]

        if job.retry_count >= job.max_retries:
            logger.exception(
                "Video %s failed permanently after %d attempts", job.video_id, job.retry_count
            )
            try:
                self.store.mark_failed(job.video_id, snippet)
            finally:
                self._in_flight.pop(job.video_id, None)
            return

        delay = self.retry_base_delay_s * job.retry_count
        logger.warning(
            "Video %s failed (attempt %d/%d), retrying in %.1fs: %s",
            job.video_id, job.retry_count, job.max_retries, delay, snippet,
        )
        task = asyncio.create_task(self._requeue_after(job, delay))
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)

    async def _requeue_after(self, job: Job, delay: float) -> None:
        await asyncio.sleep(delay)
        self._queue.appendleft(job)
        self._ensure_draining()


_video_queue: Optional[VideoProcessingQueue] = None


def get_video_queue() -> VideoProcessingQueue:
    """Process-wide queue built from the resolved config."""
    global _video_queue
    if _video_queue is None:
        from ..config import resolve_config
        from ..pipeline import VideoPipeline
        from .sqlite_store import SQLiteVideoStore

        config = resolve_config()
        _video_queue = VideoProcessingQueue(
            SQLiteVideoStore(config.db_path),
            VideoPipeline(config).process_video,
            concurrency=config.queue.concurrency,
            max_retries=config.queue.max_retries,
            retry_base_delay_s=config.queue.retry_base_delay_s,
        )
    return _video_queue


async def queue_video_processing(
    video_id: str,
    source_url: str,
    options: Optional[ProcessingOptions] = None,
    queue: Optional[VideoProcessingQueue] = None,
) -> Job:
    """Admit a video for processing and return without waiting for it."""
    return await (queue or get_video_queue()).add_job(video_id, source_url, options)
