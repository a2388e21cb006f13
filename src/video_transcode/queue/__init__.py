"""In-process job queue with durable status tracking."""

from .models import Job, ProcessingStatus, StateTransition, VideoRecord
from .sqlite_store import SQLiteVideoStore
from .store import VideoStatusStore
from .video_queue import VideoProcessingQueue, get_video_queue, queue_video_processing

__all__ = [
    "Job",
    "ProcessingStatus",
    "StateTransition",
    "VideoRecord",
    "VideoStatusStore",
    "SQLiteVideoStore",
    "VideoProcessingQueue",
    "get_video_queue",
    "queue_video_processing",
]
