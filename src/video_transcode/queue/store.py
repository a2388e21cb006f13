"""Abstract status store for video processing state.

The queue only ever talks to this interface, so the SQLite implementation
can be swapped for the application's main relational database.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from ..models import ProcessedVideo, ProcessingOptions
from .models import ProcessingStatus, StateTransition, VideoRecord


class VideoStatusStore(ABC):
    """Durable record of per-video processing state.

    Implementations must:
    - Make every status change atomic
    - Record each change in an audit trail
    - Raise LookupError when asked to change an unknown video
    """

    @abstractmethod
    def register(self, video_id: str, source_url: str, options: ProcessingOptions) -> None:
        """Create or reset the row for a video and set it to 'pending'.

        The source url and options are kept so an operator can retry later.
        """

    @abstractmethod
    def mark_processing(self, video_id: str) -> None:
        """Set status to 'processing'."""

    @abstractmethod
    def mark_completed(self, video_id: str, result: ProcessedVideo) -> None:
        """Set status to 'completed' and store the manifest fields.

        Persists processed_formats, thumbnails, metadata, duration and
        original_size, and clears last_error.
        """

    @abstractmethod
    def mark_failed(self, video_id: str, error: str) -> None:
        """Set status to 'failed' (terminal until an admin retry)."""

    @abstractmethod
    def mark_pending(self, video_id: str, reason: Optional[str] = None) -> None:
        """Set status back to 'pending' (crash recovery)."""

    @abstractmethod
    def get(self, video_id: str) -> Optional[VideoRecord]:
        """Return the row for a video, or None."""

    @abstractmethod
    def list_by_status(self, status: Optional[ProcessingStatus] = None) -> List[VideoRecord]:
        """Return rows, optionally filtered by status, oldest update first."""

    @abstractmethod
    def find_stale_processing(self, stale_after_s: int) -> List[VideoRecord]:
        """Return 'processing' rows not updated for stale_after_s seconds."""

    @abstractmethod
    def status_counts(self) -> Dict[str, int]:
        """Number of rows per status (every status present, zero if none)."""

    @abstractmethod
    def transitions(self, video_id: str) -> List[StateTransition]:
        """Audit trail for a video, oldest first."""
