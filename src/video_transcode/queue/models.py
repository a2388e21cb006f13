"""Pydantic models for the job queue and persisted video status."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..models import ProcessingOptions


class ProcessingStatus(str, Enum):
    """Persisted processing state of a video.

    State transitions:
        pending → processing     (queue starts a pipeline run)
        processing → completed   (manifest persisted)
        processing → pending     (crash recovery)
        processing → failed      (max retries exhausted)
        failed → pending         (admin retry)
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


def new_job_id() -> str:
    return f"job_{uuid.uuid4().hex}"


class Job(BaseModel):
    """Unit of queued work. Lives in memory only; its status is persisted."""

    id: str = Field(default_factory=new_job_id, description="Generated at enqueue time")
    video_id: str = Field(..., description="Video row this job produces renditions for")
    source_url: str = Field(..., description="Location of the uploaded media")
    options: ProcessingOptions = Field(default_factory=ProcessingOptions)
    retry_count: int = Field(default=0, ge=0, description="Failed attempts so far")
    max_retries: int = Field(default=3, ge=1, description="Attempts before permanent failure")
    created_at: datetime = Field(default_factory=datetime.now)


class VideoRecord(BaseModel):
    """Row of the persisted status table."""

    video_id: str
    source_url: Optional[str] = None
    status: ProcessingStatus = ProcessingStatus.PENDING
    options: Dict[str, Any] = Field(default_factory=dict)
    processed_formats: List[Dict[str, Any]] = Field(default_factory=list)
    thumbnails: List[Dict[str, Any]] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    duration: Optional[float] = None
    original_size: int = 0
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class StateTransition(BaseModel):
    """Audit log entry for status changes."""

    id: Optional[int] = None
    video_id: str
    from_state: Optional[str] = None
    to_state: str
    timestamp: datetime = Field(default_factory=datetime.now)
    error_snippet: Optional[str] = None
