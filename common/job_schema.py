from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

Seconds = Union[int, float]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)

    def can_advance_to(self, other: "JobStatus") -> bool:
        """Status only moves forward: pending -> processing -> completed|failed."""
        return other in _FORWARD_TRANSITIONS[self]


_FORWARD_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.PROCESSING},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


class ClipProcessingStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class _Document(BaseModel):
    # Firestore documents use camelCase field names.
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_document(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude={"id"}, exclude_none=True)


class Job(_Document):
    id: str
    youtube_url: str = Field(alias="youtubeUrl")
    video_id: str = Field(alias="videoId")
    clip_id: str = Field(alias="clipId")
    clip_title: Optional[str] = Field(default=None, alias="clipTitle")
    start_time_seconds: Seconds = Field(alias="startTimeSeconds")
    end_time_seconds: Seconds = Field(alias="endTimeSeconds")
    status: JobStatus = JobStatus.PENDING
    priority: int = 1
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    created_by: Optional[str] = Field(default=None, alias="createdBy")
    processor: Optional[str] = None
    processing_started_at: Optional[datetime] = Field(default=None, alias="processingStartedAt")
    completed_at: Optional[datetime] = Field(default=None, alias="completedAt")
    failed_at: Optional[datetime] = Field(default=None, alias="failedAt")
    processed_clip_url: Optional[str] = Field(default=None, alias="processedClipUrl")
    error: Optional[str] = None

    @model_validator(mode="after")
    def _check_outcome(self):
        if self.status == JobStatus.COMPLETED and not self.processed_clip_url:
            raise ValueError("completed job must carry processedClipUrl")
        if self.status == JobStatus.FAILED and not self.error:
            raise ValueError("failed job must carry an error message")
        return self

    @property
    def duration_seconds(self) -> Seconds:
        return self.end_time_seconds - self.start_time_seconds


class Clip(_Document):
    id: str
    title: Optional[str] = None
    source_video_id: Optional[str] = Field(default=None, alias="sourceVideoId")
    start_time_seconds: Optional[Seconds] = Field(default=None, alias="startTimeSeconds")
    end_time_seconds: Optional[Seconds] = Field(default=None, alias="endTimeSeconds")
    processing_status: Optional[ClipProcessingStatus] = Field(default=None, alias="processingStatus")
    processed_clip_url: Optional[str] = Field(default=None, alias="processedClipUrl")
    processed_at: Optional[datetime] = Field(default=None, alias="processedAt")
    processed_by: Optional[str] = Field(default=None, alias="processedBy")
    video_processing_error: Optional[str] = Field(default=None, alias="videoProcessingError")

    @model_validator(mode="after")
    def _check_outcome(self):
        if self.processing_status == ClipProcessingStatus.COMPLETED and not self.processed_clip_url:
            raise ValueError("completed clip must carry processedClipUrl")
        if self.processing_status == ClipProcessingStatus.FAILED and not self.video_processing_error:
            raise ValueError("failed clip must carry videoProcessingError")
        return self
