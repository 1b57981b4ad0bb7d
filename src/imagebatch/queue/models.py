"""Pydantic models for job queue data structures.

This module defines the type-safe models used throughout the queue system.
All models use Pydantic for validation and serialization.
"""

import base64
import re
import uuid
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..models import GenerationConfig

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[^;]+);base64,(?P<data>.+)$", re.DOTALL)


def new_job_id() -> str:
    """Unique job identifier, never reused within or across processes."""
    return f"job_{uuid.uuid4().hex}"


def new_group_id() -> str:
    return f"grp_{uuid.uuid4().hex[:12]}"


class JobStatus(str, Enum):
    """Job processing states with explicit semantics.

    State transitions:
        pending → generating      (processor dequeues)
        generating → completed    (image generated and recorded)
        generating → failed       (non rate-limit error)
        generating → cancelled    (user cancelled the run)
        generating → pending      (rate limited, or crash recovery on restore)
        pending → cancelled       (skipped by user)
        failed/cancelled → pending (explicit retry)
    """

    PENDING = "pending"  # Queued, waiting for the processor
    GENERATING = "generating"  # Backend call in flight
    COMPLETED = "completed"  # Image generated and recorded
    FAILED = "failed"  # Backend or storage failure
    CANCELLED = "cancelled"  # Cancelled mid-run or skipped


RETRYABLE_STATUSES = (JobStatus.PENDING, JobStatus.FAILED, JobStatus.CANCELLED)


class RefImage(BaseModel):
    """Reference image attached to a job (base64 payload)."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, description="Image identifier")
    mime_type: str = Field(default="image/png", description="MIME type of the payload")
    data: str = Field(..., description="Base64-encoded image bytes")

    @classmethod
    def from_data_url(cls, data_url: str, image_id: Optional[str] = None) -> "RefImage":
        """Build from a ``data:<mime>;base64,<payload>`` URL."""
        match = _DATA_URL_RE.match(data_url)
        if not match:
            raise ValueError("Not a base64 data URL")
        kwargs = {"mime_type": match.group("mime"), "data": match.group("data")}
        if image_id:
            kwargs["id"] = image_id
        return cls(**kwargs)

    @classmethod
    def from_bytes(cls, raw: bytes, mime_type: str = "image/png") -> "RefImage":
        return cls(mime_type=mime_type, data=base64.b64encode(raw).decode("ascii"))

    def to_data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"

    def to_bytes(self) -> bytes:
        return base64.b64decode(self.data)


class GeneratedImage(BaseModel):
    """Image returned by the generation backend."""

    mime_type: str = Field(default="image/png", description="MIME type of the image")
    data: bytes = Field(..., description="Raw image bytes")
    metadata: dict = Field(default_factory=dict, description="Backend metadata (grounding etc.)")


class Job(BaseModel):
    """One unit of generation work: a single variation of a single prompt.

    Status, timestamps, error and output_ref are mutated by the processor
    or by explicit caller actions routed through ``QueueManager``.
    """

    model_config = ConfigDict(use_enum_values=True)

    id: str = Field(default_factory=new_job_id, description="Unique job identifier")
    prompt: str = Field(..., description="Prompt text")
    variation_index: int = Field(default=0, ge=0, description="0-based index within its group")
    total_variations: int = Field(default=1, ge=1, description="Variations in its group")
    group_id: str = Field(default_factory=new_group_id, description="Prompt group identifier")
    status: JobStatus = Field(default=JobStatus.PENDING, description="Current job state")
    created_at: datetime = Field(default_factory=datetime.now, description="Enqueue time")
    started_at: Optional[datetime] = Field(default=None, description="Generation start time")
    completed_at: Optional[datetime] = Field(default=None, description="Terminal transition time")
    error: Optional[str] = Field(default=None, description="Error text if failed/cancelled")
    output_ref: Optional[str] = Field(default=None, description="Saved output identifier")
    config: GenerationConfig = Field(default_factory=GenerationConfig, description="Config snapshot")
    ref_images: List[RefImage] = Field(default_factory=list, description="Reference images")
    batch_name: Optional[str] = Field(default=None, description="Output naming prefix")

    @model_validator(mode="after")
    def variation_in_range(self) -> "Job":
        """Validate that variation_index < total_variations."""
        if self.variation_index >= self.total_variations:
            raise ValueError(
                f"variation_index ({self.variation_index}) must be < "
                f"total_variations ({self.total_variations})"
            )
        return self

    @property
    def is_retryable(self) -> bool:
        return self.status in (JobStatus.FAILED.value, JobStatus.CANCELLED.value)

    @property
    def duration_ms(self) -> Optional[int]:
        if self.started_at is None or self.completed_at is None:
            return None
        return int((self.completed_at - self.started_at).total_seconds() * 1000)


class QueueState(BaseModel):
    """The queue aggregate: jobs plus run flags and counters."""

    jobs: List[Job] = Field(default_factory=list, description="Jobs in dequeue order")
    is_running: bool = Field(default=False, description="A run is active")
    is_paused: bool = Field(default=False, description="Active run is paused")
    delay_between_ms: int = Field(default=3000, ge=0, description="Shared inter-job delay")
    completed_count: int = Field(default=0, ge=0, description="Jobs completed (never decremented)")
    failed_count: int = Field(default=0, ge=0, description="Jobs failed (never decremented)")
    generation_times: List[int] = Field(
        default_factory=list, description="Recent successful job durations (ms)"
    )
    started_at: Optional[datetime] = Field(default=None, description="Current run start time")

    def snapshot_dict(self) -> dict:
        """JSON-ready dump without reference image payloads."""
        return self.model_dump(mode="json", exclude={"jobs": {"__all__": {"ref_images"}}})


class QueueStats(BaseModel):
    """Aggregate counts for progress display."""

    total: int = 0
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    percent_complete: int = 0
    is_running: bool = False
    is_paused: bool = False
    delay_between_ms: int = 0


class EtaEstimate(BaseModel):
    """Remaining-time estimate for the current run."""

    remaining_ms: int = Field(..., ge=0, description="Estimated remaining milliseconds")
    text: str = Field(..., description="Human readable remaining time")
    low_confidence: bool = Field(..., description="Too few samples for a reliable estimate")
    sample_count: int = Field(..., ge=0, description="Durations the estimate is based on")
    average_ms: int = Field(..., ge=0, description="Average job duration used")
