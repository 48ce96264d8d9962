from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .errors import ValidationError


def utcnow() -> datetime:
    """Naive UTC timestamp, the form the store persists."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class ItemStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_JOB_STATES = (JobStatus.COMPLETED, JobStatus.FAILED)
TERMINAL_ITEM_STATES = (ItemStatus.COMPLETED, ItemStatus.FAILED)


class ExecutionConfig(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    concurrency: int = Field(default=3, gt=0)
    retry_attempts: int = Field(default=2, ge=0)
    retry_delay_ms: int = Field(default=1000, ge=0)
    delay_between_items: int = Field(default=100, ge=0)
    stop_on_error: bool = False

    @classmethod
    def merge(cls, *layers: Optional[Dict[str, Any]]) -> "ExecutionConfig":
        """Fold config layers left to right, later layers win."""
        merged: Dict[str, Any] = {}
        for layer in layers:
            if not layer:
                continue
            if isinstance(layer, ExecutionConfig):
                layer = layer.model_dump()
            # Normalize camelCase keys so both spellings override each other
            for key, value in layer.items():
                merged[_field_name(key)] = value
        try:
            return cls.model_validate(merged)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid execution config: {e}") from e


def _field_name(key: str) -> str:
    for name, field in ExecutionConfig.model_fields.items():
        if key == name or key == field.alias:
            return name
    return key


class BatchJobItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    batch_job_id: str
    sequence_number: int
    input_data: Any = None
    output_data: Any = None
    status: ItemStatus = ItemStatus.PENDING
    error_message: Optional[str] = None
    processing_time_ms: Optional[int] = None
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None


class BatchJob(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    type: str
    status: JobStatus = JobStatus.PENDING
    total_items: int
    processed_items: int = 0
    failed_items: int = 0
    config: Optional[Dict[str, Any]] = None
    results: Optional[Dict[str, Any]] = None
    error_log: List[str] = Field(default_factory=list)
    estimated_cost: Optional[float] = None
    actual_cost: Optional[float] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    locked_by: Optional[str] = None
    locked_until: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATES

    @property
    def is_cancelled(self) -> bool:
        # Cancelled jobs keep the "failed" status; the timestamp tells them apart
        return self.status == JobStatus.FAILED and self.cancelled_at is not None


class ProcessorOutcome(BaseModel):
    """What an item processor hands back for one attempt."""

    success: bool
    output: Any = None
    error: Optional[str] = None
    cost: Optional[float] = None


class ItemResult(BaseModel):
    item_id: str
    sequence_number: int
    success: bool
    output: Any = None
    error: Optional[str] = None
    cost: Optional[float] = None
    attempts: int = 0
    processing_time_ms: int = 0


class BatchProgress(BaseModel):
    job_id: str
    status: JobStatus
    total: int
    processed: int
    failed: int
    current_item: Optional[str] = None
    estimated_time_remaining_ms: Optional[int] = None
    started_at: Optional[datetime] = None
    last_updated: datetime = Field(default_factory=utcnow)


class JobSummary(BaseModel):
    total: int
    completed: int
    failed: int
    skipped: int
    total_processing_time_ms: int
    average_processing_time_ms: int


class JobRunResult(BaseModel):
    job: BatchJob
    item_results: List[ItemResult] = Field(default_factory=list)
    summary: JobSummary
