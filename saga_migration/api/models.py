"""Pydantic models for API requests and responses."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class RunStatusEnum(str, Enum):
    PENDING = "pending"
    EXPORTING = "exporting"
    IMPORTING = "importing"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FieldErrorPolicyEnum(str, Enum):
    FAIL_RECORD = "fail_record"
    SKIP_FIELD = "skip_field"
    ABORT = "abort"


# Request Models
class ExportRequest(BaseModel):
    type_name: str
    key_property: str
    type_full_name: Optional[str] = None
    output_dir: str = "./export"
    type_overrides: Dict[str, str] = Field(default_factory=dict)
    enum_members: Dict[str, List[str]] = Field(default_factory=dict)
    excluded_properties: List[str] = Field(default_factory=list)
    field_error_policy: FieldErrorPolicyEnum = FieldErrorPolicyEnum.FAIL_RECORD
    parallel_workers: int = Field(default=1, ge=1)
    page_size: int = Field(default=1000, ge=1, le=1000)


class ImportRequest(BaseModel):
    input_dir: str = "./export"
    type_names: List[str] = Field(default_factory=list)
    dry_run: bool = False


# Response Models
class FailureItem(BaseModel):
    record_id: str
    reason: str
    error_type: str
    field: Optional[str] = None


class RunResponse(BaseModel):
    id: str
    kind: str
    type_name: str
    status: RunStatusEnum
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    failures: List[FailureItem] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None


class RunListResponse(BaseModel):
    runs: List[RunResponse]
    total: int


class StartResponse(BaseModel):
    status: str
    run_ids: List[str]


class IdentityResponse(BaseModel):
    id: str
    type_full_name: str
    key_property: str
    value: str
