"""Pydantic schemas shared by the sync pipeline and the API."""
from datetime import date, datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class ApplicationStatus(str, Enum):
    APPLIED = "Applied"
    INTERVIEW = "Interview"
    OFFER = "Offer"
    REJECTED = "Rejected"


# =============================================================================
# Sync pipeline types
# =============================================================================

class RawMessage(BaseModel):
    """Immutable snapshot of one mailbox message. `id` is the provider's message id."""
    id: str
    sender: str = ""
    subject: str = ""
    body: str = ""
    received_at: Optional[datetime] = None
    thread_id: Optional[str] = None

    model_config = {"frozen": True}


class ExtractionResult(BaseModel):
    """
    Output of the field extractor.

    Either {is_job_message: False} or a job message with all four fields set.
    Field aliases match the JSON keys the model is asked to return.
    """
    is_job_message: bool = Field(alias="isJobMessage")
    company: Optional[str] = None
    title: Optional[str] = None
    status: Optional[ApplicationStatus] = None
    location: Optional[str] = None

    model_config = {"frozen": True, "populate_by_name": True}

    @model_validator(mode="before")
    @classmethod
    def _ignore_fields_when_not_job(cls, data):
        # Non-job answers carry empty placeholders ("status": "") that are not validated.
        if isinstance(data, dict) and data.get("isJobMessage", data.get("is_job_message")) is False:
            return {"isJobMessage": False}
        return data

    @field_validator("is_job_message", mode="before")
    @classmethod
    def _strict_bool(cls, v):
        if not isinstance(v, bool):
            raise ValueError("isJobMessage must be a boolean")
        return v

    @model_validator(mode="after")
    def _job_fields_present(self):
        if not self.is_job_message:
            return self
        for name in ("company", "title", "location"):
            value = getattr(self, name)
            if value is None or not str(value).strip():
                raise ValueError(f"{name} is required for a job message")
        if self.status is None:
            raise ValueError("status is required for a job message")
        return self

    @classmethod
    def not_job(cls) -> "ExtractionResult":
        return cls(is_job_message=False)


class ApplicationCandidate(BaseModel):
    """Transient record built from one extracted message; either dropped as duplicate or persisted."""
    user_id: int
    company: str
    title: str
    status: ApplicationStatus
    location: str
    date_applied: date
    source_message_id: str
    confidence_score: int = 0
    source: str = "Email"
    remote_policy: Optional[str] = None
    notes: Optional[str] = None


class DuplicateCheckResult(BaseModel):
    is_duplicate: bool
    matched_id: Optional[int] = None
    similarity: float = Field(default=0.0, ge=0.0, le=1.0)
    reason: Optional[str] = None


class SyncedApplication(BaseModel):
    company: str
    title: str
    status: ApplicationStatus
    confidence_score: int


class SyncSummary(BaseModel):
    total_messages: int = 0
    job_messages: int = 0
    new_applications: int = 0
    duplicates: int = 0
    errors: int = 0
    applications: List[SyncedApplication] = []


# =============================================================================
# API
# =============================================================================

class SyncRequest(BaseModel):
    max_results: Optional[int] = Field(default=None, ge=1)
    after_date: Optional[str] = None  # YYYY-MM-DD or YYYY/MM/DD


class ConnectionStatus(BaseModel):
    connected: bool
    email: Optional[str] = None
    updated_at: Optional[datetime] = None


class GmailProfile(BaseModel):
    email: Optional[str] = None
    messages_total: Optional[int] = None
    threads_total: Optional[int] = None


class ApplicationResponse(BaseModel):
    id: int
    company: str
    title: str
    status: str
    location: str
    date_applied: date
    source: Optional[str] = None
    source_message_id: Optional[str] = None
    confidence_score: Optional[int] = None
    remote_policy: Optional[str] = None
    salary: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ApplicationUpdate(BaseModel):
    company: Optional[str] = None
    title: Optional[str] = None
    status: Optional[ApplicationStatus] = None
    location: Optional[str] = None
    date_applied: Optional[date] = None
    remote_policy: Optional[str] = None
    salary: Optional[str] = None
    notes: Optional[str] = None


class SimilarApplication(BaseModel):
    id: int
    company: str
    title: str
    status: str
    date_applied: date
    similarity: float


class PaginatedApplications(BaseModel):
    items: List[ApplicationResponse]
    total: int
    offset: int
    limit: int


class StatusHistoryEntry(BaseModel):
    old_status: Optional[str] = None
    new_status: str
    changed_at: Optional[datetime] = None

    class Config:
        from_attributes = True
