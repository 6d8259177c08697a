import uuid
from datetime import datetime
from typing import Literal
from pydantic import BaseModel, Field
from carevault.modules.directory.schemas import PatientSummary

class SessionRequestCreate(BaseModel):
    subject_id: uuid.UUID
    label: str | None = Field(default=None, max_length=500)

class AnonymousRequestCreate(BaseModel):
    token: str = Field(..., min_length=1)
    label: str | None = Field(default=None, max_length=500)

class SessionRespond(BaseModel):
    decision: Literal["accepted", "declined"]

class SessionOut(BaseModel):
    id: uuid.UUID
    requester_id: uuid.UUID | None
    subject_id: uuid.UUID
    status: str
    request_label: str
    expires_at: datetime
    responded_at: datetime | None
    created_at: datetime

    class Config:
        from_attributes = True

class SessionStatusOut(SessionOut):
    is_expired: bool
    is_active: bool
    time_remaining_seconds: int

class MySessionOut(BaseModel):
    session_id: uuid.UUID
    patient: PatientSummary
    expires_at: datetime
    time_remaining_seconds: int
    responded_at: datetime | None

class CleanupOut(BaseModel):
    success: bool = True
    deleted: int
