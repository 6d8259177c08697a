import uuid
from datetime import datetime
from pydantic import BaseModel
from carevault.modules.directory.schemas import PatientSummary

class IssuedCapability(BaseModel):
    ok: bool = True
    token: str
    share_url: str
    expires_at: datetime
    expired: int = 0  # previously active tokens retired by this call

class ResolvedCapability(BaseModel):
    subject_id: uuid.UUID
    expires_at: datetime
    scope: str = "read"

class CapabilityResolveOut(BaseModel):
    success: bool = True
    subject_id: uuid.UUID
    scope: str
    expires_at: datetime
    patient: PatientSummary

class CapabilityValidateOut(BaseModel):
    valid: bool
    reason: str | None = None
    expires_at: datetime | None = None
    subject_id: uuid.UUID | None = None

class InvalidateOut(BaseModel):
    ok: bool = True
    expired: int
