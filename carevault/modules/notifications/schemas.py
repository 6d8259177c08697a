import uuid
from datetime import datetime
from typing import Literal
from pydantic import BaseModel, Field

class NotificationOut(BaseModel):
    id: uuid.UUID
    recipient_id: uuid.UUID
    recipient_role: str
    sender_id: str
    sender_role: str
    kind: str
    title: str
    body: str
    payload: dict
    read: bool
    read_at: datetime | None
    created_at: datetime

    class Config:
        from_attributes = True

class UnreadCountOut(BaseModel):
    count: int

class MarkAllReadOut(BaseModel):
    success: bool = True
    updated: int

class PushTokenIn(BaseModel):
    token: str = Field(..., min_length=1, max_length=512)

class PushTokenOut(BaseModel):
    success: bool = True
    role: str

class _Message(BaseModel):
    role: Literal["patient", "doctor"] = "patient"
    title: str = Field(..., min_length=1, max_length=200)
    body: str = Field(..., min_length=1, max_length=2000)
    data: dict = Field(default_factory=dict)

class SendIn(_Message):
    user_id: uuid.UUID

class BulkSendIn(_Message):
    user_ids: list[uuid.UUID] = Field(..., min_length=1, max_length=500)

class SendAllIn(_Message):
    pass

class SendOut(BaseModel):
    success: bool = True
    notification_id: uuid.UUID
    recipient_id: uuid.UUID
    push_registered: bool

class BulkSendOut(BaseModel):
    success: bool = True
    total: int
    recorded: int
    recipients: list[uuid.UUID]

class SendAllOut(BaseModel):
    success: bool = True
    total: int
