import uuid
from datetime import date
from pydantic import BaseModel, EmailStr

class PatientSummary(BaseModel):
    id: uuid.UUID
    name: str
    email: EmailStr
    gender: str | None = None
    date_of_birth: date | None = None
    blood_type: str | None = None

    class Config:
        from_attributes = True

