from pydantic import BaseModel, EmailStr, Field
from typing import List
from .common import gen_id


class Recipient(BaseModel):
    email: EmailStr
    name: str | None = None


class Project(BaseModel):
    """Read-only view of a dashboard project; this core never writes it."""

    id: str = Field(default_factory=gen_id)
    name: str
    recipients: List[Recipient] = Field(default_factory=list)
    accounting_contact_id: str | None = None

    class Config:
        extra = "ignore"
