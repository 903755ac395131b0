from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_EVEN
import uuid

from billing.clock import utcnow

CENT = Decimal("0.01")


def gen_id() -> str:
    return str(uuid.uuid4())


def round_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_EVEN)


class TimeStamped(BaseModel):
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def touch(self, now: datetime | None = None):
        object.__setattr__(self, "updated_at", now or utcnow())


class Document(TimeStamped):
    """Persisted row: uuid key plus the version used for compare-and-set writes."""

    id: str = Field(default_factory=gen_id)
    version: int = 0

    class Config:
        extra = "ignore"  # tolerate columns added by other tools
