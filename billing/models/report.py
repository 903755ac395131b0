from __future__ import annotations
from pydantic import BaseModel, Field
from typing import List, Literal, Optional
from datetime import date

OutcomeStatus = Literal["generated", "skipped", "failed"]


class GenerationOutcome(BaseModel):
    recurring_id: str
    status: OutcomeStatus
    invoice_id: Optional[str] = None
    invoice_number: Optional[str] = None
    due_date: Optional[date] = None
    error: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)


class GenerationReport(BaseModel):
    as_of: date
    outcomes: List[GenerationOutcome] = Field(default_factory=list)

    @property
    def generated_count(self) -> int:
        return sum(1 for o in self.outcomes if o.status == "generated")

    @property
    def success_count(self) -> int:
        return sum(1 for o in self.outcomes if o.status != "failed")

    @property
    def fail_count(self) -> int:
        return sum(1 for o in self.outcomes if o.status == "failed")

    def summary(self) -> dict:
        return {
            "as_of": self.as_of.isoformat(),
            "processed": len(self.outcomes),
            "generated_count": self.generated_count,
            "success_count": self.success_count,
            "fail_count": self.fail_count,
            "results": [o.model_dump(mode="json") for o in self.outcomes],
        }


class StatusSyncResult(BaseModel):
    entity_type: Literal["invoice", "quotation"]
    entity_id: str
    status_changed: bool = False
    old_status: Optional[str] = None
    new_status: Optional[str] = None
    remote_status: Optional[str] = None
    error: Optional[str] = None


class StatusSyncReport(BaseModel):
    enabled: bool = True
    invoices: List[StatusSyncResult] = Field(default_factory=list)
    quotations: List[StatusSyncResult] = Field(default_factory=list)

    def summary(self) -> dict:
        changed_inv = sum(1 for r in self.invoices if r.status_changed)
        changed_q = sum(1 for r in self.quotations if r.status_changed)
        return {
            "enabled": self.enabled,
            "invoices_synced": len(self.invoices),
            "invoices_changed": changed_inv,
            "quotations_synced": len(self.quotations),
            "quotations_changed": changed_q,
            "results": {
                "invoices": [r.model_dump(mode="json") for r in self.invoices],
                "quotations": [r.model_dump(mode="json") for r in self.quotations],
            },
        }
