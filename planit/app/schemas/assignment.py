"""
Assignment schemas.

An assignment links one order to one run. Locally held assignments are either
pending (optimistically shown, not yet confirmed by the backend) or confirmed
(a server record), never both.
"""

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class Assignment(BaseModel):
    """Server-confirmed assignment record."""
    id: int
    order_id: int
    run_id: int
    notes: Optional[str] = None

    class Config:
        extra = "allow"


class AssignmentCreate(BaseModel):
    """Body of POST /api/assignments."""
    order_id: int
    run_id: int
    notes: Optional[str] = None


class BulkAssignRequest(BaseModel):
    """Body of POST /api/assignments/bulk."""
    run_id: int
    order_ids: List[int]


class PendingAssignment(BaseModel):
    """Optimistic placeholder awaiting backend confirmation."""
    kind: Literal["pending"] = "pending"
    temp_id: str
    payload: AssignmentCreate

    @property
    def key(self) -> str:
        return self.temp_id

    @property
    def order_id(self) -> int:
        return self.payload.order_id

    @property
    def run_id(self) -> int:
        return self.payload.run_id

    @property
    def notes(self) -> Optional[str]:
        return self.payload.notes

    @property
    def is_durable(self) -> bool:
        return False

    class Config:
        frozen = True


class ConfirmedAssignment(BaseModel):
    """Assignment known to exist on the backend."""
    kind: Literal["confirmed"] = "confirmed"
    record: Assignment

    @property
    def key(self) -> int:
        return self.record.id

    @property
    def order_id(self) -> int:
        return self.record.order_id

    @property
    def run_id(self) -> int:
        return self.record.run_id

    @property
    def notes(self) -> Optional[str]:
        return self.record.notes

    @property
    def is_durable(self) -> bool:
        return True

    class Config:
        frozen = True


AssignmentEntry = Union[PendingAssignment, ConfirmedAssignment]


class AssignmentView(BaseModel):
    """Assignment row with denormalized display fields."""
    key: Union[int, str]
    order_id: int
    run_id: int
    notes: Optional[str] = None
    order_number: str
    run_text: str
    recipient_name: str
    pending: bool = False


class ActionResult(BaseModel):
    """Outcome of a user action, carrying one human-readable message."""
    success: bool
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
