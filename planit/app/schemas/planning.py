"""
Planning board schemas.

Derived (never persisted) read models and the gesture/UI payloads exchanged
with presentation components.
"""

from typing import Optional, Union

from pydantic import BaseModel

from planit.app.schemas.entities import Order, Run


class CapacityGauge(BaseModel):
    """Utilization of one capacity dimension of a run."""
    current: float
    maximum: float
    percentage: float
    is_overloaded: bool
    fill_percentage: float  # bar width, capped at 100

    @classmethod
    def measure(cls, current: float, maximum: Optional[float]) -> Optional["CapacityGauge"]:
        """Return None when there is no maximum to measure against."""
        if maximum is None:
            return None
        percentage = (current / maximum) * 100 if maximum > 0 else 0.0
        return cls(
            current=current,
            maximum=maximum,
            percentage=percentage,
            is_overloaded=percentage > 100,
            fill_percentage=min(percentage, 100.0),
        )


class EnrichedRun(Run):
    """Run augmented with display text and capacity figures."""
    display_text: str
    total_kilos: float = 0
    total_spaces: float = 0
    max_payload: Optional[float] = None
    max_pallets: Optional[float] = None
    has_capacity: bool = False

    @property
    def payload_gauge(self) -> Optional[CapacityGauge]:
        return CapacityGauge.measure(self.total_kilos, self.max_payload)

    @property
    def pallet_gauge(self) -> Optional[CapacityGauge]:
        return CapacityGauge.measure(self.total_spaces, self.max_pallets)


class DropLocation(BaseModel):
    """Droppable zone a card left from or landed in."""
    droppable_id: str
    index: int = 0


class DragResult(BaseModel):
    """Finished drag gesture as reported by the board."""
    draggable_id: str
    source: DropLocation
    destination: Optional[DropLocation] = None


class ContextMenu(BaseModel):
    """Right-click menu position on the order list."""
    visible: bool = False
    x: int = 0
    y: int = 0


class AssignedOrder(BaseModel):
    """Order shown in the active run's detail, with the assignment holding it."""
    order: Order
    assignment_id: Union[int, str]
    pending: bool = False
