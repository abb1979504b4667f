"""
Drag-and-Drop Reconciliation Protocol.

Turns a finished drag gesture on the planning board into at most one
assignment creation. Only "unassigned pool -> run" moves are acted on;
taking an order off a run is an explicit delete, not a drag.
"""

import logging
import re
from typing import Awaitable, Callable, NamedTuple, Optional, Sequence, Union

from planit.app.core.config import Settings, settings as default_settings
from planit.app.models.enums import DragIntentKind
from planit.app.schemas.assignment import Assignment
from planit.app.schemas.entities import Order
from planit.app.schemas.planning import DragResult

logger = logging.getLogger("planit.dnd")

_DIGITS = re.compile(r"\d+")


def parse_numeric_id(value: Union[str, int, None]) -> Optional[int]:
    """
    Last group of digits in a zone or card id.

    "order-123" -> 123, "run-active-45" -> 45, "10" -> 10, "orders" -> None.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if not value or not isinstance(value, str):
        return None
    groups = _DIGITS.findall(value)
    if not groups:
        return None
    return int(groups[-1])


class DragIntent(NamedTuple):
    kind: DragIntentKind
    order_id: Optional[int] = None
    run_id: Optional[int] = None


NOOP = DragIntent(DragIntentKind.NOOP)
UNSUPPORTED = DragIntent(DragIntentKind.UNSUPPORTED)


class DragDropProtocol:
    """
    Args:
        store: AssignmentStore that performs the creation
        orders: Callable returning the tab's current order list
        on_refresh: Optional async callback run after a successful assignment
        config: Settings override (zone ids and prefixes)
    """

    def __init__(
        self,
        store,
        orders: Callable[[], Sequence[Order]],
        on_refresh: Optional[Callable[[], Awaitable[None]]] = None,
        config: Optional[Settings] = None,
    ):
        self._store = store
        self._orders = orders
        self._on_refresh = on_refresh
        self._config = config or default_settings

    @property
    def unassigned_zone_id(self) -> str:
        return self._config.unassigned_zone_id

    def run_zone_id(self, run_id: int) -> str:
        return f"{self._config.run_zone_prefix}{run_id}"

    def order_draggable_id(self, order_id: int) -> str:
        return f"{self._config.draggable_order_prefix}{order_id}"

    def interpret(self, result: DragResult) -> DragIntent:
        source = result.source.droppable_id
        destination = result.destination.droppable_id if result.destination else None

        if destination is None or source == destination:
            return NOOP
        if source != self.unassigned_zone_id or destination == self.unassigned_zone_id:
            return UNSUPPORTED

        order_id = parse_numeric_id(result.draggable_id)
        run_id = parse_numeric_id(destination)
        if order_id is None or run_id is None:
            return UNSUPPORTED
        return DragIntent(DragIntentKind.ASSIGN, order_id=order_id, run_id=run_id)

    async def handle_drag_end(self, result: DragResult) -> Optional[Assignment]:
        """
        React to a drop.

        Returns:
            The created assignment, or None when nothing was (or could be) assigned
        """
        intent = self.interpret(result)
        if intent.kind is DragIntentKind.NOOP:
            return None
        if intent.kind is DragIntentKind.UNSUPPORTED:
            logger.debug("Ignoring unsupported drag", extra={
                "draggable_id": result.draggable_id,
                "source": result.source.droppable_id,
                "destination": result.destination.droppable_id if result.destination else None,
            })
            return None

        if not any(order.id == intent.order_id for order in self._orders()):
            logger.warning("Dragged order not found locally", extra={"order_id": intent.order_id})
            return None

        created = await self._store.create_assignment(intent.order_id, intent.run_id)
        if created is None:
            logger.info("Drag assignment reverted", extra={"order_id": intent.order_id, "run_id": intent.run_id, "error": self._store.error})
            return None

        if self._on_refresh is not None:
            await self._on_refresh()
        await self._store.announce()
        return created
