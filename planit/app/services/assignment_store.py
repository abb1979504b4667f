"""
Assignment Store.

Owns the order-to-run assignments held by one tab and is the only component
that creates or deletes assignments on the backend.

The cache is an immutable tuple of PendingAssignment / ConfirmedAssignment
entries. Every change replaces the tuple, so consumers can detect changes by
identity and a failed mutation can put the previous tuple back untouched.
"""

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from planit.app.api.client import ApiClient
from planit.app.core.config import Settings, settings as default_settings
from planit.app.core.exceptions import BackendError, PendingRecordError, error_message
from planit.app.models.enums import ResourceKey
from planit.app.schemas.assignment import (
    ActionResult,
    Assignment,
    AssignmentCreate,
    AssignmentEntry,
    AssignmentView,
    BulkAssignRequest,
    ConfirmedAssignment,
    PendingAssignment,
)
from planit.app.schemas.entities import Order
from planit.app.schemas.sync import SyncMessage

logger = logging.getLogger("planit.assignments")

ASSIGNMENTS_PATH = ResourceKey.ASSIGNMENTS.path


def dedupe_by_order(records: Iterable[Assignment]) -> List[Assignment]:
    """
    Keep one assignment per order, the one with the highest id.

    Two tabs racing can leave duplicates on the backend; the newest record is
    treated as the live one.
    """
    latest: Dict[int, Assignment] = {}
    for record in records:
        current = latest.get(record.order_id)
        if current is None or record.id > current.id:
            latest[record.order_id] = record

    kept = [record for record in records if latest[record.order_id] is record]
    dropped = len(records) - len(kept)
    if dropped:
        logger.warning("Dropped duplicate assignments", extra={"dropped": dropped})
    return kept


class AssignmentStore:
    """
    Args:
        api: Backend client
        channel: Optional sync channel used to announce changes to other tabs
        config: Settings override
    """

    def __init__(self, api: ApiClient, channel=None, config: Optional[Settings] = None):
        self._api = api
        self._channel = channel
        self._config = config or default_settings
        self._entries: Tuple[AssignmentEntry, ...] = ()
        self._locks: Dict[tuple, asyncio.Lock] = {}
        self._lock_users: Dict[tuple, int] = {}
        self._generation = 0
        self._fetch_task: Optional[asyncio.Task] = None
        self._subscription = None
        self._seeded = False
        self._mutations = 0
        self.error: Optional[str] = None
        self.last_fetched: Optional[float] = None

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def entries(self) -> Tuple[AssignmentEntry, ...]:
        """Current snapshot, pending entries included."""
        return self._entries

    @property
    def assignments(self) -> List[Assignment]:
        """Confirmed records only."""
        return [entry.record for entry in self._entries if isinstance(entry, ConfirmedAssignment)]

    @property
    def is_mutating(self) -> bool:
        return self._mutations > 0

    def assigned_order_ids(self) -> set:
        return {entry.order_id for entry in self._entries}

    def find(self, assignment_id) -> Optional[AssignmentEntry]:
        for entry in self._entries:
            if entry.key == assignment_id:
                return entry
        return None

    def available_orders(self, orders: Iterable[Order]) -> List[Order]:
        """Orders with status "new" that no entry (pending or confirmed) references."""
        assigned = self.assigned_order_ids()
        status = self._config.new_order_status
        return [order for order in orders if order.is_new(status) and order.id not in assigned]

    def list_assignments(self, orders: Iterable[Order] = (), runs: Iterable = ()) -> List[AssignmentView]:
        """Entries with the display fields the assignment table shows."""
        order_map = {order.id: order for order in orders}
        run_map = {run.id: run for run in runs}
        views = []
        for entry in self._entries:
            order = order_map.get(entry.order_id)
            run = run_map.get(entry.run_id)

            if order is not None:
                order_number = order.order_number or order.customer_reference or f"ID: {order.id}"
                recipient_name = order.recipient_details.name or "N/A"
            else:
                order_number = "ORDER MISSING"
                recipient_name = "N/A"

            if run is not None:
                run_text = getattr(run, "display_text", None) or f"RUN {run.id}"
            else:
                run_text = "RUN N/A"

            views.append(AssignmentView(
                key=entry.key,
                order_id=entry.order_id,
                run_id=entry.run_id,
                notes=entry.notes,
                order_number=order_number,
                run_text=run_text,
                recipient_name=recipient_name,
                pending=not entry.is_durable,
            ))
        return views

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def seed(self, records: Iterable) -> bool:
        """
        Load initial assignments once. Later calls are ignored so a stale
        initial payload never overwrites fetched state.
        """
        if self._seeded:
            return False
        parsed = self._parse(records)
        if not parsed:
            return False
        self._entries = tuple(ConfirmedAssignment(record=record) for record in dedupe_by_order(parsed))
        self._seeded = True
        return True

    def _parse(self, raw_items: Iterable) -> List[Assignment]:
        records = []
        for item in raw_items:
            if isinstance(item, Assignment):
                records.append(item)
                continue
            try:
                records.append(Assignment.model_validate(item))
            except ValidationError:
                logger.warning("Skipping malformed assignment", extra={"item": repr(item)[:200]})
        return records

    async def fetch(self) -> Optional[Tuple[AssignmentEntry, ...]]:
        """
        Re-fetch assignments; the latest call wins.

        A newer fetch cancels the older one, and a response that arrives after
        a newer fetch started is discarded.

        Returns:
            The new snapshot, or None when superseded or failed
        """
        self._generation += 1
        generation = self._generation

        if self._fetch_task is not None and not self._fetch_task.done():
            self._fetch_task.cancel()

        task = asyncio.ensure_future(self._api.get_list(ResourceKey.ASSIGNMENTS))
        self._fetch_task = task
        try:
            raw = await task
        except asyncio.CancelledError:
            if task.cancelled() and generation != self._generation:
                logger.debug("Assignments fetch superseded", extra={"generation": generation})
                return None
            raise
        except BackendError as exc:
            if generation == self._generation:
                self.error = error_message(exc, "Failed to fetch assignments.")
                logger.warning("Assignments fetch failed", extra={"status_code": exc.status_code})
            return None
        finally:
            if self._fetch_task is task:
                self._fetch_task = None

        if generation != self._generation:
            logger.debug("Discarding stale assignments response", extra={"generation": generation})
            return None

        records = dedupe_by_order(self._parse(raw))
        confirmed_orders = {record.order_id for record in records}
        # creations still in flight stay visible until they settle
        pending = tuple(
            entry for entry in self._entries
            if isinstance(entry, PendingAssignment) and entry.order_id not in confirmed_orders
        )
        self._entries = tuple(ConfirmedAssignment(record=record) for record in records) + pending
        self._seeded = True
        self.error = None
        self.last_fetched = time.monotonic()
        return self._entries

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _exclusive(self, key: tuple):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                self._mutations += 1
                try:
                    yield
                finally:
                    self._mutations -= 1
        finally:
            # holders and waiters gone: forget the lock
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    def _restore(self, previous: tuple, optimistic: tuple, keep) -> None:
        if self._entries is optimistic:
            self._entries = previous
        else:
            self._entries = tuple(entry for entry in self._entries if keep(entry))

    async def create_assignment(self, order_id: int, run_id: int, note: Optional[str] = None) -> Optional[Assignment]:
        """
        Assign an order to a run.

        A pending entry is shown immediately and swapped for the server record
        on success. On a backend rejection the pending entry is removed and
        `error` carries the backend message. Other exceptions propagate after
        the same rollback.

        Returns:
            The created assignment, or None on failure
        """
        async with self._exclusive(("order", order_id)):
            if order_id in self.assigned_order_ids():
                self.error = "Order is already assigned to a run."
                logger.info("Refusing duplicate assignment", extra={"order_id": order_id, "run_id": run_id})
                return None

            payload = AssignmentCreate(order_id=order_id, run_id=run_id, notes=note)
            pending = PendingAssignment(temp_id=f"tmp-{uuid.uuid4().hex}", payload=payload)
            previous = self._entries
            optimistic = previous + (pending,)
            self._entries = optimistic
            self.error = None

            try:
                data = await self._api.post(ASSIGNMENTS_PATH, json=payload.model_dump(exclude_none=True))
                record = Assignment.model_validate(data[0] if isinstance(data, list) else data)
            except BackendError as exc:
                self._restore(previous, optimistic, lambda entry: entry is not pending)
                self.error = error_message(exc, "Failed to create assignment.")
                logger.warning("Assignment create rejected", extra={"order_id": order_id, "run_id": run_id, "status_code": exc.status_code})
                return None
            except BaseException:
                self._restore(previous, optimistic, lambda entry: entry is not pending)
                self.error = "Failed to create assignment."
                logger.exception("Assignment create failed", extra={"order_id": order_id, "run_id": run_id})
                raise

            confirmed = ConfirmedAssignment(record=record)
            if any(isinstance(e, ConfirmedAssignment) and e.key == record.id for e in self._entries):
                # a fetch already brought the record in
                self._entries = tuple(entry for entry in self._entries if entry is not pending)
            elif any(entry is pending for entry in self._entries):
                self._entries = tuple(confirmed if entry is pending else entry for entry in self._entries)
            else:
                self._entries = self._entries + (confirmed,)

            logger.info("Assignment created", extra={"assignment_id": record.id, "order_id": order_id, "run_id": run_id})
            return record

    async def delete_assignment(self, assignment_id: int) -> bool:
        """
        Remove an assignment, reinstating it at its old position on failure.

        Returns:
            True when the backend confirmed the delete
        """
        async with self._exclusive(("assignment", assignment_id)):
            entry = self.find(assignment_id)
            if isinstance(entry, PendingAssignment):
                self.error = PendingRecordError(entry.temp_id).message
                return False

            previous = self._entries
            position = next((i for i, e in enumerate(previous) if e is entry), None)
            optimistic = tuple(e for e in previous if e is not entry) if entry is not None else previous
            self._entries = optimistic
            self.error = None

            def reinstate():
                if entry is None:
                    return
                if self._entries is optimistic:
                    self._entries = previous
                elif all(e.key != entry.key for e in self._entries):
                    entries = list(self._entries)
                    entries.insert(min(position, len(entries)), entry)
                    self._entries = tuple(entries)

            try:
                await self._api.delete(f"{ASSIGNMENTS_PATH}/{assignment_id}")
            except BackendError as exc:
                reinstate()
                self.error = error_message(exc, "Failed to delete assignment.")
                logger.warning("Assignment delete rejected", extra={"assignment_id": assignment_id, "status_code": exc.status_code})
                return False
            except BaseException:
                reinstate()
                self.error = "Failed to delete assignment."
                logger.exception("Assignment delete failed", extra={"assignment_id": assignment_id})
                raise

            logger.info("Assignment deleted", extra={"assignment_id": assignment_id})
            return True

    async def bulk_assign(self, run_id: int, order_ids: Sequence[int]) -> ActionResult:
        """
        Assign many orders to one run in a single call.

        No optimistic update: the store waits for the backend and then
        re-fetches, after a failure as well, since a partial failure leaves
        the local list unreliable.
        """
        order_ids = list(order_ids)
        if not order_ids:
            return ActionResult(success=False, message="No orders selected for assignment.")

        request = BulkAssignRequest(run_id=run_id, order_ids=order_ids)
        self._mutations += 1
        try:
            data = await self._api.post(f"{ASSIGNMENTS_PATH}/bulk", json=request.model_dump())
        except BackendError as exc:
            message = error_message(exc, "Failed to bulk assign orders.")
            self.error = message
            logger.warning("Bulk assign rejected", extra={"run_id": run_id, "count": len(order_ids), "status_code": exc.status_code})
            await self.fetch()
            return ActionResult(success=False, message=message)
        finally:
            self._mutations -= 1

        await self.fetch()
        await self.announce()

        message = None
        if isinstance(data, dict):
            message = data.get("message")
        logger.info("Bulk assign completed", extra={"run_id": run_id, "count": len(order_ids)})
        return ActionResult(
            success=True,
            message=message or f"{len(order_ids)} orders assigned successfully.",
            details={"run_id": run_id, "order_ids": order_ids},
        )

    # ------------------------------------------------------------------
    # Cross-tab
    # ------------------------------------------------------------------

    async def announce(self) -> None:
        """Tell every tab that assignments and orders changed."""
        if self._channel is None:
            return
        await self._channel.refresh_view(ResourceKey.ASSIGNMENTS.value)
        await self._channel.refresh_view(ResourceKey.ORDERS.value)

    async def bind(self, channel=None):
        """
        Re-fetch when another tab (or this one) announces assignment changes.

        Announcements are coalesced over assignment_refresh_min_interval_ms;
        one fetch runs after the burst goes quiet.
        """
        if channel is not None:
            self._channel = channel
        if self._channel is None or self._subscription is not None:
            return self._subscription
        self._subscription = await self._channel.subscribe(
            self._on_sync_message,
            views=[ResourceKey.ASSIGNMENTS.value],
            debounce_ms=self._config.assignment_refresh_min_interval_ms,
        )
        return self._subscription

    async def _on_sync_message(self, message: SyncMessage) -> None:
        logger.debug("Broadcast refresh", extra={"sync_type": message.type.value})
        await self.fetch()

    def unbind(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
