"""
Planning Context.

Per-tab orchestrator of the PlanIt board. Holds the UI selection state,
wires user actions to the assignment store, run service and sync channel,
and exposes one read model (enriched runs, available orders, assignments)
to presentation code.
"""

import asyncio
import contextlib
import inspect
import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Awaitable, Callable, Iterable, List, Mapping, Optional, Tuple, Union

import httpx

from planit.app.api.client import ApiClient
from planit.app.core.config import Settings, settings as default_settings
from planit.app.core.exceptions import BackendError, PlanningValidationError, ResourceNotFoundError, error_message
from planit.app.models.enums import DragIntentKind, OrderTab, ResourceKey, SyncMessageType
from planit.app.schemas.assignment import ActionResult, Assignment, AssignmentView
from planit.app.schemas.entities import Order, Run
from planit.app.schemas.planning import AssignedOrder, ContextMenu, DragResult, EnrichedRun
from planit.app.schemas.sync import SyncMessage
from planit.app.services.assignment_store import AssignmentStore
from planit.app.services.capacity import CapacityEngine
from planit.app.services.drag_drop import DragDropProtocol
from planit.app.services.order_filters import ZonePredicate, filter_orders_for_day, find_home_zone
from planit.app.services.preferences import PreferenceStore
from planit.app.services.resources import ResourceRepository
from planit.app.services.run_service import RunService
from planit.app.services.sync_channel import SyncChannel, get_sync_channel

logger = logging.getLogger("planit.context")

Notifier = Callable[[str, str], None]
Confirmer = Callable[[str], Union[bool, Awaitable[bool]]]

ORDERS_BULK_PATH = f"{ResourceKey.ORDERS.path}/bulk"


def _log_notifier(message: str, level: str = "info") -> None:
    logger.log(logging.ERROR if level == "error" else logging.INFO, message, extra={"toast_level": level})


def _as_date(value: Union[date, str, None]) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


@dataclass(frozen=True)
class PlanningView:
    """Snapshot handed to presentation components."""
    selected_date: date
    active_run_id: Optional[int]
    selected_order_ids: Tuple[int, ...]
    context_menu: ContextMenu
    is_form_visible: bool
    editing_run: Optional[Run]
    is_refreshing: bool
    auto_refresh_enabled: bool
    sync_connected: bool
    enriched_runs: List[EnrichedRun]
    available_orders: List[Order]
    assignments: List[AssignmentView]
    active_run: Optional[EnrichedRun]
    orders_for_active_run: List[AssignedOrder]
    error: Optional[str]


class PlanningContext:
    """
    Args:
        api: Backend client for this tab
        channel: Sync channel; the process-wide one when omitted
        preferences: Storage for the auto-refresh toggle
        notify: Toast callback, notify(message, level) with level
            "success" or "error"
        confirm: Confirmation gate for destructive actions; returns (or
            resolves to) True to proceed
        config: Settings override
        selected_date: Day initially in view, today by default
    """

    def __init__(
        self,
        api: ApiClient,
        channel: Optional[SyncChannel] = None,
        preferences: Optional[PreferenceStore] = None,
        notify: Optional[Notifier] = None,
        confirm: Optional[Confirmer] = None,
        config: Optional[Settings] = None,
        selected_date: Union[date, str, None] = None,
    ):
        self._config = config or default_settings
        self.api = api
        self.channel = channel if channel is not None else get_sync_channel(self._config)
        self.preferences = preferences or PreferenceStore()
        self.resources = ResourceRepository(api)
        self.store = AssignmentStore(api, channel=self.channel, config=self._config)
        self.runs = RunService(api)
        self.engine = CapacityEngine()
        self.dnd = DragDropProtocol(
            self.store,
            orders=lambda: self.resources.orders,
            on_refresh=self.trigger_refresh,
            config=self._config,
        )
        self._notify = notify or _log_notifier
        self._confirm = confirm

        # UI state
        self.selected_date: date = _as_date(selected_date) or date.today()
        self.active_run_id: Optional[int] = None
        self.selected_order_ids: Tuple[int, ...] = ()
        self.context_menu = ContextMenu()
        self.editing_run: Optional[Run] = None
        self.is_form_visible = False
        self.auto_refresh_enabled = self._config.auto_refresh_default
        self.is_refreshing = False
        self.sync_connected = False

        self._refresh_busy = False
        self._cooldown_handle: Optional[asyncio.TimerHandle] = None
        self._auto_refresh_task: Optional[asyncio.Task] = None
        self._dashboard_subscription = None
        self._started = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, initial_data: Optional[Mapping[str, Iterable]] = None) -> None:
        """
        Mount the board: read the persisted toggle, load data, subscribe to
        the sync channel and start auto-refresh when enabled.

        An unreachable sync transport leaves the tab working on its own;
        auto-refresh is then the only way it sees other tabs' changes.
        """
        if self._started:
            return

        self.auto_refresh_enabled = await self.preferences.get_bool(
            self._config.auto_refresh_preference_key,
            self._config.auto_refresh_default,
        )

        if initial_data:
            self.resources.seed(initial_data)
            self.store.seed(initial_data.get(ResourceKey.ASSIGNMENTS.value) or [])
        else:
            await self._reload()

        self.sync_connected = await self.channel.ping()
        if self.sync_connected:
            await self.store.bind(self.channel)
            self._dashboard_subscription = await self.channel.subscribe(
                self._on_sync_message,
                debounce_ms=self._config.sync_debounce_ms,
            )
        else:
            logger.warning("Sync transport unreachable, other tabs will not be followed", extra={"channel": self.channel.name})
        self._started = True
        self._restart_auto_refresh()
        logger.info("PlanIt context started", extra={"selected_date": self.selected_date.isoformat(), "auto_refresh": self.auto_refresh_enabled})

    async def close(self) -> None:
        """Unmount: stop polling and timers and drop subscriptions."""
        await self._stop_auto_refresh()
        if self._cooldown_handle is not None:
            self._cooldown_handle.cancel()
            self._cooldown_handle = None
        self._refresh_busy = False
        self.is_refreshing = False
        self.store.unbind()
        if self._dashboard_subscription is not None:
            self._dashboard_subscription.cancel()
            self._dashboard_subscription = None
        self._started = False

    async def __aenter__(self) -> "PlanningContext":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def _reload(self) -> None:
        await asyncio.gather(self.resources.load_all(), self.store.fetch())

    async def trigger_refresh(self) -> bool:
        """
        Re-fetch everything the board shows.

        A refresh already in flight (or still cooling down) suppresses this
        call. Failures are reported through notify, never raised.

        Returns:
            True when a refresh ran and succeeded
        """
        if self._refresh_busy:
            logger.debug("Refresh already in progress")
            return False

        self._refresh_busy = True
        self.is_refreshing = True
        try:
            await self._reload()
        except (BackendError, httpx.HTTPError):
            logger.exception("Error during PlanIt refresh")
            self._notify("Failed to refresh PlanIt data.", "error")
            return False
        finally:
            self._schedule_cooldown()

        if self.resources.errors or self.store.error:
            logger.warning("PlanIt refresh incomplete", extra={
                "resources": sorted(key.value for key in self.resources.errors),
                "assignments_error": self.store.error,
            })
            self._notify("Failed to refresh PlanIt data.", "error")
            return False
        return True

    def _schedule_cooldown(self) -> None:
        cooldown = self._config.refresh_cooldown_seconds
        if cooldown <= 0:
            self._end_refresh()
            return
        self._cooldown_handle = asyncio.get_running_loop().call_later(cooldown, self._end_refresh)

    def _end_refresh(self) -> None:
        self._cooldown_handle = None
        self._refresh_busy = False
        self.is_refreshing = False

    async def set_auto_refresh_enabled(self, enabled: bool) -> None:
        """Flip and persist the toggle; the poller is rebuilt either way."""
        self.auto_refresh_enabled = bool(enabled)
        await self.preferences.set_bool(self._config.auto_refresh_preference_key, self.auto_refresh_enabled)
        if self._started:
            await self._stop_auto_refresh()
            self._restart_auto_refresh()

    def _restart_auto_refresh(self) -> None:
        if self._auto_refresh_task is not None:
            self._auto_refresh_task.cancel()
            self._auto_refresh_task = None
        if self.auto_refresh_enabled:
            self._auto_refresh_task = asyncio.create_task(self._auto_refresh_loop())

    async def _stop_auto_refresh(self) -> None:
        task, self._auto_refresh_task = self._auto_refresh_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    @property
    def auto_refresh_running(self) -> bool:
        return self._auto_refresh_task is not None and not self._auto_refresh_task.done()

    async def _auto_refresh_loop(self) -> None:
        interval = self._config.auto_refresh_interval_seconds
        while True:
            await asyncio.sleep(interval)
            logger.debug("PlanIt auto-refresh tick")
            await self.trigger_refresh()

    async def _on_sync_message(self, message: SyncMessage) -> None:
        if message.type is SyncMessageType.REFRESH_ALL:
            await self.resources.load_all()
            return
        if message.view == ResourceKey.ASSIGNMENTS.value:
            # the store's own subscription re-fetches assignments
            return
        if self.resources.tracks(message.view):
            await self.resources.refresh(message.view)

    # ------------------------------------------------------------------
    # Read model
    # ------------------------------------------------------------------

    @property
    def enriched_runs(self) -> List[EnrichedRun]:
        return self.engine.enrich(
            self.resources.runs,
            self.resources.drivers,
            self.resources.trucks,
            self.resources.trailers,
            self.store.entries,
            self.resources.orders,
            self.selected_date,
        )

    @property
    def available_orders(self) -> List[Order]:
        return self.store.available_orders(self.resources.orders)

    @property
    def assignments(self) -> List[AssignmentView]:
        return self.store.list_assignments(self.resources.orders, self.enriched_runs)

    @property
    def active_run(self) -> Optional[EnrichedRun]:
        if self.active_run_id is None:
            return None
        return next((run for run in self.enriched_runs if run.id == self.active_run_id), None)

    @property
    def orders_for_active_run(self) -> List[AssignedOrder]:
        run = self.active_run
        if run is None:
            return []
        order_map = {order.id: order for order in self.resources.orders}
        assigned = []
        for entry in self.store.entries:
            if entry.run_id != run.id:
                continue
            order = order_map.get(entry.order_id)
            if order is not None:
                assigned.append(AssignedOrder(order=order, assignment_id=entry.key, pending=not entry.is_durable))
        return assigned

    def orders_for_tab(self, tab: Union[OrderTab, str], in_zone: Optional[ZonePredicate] = None) -> List[Order]:
        """
        Available orders listed under a tab for the selected day.

        With a postcode predicate, only orders whose address falls in the
        home zone are kept; without one (or without a home zone) the day
        filter alone applies.
        """
        return filter_orders_for_day(
            self.available_orders,
            tab,
            self.selected_date,
            home_zone=find_home_zone(self.resources.zones),
            in_zone=in_zone,
        )

    def view(self) -> PlanningView:
        return PlanningView(
            selected_date=self.selected_date,
            active_run_id=self.active_run_id,
            selected_order_ids=self.selected_order_ids,
            context_menu=self.context_menu,
            is_form_visible=self.is_form_visible,
            editing_run=self.editing_run,
            is_refreshing=self.is_refreshing,
            auto_refresh_enabled=self.auto_refresh_enabled,
            sync_connected=self.sync_connected,
            enriched_runs=self.enriched_runs,
            available_orders=self.available_orders,
            assignments=self.assignments,
            active_run=self.active_run,
            orders_for_active_run=self.orders_for_active_run,
            error=self.store.error,
        )

    # ------------------------------------------------------------------
    # Selection state
    # ------------------------------------------------------------------

    def set_selected_date(self, day: Union[date, str]) -> None:
        parsed = _as_date(day)
        if parsed is None:
            raise PlanningValidationError(f"Invalid date: {day}")
        self.selected_date = parsed

    def select_run(self, run_id: int) -> None:
        """Clicking the active run again deselects it."""
        self.active_run_id = None if self.active_run_id == run_id else run_id

    def deselect_run(self) -> None:
        self.active_run_id = None

    def toggle_order_selection(self, order_id: int) -> None:
        if order_id in self.selected_order_ids:
            self.selected_order_ids = tuple(i for i in self.selected_order_ids if i != order_id)
        else:
            self.selected_order_ids = self.selected_order_ids + (order_id,)

    def set_selected_orders(self, order_ids: Iterable[int]) -> None:
        self.selected_order_ids = tuple(dict.fromkeys(order_ids))

    def clear_selection(self) -> None:
        self.selected_order_ids = ()

    def open_context_menu(self, x: int, y: int) -> None:
        self.context_menu = ContextMenu(visible=True, x=x, y=y)

    def close_context_menu(self) -> None:
        self.context_menu = ContextMenu()

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def edit_run(self, run: Union[Run, int]) -> None:
        if not isinstance(run, Run):
            found = next((r for r in self.resources.runs if r.id == run), None)
            if found is None:
                raise ResourceNotFoundError("Run", run)
            run = found
        self.editing_run = run
        self.is_form_visible = True

    def add_new_run(self) -> None:
        self.editing_run = None
        self.is_form_visible = True

    def cancel_form(self) -> None:
        self.editing_run = None
        self.is_form_visible = False

    async def save_run(self, run_data: Mapping[str, Any]) -> ActionResult:
        """
        Create or update the run in the form.

        Saving a run for another day moves the view to that day and clears
        the active run, since the run would otherwise drop out of view.
        """
        editing = self.editing_run
        try:
            if editing is not None:
                await self.runs.update(editing.id, run_data)
                message = "Run updated successfully!"
            else:
                await self.runs.create(run_data)
                message = "Run created successfully!"
        except PlanningValidationError as exc:
            self._notify(exc.message, "error")
            return ActionResult(success=False, message=exc.message, details=exc.details)
        except BackendError as exc:
            message = f"Failed to save run: {exc.message}"
            logger.warning("Run save rejected", extra={"status_code": exc.status_code})
            self._notify(message, "error")
            return ActionResult(success=False, message=message)

        self._notify(message, "success")
        self.cancel_form()
        await self.trigger_refresh()
        await self.channel.refresh_view(ResourceKey.RUNS.value)

        new_date = _as_date(run_data.get("run_date"))
        if new_date is not None and new_date != self.selected_date:
            self.selected_date = new_date
            self.active_run_id = None
        return ActionResult(success=True, message=message)

    async def delete_run(self, run: Run) -> ActionResult:
        label = getattr(run, "display_text", None) or f"RUN {run.id}"
        if not await self._ask(f"Are you sure you want to delete run: {label}?"):
            return ActionResult(success=False, message="Run deletion cancelled.")

        try:
            await self.runs.delete(run.id)
        except BackendError as exc:
            message = error_message(exc, "Failed to delete run.")
            self._notify(message, "error")
            return ActionResult(success=False, message=message)

        if self.active_run_id == run.id:
            self.active_run_id = None
        message = f'Run "{label}" deleted.'
        self._notify(message, "success")
        await self.trigger_refresh()
        await self.channel.refresh_view(ResourceKey.RUNS.value)
        await self.channel.refresh_view(ResourceKey.ASSIGNMENTS.value)
        return ActionResult(success=True, message=message)

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------

    async def handle_drag_end(self, result: Union[DragResult, Mapping[str, Any]]) -> Optional[Assignment]:
        if not isinstance(result, DragResult):
            result = DragResult.model_validate(result)
        self.store.error = None
        created = await self.dnd.handle_drag_end(result)
        if created is None and self.dnd.interpret(result).kind is DragIntentKind.ASSIGN and self.store.error:
            self._notify(self.store.error, "error")
        return created

    async def delete_assignment(self, assignment_id: int) -> ActionResult:
        if not await self.store.delete_assignment(assignment_id):
            message = self.store.error or "Failed to delete assignment."
            self._notify(message, "error")
            return ActionResult(success=False, message=message)

        await self.store.announce()
        await self.trigger_refresh()
        return ActionResult(success=True, message="Assignment deleted.")

    async def bulk_assign(self) -> ActionResult:
        """Assign every selected order to the active run."""
        if self.active_run_id is None:
            return self._reject("Please select an active run first.")
        if not self.selected_order_ids:
            return self._reject("No orders selected for assignment.")

        result = await self.store.bulk_assign(self.active_run_id, list(self.selected_order_ids))
        if not result.success:
            self._notify(result.message, "error")
            return result

        self._notify(result.message, "success")
        self.clear_selection()
        await self.trigger_refresh()
        return result

    async def bulk_delete(self) -> ActionResult:
        """Delete every selected order after confirmation, in one call."""
        if not self.selected_order_ids:
            return self._reject("No orders selected for deletion.")

        ids = list(self.selected_order_ids)
        prompt = f"Are you sure you want to delete {len(ids)} orders? This action cannot be undone."
        if not await self._ask(prompt):
            return ActionResult(success=False, message="Bulk delete cancelled.")

        try:
            await self.api.delete(ORDERS_BULK_PATH, json={"ids": ids})
        except BackendError as exc:
            message = error_message(exc, "Failed to delete orders.")
            logger.warning("Bulk delete rejected", extra={"count": len(ids), "status_code": exc.status_code})
            self._notify(message, "error")
            return ActionResult(success=False, message=message)

        message = f"{len(ids)} orders deleted."
        self._notify(message, "success")
        self.clear_selection()
        await self.trigger_refresh()
        await self.channel.refresh_view(ResourceKey.ORDERS.value)
        await self.channel.refresh_view(ResourceKey.ASSIGNMENTS.value)
        return ActionResult(success=True, message=message, details={"ids": ids})

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _reject(self, message: str) -> ActionResult:
        self._notify(message, "error")
        return ActionResult(success=False, message=message)

    async def _ask(self, message: str) -> bool:
        if self._confirm is None:
            self._notify("Delete confirmation is not configured.", "error")
            return False
        answer = self._confirm(message)
        if inspect.isawaitable(answer):
            answer = await answer
        return bool(answer)
