"""
Planning context tests.

Exercises the board the way a tab does: start, select, drag, bulk actions,
run CRUD, refresh, and two tabs kept in step through the sync channel.
"""

import asyncio
from datetime import date

import pytest

from planit.app.core.exceptions import BackendError, ResourceNotFoundError
from planit.app.models.enums import OrderTab
from planit.app.services.planning_context import PlanningContext
from planit.app.services.preferences import PreferenceStore
from planit.app.services.resources import ResourceRepository
from planit.app.services.sync_channel import RedisBroadcastBackend, SyncChannel

from conftest import PLAN_DAY, make_api_client, seed_data


def drop(order_id, run_id):
    return {
        "draggable_id": f"order-{order_id}",
        "source": {"droppable_id": "orders", "index": 0},
        "destination": {"droppable_id": str(run_id), "index": 0},
    }


class Confirm:
    def __init__(self, answer=True):
        self.answer = answer
        self.prompts = []

    async def __call__(self, message):
        self.prompts.append(message)
        return self.answer


@pytest.mark.asyncio
async def test_start_loads_board(context_factory, backend):
    context = context_factory()
    await context.start()

    view = context.view()

    assert view.selected_date == date(2024, 5, 1)
    assert [run.id for run in view.enriched_runs] == [1, 2]
    assert [order.id for order in view.available_orders] == [1, 2]
    assert [(a.order_number, a.run_text) for a in view.assignments] == [("ORD-3", "Bob Ray - TRC-001 + TRL-001")]
    assert view.active_run is None
    assert view.auto_refresh_enabled is False
    assert view.sync_connected is True
    assert [zone.zone_name for zone in context.resources.zones] == ["Home", "North"]


@pytest.mark.asyncio
async def test_start_with_initial_data_skips_fetch(context_factory, backend):
    context = context_factory()
    await context.start(initial_data=seed_data())

    assert backend.calls == []
    assert [run.id for run in context.enriched_runs] == [1, 2]
    assert context.store.assigned_order_ids() == {3}


@pytest.mark.asyncio
async def test_run_and_order_selection(context_factory):
    context = context_factory()
    await context.start()

    context.select_run(2)
    assert context.active_run.display_text == "Bob Ray - TRC-001 + TRL-001"
    assert [(a.order.id, a.assignment_id, a.pending) for a in context.orders_for_active_run] == [(3, 1, False)]
    context.select_run(2)
    assert context.active_run_id is None

    context.toggle_order_selection(1)
    context.toggle_order_selection(2)
    context.toggle_order_selection(1)
    assert context.selected_order_ids == (2,)
    context.set_selected_orders([1, 2, 1])
    assert context.selected_order_ids == (1, 2)
    context.clear_selection()
    assert context.selected_order_ids == ()

    context.open_context_menu(120, 48)
    assert (context.context_menu.visible, context.context_menu.x) == (True, 120)
    context.close_context_menu()
    assert context.context_menu.visible is False


@pytest.mark.asyncio
async def test_drag_assigns_and_refreshes(context_factory, backend):
    context = context_factory()
    await context.start()
    runs_before = backend.count("GET", "/api/runs")

    created = await context.handle_drag_end(drop(1, 1))

    assert created.order_id == 1
    assert backend.count("GET", "/api/runs") == runs_before + 1
    run1 = context.enriched_runs[0]
    assert (run1.total_kilos, run1.total_spaces) == (400, 4)
    assert [o.id for o in context.available_orders] == [2]


@pytest.mark.asyncio
async def test_failed_drag_notifies(context_factory, backend, toasts):
    context = context_factory(notify=toasts)
    await context.start()
    backend.fail("POST", "/api/assignments", 409, {"error": "Run is full"})

    assert await context.handle_drag_end(drop(1, 1)) is None
    assert toasts == [("Run is full", "error")]
    assert [o.id for o in context.available_orders] == [1, 2]


@pytest.mark.asyncio
async def test_other_tab_sees_assignment(context_factory, wait_until):
    tab_a, tab_b = context_factory(), context_factory()
    await tab_a.start()
    await tab_b.start()

    await tab_a.handle_drag_end(drop(2, 1))

    await wait_until(lambda: 2 in tab_b.store.assigned_order_ids())
    assert [o.id for o in tab_b.available_orders] == [1]


@pytest.mark.asyncio
async def test_other_tab_reloads_runs_after_save(context_factory, backend, wait_until):
    tab_a, tab_b = context_factory(), context_factory()
    await tab_a.start()
    await tab_b.start()

    tab_a.add_new_run()
    await tab_a.save_run({"run_date": PLAN_DAY, "driver_id": 2, "truck_id": 10, "trailer_id": ""})

    await wait_until(lambda: len(tab_b.resources.runs) == 4)
    assert backend.data["runs"][-1]["trailer_id"] is None


@pytest.mark.asyncio
async def test_bulk_assign_guards_and_success(context_factory, toasts):
    context = context_factory(notify=toasts)
    await context.start()

    result = await context.bulk_assign()
    assert result.message == "Please select an active run first."

    context.select_run(1)
    result = await context.bulk_assign()
    assert result.message == "No orders selected for assignment."

    context.set_selected_orders([1, 2])
    result = await context.bulk_assign()

    assert result.success is True
    assert toasts[-1] == ("2 orders assigned to run 1.", "success")
    assert context.selected_order_ids == ()
    assert context.available_orders == []


@pytest.mark.asyncio
async def test_bulk_delete_requires_confirmation(context_factory, backend, toasts):
    declined = Confirm(answer=False)
    context = context_factory(notify=toasts, confirm=declined)
    await context.start()

    assert (await context.bulk_delete()).message == "No orders selected for deletion."

    context.set_selected_orders([1, 2])
    result = await context.bulk_delete()

    assert result.success is False
    assert declined.prompts == ["Are you sure you want to delete 2 orders? This action cannot be undone."]
    assert backend.count("DELETE", "/api/orders/bulk") == 0
    assert context.selected_order_ids == (1, 2)


@pytest.mark.asyncio
async def test_bulk_delete_without_confirm_gate(context_factory, backend, toasts):
    context = context_factory(notify=toasts)
    await context.start()
    context.set_selected_orders([1])

    assert (await context.bulk_delete()).success is False
    assert backend.count("DELETE", "/api/orders/bulk") == 0
    assert toasts[-1][1] == "error"


@pytest.mark.asyncio
async def test_bulk_delete_sends_one_request(context_factory, backend, toasts):
    context = context_factory(notify=toasts, confirm=Confirm())
    await context.start()
    context.set_selected_orders([1, 2])

    result = await context.bulk_delete()

    assert result.success is True
    assert backend.count("DELETE", "/api/orders/bulk") == 1
    assert sorted(o["id"] for o in backend.data["orders"]) == [3, 4]
    assert toasts[-1] == ("2 orders deleted.", "success")
    assert [o.id for o in context.available_orders] == []
    assert context.selected_order_ids == ()


@pytest.mark.asyncio
async def test_delete_assignment_from_context(context_factory, backend, toasts):
    context = context_factory(notify=toasts)
    await context.start()

    result = await context.delete_assignment(1)

    assert result.success is True
    assert [o.id for o in context.available_orders] == [1, 2, 3]

    backend.fail("DELETE", "/api/assignments/42", 404, {"error": "Assignment not found"})
    result = await context.delete_assignment(42)
    assert result.success is False
    assert toasts[-1] == ("Assignment not found", "error")


@pytest.mark.asyncio
async def test_save_run_validation(context_factory, backend, toasts):
    context = context_factory(notify=toasts)
    await context.start()
    context.add_new_run()

    result = await context.save_run({"run_date": PLAN_DAY, "truck_id": 10})

    assert result.success is False
    assert result.details["errors"] == {"driver_id": "Driver is required."}
    assert backend.count("POST", "/api/runs") == 0
    assert context.is_form_visible is True


@pytest.mark.asyncio
async def test_save_run_on_other_day_moves_view(context_factory, toasts):
    context = context_factory(notify=toasts)
    await context.start()
    context.select_run(1)
    context.add_new_run()

    result = await context.save_run({"run_date": "2024-05-03", "driver_id": 1, "truck_id": 10})

    assert result.message == "Run created successfully!"
    assert context.selected_date == date(2024, 5, 3)
    assert context.active_run_id is None
    assert context.is_form_visible is False
    assert [run.display_text for run in context.enriched_runs] == ["Ann Lee - RIG-001"]


@pytest.mark.asyncio
async def test_update_run(context_factory, backend, toasts):
    context = context_factory(notify=toasts)
    await context.start()
    context.edit_run(context.resources.runs[1])

    result = await context.save_run({"run_date": PLAN_DAY, "driver_id": 1, "truck_id": 10, "trailer_id": None})

    assert result.message == "Run updated successfully!"
    assert context.selected_date == date(2024, 5, 1)
    assert [run.display_text for run in context.enriched_runs] == ["Ann Lee - RIG-001", "Ann Lee - RIG-001"]


@pytest.mark.asyncio
async def test_save_run_backend_failure(context_factory, backend, toasts):
    context = context_factory(notify=toasts)
    await context.start()
    backend.fail("POST", "/api/runs", 400, {"error": "Driver double-booked"})

    result = await context.save_run({"run_date": PLAN_DAY, "driver_id": 1, "truck_id": 10})

    assert result.message == "Failed to save run: Driver double-booked"
    assert toasts[-1] == ("Failed to save run: Driver double-booked", "error")


@pytest.mark.asyncio
async def test_delete_run_confirms_with_label(context_factory, backend):
    confirm = Confirm()
    context = context_factory(confirm=confirm)
    await context.start()
    context.select_run(2)

    result = await context.delete_run(context.active_run)

    assert result.success is True
    assert confirm.prompts == ["Are you sure you want to delete run: Bob Ray - TRC-001 + TRL-001?"]
    assert context.active_run_id is None
    assert [run.id for run in context.enriched_runs] == [1]


@pytest.mark.asyncio
async def test_refresh_is_not_reentrant(context_factory, backend):
    context = context_factory()
    await context.start()
    hold = backend.hold("GET", "/api/runs")

    first = asyncio.create_task(context.trigger_refresh())
    await hold.arrived.wait()
    assert context.is_refreshing is True
    assert await context.trigger_refresh() is False

    hold.release.set()
    assert await first is True
    assert context.is_refreshing is False


@pytest.mark.asyncio
async def test_refresh_failure_notifies_and_keeps_data(context_factory, backend, toasts):
    context = context_factory(notify=toasts)
    await context.start()
    runs_before = context.resources.runs
    backend.fail("GET", "/api/runs", 500)

    assert await context.trigger_refresh() is False

    assert toasts == [("Failed to refresh PlanIt data.", "error")]
    assert context.resources.runs is runs_before


@pytest.mark.asyncio
async def test_refresh_transport_error_notifies(context_factory, toasts, mocker):
    context = context_factory(notify=toasts)
    await context.start()
    mocker.patch.object(context.resources, "load_all", side_effect=BackendError(503))

    assert await context.trigger_refresh() is False
    assert toasts == [("Failed to refresh PlanIt data.", "error")]


@pytest.mark.asyncio
async def test_auto_refresh_toggle_is_persisted(context_factory, backend, redis_mock, wait_until):
    context = context_factory()
    await context.start()
    assert context.auto_refresh_running is False

    await context.set_auto_refresh_enabled(True)

    assert redis_mock.store["planit:prefs:planit_autoRefreshEnabled"] == "true"
    assert context.auto_refresh_running is True
    polls = backend.count("GET", "/api/orders")
    await wait_until(lambda: backend.count("GET", "/api/orders") > polls)

    await context.set_auto_refresh_enabled(False)
    assert context.auto_refresh_running is False
    assert redis_mock.store["planit:prefs:planit_autoRefreshEnabled"] == "false"

    await context.set_auto_refresh_enabled(True)
    next_tab = context_factory()
    await next_tab.start()
    assert next_tab.auto_refresh_enabled is True


@pytest.mark.asyncio
async def test_preference_storage_outage_uses_default(context_factory, redis_mock):
    redis_mock.fail = True
    context = context_factory()
    await context.start()

    assert context.auto_refresh_enabled is False
    await context.set_auto_refresh_enabled(True)
    assert context.auto_refresh_running is True


@pytest.mark.asyncio
async def test_close_stops_everything(context_factory, channel_factory):
    context = context_factory()
    await context.start()
    await context.set_auto_refresh_enabled(True)

    await context.close()

    assert context.auto_refresh_running is False
    assert context.channel.subscriptions == ()


@pytest.mark.asyncio
async def test_drag_scenario_updates_run_capacity(context_factory, backend, mocker):
    backend.data["runs"].append({"id": 10, "run_date": PLAN_DAY, "driver_id": 1, "truck_id": 10})
    backend.data["orders"].append({
        "id": 5, "order_number": "ORD-5", "status": "new",
        "cargo_details": {"total_kilos": 200, "total_spaces": 2},
    })
    context = context_factory()
    await context.start()
    spy = mocker.spy(context.store, "create_assignment")

    await context.handle_drag_end(drop(5, 10))

    spy.assert_called_once_with(5, 10)
    run = next(r for r in context.enriched_runs if r.id == 10)
    assert (run.total_kilos, run.total_spaces) == (200, 2)
    assert (run.max_payload, run.max_pallets) == (1000, 10)


@pytest.mark.asyncio
async def test_bulk_assign_without_active_run_stays_offline(context_factory, backend):
    context = context_factory()
    await context.start()
    context.set_selected_orders([7, 8])
    calls_before = len(backend.calls)

    result = await context.bulk_assign()

    assert result.message == "Please select an active run first."
    assert len(backend.calls) == calls_before


@pytest.mark.asyncio
async def test_edit_run_by_id(context_factory):
    context = context_factory()
    await context.start()

    context.edit_run(2)
    assert context.editing_run.id == 2
    assert context.is_form_visible is True

    with pytest.raises(ResourceNotFoundError):
        context.edit_run(999)
    context.cancel_form()
    assert context.editing_run is None


def starts_with_ab(post_code, zone):
    return bool(post_code) and post_code.startswith("AB")


@pytest.mark.asyncio
async def test_orders_for_tab(context_factory):
    context = context_factory()
    await context.start()

    assert [o.id for o in context.orders_for_tab("delivery")] == [1]
    assert [o.id for o in context.orders_for_tab(OrderTab.COLLECTIONS)] == [2]
    assert [o.id for o in context.orders_for_tab(OrderTab.DELIVERY, in_zone=starts_with_ab)] == [1]
    assert context.orders_for_tab(OrderTab.COLLECTIONS, in_zone=starts_with_ab) == []

    await context.handle_drag_end(drop(1, 1))
    assert context.orders_for_tab(OrderTab.DELIVERY) == []

    context.set_selected_date("2024-05-02")
    assert context.orders_for_tab(OrderTab.COLLECTIONS) == []


@pytest.mark.asyncio
async def test_stale_resource_failure_is_discarded(api_client, backend):
    repository = ResourceRepository(api_client)
    hold = backend.hold("GET", "/api/runs")

    older = asyncio.create_task(repository.refresh("runs"))
    await hold.arrived.wait()
    assert await repository.refresh("runs") is True

    backend.fail("GET", "/api/runs", 500, {"error": "boom"})
    hold.release.set()

    assert await older is False
    assert repository.errors == {}
    assert [run.id for run in repository.runs] == [1, 2, 3]


@pytest.mark.asyncio
async def test_unreachable_sync_transport_leaves_tab_standalone(backend, redis_mock, test_settings):
    redis_mock.fail = True
    channel = SyncChannel(name="offline", backend=RedisBroadcastBackend(redis_mock), config=test_settings)

    async with make_api_client(backend, test_settings) as client:
        context = PlanningContext(
            client,
            channel=channel,
            preferences=PreferenceStore(redis_client=redis_mock),
            config=test_settings,
            selected_date=PLAN_DAY,
        )
        await context.start()

        assert context.view().sync_connected is False
        assert channel.subscriptions == ()
        assert [run.id for run in context.enriched_runs] == [1, 2]
        await context.close()
