"""
Capacity Enrichment Engine.

Derives enriched runs (label, cargo totals, capacity bounds) from raw runs,
vehicles, orders and assignments. Everything here is a pure derivation.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from planit.app.schemas.entities import Driver, Order, Run, Trailer, Truck
from planit.app.schemas.planning import EnrichedRun


@dataclass(frozen=True)
class LookupIndex:
    """Id to entity maps, rebuilt whenever an input list changes."""
    drivers: Mapping[int, Driver] = field(default_factory=dict)
    trucks: Mapping[int, Truck] = field(default_factory=dict)
    trailers: Mapping[int, Trailer] = field(default_factory=dict)
    orders: Mapping[int, Order] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        drivers: Iterable[Driver] = (),
        trucks: Iterable[Truck] = (),
        trailers: Iterable[Trailer] = (),
        orders: Iterable[Order] = (),
    ) -> "LookupIndex":
        return cls(
            drivers={d.id: d for d in drivers},
            trucks={t.id: t for t in trucks},
            trailers={t.id: t for t in trailers},
            orders={o.id: o for o in orders},
        )


def group_assignments_by_run(assignments: Iterable) -> Dict[int, list]:
    """Map run_id -> assignments on that run, in input order."""
    grouped: Dict[int, list] = {}
    for assignment in assignments:
        grouped.setdefault(assignment.run_id, []).append(assignment)
    return grouped


def build_display_text(driver: Optional[Driver], truck: Optional[Truck], trailer: Optional[Trailer]) -> str:
    display_driver = f"{driver.first_name} {driver.last_name}" if driver else "No Driver"
    display_truck = (truck.registration_plate if truck else None) or "No Truck"
    if trailer:
        return f"{display_driver} - {display_truck} + {trailer.registration_plate}"
    return f"{display_driver} - {display_truck}"


def resolve_capacity(truck: Optional[Truck], trailer: Optional[Trailer]) -> Tuple[bool, Optional[float], Optional[float]]:
    """
    Capacity bounds for a vehicle combination.

    A rigid truck carries its own capacity; a tractor only has capacity
    through an attached trailer.

    Returns:
        (has_capacity, max_payload, max_pallets)
    """
    if truck is not None and truck.is_rigid:
        return True, truck.max_payload_kg, truck.pallet_capacity
    if truck is not None and truck.is_tractor and trailer is not None:
        return True, trailer.max_payload_kg, trailer.max_spaces
    return False, None, None


def enrich_run(run: Run, index: LookupIndex, run_assignments: Sequence) -> EnrichedRun:
    driver = index.drivers.get(run.driver_id) if run.driver_id is not None else None
    truck = index.trucks.get(run.truck_id) if run.truck_id is not None else None
    trailer = index.trailers.get(run.trailer_id) if run.trailer_id else None

    total_kilos = 0.0
    total_spaces = 0.0
    for assignment in run_assignments:
        order = index.orders.get(assignment.order_id)
        if order is None:
            continue
        total_kilos += order.cargo_details.total_kilos
        total_spaces += order.cargo_details.total_spaces

    has_capacity, max_payload, max_pallets = resolve_capacity(truck, trailer)

    data = run.model_dump()
    data.update(
        display_text=build_display_text(driver, truck, trailer),
        total_kilos=total_kilos,
        total_spaces=total_spaces,
        max_payload=max_payload,
        max_pallets=max_pallets,
        has_capacity=has_capacity,
    )
    return EnrichedRun.model_validate(data)


def enrich_runs(
    runs: Iterable[Run],
    drivers: Iterable[Driver],
    trucks: Iterable[Truck],
    trailers: Iterable[Trailer],
    assignments_by_run: Mapping[int, Sequence],
    orders: Iterable[Order],
    selected_date: Union[date, str],
    index: Optional[LookupIndex] = None,
) -> List[EnrichedRun]:
    """
    Enrich the runs scheduled on `selected_date`.

    Args:
        runs: Raw runs
        drivers, trucks, trailers, orders: Entities resolved through lookups
        assignments_by_run: Output of group_assignments_by_run
        selected_date: Day in view; matched as an ISO prefix of run_date
        index: Prebuilt lookups, built from the lists when omitted

    Returns:
        Enriched runs for the day, in input order
    """
    index = index or LookupIndex.build(drivers, trucks, trailers, orders)
    return [
        enrich_run(run, index, assignments_by_run.get(run.id, ()))
        for run in runs
        if run.is_on(selected_date)
    ]


class CapacityEngine:
    """
    Memoizing front for enrich_runs.

    The memo key is the identity of each input collection plus the selected
    date. Callers replace collections instead of mutating them, so a new
    object means new data.
    """

    def __init__(self):
        self._index_key: Optional[tuple] = None
        self._index: Optional[LookupIndex] = None
        self._result_key: Optional[tuple] = None
        self._result: List[EnrichedRun] = []
        # keeps the keyed inputs alive so their ids are not reused
        self._pinned: tuple = ()

    def index_for(self, drivers, trucks, trailers, orders) -> LookupIndex:
        key = (id(drivers), id(trucks), id(trailers), id(orders))
        if self._index is None or key != self._index_key:
            self._index = LookupIndex.build(drivers, trucks, trailers, orders)
            self._index_key = key
        return self._index

    def enrich(self, runs, drivers, trucks, trailers, assignments, orders, selected_date) -> List[EnrichedRun]:
        key = (id(runs), id(drivers), id(trucks), id(trailers), id(assignments), id(orders), str(selected_date))
        if self._result_key == key:
            return self._result

        index = self.index_for(drivers, trucks, trailers, orders)
        self._result = enrich_runs(
            runs,
            drivers,
            trucks,
            trailers,
            group_assignments_by_run(assignments),
            orders,
            selected_date,
            index=index,
        )
        self._result_key = key
        self._pinned = (runs, drivers, trucks, trailers, assignments, orders)
        return self._result
