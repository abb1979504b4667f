"""
Planning resource repository.

Loads the backend lists the planning board reads (orders, runs, drivers,
trucks, trailers, zones) and keeps the last good copy of each. Lists are
replaced, never mutated, so identity changes signal new data.
"""

import asyncio
import logging
from typing import Dict, Iterable, List, Mapping, Optional, Type

from pydantic import BaseModel, ValidationError

from planit.app.api.client import ApiClient
from planit.app.core.exceptions import BackendError
from planit.app.models.enums import ResourceKey
from planit.app.schemas.entities import Driver, Order, Run, Trailer, Truck, Zone

logger = logging.getLogger("planit.resources")

RESOURCE_MODELS: Dict[ResourceKey, Type[BaseModel]] = {
    ResourceKey.ORDERS: Order,
    ResourceKey.RUNS: Run,
    ResourceKey.DRIVERS: Driver,
    ResourceKey.TRUCKS: Truck,
    ResourceKey.TRAILERS: Trailer,
    ResourceKey.ZONES: Zone,
}

PLANNING_RESOURCES = tuple(RESOURCE_MODELS)


def parse_items(key: ResourceKey, raw_items: Iterable) -> List[BaseModel]:
    """Validate raw items, skipping (and logging) the malformed ones."""
    model = RESOURCE_MODELS[key]
    items = []
    for item in raw_items:
        if isinstance(item, model):
            items.append(item)
            continue
        try:
            items.append(model.model_validate(item))
        except ValidationError:
            logger.warning("Skipping malformed item", extra={"resource": key.value, "item": repr(item)[:200]})
    return items


class ResourceRepository:

    def __init__(self, api: ApiClient, resources: Iterable[ResourceKey] = PLANNING_RESOURCES):
        self._api = api
        self._resources = tuple(ResourceKey(key) for key in resources)
        self._data: Dict[ResourceKey, list] = {key: [] for key in self._resources}
        self._generations: Dict[ResourceKey, int] = {key: 0 for key in self._resources}
        self.errors: Dict[ResourceKey, str] = {}

    def tracks(self, view: str) -> bool:
        return view in {key.value for key in self._resources}

    def get(self, key) -> list:
        return self._data[ResourceKey(key)]

    @property
    def orders(self) -> List[Order]:
        return self._data[ResourceKey.ORDERS]

    @property
    def runs(self) -> List[Run]:
        return self._data[ResourceKey.RUNS]

    @property
    def drivers(self) -> List[Driver]:
        return self._data[ResourceKey.DRIVERS]

    @property
    def trucks(self) -> List[Truck]:
        return self._data[ResourceKey.TRUCKS]

    @property
    def trailers(self) -> List[Trailer]:
        return self._data[ResourceKey.TRAILERS]

    @property
    def zones(self) -> List[Zone]:
        return self._data[ResourceKey.ZONES]

    def seed(self, initial: Mapping[str, Iterable]) -> None:
        """Populate from data the host already holds (e.g. a pop-out window)."""
        for name, raw_items in initial.items():
            try:
                key = ResourceKey(name)
            except ValueError:
                continue
            if key in self._data and raw_items is not None:
                self._data[key] = parse_items(key, raw_items)

    async def refresh(self, key) -> bool:
        """
        Re-fetch one resource.

        Returns:
            True when new data was applied; False when the backend rejected
            the request (previous list kept) or a newer refresh overtook this one
        """
        key = ResourceKey(key)
        self._generations[key] += 1
        generation = self._generations[key]

        try:
            raw = await self._api.get_list(key)
        except BackendError as exc:
            if generation != self._generations[key]:
                logger.debug("Discarding stale resource failure", extra={"resource": key.value})
                return False
            self.errors[key] = exc.message
            logger.warning("Resource fetch failed", extra={"resource": key.value, "status_code": exc.status_code})
            return False

        if generation != self._generations[key]:
            logger.debug("Discarding stale resource response", extra={"resource": key.value})
            return False

        self._data[key] = parse_items(key, raw)
        self.errors.pop(key, None)
        return True

    async def load_all(self) -> Dict[ResourceKey, bool]:
        """Fetch every tracked resource concurrently."""
        results = await asyncio.gather(*(self.refresh(key) for key in self._resources))
        return dict(zip(self._resources, results))
