"""
Run CRUD service.

Validates run payloads and forwards them to the runs endpoints.
"""

from typing import Any, Dict, Mapping, Optional

from planit.app.api.client import ApiClient
from planit.app.core.exceptions import PlanningValidationError
from planit.app.models.enums import ResourceKey
from planit.app.schemas.entities import Run

RUNS_PATH = ResourceKey.RUNS.path


def validate_run(data: Mapping[str, Any]) -> Dict[str, str]:
    """
    Check the fields a run cannot be saved without.
    
    Returns:
        Field name -> message; empty when the payload is valid
    """
    errors = {}
    if not data.get("run_date"):
        errors["run_date"] = "Run date is required."
    if not data.get("driver_id"):
        errors["driver_id"] = "Driver is required."
    if not data.get("truck_id"):
        errors["truck_id"] = "Truck is required."
    return errors


def build_run_payload(data: Mapping[str, Any]) -> Dict[str, Any]:
    """Normalize form data into the body the runs endpoints accept."""
    payload = dict(data)
    payload["trailer_id"] = payload.get("trailer_id") or None
    payload.pop("id", None)
    return payload


class RunService:
    
    def __init__(self, api: ApiClient):
        self._api = api

    def _prepare(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        errors = validate_run(data)
        if errors:
            raise PlanningValidationError("Please correct the highlighted run fields.", errors=errors)
        return build_run_payload(data)

    async def create(self, data: Mapping[str, Any]) -> Optional[Run]:
        created = await self._api.post(RUNS_PATH, json=self._prepare(data))
        return Run.model_validate(created) if isinstance(created, dict) else None

    async def update(self, run_id: int, data: Mapping[str, Any]) -> Optional[Run]:
        updated = await self._api.put(f"{RUNS_PATH}/{run_id}", json=self._prepare(data))
        return Run.model_validate(updated) if isinstance(updated, dict) else None

    async def delete(self, run_id: int) -> None:
        await self._api.delete(f"{RUNS_PATH}/{run_id}")
