"""
Cross-tab synchronization message schema.

Wire format: {"type": "REFRESH_ALL"} or {"type": "REFRESH_VIEW", "view": <resource key>}.
"""

from typing import Optional

from pydantic import BaseModel, model_validator

from planit.app.models.enums import RESOURCE_KEYS, SyncMessageType


class SyncMessage(BaseModel):
    """Refresh notification broadcast to every open tab."""
    type: SyncMessageType
    view: Optional[str] = None

    @model_validator(mode="after")
    def _check_view(self) -> "SyncMessage":
        if self.type is SyncMessageType.REFRESH_VIEW:
            if not self.view:
                raise ValueError("REFRESH_VIEW requires a view")
            if self.view not in RESOURCE_KEYS:
                raise ValueError(f"Unknown view: {self.view}")
        elif self.view is not None:
            raise ValueError("REFRESH_ALL does not take a view")
        return self

    @classmethod
    def refresh_all(cls) -> "SyncMessage":
        return cls(type=SyncMessageType.REFRESH_ALL)

    @classmethod
    def refresh_view(cls, view: str) -> "SyncMessage":
        return cls(type=SyncMessageType.REFRESH_VIEW, view=getattr(view, "value", view))

    @property
    def dedupe_key(self) -> str:
        return self.type.value if self.view is None else f"{self.type.value}:{self.view}"

    def to_wire(self) -> str:
        return self.model_dump_json(exclude_none=True)

    class Config:
        frozen = True
