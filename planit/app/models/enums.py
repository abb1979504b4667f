"""
Planning enumerations.

Defines the vocabulary shared by the planning core: vehicle types, run types,
the resource keys tracked by the host application, and the cross-tab message
types.
"""

import enum


class TruckType(str, enum.Enum):
    """
    Truck body type.
    
    Types:
        RIGID: Carries its own load space and capacity
        TRACTOR: Needs a trailer before it has any capacity
    """
    RIGID = "rigid"
    TRACTOR = "tractor"


class RunType(str, enum.Enum):
    """Kind of vehicle movement a run performs."""
    DELIVERY = "delivery"
    COLLECTION = "collection"
    OTHER = "other"


class ResourceKey(str, enum.Enum):
    """Resource keys tracked by the host application."""
    ORDERS = "orders"
    DRIVERS = "drivers"
    TRUCKS = "trucks"
    TRAILERS = "trailers"
    USERS = "users"
    ASSIGNMENTS = "assignments"
    CUSTOMERS = "customers"
    ZONES = "zones"
    SURCHARGES = "surcharges"
    INVOICES = "invoices"
    RUNS = "runs"

    @property
    def path(self) -> str:
        """API list endpoint for this resource."""
        if self is ResourceKey.SURCHARGES:
            return "/api/surcharge-types"
        return f"/api/{self.value}"


RESOURCE_KEYS = frozenset(key.value for key in ResourceKey)


class SyncMessageType(str, enum.Enum):
    """Cross-tab broadcast message types."""
    REFRESH_ALL = "REFRESH_ALL"
    REFRESH_VIEW = "REFRESH_VIEW"


class OrderTab(str, enum.Enum):
    """Order list tab on the planning board."""
    DELIVERY = "delivery"
    COLLECTIONS = "collections"


class DragIntentKind(str, enum.Enum):
    """
    Interpretation of a finished drag gesture.
    
    Kinds:
        NOOP: Dropped nowhere or back where it started
        ASSIGN: Unassigned pool to a run
        UNSUPPORTED: Any other pairing
    """
    NOOP = "NOOP"
    ASSIGN = "ASSIGN"
    UNSUPPORTED = "UNSUPPORTED"
