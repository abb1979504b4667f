"""
Entity schemas read from the TMS backend.

Schemas mirror the list endpoints the planning core consumes. Unknown fields
are kept so the host application can still render them.
"""

from datetime import date, datetime
from typing import Any, List, Optional, Union

from pydantic import AliasChoices, BaseModel, Field, field_validator

from planit.app.models.enums import RunType, TruckType


class Driver(BaseModel):
    """Driver as returned by /api/drivers (snake_case or camelCase)."""
    id: int
    first_name: str = Field(default="", validation_alias=AliasChoices("first_name", "firstName"))
    last_name: str = Field(default="", validation_alias=AliasChoices("last_name", "lastName"))
    phone_number: Optional[str] = Field(default=None, validation_alias=AliasChoices("phone_number", "phoneNumber"))
    is_active: Optional[bool] = Field(default=None, validation_alias=AliasChoices("is_active", "isActive"))

    @field_validator("first_name", "last_name", mode="before")
    @classmethod
    def _blank_names(cls, value: Any) -> Any:
        return "" if value is None else value

    class Config:
        extra = "allow"
        populate_by_name = True


class Truck(BaseModel):
    """Truck with the capacity fields used for enrichment."""
    id: int
    registration_plate: Optional[str] = None
    type_of_truck: Optional[str] = None  # rigid or tractor
    max_payload_kg: Optional[float] = None
    pallet_capacity: Optional[float] = None

    @property
    def is_rigid(self) -> bool:
        return self.type_of_truck == TruckType.RIGID.value

    @property
    def is_tractor(self) -> bool:
        return self.type_of_truck == TruckType.TRACTOR.value

    class Config:
        extra = "allow"


class Trailer(BaseModel):
    """Trailer with the capacity fields used for enrichment."""
    id: int
    registration_plate: Optional[str] = None
    max_payload_kg: Optional[float] = None
    max_spaces: Optional[float] = None

    class Config:
        extra = "allow"


class AddressBlock(BaseModel):
    """Sender or recipient details of an order."""
    name: Optional[str] = None
    address1: Optional[str] = None
    city: Optional[str] = None
    post_code: Optional[str] = Field(default=None, validation_alias=AliasChoices("postCode", "post_code", "postcode"))

    class Config:
        extra = "allow"
        populate_by_name = True


class CargoDetails(BaseModel):
    """Cargo summary; missing totals count as zero."""
    total_kilos: float = 0
    total_spaces: float = 0

    @field_validator("total_kilos", "total_spaces", mode="before")
    @classmethod
    def _missing_is_zero(cls, value: Any) -> Any:
        return 0 if value is None or value == "" else value

    class Config:
        extra = "allow"


class Order(BaseModel):
    """Shipment request."""
    id: int
    order_number: Optional[str] = None
    customer_reference: Optional[str] = None
    status: Optional[str] = None
    sender_details: AddressBlock = Field(default_factory=AddressBlock)
    recipient_details: AddressBlock = Field(default_factory=AddressBlock)
    cargo_details: CargoDetails = Field(default_factory=CargoDetails)
    loading_date_time: Optional[str] = None
    unloading_date_time: Optional[str] = None

    @field_validator("sender_details", "recipient_details", "cargo_details", mode="before")
    @classmethod
    def _null_blocks(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("loading_date_time", "unloading_date_time", mode="before")
    @classmethod
    def _stringify_dates(cls, value: Any) -> Any:
        if isinstance(value, (date, datetime)):
            return value.isoformat()
        return value

    def is_new(self, new_status: str = "new") -> bool:
        return (self.status or "").strip().lower() == new_status.lower()

    class Config:
        extra = "allow"


class Run(BaseModel):
    """A scheduled vehicle movement for one day."""
    id: int
    run_date: Optional[str] = None
    type: Optional[str] = None
    driver_id: Optional[int] = None
    truck_id: Optional[int] = None
    trailer_id: Optional[int] = None

    @field_validator("run_date", mode="before")
    @classmethod
    def _stringify_run_date(cls, value: Any) -> Any:
        if isinstance(value, (date, datetime)):
            return value.isoformat()
        return value

    @field_validator("trailer_id", mode="before")
    @classmethod
    def _blank_trailer(cls, value: Any) -> Any:
        return None if value in ("", 0) else value

    def is_on(self, day: Union[date, str]) -> bool:
        """ISO prefix match of run_date against a calendar day."""
        prefix = day.isoformat() if isinstance(day, date) else str(day)
        return bool(self.run_date) and self.run_date.startswith(prefix)

    @property
    def run_type(self) -> Optional[RunType]:
        """Known run type, None for blank or unrecognised values."""
        try:
            return RunType((self.type or "").lower())
        except ValueError:
            return None

    class Config:
        extra = "allow"


class Zone(BaseModel):
    """Postcode zone; matching itself is done by the host application."""
    id: int
    zone_name: str = Field(default="", validation_alias=AliasChoices("zone_name", "zoneName", "name"))
    is_home_zone: bool = Field(default=False, validation_alias=AliasChoices("is_home_zone", "isHomeZone"))
    postcode_patterns: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("postcode_patterns", "postcodePatterns"),
    )

    @field_validator("zone_name", mode="before")
    @classmethod
    def _blank_name(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("is_home_zone", mode="before")
    @classmethod
    def _null_flag(cls, value: Any) -> Any:
        return False if value is None else value

    @field_validator("postcode_patterns", mode="before")
    @classmethod
    def _null_patterns(cls, value: Any) -> Any:
        return [] if value is None else value

    class Config:
        extra = "allow"
        populate_by_name = True
