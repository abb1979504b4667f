"""
Order list filters for the planning board.

The postcode-to-zone match is supplied by the caller; this module only
decides which date field and which address a tab looks at.
"""

from datetime import date, datetime, timezone
from typing import Callable, Iterable, List, Optional, Union

from planit.app.models.enums import OrderTab
from planit.app.schemas.entities import Order, Zone

ZonePredicate = Callable[[Optional[str], Zone], bool]


def find_home_zone(zones: Iterable[Zone]) -> Optional[Zone]:
    return next((zone for zone in zones if zone.is_home_zone), None)


def _day_of(value: Optional[str]) -> Optional[str]:
    """UTC calendar day of a timestamp; naive values are read as UTC."""
    if not value:
        return None
    try:
        moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.date().isoformat()


def filter_orders_for_day(
    orders: Iterable[Order],
    tab: Union[OrderTab, str],
    selected_date: Union[date, str],
    home_zone: Optional[Zone] = None,
    in_zone: Optional[ZonePredicate] = None,
) -> List[Order]:
    """
    Orders shown on a board tab for one day.
    
    Collections are matched on the loading date and sender postcode,
    deliveries on the unloading date and recipient postcode. Without a home
    zone (or predicate) the zone filter is skipped.
    """
    tab = OrderTab(tab)
    day = selected_date.isoformat() if isinstance(selected_date, date) else str(selected_date)
    collections = tab is OrderTab.COLLECTIONS
    
    filtered = []
    for order in orders:
        field = order.loading_date_time if collections else order.unloading_date_time
        if _day_of(field) != day:
            continue
        if home_zone is not None and in_zone is not None:
            address = order.sender_details if collections else order.recipient_details
            if not in_zone(address.post_code, home_zone):
                continue
        filtered.append(order)
    return filtered
