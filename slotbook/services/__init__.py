"""Service package public API definitions.

The engines are imported lazily so that lightweight modules such as
``slotbook.services.exceptions`` or ``slotbook.services.calendar`` can be
imported by the schemas and the HTTP client without pulling in every
service implementation (and the circular imports that would follow).
"""

from __future__ import annotations

from importlib import import_module
from typing import TYPE_CHECKING, Any

__all__ = [
    "AvailabilityService",
    "BookingEngine",
    "WaitingListService",
]

_SERVICE_MODULES = {
    "AvailabilityService": "availability",
    "BookingEngine": "booking",
    "WaitingListService": "waiting_list",
}


def __getattr__(name: str) -> Any:
    if name not in _SERVICE_MODULES:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

    module = import_module(f".{_SERVICE_MODULES[name]}", __name__)
    attr = getattr(module, name)
    globals()[name] = attr
    return attr


if TYPE_CHECKING:  # pragma: no cover - import for static analysis only
    from .availability import AvailabilityService as AvailabilityService
    from .booking import BookingEngine as BookingEngine
    from .waiting_list import WaitingListService as WaitingListService
