"""
API Module Initialization

Exports HTTP routers for use across the application.
"""

from timeslots.api.time_slots import (
    router as time_slots_router,
    get_slot_service,
)

__all__ = [
    "time_slots_router",
    "get_slot_service",
]
