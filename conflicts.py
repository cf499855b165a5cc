"""
Conflict checker for Midnight Madness Flask API
Detects overlaps between a requested interval and confirmed bookings of a bus or driver
"""

import logging
from typing import Optional, List, Dict, Any
from utils import intervals_overlap, to_iso

logger = logging.getLogger(__name__)

RESOURCE_TYPES = {
    'bus': 'bus_id',
    'driver': 'driver_id',
}


class ConflictChecker:
    """Advisory overlap checks; the store's exclusion constraints are the final word"""

    def __init__(self, db_service):
        self.db = db_service

    def find_conflicts(self, resource_type: str, resource_id: str, exclude_booking_id: Optional[str],
                       start, end) -> List[Dict[str, Any]]:
        """Confirmed bookings on the resource overlapping [start, end), other than the excluded one"""
        if resource_type not in RESOURCE_TYPES:
            raise ValueError(f"Unknown resource type: {resource_type}")

        confirmed = self.db.get_confirmed_bookings(RESOURCE_TYPES[resource_type], resource_id)
        return [
            b for b in confirmed
            if b['id'] != exclude_booking_id
            and intervals_overlap(start, end, b['start_time'], b['end_time'])
        ]

    def has_conflict(self, resource_type: str, resource_id: str, exclude_booking_id: Optional[str],
                     start, end) -> bool:
        conflicts = self.find_conflicts(resource_type, resource_id, exclude_booking_id, start, end)
        if conflicts:
            logger.info(
                f"{resource_type.capitalize()} {resource_id} conflicts with booking(s) "
                f"{[b['id'] for b in conflicts]} for {start} - {end}"
            )
        return bool(conflicts)

    def free_resources(self, resource_type: str, resources: List[Dict[str, Any]], start, end,
                       exclude_booking_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Filter resources down to those with no confirmed overlap for [start, end)"""
        field = RESOURCE_TYPES[resource_type]
        busy = set()
        for booking in self.db.get_confirmed_bookings_in_range(to_iso(start), to_iso(end)):
            if booking['id'] == exclude_booking_id or not booking.get(field):
                continue
            if intervals_overlap(start, end, booking['start_time'], booking['end_time']):
                busy.add(booking[field])
        return [r for r in resources if r['id'] not in busy]
