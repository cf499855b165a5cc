"""
Booking ledger for Midnight Madness Flask API
Owns the booking lifecycle: create, confirm, update, cancel

Ledger state changes are committed first. Calendar sync runs afterwards and its
failures come back as a warning next to the committed booking, never as an error.
"""

import logging
from datetime import timedelta
from typing import Optional, Dict, Any, List

from config import Config
from conflicts import ConflictChecker
from contacts import ContactResolver
from database import OverlapViolation, DuplicateRecord, DRIVER_OVERLAP_CONSTRAINT
from errors import (
    ValidationError, NotFound, VehicleConflict, DriverConflict, DuplicateContact, InvalidTransition,
    CalendarSyncError, SyncFailed
)
from utils import parse_timestamp, to_iso, booking_reference

logger = logging.getLogger(__name__)

# Fields an operator may change after creation; bus, status and contact are fixed
UPDATABLE_BOOKING_FIELDS = (
    'driver_id', 'start_time', 'end_time', 'pickup_location', 'dropoff_location',
    'passenger_count', 'quote_amount', 'payment_status', 'occasion', 'booking_source', 'notes',
)
UPDATABLE_CONTACT_FIELDS = ('name', 'email', 'phone', 'source', 'notes')


class BookingLedger:
    """Booking state machine guarded by bus and driver overlap checks"""

    def __init__(self, db_service, calendar_sync=None, contact_resolver: ContactResolver = None,
                 conflict_checker: ConflictChecker = None):
        self.db = db_service
        self.calendar = calendar_sync
        self.contacts = contact_resolver or ContactResolver(db_service)
        self.conflicts = conflict_checker or ConflictChecker(db_service)

    # ----- Queries -----

    def get_booking(self, booking_id: str) -> Dict[str, Any]:
        booking = self.db.get_booking_by_id(booking_id)
        if not booking:
            raise NotFound('booking', booking_id)
        return booking

    def available_buses(self, start, end, exclude_booking_id: str = None) -> List[Dict[str, Any]]:
        buses = self.db.get_buses(include_inactive=False)
        return self.conflicts.free_resources('bus', buses, start, end, exclude_booking_id)

    def available_drivers(self, start, end, exclude_booking_id: str = None) -> List[Dict[str, Any]]:
        drivers = [d for d in self.db.get_drivers() if d.get('status', 'active') == 'active']
        return self.conflicts.free_resources('driver', drivers, start, end, exclude_booking_id)

    # ----- Lifecycle -----

    def create(self, booking_draft: Dict[str, Any], contact_details: Dict[str, Any],
               corporate_info: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Persist a pending, unpaid booking; overlapping pending requests are allowed"""
        start, end = booking_draft.get('start_time'), booking_draft.get('end_time')
        if not booking_draft.get('bus_id') or not start or not end:
            raise ValidationError("bus_id, start_time and end_time are required")
        self._require_interval(start, end)

        contact_id = self.contacts.resolve(contact_details, corporate_info)

        booking_data = {k: v for k, v in booking_draft.items() if k not in ('id', 'status', 'contact_id')}
        booking_data.update({
            'contact_id': contact_id,
            'status': 'pending',
            'payment_status': 'unpaid',
            'start_time': to_iso(start),
            'end_time': to_iso(end),
        })
        if corporate_info:
            booking_data['corporate_client_id'] = corporate_info['id']

        booking = self.db.create_booking(booking_data)
        logger.info(
            f"Booking created: {booking_reference(booking['id'])} for bus {booking['bus_id']} "
            f"({booking['start_time']} - {booking['end_time']}) by contact {contact_id}"
        )
        return booking

    def create_express(self, bus_id: str, contact_details: Dict[str, Any], start_time,
                       passenger_count: int) -> Dict[str, Any]:
        """One-hour walk-up booking awaiting its Square payment"""
        start = parse_timestamp(start_time)
        return self.create({
            'bus_id': bus_id,
            'start_time': start,
            'end_time': start + timedelta(hours=Config.EXPRESS_DURATION_HOURS),
            'passenger_count': passenger_count,
            'pickup_location': Config.EXPRESS_BOOKING_LOCATION,
            'dropoff_location': Config.EXPRESS_BOOKING_LOCATION,
            'booking_type': Config.EXPRESS_BOOKING_TYPE,
            'booking_source': 'web_quote',
        }, contact_details)

    def confirm(self, booking_id: str, driver_id: str) -> Dict[str, Any]:
        """
        Assign a driver and confirm a pending booking.

        Raises NotFound, VehicleConflict, DriverConflict or InvalidTransition with
        nothing written. Returns {'booking': ..., 'warning': ...} where warning
        describes a calendar problem, if any.
        """
        booking = self.get_booking(booking_id)
        if booking['status'] != 'pending':
            raise InvalidTransition(booking['status'], 'confirmed')

        driver = self.db.get_driver_by_id(driver_id)
        if not driver:
            raise NotFound('driver', driver_id)

        self._check_schedule(booking_id, booking['bus_id'], driver, booking['start_time'], booking['end_time'])

        confirmed = self._transition(booking, ['pending'], {'driver_id': driver_id, 'status': 'confirmed'}, driver)
        logger.info(f"Booking {booking_reference(booking_id)} confirmed with driver {driver_id}")

        warning = self._add_calendar_event(confirmed, driver)
        return {'booking': confirmed, 'warning': warning}

    def confirm_paid(self, booking_id: str, payment_id: str) -> Dict[str, Any]:
        """Confirm a paid pending booking without assigning a driver"""
        booking = self.get_booking(booking_id)
        if booking['status'] != 'pending':
            raise InvalidTransition(booking['status'], 'confirmed')

        driver = self.db.get_driver_by_id(booking['driver_id']) if booking.get('driver_id') else None
        self._check_schedule(booking_id, booking['bus_id'], driver, booking['start_time'], booking['end_time'])

        confirmed = self._transition(booking, ['pending'], {
            'status': 'confirmed',
            'payment_status': 'paid_in_full',
            'square_payment_id': payment_id,
        }, driver)
        logger.info(f"Booking {booking_reference(booking_id)} confirmed by payment {payment_id}")
        return confirmed

    def update(self, booking_id: str, booking_updates: Dict[str, Any],
               contact_updates: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Edit booking and contact fields in one atomic write.

        Conflict checks run only when the interval or driver actually changes on a
        booking that is not cancelled, so note-only edits never conflict.
        """
        contact_updates = contact_updates or {}
        illegal = [k for k in booking_updates if k not in UPDATABLE_BOOKING_FIELDS]
        illegal += [f"contact.{k}" for k in contact_updates if k not in UPDATABLE_CONTACT_FIELDS]
        if illegal:
            raise ValidationError(f"Fields cannot be updated: {', '.join(illegal)}")

        booking = self.get_booking(booking_id)

        new_start = booking_updates.get('start_time') or booking['start_time']
        new_end = booking_updates.get('end_time') or booking['end_time']
        new_driver_id = booking_updates['driver_id'] if 'driver_id' in booking_updates else booking.get('driver_id')
        self._require_interval(new_start, new_end)

        schedule_changed = (
            parse_timestamp(new_start) != parse_timestamp(booking['start_time'])
            or parse_timestamp(new_end) != parse_timestamp(booking['end_time'])
            or new_driver_id != booking.get('driver_id')
        )

        driver = None
        if new_driver_id:
            driver = self.db.get_driver_by_id(new_driver_id)
            if not driver:
                raise NotFound('driver', new_driver_id)

        if schedule_changed and booking['status'] != 'cancelled':
            self._check_schedule(booking_id, booking['bus_id'], driver, new_start, new_end)

        if contact_updates and not booking.get('contact_id'):
            raise NotFound('contact')
        if 'email' in contact_updates:
            self.contacts.ensure_email_available(contact_updates['email'], booking['contact_id'])

        updates = dict(booking_updates)
        if 'start_time' in updates:
            updates['start_time'] = to_iso(updates['start_time'])
        if 'end_time' in updates:
            updates['end_time'] = to_iso(updates['end_time'])

        try:
            updated = self.db.update_booking_with_contact(
                booking_id, updates, booking.get('contact_id'), contact_updates
            )
        except OverlapViolation as e:
            raise self._conflict_error(e, booking['bus_id'], driver)
        except DuplicateRecord:
            raise DuplicateContact()

        if updated is None:
            raise NotFound('booking', booking_id)

        logger.info(
            f"Booking {booking_reference(booking_id)} updated: {list(booking_updates.keys())}"
            + (f", contact: {list(contact_updates.keys())}" if contact_updates else '')
        )

        warning = None
        if updated['status'] == 'confirmed' and schedule_changed:
            warning = self._move_calendar_event(booking, updated, driver)
        return {'booking': updated, 'warning': warning}

    def cancel(self, booking_id: str) -> Dict[str, Any]:
        """Cancel unconditionally; freeing a resource cannot create a conflict"""
        booking = self.get_booking(booking_id)
        if booking['status'] == 'cancelled':
            return {'booking': booking, 'warning': None}

        cancelled = self.db.transition_booking(booking_id, ['pending', 'confirmed'], {'status': 'cancelled'})
        if cancelled is None:
            # Lost a race with another cancellation
            return {'booking': self.get_booking(booking_id), 'warning': None}

        logger.info(f"Booking {booking_reference(booking_id)} cancelled (was {booking['status']})")

        warning = self._remove_calendar_event(booking)
        return {'booking': cancelled, 'warning': warning}

    def sync_calendar(self, booking_id: str) -> Dict[str, Any]:
        """Re-run the calendar phase for a confirmed booking"""
        booking = self.get_booking(booking_id)
        if booking['status'] != 'confirmed':
            raise ValidationError("Only confirmed bookings can be synced to a calendar")
        if not booking.get('driver_id'):
            raise ValidationError("Assign a driver before syncing the calendar")
        if booking.get('calendar_event_id') and booking.get('event_sync_status') == 'ok':
            return {'booking': booking, 'warning': None}

        driver = self.db.get_driver_by_id(booking['driver_id'])
        if not driver:
            raise NotFound('driver', booking['driver_id'])

        warning = self._add_calendar_event(booking, driver)
        return {'booking': self.get_booking(booking_id), 'warning': warning}

    # ----- Internals -----

    @staticmethod
    def _require_interval(start, end) -> None:
        try:
            start_dt, end_dt = parse_timestamp(start), parse_timestamp(end)
        except (TypeError, ValueError):
            raise ValidationError("start_time and end_time must be ISO-8601 timestamps")
        if end_dt <= start_dt:
            raise ValidationError("End time must be after start time")

    def _check_schedule(self, booking_id: str, bus_id: str, driver: Optional[Dict[str, Any]], start, end) -> None:
        if self.conflicts.has_conflict('bus', bus_id, booking_id, start, end):
            raise self._vehicle_conflict(bus_id)
        if driver and self.conflicts.has_conflict('driver', driver['id'], booking_id, start, end):
            raise self._driver_conflict(driver)

    def _transition(self, booking: Dict[str, Any], from_statuses: List[str], update_data: Dict[str, Any],
                    driver: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        target = update_data.get('status')
        try:
            result = self.db.transition_booking(booking['id'], from_statuses, update_data)
        except OverlapViolation as e:
            # A concurrent confirmation committed first
            raise self._conflict_error(e, booking['bus_id'], driver)

        if result is None:
            current = self.get_booking(booking['id'])
            raise InvalidTransition(current['status'], target)
        return result

    def _conflict_error(self, error: OverlapViolation, bus_id: str, driver: Optional[Dict[str, Any]]):
        if error.constraint == DRIVER_OVERLAP_CONSTRAINT and driver:
            return self._driver_conflict(driver)
        return self._vehicle_conflict(bus_id)

    def _vehicle_conflict(self, bus_id: str) -> VehicleConflict:
        bus = self.db.get_bus_by_id(bus_id)
        name = bus['name'] if bus else bus_id
        return VehicleConflict(f"Bus '{name}' is already booked for the selected time slot.")

    @staticmethod
    def _driver_conflict(driver: Dict[str, Any]) -> DriverConflict:
        return DriverConflict(f"Driver '{driver.get('name', driver['id'])}' is already booked for this time slot.")

    def _event_summary(self, booking: Dict[str, Any]) -> Dict[str, Any]:
        bus = self.db.get_bus_by_id(booking['bus_id']) or {}
        contact = self.db.get_contact_by_id(booking['contact_id']) if booking.get('contact_id') else None
        contact = contact or {}
        return {
            'id': booking['id'],
            'bus_name': bus.get('name'),
            'customer_name': contact.get('name'),
            'customer_phone': contact.get('phone'),
            'pickup_location': booking.get('pickup_location'),
            'passenger_count': booking.get('passenger_count'),
            'start_time': booking['start_time'],
            'end_time': booking['end_time'],
        }

    def _add_calendar_event(self, booking: Dict[str, Any], driver: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if self.calendar is None or driver is None:
            return None

        if not driver.get('google_calendar_id'):
            logger.warning(
                f"Booking {booking_reference(booking['id'])} confirmed, but driver {driver.get('name')} "
                f"does not have a synced Google Calendar"
            )
            return {
                'type': 'SyncSkipped',
                'message': (f"Booking confirmed, but driver {driver.get('name')} does not have a synced "
                            f"Google Calendar. Please sync their calendar from the 'Manage Drivers' tab."),
                'retry': f"/admin/drivers/{driver['id']}/calendar",
            }

        retry = f"/admin/bookings/{booking['id']}/calendar-sync"
        try:
            event_id = self.calendar.add_event(driver['google_calendar_id'], self._event_summary(booking),
                                               driver_id=driver['id'])
            booking['calendar_event_id'] = event_id
            booking['event_sync_status'] = 'ok'
            return None
        except CalendarSyncError as e:
            logger.error(f"Booking {booking_reference(booking['id'])} confirmed, but calendar sync failed: {e.message}")
            return e.to_warning(retry=retry)
        except Exception as e:
            logger.error(f"Unexpected calendar sync error for booking {booking['id']}: {e}", exc_info=True)
            return SyncFailed(str(e)).to_warning(retry=retry)

    def _remove_calendar_event(self, booking: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if self.calendar is None or not booking.get('calendar_event_id') or not booking.get('driver_id'):
            return None
        if booking.get('event_sync_status') == 'deleted':
            return None

        try:
            driver = self.db.get_driver_by_id(booking['driver_id'])
            if not driver or not driver.get('google_calendar_id'):
                return None
            self.calendar.remove_event(driver['google_calendar_id'], booking['calendar_event_id'],
                                       driver_id=driver['id'], booking_id=booking['id'])
            return None
        except CalendarSyncError as e:
            logger.error(f"Could not remove calendar event for booking {booking['id']}: {e.message}")
            warning = e.to_warning()
            warning['message'] = (f"Could not remove the event from Google Calendar: {e.message}. "
                                  f"You may need to remove it manually. The booking is still cancelled.")
            return warning
        except Exception as e:
            logger.error(f"Unexpected calendar error removing event for booking {booking['id']}: {e}", exc_info=True)
            return SyncFailed(str(e)).to_warning()

    def _move_calendar_event(self, before: Dict[str, Any], after: Dict[str, Any],
                             driver: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """Replace the synced event after a schedule change on a confirmed booking"""
        warning = self._remove_calendar_event(before)
        if warning:
            return warning
        if before.get('calendar_event_id') or driver:
            return self._add_calendar_event(after, driver)
        return None
