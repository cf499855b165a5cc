import pytest

from conflicts import ConflictChecker
from errors import DriverConflict, DuplicateContact, InvalidTransition, NotFound, ValidationError, VehicleConflict
from ledger import BookingLedger
from utils import intervals_overlap

DAY = '2030-07-01'


def at(hour: int) -> str:
    return f"{DAY}T{hour:02d}:00:00+00:00"


class BlindConflictChecker(ConflictChecker):
    """Simulates a stale read: the advisory check never sees a conflict"""

    def has_conflict(self, *args, **kwargs):
        return False


def assert_no_confirmed_overlap(db, field):
    confirmed = [b for b in db.tables['bookings'].values() if b['status'] == 'confirmed' and b.get(field)]
    for first in confirmed:
        for second in confirmed:
            if first['id'] != second['id'] and first[field] == second[field]:
                assert not intervals_overlap(first['start_time'], first['end_time'],
                                             second['start_time'], second['end_time'])


def test_create_persists_pending_unpaid_booking(ledger, db, bus, make_booking):
    booking = make_booking(bus, at(18), at(22))

    assert booking['status'] == 'pending'
    assert booking['payment_status'] == 'unpaid'
    assert booking['contact_id'] in db.tables['contacts']
    assert booking['start_time'] == at(18)


def test_create_allows_overlapping_pending_requests(bus, make_booking):
    first = make_booking(bus, at(18), at(22))
    second = make_booking(bus, at(19), at(21))

    assert first['status'] == second['status'] == 'pending'


def test_create_rejects_end_before_start(bus, make_booking, db):
    with pytest.raises(ValidationError):
        make_booking(bus, at(22), at(18))
    assert db.tables['bookings'] == {}


def test_create_with_corporate_info_stamps_client(ledger, db, bus, contact_details):
    booking = ledger.create(
        {'bus_id': bus['id'], 'start_time': at(18), 'end_time': at(20)},
        contact_details,
        {'id': 'client-1', 'name': 'Acme Corp'},
    )

    contact = db.get_contact_by_id(booking['contact_id'])
    assert booking['corporate_client_id'] == 'client-1'
    assert contact['company_name'] == 'Acme Corp'


def test_create_express_books_one_hour(ledger, bus, contact_details):
    booking = ledger.create_express(bus['id'], contact_details, at(18), 12)

    assert booking['end_time'] == at(19)
    assert booking['booking_type'] == 'express-1hr'
    assert booking['pickup_location'] == 'Express Booking'
    assert booking['status'] == 'pending'


def test_confirm_free_slot_succeeds_and_syncs_calendar(ledger, db, bus, driver, make_booking, calendar_client):
    booking = make_booking(bus, at(18), at(22))

    result = ledger.confirm(booking['id'], driver['id'])

    assert result['warning'] is None
    assert result['booking']['status'] == 'confirmed'
    assert result['booking']['driver_id'] == driver['id']
    stored = db.get_booking_by_id(booking['id'])
    assert stored['status'] == 'confirmed'
    assert stored['calendar_event_id'] == 'evt-1'
    assert stored['event_sync_status'] == 'ok'
    assert calendar_client.call_names() == ['insert_event']


def test_confirm_missing_booking_raises_not_found(ledger, driver):
    with pytest.raises(NotFound):
        ledger.confirm('missing', driver['id'])


def test_confirm_missing_driver_raises_not_found(ledger, db, bus, make_booking):
    booking = make_booking(bus, at(18), at(22))

    with pytest.raises(NotFound):
        ledger.confirm(booking['id'], 'missing-driver')
    assert db.get_booking_by_id(booking['id'])['status'] == 'pending'


def test_vehicle_scenario_overlap_touching_and_release(ledger, db, bus, driver, other_driver, make_booking):
    booking_a = make_booking(bus, at(18), at(22))
    booking_b = make_booking(bus, at(21), at(23))
    booking_c = make_booking(bus, at(22), at(23))
    ledger.confirm(booking_a['id'], driver['id'])

    with pytest.raises(VehicleConflict) as excinfo:
        ledger.confirm(booking_b['id'], other_driver['id'])
    assert 'Midnight Express' in excinfo.value.description
    assert db.get_booking_by_id(booking_b['id'])['status'] == 'pending'

    result = ledger.confirm(booking_c['id'], other_driver['id'])
    assert result['booking']['status'] == 'confirmed'

    ledger.cancel(booking_c['id'])
    ledger.cancel(booking_a['id'])
    result = ledger.confirm(booking_b['id'], other_driver['id'])
    assert result['booking']['status'] == 'confirmed'
    assert_no_confirmed_overlap(db, 'bus_id')


def test_confirm_driver_conflict_names_driver(ledger, db, bus, other_bus, driver, make_booking):
    first = make_booking(bus, at(18), at(22))
    second = make_booking(other_bus, at(20), at(23))
    ledger.confirm(first['id'], driver['id'])

    with pytest.raises(DriverConflict) as excinfo:
        ledger.confirm(second['id'], driver['id'])

    assert 'Sam Driver' in excinfo.value.description
    assert db.get_booking_by_id(second['id'])['status'] == 'pending'
    assert_no_confirmed_overlap(db, 'driver_id')


def test_confirm_non_pending_raises_invalid_transition(ledger, bus, driver, make_booking):
    booking = make_booking(bus, at(18), at(22))
    ledger.cancel(booking['id'])

    with pytest.raises(InvalidTransition):
        ledger.confirm(booking['id'], driver['id'])


def test_stale_conflict_check_is_caught_by_store_constraint(db, calendar_sync, bus, driver, other_driver,
                                                            make_booking):
    ledger = BookingLedger(db, calendar_sync, conflict_checker=BlindConflictChecker(db))
    first = make_booking(bus, at(18), at(22))
    second = make_booking(bus, at(20), at(23))
    ledger.confirm(first['id'], driver['id'])

    with pytest.raises(VehicleConflict):
        ledger.confirm(second['id'], other_driver['id'])

    assert db.get_booking_by_id(second['id'])['status'] == 'pending'
    assert_no_confirmed_overlap(db, 'bus_id')


def test_stale_driver_check_maps_to_driver_conflict(db, calendar_sync, bus, other_bus, driver, make_booking):
    ledger = BookingLedger(db, calendar_sync, conflict_checker=BlindConflictChecker(db))
    first = make_booking(bus, at(18), at(22))
    second = make_booking(other_bus, at(20), at(23))
    ledger.confirm(first['id'], driver['id'])

    with pytest.raises(DriverConflict):
        ledger.confirm(second['id'], driver['id'])


def test_confirm_calendar_failure_keeps_booking_confirmed(ledger, db, bus, driver, make_booking, calendar_client):
    calendar_client.insert_failures = 3
    booking = make_booking(bus, at(18), at(22))

    result = ledger.confirm(booking['id'], driver['id'])

    assert result['booking']['status'] == 'confirmed'
    assert result['warning']['type'] == 'SyncFailed'
    assert 'Backend Error' in result['warning']['message']
    assert result['warning']['retry'] == f"/admin/bookings/{booking['id']}/calendar-sync"
    assert db.get_booking_by_id(booking['id'])['status'] == 'confirmed'
    assert db.get_driver_by_id(driver['id'])['calendar_status'] == 'error'


def test_confirm_driver_without_calendar_warns(ledger, db, bus, make_booking, calendar_client):
    driver = db.create_driver({'name': 'New Hire', 'email': 'new@example.com', 'status': 'active'})
    booking = make_booking(bus, at(18), at(22))

    result = ledger.confirm(booking['id'], driver['id'])

    assert result['booking']['status'] == 'confirmed'
    assert result['warning']['type'] == 'SyncSkipped'
    assert result['warning']['retry'] == f"/admin/drivers/{driver['id']}/calendar"
    assert calendar_client.calls == []


def test_confirm_without_calendar_adapter_has_no_warning(db, bus, driver, make_booking):
    ledger = BookingLedger(db)
    booking = make_booking(bus, at(18), at(22))

    result = ledger.confirm(booking['id'], driver['id'])

    assert result['booking']['status'] == 'confirmed'
    assert result['warning'] is None


def test_update_notes_only_never_conflicts(ledger, db, bus, driver, other_driver, make_booking):
    confirmed = make_booking(bus, at(18), at(22))
    ledger.confirm(confirmed['id'], driver['id'])
    overlapping = make_booking(bus, at(19), at(21))
    db.calls.clear()

    result = ledger.update(overlapping['id'], {'notes': 'Bring ice'})

    assert result['booking']['notes'] == 'Bring ice'
    assert result['warning'] is None
    assert not [c for c in db.calls if c[0] == 'get_confirmed_bookings']


def test_update_moving_into_confirmed_slot_conflicts(ledger, db, bus, driver, other_driver, make_booking):
    first = make_booking(bus, at(18), at(22))
    second = make_booking(bus, at(22), at(23))
    ledger.confirm(first['id'], driver['id'])
    ledger.confirm(second['id'], other_driver['id'])

    with pytest.raises(VehicleConflict):
        ledger.update(second['id'], {'start_time': at(21)})

    assert db.get_booking_by_id(second['id'])['start_time'] == at(22)
    assert_no_confirmed_overlap(db, 'bus_id')


def test_update_excludes_own_booking_from_conflicts(ledger, bus, driver, make_booking):
    booking = make_booking(bus, at(18), at(22))
    ledger.confirm(booking['id'], driver['id'])

    result = ledger.update(booking['id'], {'end_time': at(23)})

    assert result['booking']['end_time'] == at(23)


def test_update_writes_contact_fields_together(ledger, db, bus, make_booking):
    booking = make_booking(bus, at(18), at(22))

    result = ledger.update(booking['id'], {'passenger_count': 15}, {'phone': '403-555-0199'})

    assert result['booking']['passenger_count'] == 15
    assert db.get_contact_by_id(booking['contact_id'])['phone'] == '403-555-0199'


def test_update_conflict_leaves_contact_untouched(ledger, db, bus, driver, other_driver, make_booking):
    first = make_booking(bus, at(18), at(22))
    second = make_booking(bus, at(22), at(23))
    ledger.confirm(first['id'], driver['id'])
    ledger.confirm(second['id'], other_driver['id'])

    with pytest.raises(VehicleConflict):
        ledger.update(second['id'], {'start_time': at(20)}, {'name': 'Changed Name'})

    assert db.get_contact_by_id(second['contact_id'])['name'] == 'Jane Doe'


def test_update_contact_email_owned_by_another_contact_conflicts(ledger, db, bus, make_booking):
    booking = make_booking(bus, at(18), at(22))
    db.create_contact({'name': 'Sam Other', 'email': 'sam.other@example.com'})

    with pytest.raises(DuplicateContact):
        ledger.update(booking['id'], {'notes': 'Bring ice'}, {'email': 'sam.other@example.com'})

    assert db.get_booking_by_id(booking['id']).get('notes') is None
    assert db.get_contact_by_id(booking['contact_id'])['email'] == 'jane@example.com'


def test_update_contact_keeping_own_email_is_allowed(ledger, db, bus, make_booking):
    booking = make_booking(bus, at(18), at(22))

    result = ledger.update(booking['id'], {}, {'email': 'jane@example.com', 'name': 'Jane Smith'})

    assert result['booking']['id'] == booking['id']
    assert db.get_contact_by_id(booking['contact_id'])['name'] == 'Jane Smith'


def test_update_rejects_fixed_fields(ledger, bus, make_booking):
    booking = make_booking(bus, at(18), at(22))

    with pytest.raises(ValidationError):
        ledger.update(booking['id'], {'status': 'confirmed'})


def test_update_confirmed_schedule_moves_calendar_event(ledger, db, bus, driver, make_booking, calendar_client):
    booking = make_booking(bus, at(18), at(22))
    ledger.confirm(booking['id'], driver['id'])

    result = ledger.update(booking['id'], {'start_time': at(17)})

    assert result['warning'] is None
    assert calendar_client.call_names() == ['insert_event', 'delete_event', 'insert_event']
    assert db.get_booking_by_id(booking['id'])['calendar_event_id'] == 'evt-2'


def test_cancel_is_idempotent(ledger, db, bus, make_booking):
    booking = make_booking(bus, at(18), at(22))

    first = ledger.cancel(booking['id'])
    second = ledger.cancel(booking['id'])

    assert first['booking']['status'] == second['booking']['status'] == 'cancelled'
    transitions = [c for c in db.calls if c[0] == 'transition_booking']
    assert len(transitions) == 1


def test_cancel_removes_calendar_event(ledger, db, bus, driver, make_booking, calendar_client):
    booking = make_booking(bus, at(18), at(22))
    ledger.confirm(booking['id'], driver['id'])

    result = ledger.cancel(booking['id'])

    assert result['warning'] is None
    assert ('delete_event', (driver['google_calendar_id'], 'evt-1')) in calendar_client.calls
    assert db.get_booking_by_id(booking['id'])['event_sync_status'] == 'deleted'


def test_cancel_calendar_failure_still_cancels(ledger, db, bus, driver, make_booking, calendar_client):
    from calendar_sync import CalendarApiError

    booking = make_booking(bus, at(18), at(22))
    ledger.confirm(booking['id'], driver['id'])
    calendar_client.delete_error = CalendarApiError('Forbidden', 403)

    result = ledger.cancel(booking['id'])

    assert result['booking']['status'] == 'cancelled'
    assert result['warning']['type'] == 'SyncFailed'
    assert 'remove it manually' in result['warning']['message']
    assert db.get_booking_by_id(booking['id'])['status'] == 'cancelled'


def test_confirm_paid_sets_payment_fields(ledger, db, bus, make_booking):
    booking = make_booking(bus, at(18), at(19))

    confirmed = ledger.confirm_paid(booking['id'], 'sq-payment-1')

    assert confirmed['status'] == 'confirmed'
    assert confirmed['payment_status'] == 'paid_in_full'
    assert confirmed['square_payment_id'] == 'sq-payment-1'
    assert confirmed.get('driver_id') is None


def test_confirm_paid_still_guards_the_bus(ledger, db, bus, driver, make_booking):
    existing = make_booking(bus, at(18), at(22))
    ledger.confirm(existing['id'], driver['id'])
    paid = make_booking(bus, at(19), at(20))

    with pytest.raises(VehicleConflict):
        ledger.confirm_paid(paid['id'], 'sq-payment-2')


def test_sync_calendar_retries_after_failure(ledger, db, bus, driver, make_booking, calendar_client):
    calendar_client.insert_failures = 3
    booking = make_booking(bus, at(18), at(22))
    ledger.confirm(booking['id'], driver['id'])

    result = ledger.sync_calendar(booking['id'])

    assert result['warning'] is None
    assert result['booking']['event_sync_status'] == 'ok'


def test_sync_calendar_requires_confirmed_booking(ledger, bus, make_booking):
    booking = make_booking(bus, at(18), at(22))

    with pytest.raises(ValidationError):
        ledger.sync_calendar(booking['id'])


def test_available_buses_and_drivers(ledger, bus, other_bus, driver, other_driver, make_booking):
    booking = make_booking(bus, at(18), at(22))
    ledger.confirm(booking['id'], driver['id'])

    buses = ledger.available_buses(at(20), at(21))
    drivers = ledger.available_drivers(at(20), at(21))

    assert [b['id'] for b in buses] == [other_bus['id']]
    assert [d['id'] for d in drivers] == [other_driver['id']]
    assert len(ledger.available_buses(at(22), at(23))) == 2
