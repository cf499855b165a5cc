import copy
import uuid

import pytest

from calendar_sync import CalendarApiError, CalendarSyncAdapter
from database import (
    BUS_OVERLAP_CONSTRAINT, DRIVER_OVERLAP_CONSTRAINT, ChangeFeed, DuplicateRecord, OverlapViolation
)
from ledger import BookingLedger
from utils import intervals_overlap, linear_backoff, parse_timestamp


class InMemoryDatabase:
    """DatabaseService stand-in that enforces the same exclusion constraints as the SQL schema"""

    def __init__(self) -> None:
        self.tables = {name: {} for name in ('buses', 'drivers', 'contacts', 'corporate_clients', 'bookings')}
        self.changes = ChangeFeed()
        self.supabase = None
        self.calls: list[tuple[str, tuple]] = []

    def subscribe(self, table, callback):
        return self.changes.subscribe(table, callback)

    # helpers

    def _insert(self, table, data):
        row = copy.deepcopy(data)
        row.setdefault('id', str(uuid.uuid4()))
        self.tables[table][row['id']] = row
        self.changes.publish(table, 'INSERT', copy.deepcopy(row))
        return copy.deepcopy(row)

    def _get(self, table, row_id):
        row = self.tables[table].get(row_id)
        return copy.deepcopy(row) if row else None

    def _update(self, table, row_id, data):
        row = self.tables[table].get(row_id)
        if not row:
            return None
        row.update(copy.deepcopy(data))
        self.changes.publish(table, 'UPDATE', copy.deepcopy(row))
        return copy.deepcopy(row)

    def _list(self, table, sort_key='name'):
        return sorted((copy.deepcopy(r) for r in self.tables[table].values()), key=lambda r: r.get(sort_key) or '')

    def _check_overlap(self, candidate):
        if candidate.get('status') != 'confirmed':
            return
        for other in self.tables['bookings'].values():
            if other['id'] == candidate['id'] or other.get('status') != 'confirmed':
                continue
            if not intervals_overlap(candidate['start_time'], candidate['end_time'],
                                     other['start_time'], other['end_time']):
                continue
            if other['bus_id'] == candidate['bus_id']:
                raise OverlapViolation(BUS_OVERLAP_CONSTRAINT)
            if candidate.get('driver_id') and other.get('driver_id') == candidate['driver_id']:
                raise OverlapViolation(DRIVER_OVERLAP_CONSTRAINT)

    def _check_unique_email(self, contact_id, data):
        email = data.get('email')
        for other in self.tables['contacts'].values():
            if email and other['id'] != contact_id and other.get('email') == email:
                raise DuplicateRecord('contacts_email_key')

    def _write_booking(self, booking_id, data):
        row = self.tables['bookings'].get(booking_id)
        if not row:
            return None
        candidate = {**row, **data}
        self._check_overlap(candidate)
        return self._update('bookings', booking_id, data)

    # buses

    def get_buses(self, include_inactive=True):
        buses = self._list('buses')
        if not include_inactive:
            buses = [b for b in buses if b.get('status') == 'active']
        return buses

    def get_bus_by_id(self, bus_id):
        return self._get('buses', bus_id)

    def create_bus(self, bus_data):
        return self._insert('buses', bus_data)

    def update_bus(self, bus_id, update_data):
        return self._update('buses', bus_id, update_data)

    # drivers

    def get_drivers(self):
        return self._list('drivers')

    def get_driver_by_id(self, driver_id):
        return self._get('drivers', driver_id)

    def create_driver(self, driver_data):
        return self._insert('drivers', driver_data)

    def update_driver(self, driver_id, update_data):
        self.calls.append(('update_driver', (driver_id, dict(update_data))))
        return self._update('drivers', driver_id, update_data)

    # contacts

    def get_contacts(self):
        return self._list('contacts')

    def get_contact_by_id(self, contact_id):
        return self._get('contacts', contact_id)

    def find_contact_by_email(self, email):
        for contact in self.tables['contacts'].values():
            if contact.get('email') == email:
                return copy.deepcopy(contact)
        return None

    def create_contact(self, contact_data):
        self.calls.append(('create_contact', (dict(contact_data),)))
        self._check_unique_email(contact_data.get('id'), contact_data)
        return self._insert('contacts', contact_data)

    def update_contact(self, contact_id, update_data):
        self._check_unique_email(contact_id, update_data)
        return self._update('contacts', contact_id, update_data)

    def delete_contact(self, contact_id):
        row = self.tables['contacts'].pop(contact_id, None)
        if not row:
            return False
        for booking in self.tables['bookings'].values():
            if booking.get('contact_id') == contact_id:
                booking['contact_id'] = None
        self.changes.publish('contacts', 'DELETE', row)
        return True

    # corporate clients

    def get_corporate_clients(self):
        return self._list('corporate_clients')

    def get_corporate_client_by_id(self, client_id):
        return self._get('corporate_clients', client_id)

    def get_corporate_client_by_slug(self, slug):
        for client in self.tables['corporate_clients'].values():
            if client.get('slug') == slug and client.get('status', 'active') == 'active':
                return copy.deepcopy(client)
        return None

    def create_corporate_client(self, client_data, contact_data):
        client = self._insert('corporate_clients', {'status': 'active', **client_data})
        self._insert('contacts', {**contact_data, 'corporate_client_id': client['id'], 'company_name': client['name']})
        return client

    def update_corporate_client(self, client_id, update_data):
        client = self._update('corporate_clients', client_id, update_data)
        if client and 'name' in update_data:
            for contact in self.tables['contacts'].values():
                if contact.get('corporate_client_id') == client_id:
                    contact['company_name'] = update_data['name']
        return client

    def delete_corporate_client(self, client_id):
        if not self.tables['corporate_clients'].pop(client_id, None):
            return False
        for contact in self.tables['contacts'].values():
            if contact.get('corporate_client_id') == client_id:
                contact['corporate_client_id'] = None
                contact['company_name'] = None
        return True

    # bookings

    def get_booking_by_id(self, booking_id):
        return self._get('bookings', booking_id)

    def get_bookings_filtered(self, filters, limit=100, offset=0):
        bookings = self._list('bookings', sort_key='start_time')
        for field in ('status', 'bus_id', 'driver_id', 'contact_id', 'corporate_client_id'):
            if filters.get(field):
                bookings = [b for b in bookings if b.get(field) == filters[field]]
        return bookings[offset:offset + limit]

    def get_confirmed_bookings(self, resource_field, resource_id):
        self.calls.append(('get_confirmed_bookings', (resource_field, resource_id)))
        return [b for b in self._list('bookings', sort_key='start_time')
                if b.get('status') == 'confirmed' and b.get(resource_field) == resource_id]

    def get_confirmed_bookings_in_range(self, start_time, end_time):
        return [b for b in self._list('bookings', sort_key='start_time')
                if b.get('status') == 'confirmed'
                and intervals_overlap(start_time, end_time, b['start_time'], b['end_time'])]

    def find_recent_pending_booking(self, contact_id, booking_type, since):
        matches = [b for b in self.tables['bookings'].values()
                   if b.get('contact_id') == contact_id and b.get('status') == 'pending'
                   and b.get('booking_type') == booking_type
                   and parse_timestamp(b['start_time']) >= parse_timestamp(since)]
        matches.sort(key=lambda b: parse_timestamp(b['start_time']), reverse=True)
        return copy.deepcopy(matches[0]) if matches else None

    def create_booking(self, booking_data):
        return self._insert('bookings', booking_data)

    def update_booking(self, booking_id, update_data):
        return self._write_booking(booking_id, update_data)

    def transition_booking(self, booking_id, from_statuses, update_data):
        self.calls.append(('transition_booking', (booking_id, list(from_statuses))))
        row = self.tables['bookings'].get(booking_id)
        if not row or row.get('status') not in from_statuses:
            return None
        return self._write_booking(booking_id, update_data)

    def update_booking_with_contact(self, booking_id, booking_updates, contact_id, contact_updates):
        if booking_id not in self.tables['bookings']:
            return None
        # validate first so a rejected booking write leaves the contact untouched
        self._check_overlap({**self.tables['bookings'][booking_id], **booking_updates})
        if contact_updates:
            self._check_unique_email(contact_id, contact_updates)
            self._update('contacts', contact_id, contact_updates)
        return self._write_booking(booking_id, booking_updates)

    def get_booking_statistics(self, filters=None):
        bookings = list(self.tables['bookings'].values())
        return {
            'total': len(bookings),
            'pending': len([b for b in bookings if b['status'] == 'pending']),
            'confirmed': len([b for b in bookings if b['status'] == 'confirmed']),
            'cancelled': len([b for b in bookings if b['status'] == 'cancelled']),
            'quoted_revenue': sum(float(b.get('quote_amount') or 0) for b in bookings if b['status'] == 'confirmed'),
        }


class FakeCalendarClient:
    """GoogleCalendarClient stand-in recording every remote call"""

    project_id = 'test-project'

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple]] = []
        self.api_enabled = True
        self.create_error: CalendarApiError | None = None
        self.insert_failures = 0
        self.insert_error = CalendarApiError('Backend Error', 503)
        self.delete_error: CalendarApiError | None = None
        self._counter = 0

    def _next_id(self, prefix):
        self._counter += 1
        return f"{prefix}-{self._counter}"

    def is_calendar_api_enabled(self):
        self.calls.append(('is_calendar_api_enabled', ()))
        return self.api_enabled

    def create_calendar(self, summary, description, time_zone):
        self.calls.append(('create_calendar', (summary, description, time_zone)))
        if self.create_error:
            raise self.create_error
        return {'id': f"{self._next_id('cal')}@group.calendar.google.com", 'summary': summary}

    def share_calendar(self, calendar_id, email, role):
        self.calls.append(('share_calendar', (calendar_id, email, role)))
        return {'role': role}

    def insert_event(self, calendar_id, event):
        self.calls.append(('insert_event', (calendar_id, event)))
        if self.insert_failures > 0:
            self.insert_failures -= 1
            raise self.insert_error
        return {'id': self._next_id('evt')}

    def delete_event(self, calendar_id, event_id):
        self.calls.append(('delete_event', (calendar_id, event_id)))
        if self.delete_error:
            raise self.delete_error

    def call_names(self):
        return [name for name, _ in self.calls]


@pytest.fixture
def db():
    return InMemoryDatabase()


@pytest.fixture
def calendar_client():
    return FakeCalendarClient()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def calendar_sync(db, calendar_client, sleeps):
    return CalendarSyncAdapter(db, calendar_client, attempts=3, delay=linear_backoff(1.0), sleep=sleeps.append)


@pytest.fixture
def ledger(db, calendar_sync):
    return BookingLedger(db, calendar_sync)


@pytest.fixture
def bus(db):
    return db.create_bus({'name': 'Midnight Express', 'capacity': 20, 'status': 'active'})


@pytest.fixture
def other_bus(db):
    return db.create_bus({'name': 'Party Cruiser', 'capacity': 30, 'status': 'active'})


@pytest.fixture
def driver(db):
    return db.create_driver({
        'name': 'Sam Driver',
        'email': 'sam@example.com',
        'status': 'active',
        'google_calendar_id': 'sam-cal@group.calendar.google.com',
    })


@pytest.fixture
def other_driver(db):
    return db.create_driver({
        'name': 'Alex Wheeler',
        'email': 'alex@example.com',
        'status': 'active',
        'google_calendar_id': 'alex-cal@group.calendar.google.com',
    })


@pytest.fixture
def contact_details():
    return {'name': 'Jane Doe', 'email': 'jane@example.com', 'phone': '403-555-0100'}


@pytest.fixture
def make_booking(ledger, contact_details):
    def _make(bus, start, end, **extra):
        draft = {
            'bus_id': bus['id'],
            'start_time': start,
            'end_time': end,
            'pickup_location': '100 Main St',
            'dropoff_location': 'Downtown',
            'passenger_count': 10,
            **extra,
        }
        return ledger.create(draft, contact_details)
    return _make
