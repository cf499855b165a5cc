from datetime import datetime, timezone

from ics_export import escape_text, format_ics_date, generate_ics

DRIVER = {'id': 'driver-1', 'name': 'Sam Driver'}
BUSES = [{'id': 'bus-1', 'name': 'Midnight Express'}]
CONTACTS = [{'id': 'contact-1', 'name': 'Doe, Jane'}]


def booking(booking_id, start, end, **extra):
    return {'id': booking_id, 'bus_id': 'bus-1', 'contact_id': 'contact-1', 'start_time': start,
            'end_time': end, 'pickup_location': '100 Main St', 'dropoff_location': 'Downtown',
            'passenger_count': 12, **extra}


def test_format_ics_date_is_utc():
    assert format_ics_date('2030-07-01T12:00:00-06:00') == '20300701T180000Z'


def test_escape_text_handles_ical_specials():
    assert escape_text('a,b;c\\d\ne') == r'a\,b\;c\\d\ne'


def test_generate_ics_renders_sorted_events():
    ics = generate_ics(
        DRIVER,
        [booking('b-2', '2030-07-02T18:00:00Z', '2030-07-02T20:00:00Z'),
         booking('b-1', '2030-07-01T18:00:00Z', '2030-07-01T22:00:00Z')],
        BUSES,
        CONTACTS,
        now=datetime(2030, 6, 1, tzinfo=timezone.utc),
    )
    lines = ics.split('\r\n')

    assert lines[0] == 'BEGIN:VCALENDAR'
    assert lines[-1] == 'END:VCALENDAR'
    assert "X-WR-CALNAME:Sam Driver's Schedule" in lines
    uids = [line for line in lines if line.startswith('UID:')]
    assert uids == ['UID:b-1@midnightmadness.app', 'UID:b-2@midnightmadness.app']
    assert 'DTSTART:20300701T180000Z' in lines
    assert 'DTSTAMP:20300601T000000Z' in lines
    assert 'SUMMARY:Party Bus Duty: Doe\\, Jane' in lines
    assert 'LOCATION:Pickup: 100 Main St | Dropoff: Downtown' in lines


def test_generate_ics_tolerates_unknown_client_and_bus():
    ics = generate_ics(DRIVER, [booking('b-1', '2030-07-01T18:00:00Z', '2030-07-01T22:00:00Z',
                                       bus_id='gone', contact_id=None)], BUSES, CONTACTS)

    assert 'SUMMARY:Party Bus Duty: Unknown Client' in ics
    assert 'Bus: Unknown' in ics


def test_generate_ics_with_no_bookings_is_an_empty_calendar():
    ics = generate_ics(DRIVER, [], BUSES, CONTACTS)

    assert 'BEGIN:VEVENT' not in ics
    assert ics.endswith('END:VCALENDAR')
