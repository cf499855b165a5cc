"""
iCalendar export for Midnight Madness Flask API
Renders a driver's confirmed trips as a downloadable .ics schedule
"""

from datetime import datetime, timezone
from typing import Dict, Any, List

from utils import parse_timestamp

PRODUCT_ID = '-//MidnightMadness//Driver Schedule//EN'
UID_DOMAIN = 'midnightmadness.app'


def format_ics_date(value) -> str:
    """UTC timestamp in iCalendar form, e.g. 20251030T190000Z"""
    return parse_timestamp(value).strftime('%Y%m%dT%H%M%SZ')


def escape_text(value) -> str:
    text = str(value)
    return (text.replace('\\', '\\\\').replace(';', '\\;').replace(',', '\\,')
            .replace('\r\n', '\\n').replace('\n', '\\n'))


def generate_ics(driver: Dict[str, Any], bookings: List[Dict[str, Any]], buses: List[Dict[str, Any]],
                 contacts: List[Dict[str, Any]], now: datetime = None) -> str:
    bus_map = {bus['id']: bus for bus in buses}
    contact_map = {contact['id']: contact for contact in contacts}
    stamp = format_ics_date(now or datetime.now(timezone.utc))

    lines = [
        'BEGIN:VCALENDAR',
        'VERSION:2.0',
        f'PRODID:{PRODUCT_ID}',
        f"X-WR-CALNAME:{escape_text(driver.get('name', 'Driver'))}'s Schedule",
        'X-WR-TIMEZONE:UTC',
        'CALSCALE:GREGORIAN',
    ]

    for booking in sorted(bookings, key=lambda b: parse_timestamp(b['start_time'])):
        bus = bus_map.get(booking.get('bus_id')) or {}
        contact = contact_map.get(booking.get('contact_id')) or {}
        client_name = contact.get('name') or 'Unknown Client'

        lines += [
            'BEGIN:VEVENT',
            f"UID:{booking['id']}@{UID_DOMAIN}",
            f'DTSTAMP:{stamp}',
            f"DTSTART:{format_ics_date(booking['start_time'])}",
            f"DTEND:{format_ics_date(booking['end_time'])}",
            f'SUMMARY:Party Bus Duty: {escape_text(client_name)}',
            'LOCATION:' + escape_text(
                f"Pickup: {booking.get('pickup_location', '')} | Dropoff: {booking.get('dropoff_location', '')}"
            ),
            'DESCRIPTION:' + '\\n'.join([
                f'Client: {escape_text(client_name)}',
                f"Passengers: {booking.get('passenger_count', '-')}",
                f"Bus: {escape_text(bus.get('name') or 'Unknown')}",
            ]),
            'STATUS:CONFIRMED',
            'END:VEVENT',
        ]

    lines.append('END:VCALENDAR')
    return '\r\n'.join(lines)
