"""
Validation module for Midnight Madness Flask API
Contains all validation functions for data validation
"""

import re
import uuid
import logging
from typing import Dict, Any, Tuple
from config import Config
from errors import ValidationError
from utils import parse_timestamp, utc_now

logger = logging.getLogger(__name__)

SLUG_PATTERN = re.compile(r'^[a-z0-9]+(?:-[a-z0-9]+)*$')


def validate_email(email: str) -> bool:
    """Validate email format"""
    pattern = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'
    return re.match(pattern, email) is not None


def validate_phone(phone: str) -> bool:
    """Validate North American / international phone format"""
    clean_phone = re.sub(r'\D', '', phone)
    return 10 <= len(clean_phone) <= 15


def validate_timestamp(value) -> bool:
    """Validate ISO-8601 timestamp"""
    try:
        parse_timestamp(value)
        return True
    except (TypeError, ValueError):
        return False


def validate_uuid(value: str, label: str = 'ID') -> str:
    try:
        uuid.UUID(str(value))
    except ValueError:
        raise ValidationError(f"Invalid {label} format")
    return str(value)


def check_honeypot(data: dict) -> None:
    """Reject submissions where a hidden honeypot field was filled"""
    for honeypot in Config.HONEYPOT_FIELDS:
        if honeypot in data and data[honeypot]:
            logger.warning(f"Honeypot field '{honeypot}' was filled")
            raise ValidationError("Invalid form submission")


def _require(data: dict, fields) -> None:
    for field in fields:
        value = data.get(field)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValidationError(f"Missing required field: {field}")


def validate_interval(start_value, end_value, allow_past: bool = False) -> Tuple[str, str]:
    """Validate a booking interval and return it as ISO strings"""
    if not validate_timestamp(start_value) or not validate_timestamp(end_value):
        raise ValidationError("Invalid timestamp format. Use ISO-8601, e.g. 2024-07-01T18:00:00-06:00")

    start, end = parse_timestamp(start_value), parse_timestamp(end_value)
    if end <= start:
        raise ValidationError("End time must be after start time")

    hours = (end - start).total_seconds() / 3600
    if hours < Config.MIN_BOOKING_HOURS:
        raise ValidationError(f"Minimum booking length is {Config.MIN_BOOKING_HOURS} hour(s)")
    if hours > Config.MAX_BOOKING_HOURS:
        raise ValidationError(f"Maximum booking length is {Config.MAX_BOOKING_HOURS} hours")

    if not allow_past and start < utc_now():
        raise ValidationError("Start time must be in the future")

    return start.isoformat(), end.isoformat()


def validate_contact_details(data: dict) -> Dict[str, Any]:
    """Validate requester contact details"""
    _require(data, ['name', 'email', 'phone'])

    if len(data['name'].strip()) < 2:
        raise ValidationError("Name must be at least 2 characters")

    if not validate_email(data['email'].strip()):
        raise ValidationError("Invalid email format")

    if not validate_phone(data['phone'].strip()):
        raise ValidationError("Invalid phone number format")

    return {
        'name': data['name'].strip(),
        'email': data['email'].strip().lower(),
        'phone': data['phone'].strip(),
    }


def validate_passenger_count(value, bus: Dict[str, Any]) -> int:
    """Passenger count must be positive and fit the bus"""
    try:
        count = int(value)
    except (ValueError, TypeError):
        raise ValidationError("Passenger count must be a valid number")

    if count < 1:
        raise ValidationError("Passenger count must be at least 1")

    if bus.get('capacity') is not None and count > int(bus['capacity']):
        raise ValidationError(f"Passenger count cannot exceed the bus capacity of {bus['capacity']}.")

    return count


def validate_booking_request(data: dict, allow_past: bool = False) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Validate a booking request form and split it into booking draft and contact details"""
    _require(data, ['bus_id', 'start_time', 'end_time', 'pickup_location', 'dropoff_location', 'passenger_count'])
    check_honeypot(data)

    start_time, end_time = validate_interval(data['start_time'], data['end_time'], allow_past=allow_past)
    contact = validate_contact_details(data)

    draft = {
        'bus_id': validate_uuid(data['bus_id'], 'bus ID'),
        'start_time': start_time,
        'end_time': end_time,
        'pickup_location': data['pickup_location'].strip(),
        'dropoff_location': data['dropoff_location'].strip(),
        'passenger_count': data['passenger_count'],
        'booking_source': data.get('booking_source') or 'web_quote',
    }

    if draft['booking_source'] not in Config.VALID_BOOKING_SOURCES:
        raise ValidationError(f"Invalid booking source. Allowed: {', '.join(Config.VALID_BOOKING_SOURCES)}")

    for optional in ('occasion', 'notes'):
        if data.get(optional):
            draft[optional] = str(data[optional]).strip()

    if data.get('quote_amount') is not None:
        draft['quote_amount'] = _validate_amount(data['quote_amount'], 'Quote amount')

    return draft, contact


def validate_express_booking_data(data: dict) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Validate the express (one hour) booking form"""
    _require(data, ['bus_id', 'start_time', 'passenger_count'])
    check_honeypot(data)

    contact_data = data.get('contact') or {}
    contact = validate_contact_details(contact_data)

    if not validate_timestamp(data['start_time']):
        raise ValidationError("Invalid timestamp format for start_time")

    return {
        'bus_id': validate_uuid(data['bus_id'], 'bus ID'),
        'start_time': parse_timestamp(data['start_time']).isoformat(),
        'passenger_count': data['passenger_count'],
    }, contact


def validate_portal_booking_data(data: dict, client: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Corporate portal request; locations fall back to the client's defaults"""
    merged = dict(data)
    merged['pickup_location'] = data.get('pickup_location') or client.get('default_pickup_location')
    merged['dropoff_location'] = data.get('dropoff_location') or client.get('default_dropoff_location')
    merged['booking_source'] = 'partner_portal'
    return validate_booking_request(merged)


def _validate_amount(value, label: str) -> float:
    try:
        amount = float(value)
    except (ValueError, TypeError):
        raise ValidationError(f"{label} must be a valid number")
    if amount < 0:
        raise ValidationError(f"{label} cannot be negative")
    return amount


def validate_bus_data(data: dict, partial: bool = False) -> dict:
    """Validate bus data for create/update operations"""
    allowed_fields = ['name', 'capacity', 'image_url', 'features', 'starting_price', 'color', 'status', 'notes']
    bus = {k: v for k, v in data.items() if k in allowed_fields}

    if not partial:
        _require(bus, ['name', 'capacity'])
    if not bus:
        raise ValidationError("No valid fields to update")

    if 'capacity' in bus:
        try:
            bus['capacity'] = int(bus['capacity'])
        except (ValueError, TypeError):
            raise ValidationError("Capacity must be a valid number")
        if bus['capacity'] < 1:
            raise ValidationError("Capacity must be positive")

    if 'starting_price' in bus and bus['starting_price'] is not None:
        bus['starting_price'] = _validate_amount(bus['starting_price'], 'Starting price')

    if 'features' in bus and not isinstance(bus['features'], list):
        raise ValidationError("Features must be an array")

    if 'status' in bus and bus['status'] not in Config.VALID_BUS_STATUSES:
        raise ValidationError(f"Invalid bus status. Allowed: {', '.join(Config.VALID_BUS_STATUSES)}")

    return bus


def validate_driver_data(data: dict, partial: bool = False) -> dict:
    """Validate driver data for create/update operations"""
    allowed_fields = ['name', 'image_url', 'phone', 'email', 'status', 'notes']
    driver = {k: v for k, v in data.items() if k in allowed_fields}

    if not partial:
        _require(driver, ['name', 'email'])
    if not driver:
        raise ValidationError("No valid fields to update")

    if driver.get('email'):
        if not validate_email(driver['email'].strip()):
            raise ValidationError("Invalid email format")
        driver['email'] = driver['email'].strip().lower()

    if driver.get('phone') and not validate_phone(driver['phone']):
        raise ValidationError("Invalid phone number format")

    if 'status' in driver and driver['status'] not in Config.VALID_DRIVER_STATUSES:
        raise ValidationError(f"Invalid driver status. Allowed: {', '.join(Config.VALID_DRIVER_STATUSES)}")

    return driver


def validate_contact_data(data: dict, partial: bool = False) -> dict:
    """Validate admin contact edits"""
    allowed_fields = ['name', 'email', 'phone', 'source', 'notes']
    contact = {k: v for k, v in data.items() if k in allowed_fields}

    if not partial:
        _require(contact, ['name', 'email'])
    if not contact:
        raise ValidationError("No valid fields to update")

    if 'email' in contact:
        if not contact['email'] or not validate_email(contact['email'].strip()):
            raise ValidationError("Invalid email format")
        contact['email'] = contact['email'].strip().lower()

    if contact.get('phone') and not validate_phone(contact['phone']):
        raise ValidationError("Invalid phone number format")

    return contact


def validate_corporate_client_data(data: dict, partial: bool = False) -> dict:
    """Validate corporate client (customer page) data"""
    allowed_fields = ['name', 'slug', 'logo_url', 'default_pickup_location', 'default_dropoff_location',
                      'status', 'notes']
    client = {k: v for k, v in data.items() if k in allowed_fields}

    if not partial:
        _require(client, ['name', 'slug'])
    if not client:
        raise ValidationError("No valid fields to update")

    if 'slug' in client:
        client['slug'] = str(client['slug']).strip().lower()
        if not SLUG_PATTERN.match(client['slug']):
            raise ValidationError("Slug may only contain lowercase letters, numbers and single hyphens")

    if 'status' in client and client['status'] not in Config.VALID_CLIENT_STATUSES:
        raise ValidationError(f"Invalid client status. Allowed: {', '.join(Config.VALID_CLIENT_STATUSES)}")

    return client


def validate_booking_update_data(data: dict) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Split an edit into booking fields and nested contact fields"""
    allowed_fields = ['driver_id', 'start_time', 'end_time', 'pickup_location', 'dropoff_location',
                      'passenger_count', 'quote_amount', 'payment_status', 'occasion', 'booking_source', 'notes']
    booking_updates = {k: data[k] for k in allowed_fields if k in data}
    contact_updates = validate_contact_data(data['contact'], partial=True) if data.get('contact') else {}

    if not booking_updates and not contact_updates:
        raise ValidationError("No valid fields to update")

    for field in ('start_time', 'end_time'):
        if field in booking_updates:
            if not validate_timestamp(booking_updates[field]):
                raise ValidationError(f"Invalid timestamp format for {field}")
            booking_updates[field] = parse_timestamp(booking_updates[field]).isoformat()

    if booking_updates.get('driver_id'):
        validate_uuid(booking_updates['driver_id'], 'driver ID')

    if 'passenger_count' in booking_updates:
        try:
            booking_updates['passenger_count'] = int(booking_updates['passenger_count'])
        except (ValueError, TypeError):
            raise ValidationError("Passenger count must be a valid number")

    if booking_updates.get('quote_amount') is not None:
        booking_updates['quote_amount'] = _validate_amount(booking_updates['quote_amount'], 'Quote amount')

    if 'payment_status' in booking_updates and booking_updates['payment_status'] not in Config.VALID_PAYMENT_STATUSES:
        raise ValidationError(f"Invalid payment_status. Allowed: {', '.join(Config.VALID_PAYMENT_STATUSES)}")

    if 'booking_source' in booking_updates and booking_updates['booking_source'] not in Config.VALID_BOOKING_SOURCES:
        raise ValidationError(f"Invalid booking_source. Allowed: {', '.join(Config.VALID_BOOKING_SOURCES)}")

    return booking_updates, contact_updates
