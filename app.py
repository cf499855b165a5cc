"""
Midnight Madness Flask API - Main Application
Party bus booking ledger, admin dashboard API and payment webhook
"""

import os
import json
import queue
import logging
from datetime import datetime
from flask import Flask, request, jsonify, make_response, session, Response, stream_with_context
from flask_cors import CORS
from werkzeug.exceptions import (
    HTTPException, BadRequest, Conflict, MethodNotAllowed, TooManyRequests, Unauthorized
)
from werkzeug.exceptions import NotFound as RouteNotFound

from config import Config
from database import DatabaseService, DuplicateRecord
from contacts import ContactResolver
from calendar_sync import GoogleCalendarClient, CalendarSyncAdapter
from ledger import BookingLedger
from errors import NotFound, BookingConflict, DuplicateContact, ProvisioningFailed
from ics_export import generate_ics
from payments import verify_square_signature, handle_square_event
from validators import (
    validate_booking_request, validate_express_booking_data, validate_portal_booking_data,
    validate_booking_update_data, validate_passenger_count, validate_interval, validate_uuid,
    validate_bus_data, validate_driver_data, validate_contact_data, validate_corporate_client_data
)
from auth import admin_required, admin_login, admin_logout, get_admin_status
from utils import get_client_ip, check_rate_limit, booking_reference, rate_limit_storage

API_VERSION = "1.0.0"

# Initialize Flask app
app = Flask(__name__)

# Configure Flask app
app.config.update(
    SECRET_KEY=Config.SECRET_KEY,
    SESSION_COOKIE_SECURE=Config.SESSION_COOKIE_SECURE,
    SESSION_COOKIE_HTTPONLY=Config.SESSION_COOKIE_HTTPONLY,
    SESSION_COOKIE_SAMESITE=Config.SESSION_COOKIE_SAMESITE,
    SESSION_COOKIE_DOMAIN=Config.SESSION_COOKIE_DOMAIN,
    PERMANENT_SESSION_LIFETIME=Config.PERMANENT_SESSION_LIFETIME
)

# Configure CORS
CORS(app,
     origins=Config.CORS_ORIGINS,
     supports_credentials=Config.CORS_SUPPORTS_CREDENTIALS,
     allow_headers=Config.CORS_ALLOW_HEADERS,
     methods=Config.CORS_METHODS,
     max_age=Config.CORS_MAX_AGE
)

# Configure logging
logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Initialize services
try:
    Config.validate_required_config()
    db_service = DatabaseService(Config.SUPABASE_URL, Config.SUPABASE_ANON_KEY, Config.SUPABASE_SERVICE_ROLE_KEY)
    calendar_sync = CalendarSyncAdapter(db_service, GoogleCalendarClient())
    ledger = BookingLedger(db_service, calendar_sync)
    logger.info("All services initialized successfully")
except Exception as e:
    logger.error(f"Failed to initialize services: {e}")
    db_service = None
    calendar_sync = None
    ledger = None


def database_unavailable():
    return jsonify({"error": "Database not available"}), 503


def ledger_response(result: dict, message: str, status_code: int = 200):
    """Committed booking plus an optional calendar warning"""
    return jsonify({
        "success": True,
        "booking": result['booking'],
        "warning": result.get('warning'),
        "message": message
    }), status_code


def interval_args():
    start_time = request.args.get('start_time')
    end_time = request.args.get('end_time')
    if not start_time or not end_time:
        raise BadRequest("start_time and end_time are required parameters")
    return validate_interval(start_time, end_time, allow_past=True)


@app.before_request
def handle_preflight():
    """Handle CORS preflight requests"""
    if request.method == "OPTIONS":
        response = make_response()
        response.headers.add("Access-Control-Allow-Origin", request.headers.get('Origin', '*'))
        response.headers.add('Access-Control-Allow-Headers', ",".join(Config.CORS_ALLOW_HEADERS))
        response.headers.add('Access-Control-Allow-Methods', ",".join(Config.CORS_METHODS))
        response.headers.add('Access-Control-Allow-Credentials', 'true')
        response.headers.add('Access-Control-Max-Age', str(Config.CORS_MAX_AGE))
        return response


# ADMIN API ENDPOINTS

@app.route('/admin/login', methods=['POST'])
def admin_login_endpoint():
    """Admin login endpoint"""
    data = request.get_json(silent=True)
    if not data or 'username' not in data or 'password' not in data:
        return jsonify({'error': 'Username and password required'}), 400

    result = admin_login(data['username'], data['password'])
    if 'error' in result:
        return jsonify(result), 401

    logger.info(f"Admin login successful for {data['username']} from IP: {get_client_ip()}")
    return jsonify(result)


@app.route('/admin/logout', methods=['POST'])
@admin_required
def admin_logout_endpoint():
    return jsonify(admin_logout())


@app.route('/admin/status', methods=['GET'])
@admin_required
def admin_status_endpoint():
    return jsonify(get_admin_status())


# Buses

@app.route('/admin/buses', methods=['GET'])
@admin_required
def admin_get_buses():
    """All buses including maintenance and inactive"""
    if not db_service:
        return database_unavailable()
    try:
        buses = db_service.get_buses(include_inactive=True)
        return jsonify({"buses": buses, "total": len(buses)})
    except Exception as e:
        logger.error(f"Error getting buses for admin: {e}")
        return jsonify({"error": "Failed to fetch buses"}), 500


@app.route('/admin/buses', methods=['POST'])
@admin_required
def admin_create_bus():
    if not db_service:
        return database_unavailable()
    try:
        bus_data = validate_bus_data(request.get_json(silent=True) or {})
        bus_data.setdefault('status', 'active')
        bus = db_service.create_bus(bus_data)
        logger.info(f"Bus created: {bus['name']} (ID: {bus['id']})")
        return jsonify({"success": True, "bus": bus, "message": "Bus created successfully"}), 201
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error creating bus: {e}")
        return jsonify({"error": "Failed to add bus. Please try again."}), 500


@app.route('/admin/buses/<bus_id>', methods=['PUT'])
@admin_required
def admin_update_bus(bus_id):
    if not db_service:
        return database_unavailable()
    try:
        validate_uuid(bus_id, 'bus ID')
        update_data = validate_bus_data(request.get_json(silent=True) or {}, partial=True)
        bus = db_service.update_bus(bus_id, update_data)
        if not bus:
            raise NotFound('bus', bus_id)
        logger.info(f"Bus {bus_id} updated: {list(update_data.keys())}")
        return jsonify({"success": True, "bus": bus, "message": "Bus updated successfully"})
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error updating bus {bus_id}: {e}")
        return jsonify({"error": "Failed to update bus details. Please try again."}), 500


# Drivers

@app.route('/admin/drivers', methods=['GET'])
@admin_required
def admin_get_drivers():
    if not db_service:
        return database_unavailable()
    try:
        drivers = db_service.get_drivers()
        return jsonify({"drivers": drivers, "total": len(drivers)})
    except Exception as e:
        logger.error(f"Error getting drivers: {e}")
        return jsonify({"error": "Failed to fetch drivers"}), 500


@app.route('/admin/drivers', methods=['POST'])
@admin_required
def admin_create_driver():
    """Create driver, then provision their calendar (best-effort)"""
    if not db_service:
        return database_unavailable()
    try:
        driver_data = validate_driver_data(request.get_json(silent=True) or {})
        driver_data.setdefault('status', 'active')
        driver = db_service.create_driver(driver_data)
        logger.info(f"Driver created: {driver['name']} (ID: {driver['id']})")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error creating driver: {e}")
        return jsonify({"error": "Failed to add driver. Please try again."}), 500

    warning = None
    try:
        calendar_id = calendar_sync.provision_calendar(driver['id'], driver['name'], driver.get('email'))
        driver['google_calendar_id'] = calendar_id
    except ProvisioningFailed as e:
        warning = e.to_warning(retry=f"/admin/drivers/{driver['id']}/calendar")
        warning['message'] = (f"Driver created, but calendar sync failed: {e.message}. "
                              f"You can retry from the 'Manage Drivers' tab.")
    except Exception as e:
        logger.error(f"Unexpected error provisioning calendar for driver {driver['id']}: {e}", exc_info=True)
        warning = ProvisioningFailed(str(e)).to_warning(retry=f"/admin/drivers/{driver['id']}/calendar")

    return jsonify({"success": True, "driver": driver, "warning": warning,
                    "message": "Driver created successfully"}), 201


@app.route('/admin/drivers/<driver_id>', methods=['PUT'])
@admin_required
def admin_update_driver(driver_id):
    if not db_service:
        return database_unavailable()
    try:
        validate_uuid(driver_id, 'driver ID')
        update_data = validate_driver_data(request.get_json(silent=True) or {}, partial=True)
        driver = db_service.update_driver(driver_id, update_data)
        if not driver:
            raise NotFound('driver', driver_id)
        return jsonify({"success": True, "driver": driver, "message": "Driver updated successfully"})
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error updating driver {driver_id}: {e}")
        return jsonify({"error": "Failed to update driver details. Please try again."}), 500


@app.route('/admin/drivers/<driver_id>/calendar', methods=['POST'])
@admin_required
def admin_sync_driver_calendar(driver_id):
    """Create the driver's calendar if they do not have one yet"""
    if not db_service:
        return database_unavailable()
    try:
        driver = db_service.get_driver_by_id(driver_id)
        if not driver:
            raise NotFound('driver', driver_id)
        if not driver.get('email'):
            raise BadRequest("Driver is missing an email address")

        calendar_id = calendar_sync.provision_calendar(driver['id'], driver['name'], driver['email'])
        return jsonify({"success": True, "calendar_id": calendar_id, "message": "Driver calendar is synced"})
    except ProvisioningFailed as e:
        return jsonify({"error": f"Google Calendar sync failed: {e.message}", "type": e.warning_type}), 502
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error syncing calendar for driver {driver_id}: {e}")
        return jsonify({"error": "Failed to sync driver calendar"}), 500


@app.route('/admin/drivers/<driver_id>/schedule.ics', methods=['GET'])
@admin_required
def admin_driver_schedule(driver_id):
    """Download the driver's confirmed trips as an iCalendar file"""
    if not db_service:
        return database_unavailable()
    try:
        driver = db_service.get_driver_by_id(driver_id)
        if not driver:
            raise NotFound('driver', driver_id)

        bookings = db_service.get_confirmed_bookings('driver_id', driver_id)
        ics = generate_ics(driver, bookings, db_service.get_buses(), db_service.get_contacts())

        filename = f"{driver['name'].replace(' ', '_')}_schedule.ics"
        return Response(ics, mimetype='text/calendar',
                        headers={'Content-Disposition': f'attachment; filename="{filename}"'})
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error exporting schedule for driver {driver_id}: {e}")
        return jsonify({"error": "Failed to export driver schedule"}), 500


@app.route('/admin/drivers/available', methods=['GET'])
@admin_required
def admin_available_drivers():
    """Active drivers with no confirmed trip overlapping the interval"""
    if not ledger:
        return database_unavailable()
    try:
        start_time, end_time = interval_args()
        drivers = ledger.available_drivers(start_time, end_time, request.args.get('exclude_booking_id'))
        return jsonify({"drivers": drivers, "total": len(drivers)})
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error getting available drivers: {e}")
        return jsonify({"error": "Failed to fetch available drivers"}), 500


# Contacts

@app.route('/admin/contacts', methods=['GET'])
@admin_required
def admin_get_contacts():
    if not db_service:
        return database_unavailable()
    try:
        contacts = db_service.get_contacts()
        return jsonify({"contacts": contacts, "total": len(contacts)})
    except Exception as e:
        logger.error(f"Error getting contacts: {e}")
        return jsonify({"error": "Failed to fetch contacts"}), 500


@app.route('/admin/contacts', methods=['POST'])
@admin_required
def admin_create_contact():
    if not db_service:
        return database_unavailable()
    try:
        contact_data = validate_contact_data(request.get_json(silent=True) or {})
        ContactResolver(db_service).ensure_email_available(contact_data['email'])
        try:
            contact = db_service.create_contact(contact_data)
        except DuplicateRecord:
            raise DuplicateContact()
        return jsonify({"success": True, "contact": contact, "message": "Contact created successfully"}), 201
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error creating contact: {e}")
        return jsonify({"error": "Failed to add contact."}), 500


@app.route('/admin/contacts/<contact_id>', methods=['PUT'])
@admin_required
def admin_update_contact(contact_id):
    if not db_service:
        return database_unavailable()
    try:
        update_data = validate_contact_data(request.get_json(silent=True) or {}, partial=True)
        if 'email' in update_data:
            ContactResolver(db_service).ensure_email_available(update_data['email'], contact_id)
        try:
            contact = db_service.update_contact(contact_id, update_data)
        except DuplicateRecord:
            raise DuplicateContact()
        if not contact:
            raise NotFound('contact', contact_id)
        return jsonify({"success": True, "contact": contact, "message": "Contact updated successfully"})
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error updating contact {contact_id}: {e}")
        return jsonify({"error": "Failed to update contact."}), 500


@app.route('/admin/contacts/<contact_id>', methods=['DELETE'])
@admin_required
def admin_delete_contact(contact_id):
    """Delete contact; their bookings stay and lose the link"""
    if not db_service:
        return database_unavailable()
    try:
        if not db_service.delete_contact(contact_id):
            raise NotFound('contact', contact_id)
        logger.info(f"Contact {contact_id} deleted by admin")
        return jsonify({"success": True, "message": "Contact deleted successfully"})
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error deleting contact {contact_id}: {e}")
        return jsonify({"error": "Failed to delete contact."}), 500


# Corporate clients

@app.route('/admin/corporate-clients', methods=['GET'])
@admin_required
def admin_get_corporate_clients():
    if not db_service:
        return database_unavailable()
    try:
        clients = db_service.get_corporate_clients()
        return jsonify({"corporate_clients": clients, "total": len(clients)})
    except Exception as e:
        logger.error(f"Error getting corporate clients: {e}")
        return jsonify({"error": "Failed to fetch customer pages"}), 500


@app.route('/admin/corporate-clients', methods=['POST'])
@admin_required
def admin_create_corporate_client():
    """Create a customer page together with its primary contact"""
    if not db_service:
        return database_unavailable()
    try:
        data = request.get_json(silent=True) or {}
        client_data = validate_corporate_client_data(data)
        contact_data = validate_contact_data(data.get('primary_contact') or {})
        ContactResolver(db_service).ensure_email_available(contact_data['email'])

        try:
            client = db_service.create_corporate_client(client_data, contact_data)
        except DuplicateRecord:
            raise Conflict("A customer page with this slug or contact email already exists")
        logger.info(f"Corporate client created: {client['name']} ({client['slug']})")
        return jsonify({"success": True, "corporate_client": client,
                        "message": "Customer page created successfully"}), 201
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error creating corporate client: {e}")
        return jsonify({"error": "Failed to create new customer page and primary contact."}), 500


@app.route('/admin/corporate-clients/<client_id>', methods=['PUT'])
@admin_required
def admin_update_corporate_client(client_id):
    if not db_service:
        return database_unavailable()
    try:
        update_data = validate_corporate_client_data(request.get_json(silent=True) or {}, partial=True)
        client = db_service.update_corporate_client(client_id, update_data)
        if not client:
            raise NotFound('corporate client', client_id)
        return jsonify({"success": True, "corporate_client": client,
                        "message": "Customer page updated successfully"})
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error updating corporate client {client_id}: {e}")
        return jsonify({"error": "Failed to update customer page."}), 500


@app.route('/admin/corporate-clients/<client_id>', methods=['DELETE'])
@admin_required
def admin_delete_corporate_client(client_id):
    if not db_service:
        return database_unavailable()
    try:
        if not db_service.delete_corporate_client(client_id):
            raise NotFound('corporate client', client_id)
        return jsonify({"success": True, "message": "Customer page deleted and contacts unlinked"})
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error deleting corporate client {client_id}: {e}")
        return jsonify({"error": "Failed to delete customer page and unlink contacts."}), 500


# Bookings

@app.route('/admin/bookings', methods=['GET'])
@admin_required
def admin_get_bookings():
    """Bookings ordered by start time, with filters and statistics"""
    if not db_service:
        return database_unavailable()
    try:
        filters = {
            'status': request.args.get('status'),
            'bus_id': request.args.get('bus_id'),
            'driver_id': request.args.get('driver_id'),
            'contact_id': request.args.get('contact_id'),
            'corporate_client_id': request.args.get('corporate_client_id'),
            'start_time': request.args.get('start_time'),
            'end_time': request.args.get('end_time')
        }
        filters = {k: v for k, v in filters.items() if v is not None}

        limit = min(int(request.args.get('limit', 100)), 500)
        offset = max(int(request.args.get('offset', 0)), 0)

        bookings = db_service.get_bookings_filtered(filters, limit, offset)
        stats = db_service.get_booking_statistics(filters)

        return jsonify({
            "bookings": bookings,
            "pagination": {"limit": limit, "offset": offset, "returned": len(bookings)},
            "filters": filters,
            "statistics": stats
        })
    except ValueError:
        return jsonify({"error": "limit and offset must be numbers"}), 400
    except Exception as e:
        logger.error(f"Error getting bookings for admin: {e}")
        return jsonify({"error": "Failed to fetch bookings"}), 500


@app.route('/admin/bookings', methods=['POST'])
@admin_required
def admin_create_booking():
    """Manual booking entered by an operator (created pending)"""
    if not ledger:
        return database_unavailable()
    try:
        data = request.get_json(silent=True) or {}
        data.setdefault('booking_source', 'admin_manual')
        draft, contact = validate_booking_request(data, allow_past=True)

        bus = db_service.get_bus_by_id(draft['bus_id'])
        if not bus:
            raise NotFound('bus', draft['bus_id'])
        draft['passenger_count'] = validate_passenger_count(draft['passenger_count'], bus)

        booking = ledger.create(draft, contact)
        return jsonify({"success": True, "booking": booking, "message": "Booking created successfully"}), 201
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error creating admin booking: {e}")
        return jsonify({"error": "Failed to create booking. Please try again."}), 500


@app.route('/admin/bookings/<booking_id>', methods=['PUT'])
@admin_required
def admin_update_booking(booking_id):
    """Edit booking and contact fields together"""
    if not ledger:
        return database_unavailable()
    try:
        validate_uuid(booking_id, 'booking ID')
        booking_updates, contact_updates = validate_booking_update_data(request.get_json(silent=True) or {})

        if 'passenger_count' in booking_updates:
            existing = ledger.get_booking(booking_id)
            bus = db_service.get_bus_by_id(existing['bus_id']) or {}
            validate_passenger_count(booking_updates['passenger_count'], bus)

        result = ledger.update(booking_id, booking_updates, contact_updates)
        return ledger_response(result, "Booking updated successfully")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error updating booking {booking_id}: {e}")
        return jsonify({"error": "Failed to update the booking. Please try again."}), 500


@app.route('/admin/bookings/<booking_id>/confirm', methods=['POST'])
@admin_required
def admin_confirm_booking(booking_id):
    if not ledger:
        return database_unavailable()
    try:
        validate_uuid(booking_id, 'booking ID')
        data = request.get_json(silent=True) or {}
        if not data.get('driver_id'):
            raise BadRequest("driver_id is required")
        driver_id = validate_uuid(data['driver_id'], 'driver ID')

        result = ledger.confirm(booking_id, driver_id)
        return ledger_response(result, "Booking confirmed successfully")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error confirming booking {booking_id}: {e}")
        return jsonify({"error": "Failed to confirm booking. Please try again."}), 500


@app.route('/admin/bookings/<booking_id>/cancel', methods=['POST'])
@admin_required
def admin_cancel_booking(booking_id):
    if not ledger:
        return database_unavailable()
    try:
        validate_uuid(booking_id, 'booking ID')
        result = ledger.cancel(booking_id)
        return ledger_response(result, "Booking cancelled successfully")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error cancelling booking {booking_id}: {e}")
        return jsonify({"error": "Failed to cancel booking. Please try again."}), 500


@app.route('/admin/bookings/<booking_id>/calendar-sync', methods=['POST'])
@admin_required
def admin_sync_booking_calendar(booking_id):
    """Retry calendar sync for a confirmed booking"""
    if not ledger:
        return database_unavailable()
    try:
        validate_uuid(booking_id, 'booking ID')
        result = ledger.sync_calendar(booking_id)
        return ledger_response(result, "Calendar sync attempted")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error syncing calendar for booking {booking_id}: {e}")
        return jsonify({"error": "Failed to sync calendar"}), 500


@app.route('/admin/events', methods=['GET'])
@admin_required
def admin_event_stream():
    """Server-sent change stream for the live dashboard"""
    if not db_service:
        return database_unavailable()

    changes = queue.Queue(maxsize=100)

    def on_change(table, event, record):
        try:
            changes.put_nowait({'table': table, 'event': event, 'id': (record or {}).get('id')})
        except queue.Full:
            logger.warning("Dashboard change stream is full, dropping change")

    def stream():
        unsubscribe = db_service.subscribe('*', on_change)
        try:
            yield "retry: 5000\n\n"
            while True:
                try:
                    change = changes.get(timeout=15)
                except queue.Empty:
                    yield ": keep-alive\n\n"
                    continue
                yield f"event: change\ndata: {json.dumps(change, default=str)}\n\n"
        finally:
            unsubscribe()

    return Response(stream_with_context(stream()), mimetype='text/event-stream',
                    headers={'Cache-Control': 'no-cache', 'X-Accel-Buffering': 'no'})


# PUBLIC API ENDPOINTS

@app.route('/', methods=['GET'])
def root():
    return jsonify({
        "message": "Midnight Madness Party Bus API",
        "version": API_VERSION,
        "status": "running",
        "timestamp": datetime.now().isoformat(),
        "admin_endpoints": "/admin/*"
    })


@app.route('/buses', methods=['GET'])
def get_buses():
    """Active fleet; with start_time/end_time only buses free for that interval"""
    if not ledger:
        return database_unavailable()
    try:
        if request.args.get('start_time') or request.args.get('end_time'):
            start_time, end_time = interval_args()
            buses = ledger.available_buses(start_time, end_time)
        else:
            buses = db_service.get_buses(include_inactive=False)
        return jsonify({"buses": buses, "total": len(buses)})
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error getting buses: {e}")
        return jsonify({"error": "Failed to fetch buses"}), 500


def _create_public_booking(draft: dict, contact: dict, corporate_info: dict = None):
    bus = db_service.get_bus_by_id(draft['bus_id'])
    if not bus:
        raise NotFound('bus', draft['bus_id'])
    draft['passenger_count'] = validate_passenger_count(draft['passenger_count'], bus)

    booking = ledger.create(draft, contact, corporate_info)
    logger.info(f"Booking request {booking_reference(booking['id'])} received from IP: {get_client_ip()}")
    return booking


@app.route('/bookings', methods=['POST'])
def create_booking():
    """Public booking (quote) request; created pending"""
    if not ledger:
        return database_unavailable()
    try:
        check_rate_limit()
        data = request.get_json(silent=True)
        if not data:
            raise BadRequest("No data provided")

        draft, contact = validate_booking_request(data)
        booking = _create_public_booking(draft, contact)

        return jsonify({
            "success": True,
            "booking": booking,
            "reference": booking_reference(booking['id']),
            "message": "Booking request received. We will contact you to confirm."
        }), 201
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error creating booking: {e}")
        return jsonify({"error": "Failed to create booking. Please try again."}), 500


@app.route('/bookings/express', methods=['POST'])
def create_express_booking():
    """One-hour express booking awaiting Square payment"""
    if not ledger:
        return database_unavailable()
    try:
        check_rate_limit()
        data = request.get_json(silent=True)
        if not data:
            raise BadRequest("Missing required booking information.")

        express, contact = validate_express_booking_data(data)
        bus = db_service.get_bus_by_id(express['bus_id'])
        if not bus:
            raise NotFound('bus', express['bus_id'])
        passenger_count = validate_passenger_count(express['passenger_count'], bus)

        booking = ledger.create_express(express['bus_id'], contact, express['start_time'], passenger_count)
        logger.info(f"Express booking created with ID: {booking['id']}")
        return jsonify({"success": True, "booking_id": booking['id'], "booking": booking}), 201
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error creating express booking: {e}")
        return jsonify({"error": "Could not create the booking. Please try again."}), 500


@app.route('/portal/<slug>', methods=['GET'])
def get_portal(slug):
    """Public details of a corporate customer page"""
    if not db_service:
        return database_unavailable()
    try:
        client = db_service.get_corporate_client_by_slug(slug)
        if not client:
            raise NotFound('customer page', slug)
        return jsonify({
            "name": client['name'],
            "slug": client['slug'],
            "logo_url": client.get('logo_url'),
            "default_pickup_location": client.get('default_pickup_location'),
            "default_dropoff_location": client.get('default_dropoff_location'),
        })
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error getting portal {slug}: {e}")
        return jsonify({"error": "Failed to fetch customer page"}), 500


@app.route('/portal/<slug>/bookings', methods=['POST'])
def create_portal_booking(slug):
    """Booking request from a corporate partner's page"""
    if not ledger:
        return database_unavailable()
    try:
        check_rate_limit()
        client = db_service.get_corporate_client_by_slug(slug)
        if not client:
            raise NotFound('customer page', slug)

        data = request.get_json(silent=True)
        if not data:
            raise BadRequest("No data provided")

        draft, contact = validate_portal_booking_data(data, client)
        booking = _create_public_booking(draft, contact, {'id': client['id'], 'name': client['name']})

        return jsonify({
            "success": True,
            "booking": booking,
            "reference": booking_reference(booking['id']),
            "message": "Booking request received."
        }), 201
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error creating portal booking for {slug}: {e}")
        return jsonify({"error": "Failed to create booking. Please try again."}), 500


@app.route('/webhooks/square', methods=['POST'])
def square_webhook():
    """Square payment notifications; confirms paid express bookings"""
    if not Config.SQUARE_WEBHOOK_SIGNATURE_KEY:
        logger.error("Square webhook signature key is not configured. Aborting.")
        return "Internal Server Error: Missing signature key.", 500

    body = request.get_data()
    signature = request.headers.get('x-square-signature')
    if not verify_square_signature(Config.SQUARE_WEBHOOK_SIGNATURE_KEY, Config.SQUARE_WEBHOOK_URL, body, signature):
        logger.error("Webhook signature validation failed.")
        return "Unauthorized", 401

    if not ledger:
        return database_unavailable()

    try:
        event = json.loads(body or b'{}')
    except ValueError:
        return "Bad Request", 400

    try:
        booking = handle_square_event(event, db_service, ledger)
        if booking:
            logger.info(f"Booking {booking['id']} confirmed successfully.")
    except Exception as e:
        # Signature was valid: acknowledge so Square stops retrying, the payment is in the logs
        logger.error(f"Error processing Square webhook: {e}", exc_info=True)

    return "OK", 200


@app.route('/health', methods=['GET'])
def health_check():
    """Health check endpoint"""
    health_data = {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "version": API_VERSION,
        "environment": os.environ.get('FLASK_ENV', 'development')
    }
    status_code = 200

    if db_service:
        try:
            db_service.supabase.table('buses').select('id').limit(1).execute()
            health_data['database'] = 'connected'
        except Exception as e:
            health_data['database'] = f'error: {str(e)}'
            health_data['status'] = 'degraded'
            status_code = 503
    else:
        health_data['database'] = 'not_configured'
        health_data['status'] = 'degraded'
        status_code = 503

    health_data['calendar_sync'] = 'configured' if Config.GOOGLE_IMPERSONATION_ACCOUNT else 'not_configured'
    health_data['square_webhook'] = 'configured' if Config.SQUARE_WEBHOOK_SIGNATURE_KEY else 'not_configured'
    health_data['rate_limit_entries'] = len(rate_limit_storage)
    health_data['dashboard_listeners'] = db_service.changes.listener_count() if db_service else 0
    health_data['admin_session'] = 'active' if session.get('admin_logged_in') else 'inactive'

    return jsonify(health_data), status_code


# Error handlers

@app.errorhandler(BadRequest)
def handle_bad_request(error):
    return jsonify({'error': error.description}), 400


@app.errorhandler(RouteNotFound)
def handle_not_found(error):
    if isinstance(error, NotFound):
        return jsonify({'error': error.description, 'resource': error.resource}), 404
    return jsonify({'error': 'Endpoint not found'}), 404


@app.errorhandler(Conflict)
def handle_conflict(error):
    payload = {'error': error.description}
    if isinstance(error, BookingConflict):
        payload['conflict'] = error.resource
    return jsonify(payload), 409


@app.errorhandler(MethodNotAllowed)
def handle_method_not_allowed(error):
    return jsonify({'error': 'Method Not Allowed'}), 405


@app.errorhandler(TooManyRequests)
def handle_rate_limit_exceeded(error):
    return jsonify({'error': error.description, 'retry_after': '1 hour'}), 429


@app.errorhandler(Unauthorized)
def handle_unauthorized(error):
    return jsonify({'error': 'Unauthorized access'}), 401


@app.errorhandler(500)
def internal_server_error(error):
    logger.error(f"Internal server error: {error}")
    return jsonify({'error': 'Internal server error'}), 500


if __name__ == '__main__':
    # Development server
    app.run(host='0.0.0.0', port=int(os.environ.get('PORT', 5000)), debug=os.environ.get('FLASK_ENV') == 'development')
