"""
Database service module for Midnight Madness Flask API
Handles all Supabase database operations and in-process change notifications
"""

import logging
import threading
from datetime import datetime
from typing import Optional, Dict, Any, List, Callable
from postgrest.exceptions import APIError
from supabase import create_client, Client

logger = logging.getLogger(__name__)

# Exclusion constraints from migrations/001_booking_ledger.sql
BUS_OVERLAP_CONSTRAINT = 'bookings_bus_no_overlap'
DRIVER_OVERLAP_CONSTRAINT = 'bookings_driver_no_overlap'
EXCLUSION_VIOLATION = '23P01'
UNIQUE_VIOLATION = '23505'

RESOURCE_FIELDS = ('bus_id', 'driver_id')


class OverlapViolation(Exception):
    """The store rejected a write that would double-book a resource"""

    def __init__(self, constraint: Optional[str]):
        self.constraint = constraint
        super().__init__(f"Overlap constraint violated: {constraint or 'unknown'}")


class DuplicateRecord(Exception):
    """The store rejected a write that repeats a unique value"""

    def __init__(self, constraint: Optional[str]):
        self.constraint = constraint
        super().__init__(f"Unique constraint violated: {constraint or 'unknown'}")


class ChangeFeed:
    """In-process change subscriptions keyed by table name ('*' for all tables)"""

    def __init__(self):
        self._listeners: Dict[str, List[Callable]] = {}
        self._lock = threading.Lock()

    def subscribe(self, table: str, callback: Callable[[str, str, Dict[str, Any]], None]) -> Callable[[], None]:
        """Register callback(table, event, record); returns the unsubscribe handle"""
        with self._lock:
            self._listeners.setdefault(table, []).append(callback)

        def unsubscribe():
            with self._lock:
                listeners = self._listeners.get(table, [])
                if callback in listeners:
                    listeners.remove(callback)

        return unsubscribe

    def publish(self, table: str, event: str, record: Optional[Dict[str, Any]]) -> None:
        with self._lock:
            listeners = list(self._listeners.get(table, [])) + list(self._listeners.get('*', []))

        for listener in listeners:
            try:
                listener(table, event, record)
            except Exception as e:
                # A broken listener must never fail the write that triggered it
                logger.warning(f"Change listener for {table} raised: {e}")

    def listener_count(self) -> int:
        with self._lock:
            return sum(len(v) for v in self._listeners.values())


class DatabaseService:
    """Service class for all database operations"""

    def __init__(self, url: str, anon_key: str, service_role_key: str = None):
        """Initialize database service with Supabase credentials"""
        self.url = url
        self.anon_key = anon_key
        self.service_role_key = service_role_key
        self.changes = ChangeFeed()

        # Initialize anon client
        try:
            self.supabase: Client = create_client(url, anon_key)
            logger.info("Supabase anon client initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize Supabase anon client: {e}")
            self.supabase = None

        # Admin client will be created on demand
        self._admin_client = None

    def get_admin_client(self) -> Client:
        """Get admin client with service role key to bypass RLS"""
        if self._admin_client is not None:
            return self._admin_client

        try:
            if not self.service_role_key:
                raise Exception("Service role key not configured")

            self._admin_client = create_client(self.url, self.service_role_key)
            logger.info("Supabase admin client initialized successfully")
            return self._admin_client
        except Exception as e:
            logger.error(f"Failed to create admin client: {e}")
            raise

    def subscribe(self, table: str, callback: Callable) -> Callable[[], None]:
        """Subscribe to writes made through this service; returns an unsubscribe callable"""
        return self.changes.subscribe(table, callback)

    def _publish(self, table: str, event: str, record: Optional[Dict[str, Any]]) -> None:
        self.changes.publish(table, event, record)

    @staticmethod
    def _raise_store_error(error: Exception):
        """Translate exclusion and unique constraint failures into OverlapViolation and DuplicateRecord"""
        if isinstance(error, APIError) and error.code == EXCLUSION_VIOLATION:
            text = f"{error.message} {error.details or ''}"
            constraint = next(
                (c for c in (BUS_OVERLAP_CONSTRAINT, DRIVER_OVERLAP_CONSTRAINT) if c in text),
                None
            )
            raise OverlapViolation(constraint) from error
        if isinstance(error, APIError) and error.code == UNIQUE_VIOLATION:
            raise DuplicateRecord(error.details or error.message) from error
        raise error

    # ----- Buses -----

    def get_buses(self, include_inactive: bool = True) -> List[Dict[str, Any]]:
        """Get buses ordered by name"""
        try:
            query = self.supabase.table('buses').select('*')

            if not include_inactive:
                query = query.eq('status', 'active')

            response = query.order('name').execute()
            return response.data
        except Exception as e:
            logger.error(f"Error getting buses: {e}")
            raise

    def get_bus_by_id(self, bus_id: str) -> Optional[Dict[str, Any]]:
        """Get specific bus by ID"""
        try:
            response = self.supabase.table('buses').select('*').eq('id', bus_id).execute()
            return response.data[0] if response.data else None
        except Exception as e:
            logger.error(f"Error getting bus {bus_id}: {e}")
            raise

    def create_bus(self, bus_data: Dict[str, Any]) -> Dict[str, Any]:
        """Create new bus"""
        try:
            bus_data['created_at'] = datetime.now().isoformat()
            bus_data['updated_at'] = datetime.now().isoformat()

            response = self.get_admin_client().table('buses').insert(bus_data).execute()
            if not response.data:
                raise Exception("Failed to create bus")

            self._publish('buses', 'INSERT', response.data[0])
            return response.data[0]
        except Exception as e:
            logger.error(f"Error creating bus: {e}")
            raise

    def update_bus(self, bus_id: str, update_data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Update existing bus; None when it does not exist"""
        try:
            update_data['updated_at'] = datetime.now().isoformat()

            response = self.get_admin_client().table('buses').update(update_data).eq('id', bus_id).execute()
            if not response.data:
                return None

            self._publish('buses', 'UPDATE', response.data[0])
            return response.data[0]
        except Exception as e:
            logger.error(f"Error updating bus {bus_id}: {e}")
            raise

    # ----- Drivers -----

    def get_drivers(self) -> List[Dict[str, Any]]:
        """Get drivers ordered by name"""
        try:
            response = self.get_admin_client().table('drivers').select('*').order('name').execute()
            return response.data
        except Exception as e:
            logger.error(f"Error getting drivers: {e}")
            raise

    def get_driver_by_id(self, driver_id: str) -> Optional[Dict[str, Any]]:
        try:
            response = self.get_admin_client().table('drivers').select('*').eq('id', driver_id).execute()
            return response.data[0] if response.data else None
        except Exception as e:
            logger.error(f"Error getting driver {driver_id}: {e}")
            raise

    def create_driver(self, driver_data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            driver_data['created_at'] = datetime.now().isoformat()
            driver_data['updated_at'] = datetime.now().isoformat()

            response = self.get_admin_client().table('drivers').insert(driver_data).execute()
            if not response.data:
                raise Exception("Failed to create driver")

            self._publish('drivers', 'INSERT', response.data[0])
            return response.data[0]
        except Exception as e:
            logger.error(f"Error creating driver: {e}")
            raise

    def update_driver(self, driver_id: str, update_data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            update_data['updated_at'] = datetime.now().isoformat()

            response = self.get_admin_client().table('drivers').update(update_data).eq('id', driver_id).execute()
            if not response.data:
                return None

            self._publish('drivers', 'UPDATE', response.data[0])
            return response.data[0]
        except Exception as e:
            logger.error(f"Error updating driver {driver_id}: {e}")
            raise

    # ----- Contacts -----

    def get_contacts(self) -> List[Dict[str, Any]]:
        try:
            response = self.get_admin_client().table('contacts').select('*').order('name').execute()
            return response.data
        except Exception as e:
            logger.error(f"Error getting contacts: {e}")
            raise

    def get_contact_by_id(self, contact_id: str) -> Optional[Dict[str, Any]]:
        try:
            response = self.get_admin_client().table('contacts').select('*').eq('id', contact_id).execute()
            return response.data[0] if response.data else None
        except Exception as e:
            logger.error(f"Error getting contact {contact_id}: {e}")
            raise

    def find_contact_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        """Exact-match lookup by email"""
        try:
            response = self.get_admin_client().table('contacts').select('*').eq('email', email).limit(1).execute()
            return response.data[0] if response.data else None
        except Exception as e:
            logger.error(f"Error looking up contact by email: {e}")
            raise

    def create_contact(self, contact_data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            contact_data['created_at'] = datetime.now().isoformat()

            try:
                response = self.get_admin_client().table('contacts').insert(contact_data).execute()
            except APIError as e:
                self._raise_store_error(e)

            if not response.data:
                raise Exception("Failed to create contact")

            self._publish('contacts', 'INSERT', response.data[0])
            return response.data[0]
        except Exception as e:
            logger.error(f"Error creating contact: {e}")
            raise

    def update_contact(self, contact_id: str, update_data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            update_data['updated_at'] = datetime.now().isoformat()

            try:
                response = self.get_admin_client().table('contacts').update(update_data).eq('id', contact_id).execute()
            except APIError as e:
                self._raise_store_error(e)

            if not response.data:
                return None

            self._publish('contacts', 'UPDATE', response.data[0])
            return response.data[0]
        except Exception as e:
            logger.error(f"Error updating contact {contact_id}: {e}")
            raise

    def delete_contact(self, contact_id: str) -> bool:
        """Delete contact; bookings keep their rows (contact_id is set to NULL)"""
        try:
            response = self.get_admin_client().table('contacts').delete().eq('id', contact_id).execute()
            if not response.data:
                return False

            self._publish('contacts', 'DELETE', response.data[0])
            return True
        except Exception as e:
            logger.error(f"Error deleting contact {contact_id}: {e}")
            raise

    # ----- Corporate clients -----

    def get_corporate_clients(self) -> List[Dict[str, Any]]:
        try:
            response = self.get_admin_client().table('corporate_clients').select('*').order('name').execute()
            return response.data
        except Exception as e:
            logger.error(f"Error getting corporate clients: {e}")
            raise

    def get_corporate_client_by_id(self, client_id: str) -> Optional[Dict[str, Any]]:
        try:
            response = self.get_admin_client().table('corporate_clients').select('*').eq('id', client_id).execute()
            return response.data[0] if response.data else None
        except Exception as e:
            logger.error(f"Error getting corporate client {client_id}: {e}")
            raise

    def get_corporate_client_by_slug(self, slug: str) -> Optional[Dict[str, Any]]:
        """Public portal lookup"""
        try:
            response = self.supabase.table('corporate_clients').select('*').eq('slug', slug).eq('status', 'active').execute()
            return response.data[0] if response.data else None
        except Exception as e:
            logger.error(f"Error getting corporate client by slug {slug}: {e}")
            raise

    def create_corporate_client(self, client_data: Dict[str, Any], contact_data: Dict[str, Any]) -> Dict[str, Any]:
        """Create client and its primary contact in one transaction"""
        try:
            try:
                response = self.get_admin_client().rpc('create_corporate_client', {
                    'p_client': client_data,
                    'p_contact': contact_data,
                }).execute()
            except APIError as e:
                self._raise_store_error(e)

            if not response.data:
                raise Exception("Failed to create corporate client")

            client = response.data[0] if isinstance(response.data, list) else response.data
            self._publish('corporate_clients', 'INSERT', client)
            self._publish('contacts', 'INSERT', None)
            return client
        except Exception as e:
            logger.error(f"Error creating corporate client: {e}")
            raise

    def update_corporate_client(self, client_id: str, update_data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Update client; a renamed client updates linked contacts' company_name in the same transaction"""
        try:
            response = self.get_admin_client().rpc('update_corporate_client', {
                'p_client_id': client_id,
                'p_client': update_data,
            }).execute()
            if not response.data:
                return None

            client = response.data[0] if isinstance(response.data, list) else response.data
            self._publish('corporate_clients', 'UPDATE', client)
            if 'name' in update_data:
                self._publish('contacts', 'UPDATE', None)
            return client
        except Exception as e:
            logger.error(f"Error updating corporate client {client_id}: {e}")
            raise

    def delete_corporate_client(self, client_id: str) -> bool:
        """Unlink contacts and delete the client in one transaction"""
        try:
            response = self.get_admin_client().rpc('delete_corporate_client', {
                'p_client_id': client_id,
            }).execute()
            deleted = bool(response.data)
            if deleted:
                self._publish('corporate_clients', 'DELETE', {'id': client_id})
                self._publish('contacts', 'UPDATE', None)
            return deleted
        except Exception as e:
            logger.error(f"Error deleting corporate client {client_id}: {e}")
            raise

    # ----- Bookings -----

    def get_booking_by_id(self, booking_id: str) -> Optional[Dict[str, Any]]:
        try:
            response = self.get_admin_client().table('bookings').select('*').eq('id', booking_id).execute()
            return response.data[0] if response.data else None
        except Exception as e:
            logger.error(f"Error getting booking {booking_id}: {e}")
            raise

    def get_bookings_filtered(self, filters: Dict[str, Any], limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
        """Get bookings with filtering and pagination, ordered by start time"""
        try:
            query = self.get_admin_client().table('bookings').select('*')

            for field in ('status', 'bus_id', 'driver_id', 'contact_id', 'corporate_client_id'):
                if filters.get(field):
                    query = query.eq(field, filters[field])

            if filters.get('start_time'):
                query = query.gte('start_time', filters['start_time'])

            if filters.get('end_time'):
                query = query.lte('end_time', filters['end_time'])

            query = query.order('start_time').limit(limit).offset(offset)

            response = query.execute()
            return response.data
        except Exception as e:
            logger.error(f"Error getting filtered bookings: {e}")
            raise

    def get_confirmed_bookings(self, resource_field: str, resource_id: str) -> List[Dict[str, Any]]:
        """All confirmed bookings held by a bus or driver"""
        if resource_field not in RESOURCE_FIELDS:
            raise ValueError(f"Unknown resource field: {resource_field}")

        try:
            response = (self.get_admin_client().table('bookings').select('*')
                        .eq('status', 'confirmed').eq(resource_field, resource_id)
                        .order('start_time').execute())
            return response.data
        except Exception as e:
            logger.error(f"Error getting confirmed bookings for {resource_field}={resource_id}: {e}")
            raise

    def get_confirmed_bookings_in_range(self, start_time: str, end_time: str) -> List[Dict[str, Any]]:
        """Confirmed bookings intersecting [start_time, end_time)"""
        try:
            response = (self.get_admin_client().table('bookings').select('*')
                        .eq('status', 'confirmed').lt('start_time', end_time).gt('end_time', start_time)
                        .execute())
            return response.data
        except Exception as e:
            logger.error(f"Error getting confirmed bookings in range: {e}")
            raise

    def find_recent_pending_booking(self, contact_id: str, booking_type: str, since: str) -> Optional[Dict[str, Any]]:
        """Latest pending booking of a type for a contact starting at or after since"""
        try:
            response = (self.get_admin_client().table('bookings').select('*')
                        .eq('contact_id', contact_id).eq('status', 'pending')
                        .eq('booking_type', booking_type).gte('start_time', since)
                        .order('start_time', desc=True).limit(1).execute())
            return response.data[0] if response.data else None
        except Exception as e:
            logger.error(f"Error finding pending booking for contact {contact_id}: {e}")
            raise

    def create_booking(self, booking_data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            booking_data['created_at'] = datetime.now().isoformat()

            response = self.get_admin_client().table('bookings').insert(booking_data).execute()
            if not response.data:
                raise Exception("Failed to create booking")

            self._publish('bookings', 'INSERT', response.data[0])
            return response.data[0]
        except Exception as e:
            logger.error(f"Error creating booking: {e}")
            raise

    def update_booking(self, booking_id: str, update_data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            update_data['updated_at'] = datetime.now().isoformat()

            try:
                response = self.get_admin_client().table('bookings').update(update_data).eq('id', booking_id).execute()
            except APIError as e:
                self._raise_store_error(e)

            if not response.data:
                return None

            self._publish('bookings', 'UPDATE', response.data[0])
            return response.data[0]
        except Exception as e:
            logger.error(f"Error updating booking {booking_id}: {e}")
            raise

    def transition_booking(self, booking_id: str, from_statuses: List[str],
                           update_data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Compare-and-swap status change.

        The update only applies while the booking is in one of from_statuses;
        None means another request changed the booking first.
        """
        try:
            update_data['updated_at'] = datetime.now().isoformat()

            try:
                response = (self.get_admin_client().table('bookings').update(update_data)
                            .eq('id', booking_id).in_('status', from_statuses).execute())
            except APIError as e:
                self._raise_store_error(e)

            if not response.data:
                return None

            self._publish('bookings', 'UPDATE', response.data[0])
            return response.data[0]
        except OverlapViolation:
            raise
        except Exception as e:
            logger.error(f"Error transitioning booking {booking_id}: {e}")
            raise

    def update_booking_with_contact(self, booking_id: str, booking_updates: Dict[str, Any],
                                    contact_id: Optional[str], contact_updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Write booking fields and contact fields as one transaction"""
        try:
            try:
                response = self.get_admin_client().rpc('update_booking_with_contact', {
                    'p_booking_id': booking_id,
                    'p_booking': booking_updates,
                    'p_contact_id': contact_id,
                    'p_contact': contact_updates or {},
                }).execute()
            except APIError as e:
                self._raise_store_error(e)

            if not response.data:
                return None

            booking = response.data[0] if isinstance(response.data, list) else response.data
            self._publish('bookings', 'UPDATE', booking)
            if contact_updates:
                self._publish('contacts', 'UPDATE', {'id': contact_id, **contact_updates})
            return booking
        except OverlapViolation:
            raise
        except Exception as e:
            logger.error(f"Error updating booking {booking_id} with contact: {e}")
            raise

    def get_booking_statistics(self, filters: Dict[str, Any] = None) -> Dict[str, Any]:
        """Get booking statistics"""
        try:
            query = self.get_admin_client().table('bookings').select('status, quote_amount')

            if filters:
                if filters.get('start_time'):
                    query = query.gte('start_time', filters['start_time'])
                if filters.get('end_time'):
                    query = query.lte('end_time', filters['end_time'])

            response = query.execute()
            bookings = response.data

            return {
                'total': len(bookings),
                'pending': len([b for b in bookings if b['status'] == 'pending']),
                'confirmed': len([b for b in bookings if b['status'] == 'confirmed']),
                'cancelled': len([b for b in bookings if b['status'] == 'cancelled']),
                'quoted_revenue': sum([float(b.get('quote_amount') or 0) for b in bookings if b['status'] == 'confirmed'])
            }
        except Exception as e:
            logger.error(f"Error getting booking statistics: {e}")
            raise
