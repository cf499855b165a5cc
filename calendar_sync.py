"""
Calendar sync module for Midnight Madness Flask API
Mirrors confirmed bookings into one Google Calendar per driver
"""

import time
import logging
from typing import Optional, Dict, Any, Callable
from urllib.parse import quote

import requests
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import AuthorizedSession
from google.oauth2 import service_account

from config import Config
from errors import ProvisioningFailed, SyncFailed
from utils import retry_with_backoff, linear_backoff, to_iso, utc_now

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"
SERVICE_USAGE_API = "https://serviceusage.googleapis.com/v1"
CALENDAR_SERVICE_NAME = "calendar-json.googleapis.com"

GONE_STATUS_CODES = (404, 410)


class CalendarApiError(Exception):
    """Failure talking to Google; message is the most specific text Google returned"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class GoogleCalendarClient:
    """Thin REST client for the Calendar and Service Usage APIs using a delegated service account"""

    def __init__(self, service_account_file: str = None, impersonation_account: str = None,
                 project_id: str = None, scopes=None, timeout: int = None):
        self.service_account_file = service_account_file or Config.GOOGLE_SERVICE_ACCOUNT_FILE
        self.impersonation_account = impersonation_account or Config.GOOGLE_IMPERSONATION_ACCOUNT
        self.project_id = project_id or Config.GOOGLE_CLOUD_PROJECT
        self.scopes = scopes or Config.GOOGLE_SCOPES
        self.timeout = timeout or Config.CALENDAR_REQUEST_TIMEOUT
        self._session = None

    def _get_session(self) -> AuthorizedSession:
        if self._session is not None:
            return self._session

        if not self.impersonation_account:
            raise CalendarApiError(
                "The Google impersonation account is not configured. Please ask your developer to set "
                "GOOGLE_IMPERSONATION_ACCOUNT in the server environment."
            )

        try:
            # Domain-wide delegation: the service account acts as the Workspace admin
            credentials = service_account.Credentials.from_service_account_file(
                self.service_account_file,
                scopes=self.scopes,
                subject=self.impersonation_account
            )
        except (OSError, ValueError, GoogleAuthError) as e:
            logger.error(f"Failed to load Google service account credentials: {e}")
            raise CalendarApiError(f"Could not load Google service account credentials: {e}")

        self._session = AuthorizedSession(credentials)
        return self._session

    @staticmethod
    def _error_message(response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}"

        error = payload.get('error') if isinstance(payload, dict) else None
        if isinstance(error, dict) and error.get('message'):
            return error['message']
        if isinstance(error, str):
            return payload.get('error_description') or error
        return response.text or f"HTTP {response.status_code}"

    def _request(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        session = self._get_session()
        try:
            response = session.request(method, url, timeout=self.timeout, **kwargs)
        except (requests.RequestException, GoogleAuthError) as e:
            raise CalendarApiError(str(e))

        if response.status_code >= 400:
            raise CalendarApiError(self._error_message(response), response.status_code)

        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    def is_calendar_api_enabled(self) -> bool:
        url = f"{SERVICE_USAGE_API}/projects/{self.project_id}/services/{CALENDAR_SERVICE_NAME}"
        data = self._request('GET', url)
        return data.get('state') == 'ENABLED'

    def create_calendar(self, summary: str, description: str, time_zone: str) -> Dict[str, Any]:
        return self._request('POST', f"{GOOGLE_CALENDAR_API}/calendars", json={
            'summary': summary,
            'description': description,
            'timeZone': time_zone,
        })

    def share_calendar(self, calendar_id: str, email: str, role: str) -> Dict[str, Any]:
        return self._request('POST', f"{GOOGLE_CALENDAR_API}/calendars/{quote(calendar_id, safe='')}/acl", json={
            'role': role,
            'scope': {'type': 'user', 'value': email},
        })

    def insert_event(self, calendar_id: str, event: Dict[str, Any]) -> Dict[str, Any]:
        return self._request(
            'POST',
            f"{GOOGLE_CALENDAR_API}/calendars/{quote(calendar_id, safe='')}/events",
            params={'sendUpdates': 'all'},
            json=event
        )

    def delete_event(self, calendar_id: str, event_id: str) -> None:
        self._request(
            'DELETE',
            f"{GOOGLE_CALENDAR_API}/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}"
        )


def api_disabled_message(project_id: str) -> str:
    return f"""Action Failed: The Google Calendar API is not enabled for project '{project_id}'.

Please follow these steps to fix this:

1. Go to the Google Cloud Console:
   - https://console.cloud.google.com/apis/library/{CALENDAR_SERVICE_NAME}?project={project_id}

2. Enable the API:
   - Click the "ENABLE" button at the top of the page.

3. Retry the operation:
   - After the API is enabled, add or sync the driver again."""


class CalendarSyncAdapter:
    """Best-effort calendar side channel; every failure surfaces as ProvisioningFailed or SyncFailed"""

    def __init__(self, db_service, client: GoogleCalendarClient, attempts: int = None,
                 delay: Callable[[int], float] = None, sleep: Callable[[float], None] = time.sleep):
        self.db = db_service
        self.client = client
        self.attempts = attempts or Config.CALENDAR_RETRY_ATTEMPTS
        self.delay = delay or linear_backoff(Config.CALENDAR_RETRY_BASE_DELAY)
        self.sleep = sleep

    def provision_calendar(self, driver_id: str, driver_name: str, driver_email: str) -> str:
        """Create and share a driver calendar; a driver that already has one is left alone"""
        driver = self.db.get_driver_by_id(driver_id)
        if not driver:
            raise ProvisioningFailed("Driver not found.")
        if driver.get('google_calendar_id'):
            logger.info(f"Driver {driver_id} already has calendar {driver['google_calendar_id']}, skipping")
            return driver['google_calendar_id']
        if not driver_email:
            raise ProvisioningFailed("Driver is missing an email address; the calendar cannot be shared.")

        try:
            if not self.client.is_calendar_api_enabled():
                raise ProvisioningFailed(api_disabled_message(self.client.project_id))

            logger.info(f"Starting calendar creation for driver: {driver_name} ({driver_id})")
            calendar = self.client.create_calendar(
                summary=f"{Config.CALENDAR_NAME_PREFIX} - {driver_name}",
                description=f"Personal trip calendar for {driver_name}",
                time_zone=Config.CALENDAR_TIMEZONE
            )
            calendar_id = calendar['id']
            logger.info(f"Google Calendar {calendar_id} created for driver {driver_id}")

            self.client.share_calendar(calendar_id, driver_email, Config.CALENDAR_SHARE_ROLE)
            logger.info(f"Google Calendar {calendar_id} shared with {driver_email}")
        except CalendarApiError as e:
            logger.error(f"Calendar provisioning failed for driver {driver_id}: {e.message}")
            raise ProvisioningFailed(e.message)

        self.db.update_driver(driver_id, {
            'google_calendar_id': calendar_id,
            'calendar_status': 'ok',
            'calendar_error': None,
            'calendar_created': to_iso(utc_now()),
            'calendar_managed': True,
        })
        return calendar_id

    def build_event(self, booking_summary: Dict[str, Any]) -> Dict[str, Any]:
        description = "\n".join([
            f"Client: {booking_summary.get('customer_name') or '-'}",
            f"Pickup: {booking_summary.get('pickup_location') or '-'}",
            f"Passengers: {booking_summary.get('passenger_count') or '-'}",
            f"Phone: {booking_summary.get('customer_phone') or '-'}",
        ])
        return {
            'summary': f"Trip: {booking_summary.get('bus_name') or 'Party Bus'}",
            'description': description,
            'location': booking_summary.get('pickup_location') or '',
            'start': {'dateTime': to_iso(booking_summary['start_time']), 'timeZone': Config.CALENDAR_TIMEZONE},
            'end': {'dateTime': to_iso(booking_summary['end_time']), 'timeZone': Config.CALENDAR_TIMEZONE},
            'colorId': booking_summary.get('color_id') or Config.CALENDAR_EVENT_COLOR_ID,
            'reminders': {'useDefault': False, 'overrides': Config.CALENDAR_REMINDERS},
        }

    def add_event(self, calendar_id: str, booking_summary: Dict[str, Any], driver_id: str = None) -> str:
        """Insert the trip event with bounded retries and record the event id on the booking"""
        event = self.build_event(booking_summary)
        booking_id = booking_summary.get('id')

        try:
            result = retry_with_backoff(
                lambda: self.client.insert_event(calendar_id, event),
                attempts=self.attempts,
                delay=self.delay,
                retry_on=(CalendarApiError,),
                sleep=self.sleep,
                description=f"Calendar insert for booking {booking_id}"
            )
        except CalendarApiError as e:
            self._flag_driver(driver_id, e.message)
            raise SyncFailed(f"Google Calendar insert failed: {e.message}")

        event_id = result['id']
        if booking_id:
            try:
                self.db.update_booking(booking_id, {
                    'calendar_event_id': event_id,
                    'event_last_sync': to_iso(utc_now()),
                    'event_sync_status': 'ok',
                })
            except Exception as e:
                logger.error(f"Calendar event {event_id} created but booking {booking_id} was not updated: {e}")
                raise SyncFailed(self._discard_unrecorded_event(calendar_id, event_id))
        logger.info(f"Calendar event {event_id} created for booking {booking_id}")
        return event_id

    def remove_event(self, calendar_id: str, event_id: str, driver_id: str = None, booking_id: str = None) -> None:
        """Delete the trip event; an event that is already gone counts as removed"""
        try:
            self.client.delete_event(calendar_id, event_id)
        except CalendarApiError as e:
            if e.status_code not in GONE_STATUS_CODES:
                logger.error(f"Calendar delete failed for booking {booking_id}: {e.message}")
                self._flag_driver(driver_id, e.message)
                raise SyncFailed(f"Google Calendar delete failed: {e.message}")
            logger.warning(f"Calendar event {event_id} was already deleted or not found")

        if booking_id:
            self.db.update_booking(booking_id, {
                'event_sync_status': 'deleted',
                'event_last_sync': to_iso(utc_now()),
            })

    def _flag_driver(self, driver_id: Optional[str], message: str) -> None:
        if not driver_id:
            return
        try:
            self.db.update_driver(driver_id, {'calendar_error': message, 'calendar_status': 'error'})
        except Exception as e:
            logger.error(f"Could not record calendar error on driver {driver_id}: {e}")

    def _discard_unrecorded_event(self, calendar_id: str, event_id: str) -> str:
        """Delete an event the booking could not record; returns the warning message"""
        try:
            self.client.delete_event(calendar_id, event_id)
        except CalendarApiError as e:
            logger.error(f"Orphaned calendar event {event_id} on {calendar_id} could not be deleted: {e.message}")
            return (f"Calendar event {event_id} was created but could not be saved on the booking, "
                    f"and deleting it failed ({e.message}). Delete it from the driver's calendar before retrying.")
        logger.info(f"Deleted unrecorded calendar event {event_id}")
        return "Calendar event was created but could not be saved on the booking; it has been removed. Retry the sync."
