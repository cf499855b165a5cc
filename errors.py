"""
Error taxonomy for Midnight Madness Flask API
Ledger errors map onto HTTP errors; calendar errors are reported as warnings
"""

from werkzeug import exceptions


class ValidationError(exceptions.BadRequest):
    """Malformed input, raised before any store mutation"""


class NotFound(exceptions.NotFound):
    """Referenced booking, contact, driver, bus or client does not exist"""

    def __init__(self, resource: str, resource_id=None):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource.capitalize()} not found")


class BookingConflict(exceptions.Conflict):
    """Overlap with a confirmed booking on the same resource"""

    resource = 'resource'


class VehicleConflict(BookingConflict):
    resource = 'bus'

    def __init__(self, description: str = 'This bus is already booked for the selected time slot.'):
        super().__init__(description)


class DriverConflict(BookingConflict):
    resource = 'driver'

    def __init__(self, description: str = 'The selected driver is already booked for this time slot.'):
        super().__init__(description)


class DuplicateContact(exceptions.Conflict):
    """Another contact already owns the email address"""

    def __init__(self, description: str = 'A contact with this email already exists'):
        super().__init__(description)


class InvalidTransition(exceptions.Conflict):
    """Requested status change is not allowed from the booking's current status"""

    def __init__(self, current_status: str, target_status: str):
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(f"Cannot move a {current_status} booking to {target_status}")


TROUBLESHOOTING_CHECKLIST = """A server error occurred. This is often due to a backend configuration issue with Google Cloud or Google Workspace.

Please verify the following:

1. The Google Calendar API is ENABLED for your project.
   - Link: https://console.cloud.google.com/apis/library/calendar-json.googleapis.com

2. Domain-Wide Delegation is configured correctly for the service account.
   - The service account's Client ID must be authorized with the 'https://www.googleapis.com/auth/calendar' scope in your Google Workspace Admin console.

3. The impersonation account is set in the server configuration (GOOGLE_IMPERSONATION_ACCOUNT).

If you have verified all these steps, please try again."""


def describe_calendar_error(message) -> str:
    """Return the most specific diagnostic available, or the troubleshooting checklist"""
    if not message or not isinstance(message, str) or not message.strip():
        return TROUBLESHOOTING_CHECKLIST
    if message.strip().lower() in ('internal', 'internal error', 'internal server error'):
        return TROUBLESHOOTING_CHECKLIST
    return message.strip()


class CalendarSyncError(Exception):
    """Calendar-side failure; never undoes a ledger change"""

    warning_type = 'CalendarSyncError'

    def __init__(self, message: str = None):
        self.message = describe_calendar_error(message)
        super().__init__(self.message)

    def to_warning(self, retry: str = None) -> dict:
        return {
            'type': self.warning_type,
            'message': self.message,
            'retry': retry,
        }


class ProvisioningFailed(CalendarSyncError):
    warning_type = 'ProvisioningFailed'


class SyncFailed(CalendarSyncError):
    warning_type = 'SyncFailed'
