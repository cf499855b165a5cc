"""
Square payment webhook module for Midnight Madness Flask API
Verifies Square signatures and confirms paid express bookings
"""

import base64
import hashlib
import hmac
import logging
from datetime import timedelta
from typing import Optional, Dict, Any

from config import Config
from errors import BookingConflict, InvalidTransition
from utils import to_iso, utc_now

logger = logging.getLogger(__name__)


def compute_square_signature(signature_key: str, notification_url: str, body: bytes) -> str:
    """base64(HMAC-SHA256(key, notification_url + raw body))"""
    payload = notification_url.encode('utf-8') + body
    digest = hmac.new(signature_key.encode('utf-8'), payload, hashlib.sha256).digest()
    return base64.b64encode(digest).decode('utf-8')


def verify_square_signature(signature_key: str, notification_url: str, body: bytes,
                            signature: Optional[str]) -> bool:
    """Compare signatures in constant time"""
    if not signature:
        return False
    expected = compute_square_signature(signature_key, notification_url, body)
    return hmac.compare_digest(expected, signature)


def handle_square_event(event: Dict[str, Any], db_service, ledger) -> Optional[Dict[str, Any]]:
    """
    Confirm the express booking paid for by a completed Square payment.

    Returns the confirmed booking, or None when the event is not a matching
    completed payment. A payment that cannot be matched or would double-book the
    bus is logged and acknowledged; Square must not keep retrying it.
    """
    if event.get('type') != 'payment.updated':
        logger.info(f"Ignoring Square event type {event.get('type')}")
        return None

    payment = ((event.get('data') or {}).get('object') or {}).get('payment') or {}
    if payment.get('status') != 'COMPLETED':
        return None

    email = (payment.get('buyer_email_address') or '').strip().lower()
    amount_money = payment.get('amount_money') or {}
    amount = amount_money.get('amount')
    currency = amount_money.get('currency')

    logger.info(f"Processing completed payment webhook: email={email}, amount={amount}, currency={currency}")

    if not email or amount != Config.EXPRESS_BOOKING_AMOUNT or currency != Config.EXPRESS_BOOKING_CURRENCY:
        logger.info(f"Payment {payment.get('id')} does not match an express booking, ignoring")
        return None

    contact = db_service.find_contact_by_email(email)
    if not contact:
        logger.warning(f"Received a valid payment but could not find a matching contact for {email}")
        return None

    since = utc_now() - timedelta(minutes=Config.EXPRESS_MATCH_WINDOW_MINUTES)
    booking = db_service.find_recent_pending_booking(contact['id'], Config.EXPRESS_BOOKING_TYPE, to_iso(since))
    if not booking:
        logger.warning(
            f"Received a valid payment but could not find a matching pending booking for contact {contact['id']}"
        )
        return None

    logger.info(f"Found matching pending booking: {booking['id']}")
    try:
        return ledger.confirm_paid(booking['id'], payment.get('id'))
    except (BookingConflict, InvalidTransition) as e:
        logger.error(f"Paid booking {booking['id']} could not be confirmed: {e.description}")
        return None
