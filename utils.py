"""
Utility functions module for Midnight Madness Flask API
Contains helper functions for various operations
"""

import time
import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple, Type
from flask import request
from config import Config

logger = logging.getLogger(__name__)

# Simple rate limiting storage (in-memory, per worker)
rate_limit_storage = {}


def get_client_ip() -> str:
    """Get client IP address"""
    if request.headers.get('X-Forwarded-For'):
        return request.headers.get('X-Forwarded-For').split(',')[0].strip()
    return request.remote_addr or 'unknown'


def check_rate_limit() -> None:
    """Rate limiting check for public booking forms"""
    from werkzeug.exceptions import TooManyRequests

    client_ip = get_client_ip()
    current_time = time.time()

    if client_ip not in rate_limit_storage:
        rate_limit_storage[client_ip] = {'count': 0, 'reset_time': current_time + Config.RATE_LIMIT_WINDOW}

    # Reset counter if window expired
    if current_time > rate_limit_storage[client_ip]['reset_time']:
        rate_limit_storage[client_ip] = {'count': 0, 'reset_time': current_time + Config.RATE_LIMIT_WINDOW}

    if rate_limit_storage[client_ip]['count'] >= Config.RATE_LIMIT_MAX_REQUESTS:
        logger.warning(f"Rate limit exceeded for IP: {client_ip}")
        raise TooManyRequests(
            f"Rate limit exceeded. Maximum {Config.RATE_LIMIT_MAX_REQUESTS} booking requests per hour per IP."
        )

    rate_limit_storage[client_ip]['count'] += 1


def parse_timestamp(value) -> datetime:
    """Parse an ISO-8601 string (or datetime) into an aware UTC datetime"""
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        parsed = datetime.fromisoformat(text)

    # Naive timestamps are treated as UTC
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_iso(value) -> str:
    """Serialize a timestamp for storage"""
    return parse_timestamp(value).isoformat()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def intervals_overlap(start_a, end_a, start_b, end_b) -> bool:
    """Half-open overlap test: [start_a, end_a) and [start_b, end_b)"""
    return (parse_timestamp(start_a) < parse_timestamp(end_b)
            and parse_timestamp(start_b) < parse_timestamp(end_a))


def linear_backoff(base_delay: float) -> Callable[[int], float]:
    """Delay function returning base_delay * attempt (1s, 2s, 3s, ...)"""
    def delay(attempt: int) -> float:
        return base_delay * attempt
    return delay


def retry_with_backoff(func: Callable, attempts: int, delay: Callable[[int], float],
                       retry_on: Tuple[Type[BaseException], ...] = (Exception,),
                       sleep: Callable[[float], None] = time.sleep,
                       description: str = 'operation'):
    """
    Call func until it succeeds or attempts are exhausted.

    delay(n) is the pause after the n-th failed attempt. The last exception is
    re-raised once every attempt has failed.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    for attempt in range(1, attempts + 1):
        try:
            return func()
        except retry_on as e:
            if attempt >= attempts:
                logger.error(f"{description} failed after {attempts} attempts: {e}")
                raise
            wait = delay(attempt)
            logger.warning(f"{description} failed (attempt {attempt}/{attempts}), retrying in {wait}s: {e}")
            sleep(wait)


def booking_reference(booking_id: Optional[str]) -> str:
    """Short human-friendly booking reference"""
    if not booking_id:
        return 'MM-UNKNOWN'
    return f"MM{str(booking_id).replace('-', '')[:8].upper()}"
