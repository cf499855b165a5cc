"""
Authentication module for Midnight Madness Flask API
Demo admin login backed by the Flask session cookie
"""

import hmac
import logging
from datetime import datetime
from functools import wraps
from flask import session, jsonify
from config import Config

logger = logging.getLogger(__name__)

SESSION_FLAG = 'admin_logged_in'
SESSION_USER = 'admin_username'
SESSION_STARTED = 'admin_login_time'


def _session_expired() -> bool:
    started = session.get(SESSION_STARTED)
    if not started:
        return False
    return datetime.now() - datetime.fromisoformat(started) > Config.PERMANENT_SESSION_LIFETIME


def admin_required(f):
    """Decorator to require an admin dashboard session"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not session.get(SESSION_FLAG):
            return jsonify({'error': 'Admin authentication required'}), 401

        if _session_expired():
            session.clear()
            return jsonify({'error': 'Session expired'}), 401

        return f(*args, **kwargs)
    return decorated_function


def admin_login(username: str, password: str) -> dict:
    """Check the configured demo credentials and open a session"""
    valid_user = hmac.compare_digest(str(username), str(Config.ADMIN_USERNAME))
    valid_password = hmac.compare_digest(str(password), str(Config.ADMIN_PASSWORD))

    if not (valid_user and valid_password):
        logger.warning(f"Failed admin login attempt for username '{username}'")
        return {'error': 'Invalid credentials'}

    now = datetime.now()
    session[SESSION_FLAG] = True
    session[SESSION_USER] = username
    session[SESSION_STARTED] = now.isoformat()
    session.permanent = True

    return {
        'success': True,
        'message': 'Login successful',
        'admin': username,
        'session_expires': (now + Config.PERMANENT_SESSION_LIFETIME).isoformat()
    }


def admin_logout() -> dict:
    session.clear()
    return {'success': True, 'message': 'Logged out successfully'}


def get_admin_status() -> dict:
    """Get admin session status"""
    if not session.get(SESSION_FLAG):
        return {'logged_in': False, 'admin': None, 'login_time': None, 'session_expires': None}

    login_time = session.get(SESSION_STARTED)
    session_expires = None
    if login_time:
        session_expires = (datetime.fromisoformat(login_time) + Config.PERMANENT_SESSION_LIFETIME).isoformat()

    return {
        'logged_in': True,
        'admin': session.get(SESSION_USER),
        'login_time': login_time,
        'session_expires': session_expires
    }
