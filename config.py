"""
Configuration module for Midnight Madness Flask API
Centralized configuration management for all environment variables and settings
"""

import os
from datetime import timedelta
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


class Config:
    """Centralized configuration class for Midnight Madness API"""

    # Flask Configuration
    SECRET_KEY = os.environ.get('SECRET_KEY')
    SESSION_COOKIE_SECURE = True  # True for HTTPS
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'None'  # Admin dashboard is served from another origin
    SESSION_COOKIE_DOMAIN = None
    PERMANENT_SESSION_LIFETIME = timedelta(hours=8)

    # CORS Configuration
    CORS_ORIGINS = [
        'https://midnightmadnesspartybus.com',
        'https://www.midnightmadnesspartybus.com',
        'https://midnightmadnesspartybus.web.app',
        'http://localhost:3000',
        'http://localhost:5173',
    ]
    CORS_SUPPORTS_CREDENTIALS = True
    CORS_ALLOW_HEADERS = [
        'Content-Type',
        'Authorization',
        'X-Requested-With',
        'Accept',
        'Origin',
        'Cache-Control',
    ]
    CORS_METHODS = ['GET', 'POST', 'PUT', 'DELETE', 'OPTIONS', 'HEAD', 'PATCH']
    CORS_MAX_AGE = 86400  # Cache preflight for 24 hours

    # Logging Configuration
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # Supabase Configuration
    SUPABASE_URL = os.environ.get('SUPABASE_URL')
    SUPABASE_ANON_KEY = os.environ.get('SUPABASE_ANON_KEY')
    SUPABASE_SERVICE_ROLE_KEY = os.environ.get('SUPABASE_SERVICE_ROLE_KEY')

    # Admin Configuration (demo login)
    ADMIN_USERNAME = os.environ.get('ADMIN_USERNAME', 'admin')
    ADMIN_PASSWORD = os.environ.get('ADMIN_PASSWORD', 'change_this_password')

    # Google Calendar Configuration
    GOOGLE_SERVICE_ACCOUNT_FILE = os.environ.get('GOOGLE_SERVICE_ACCOUNT_FILE', 'service-account.json')
    GOOGLE_IMPERSONATION_ACCOUNT = os.environ.get('GOOGLE_IMPERSONATION_ACCOUNT')
    GOOGLE_CLOUD_PROJECT = os.environ.get('GOOGLE_CLOUD_PROJECT', 'midnightmadnesspartybus')
    GOOGLE_SCOPES = [
        'https://www.googleapis.com/auth/calendar',
        'https://www.googleapis.com/auth/cloud-platform',  # Service Usage lookup
    ]
    CALENDAR_TIMEZONE = os.environ.get('CALENDAR_TIMEZONE', 'America/Edmonton')
    CALENDAR_NAME_PREFIX = 'Midnight Madness'
    CALENDAR_SHARE_ROLE = 'writer'
    CALENDAR_REQUEST_TIMEOUT = 30
    CALENDAR_RETRY_ATTEMPTS = int(os.environ.get('CALENDAR_RETRY_ATTEMPTS', 3))
    CALENDAR_RETRY_BASE_DELAY = float(os.environ.get('CALENDAR_RETRY_BASE_DELAY', 1.0))  # seconds, linear
    CALENDAR_EVENT_COLOR_ID = '2'
    CALENDAR_REMINDERS = [
        {'method': 'popup', 'minutes': 30},
        {'method': 'email', 'minutes': 60},
    ]

    # Square Webhook Configuration
    SQUARE_WEBHOOK_SIGNATURE_KEY = os.environ.get('SQUARE_WEBHOOK_SIGNATURE_KEY')
    SQUARE_WEBHOOK_URL = os.environ.get(
        'SQUARE_WEBHOOK_URL',
        'https://api.midnightmadnesspartybus.com/webhooks/square'
    )

    # Express Booking Configuration
    EXPRESS_BOOKING_TYPE = 'express-1hr'
    EXPRESS_BOOKING_LOCATION = 'Express Booking'
    EXPRESS_BOOKING_AMOUNT = 30000  # In cents
    EXPRESS_BOOKING_CURRENCY = 'CAD'
    EXPRESS_MATCH_WINDOW_MINUTES = 5
    EXPRESS_DURATION_HOURS = 1

    # Rate Limiting Configuration
    RATE_LIMIT_WINDOW = 3600  # 1 hour
    RATE_LIMIT_MAX_REQUESTS = 5

    # Security Configuration
    HONEYPOT_FIELDS = ['website', 'url', 'homepage', 'fax']

    # Business Rules
    MIN_BOOKING_HOURS = 1
    MAX_BOOKING_HOURS = 24

    # Fleet Configuration
    VALID_BUS_STATUSES = ['active', 'maintenance', 'inactive']
    VALID_DRIVER_STATUSES = ['active', 'on_leave', 'inactive']
    VALID_CLIENT_STATUSES = ['active', 'inactive']

    # Booking Status Configuration
    VALID_BOOKING_STATUSES = ['pending', 'confirmed', 'cancelled']
    VALID_PAYMENT_STATUSES = ['unpaid', 'deposit_paid', 'paid_in_full', 'refunded']
    VALID_BOOKING_SOURCES = ['web_quote', 'partner_portal', 'admin_manual', 'other']

    @classmethod
    def validate_required_config(cls):
        """Validate that all required configuration is present"""
        required_vars = [
            'SECRET_KEY',
            'SUPABASE_URL',
            'SUPABASE_ANON_KEY'
        ]

        missing_vars = []
        for var in required_vars:
            if not getattr(cls, var):
                missing_vars.append(var)

        if missing_vars:
            raise ValueError(f"Missing required environment variables: {', '.join(missing_vars)}")

        return True
