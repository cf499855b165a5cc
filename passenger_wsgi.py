#!/usr/bin/python3
"""
Passenger WSGI configuration for cPanel deployment
"""
import sys
import os

# Add the current directory to the Python path
sys.path.insert(0, os.path.dirname(__file__))

# Import the Flask application
from app import app as application, db_service, calendar_sync

# Ensure we're using the right Python version
if __name__ == '__main__':
    print(f"Python version: {sys.version}")
    print(f"Python executable: {sys.executable}")
    print(f"Current working directory: {os.getcwd()}")

    try:
        import flask
        print(f"Flask version: {flask.__version__}")
    except ImportError:
        print("Flask not installed!")

    try:
        import google.auth
        print(f"google-auth version: {google.auth.__version__}")
    except ImportError:
        print("google-auth not installed!")

    print(f"Database service: {'ready' if db_service else 'NOT CONFIGURED'}")
    print(f"Calendar sync: {'ready' if calendar_sync else 'NOT CONFIGURED'}")
    print(f"Application: {application}")
    print("WSGI application ready!")
