"""
Contact resolver for Midnight Madness Flask API
Finds a contact by email or creates one on first booking request
"""

import logging
from typing import Optional, Dict, Any

from errors import DuplicateContact

logger = logging.getLogger(__name__)


class ContactResolver:
    """Find-or-create contacts keyed by exact email match"""

    def __init__(self, db_service):
        self.db = db_service

    def resolve(self, contact_details: Dict[str, Any], corporate_info: Optional[Dict[str, Any]] = None) -> str:
        """
        Return the id of the contact owning contact_details['email'].

        An existing contact is returned unchanged. A new contact gets name, email
        and phone, plus corporate_client_id and company_name when corporate_info
        ({'id', 'name'}) is supplied. Store failures propagate.
        """
        email = contact_details['email']

        existing = self.db.find_contact_by_email(email)
        if existing:
            logger.debug(f"Reusing contact {existing['id']} for {email}")
            return existing['id']

        new_contact = {
            'name': contact_details.get('name'),
            'email': email,
            'phone': contact_details.get('phone'),
        }
        if corporate_info:
            new_contact['corporate_client_id'] = corporate_info['id']
            new_contact['company_name'] = corporate_info['name']

        contact = self.db.create_contact(new_contact)
        logger.info(f"Created contact {contact['id']} for {email}")
        return contact['id']

    def ensure_email_available(self, email: Optional[str], contact_id: Optional[str] = None) -> None:
        """Raise DuplicateContact when a contact other than contact_id owns email"""
        if not email:
            return
        existing = self.db.find_contact_by_email(email.strip().lower())
        if existing and existing['id'] != contact_id:
            logger.info(f"Email {email} already belongs to contact {existing['id']}")
            raise DuplicateContact()
