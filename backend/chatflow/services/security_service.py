# /chatflow/services/security_service.py

import re

from chatflow.workflows.conditions import to_number

# Input sanitization shared by the HTTP layer, the wait_input node's reply
# validation and the delivery channel's phone normalization.

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
MAX_MESSAGE_LENGTH = 4096


class SecurityService:
    @staticmethod
    def sanitize_phone_number(phone: str) -> str:
        """
        Sanitizes a phone number.
        - Returns a normalized E.164-style string (e.g., +919876543210) if valid.
        - Returns an empty string for invalid or empty inputs (instead of raising).
        """
        if not phone or not isinstance(phone, str):
            return ""

        # Remove all characters except digits and leading +
        clean_phone = re.sub(r"[^\d+]", "", phone.strip())

        if not clean_phone.startswith("+"):
            clean_phone = "+" + clean_phone.lstrip("+")

        # Require 10–15 digits after +
        if not re.match(r"^\+\d{10,15}$", clean_phone):
            return ""

        return clean_phone

    @staticmethod
    def validate_message_content(message: str) -> str:
        if len(message) > MAX_MESSAGE_LENGTH:
            raise ValueError("Message too long")
        return message.strip()

    @staticmethod
    def is_valid_email(value: str) -> bool:
        return bool(value) and bool(EMAIL_PATTERN.match(value.strip()))

    @staticmethod
    def is_number(value: str) -> bool:
        if not value or not value.strip():
            return False
        return to_number(value) == to_number(value)  # NaN != NaN

    @classmethod
    def validate_reply(cls, validation: str, value: str) -> bool:
        """Checks a customer's reply against a wait_input node's validation kind."""
        if validation == "phone":
            # A phone reply must hold digits only apart from separators
            if re.search(r"[^\d+\-\s().]", value or ""):
                return False
            return bool(cls.sanitize_phone_number(value))
        if validation == "email":
            return cls.is_valid_email(value)
        if validation == "number":
            return cls.is_number(value)
        return True
