"""
Data Sanitization Module
Masks bank details and gateway secrets before they reach logs or API responses
"""

import json
from typing import Any, Dict


class DataSanitizer:
    """Masking helpers for withdrawal and webhook data"""

    # Sensitive field names to mask in dictionaries
    SENSITIVE_FIELDS = {
        "signature_key",
        "server_key",
        "token",
        "authorization",
        "account_number",
        "email",
    }

    @staticmethod
    def mask_account_number(account_number: str, masked: bool = True) -> str:
        """
        Keep the first 3 and last 4 digits of a bank account number.

        Numbers shorter than 8 characters are returned unchanged.
        """
        if not masked or len(account_number) < 8:
            return account_number
        return f"{account_number[:3]}{'*' * (len(account_number) - 7)}{account_number[-4:]}"

    @classmethod
    def sanitize_dict(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        sanitized: Dict[str, Any] = {}
        for key, value in data.items():
            if key.lower() in cls.SENSITIVE_FIELDS and value:
                if key.lower() == "account_number":
                    sanitized[key] = cls.mask_account_number(str(value))
                else:
                    sanitized[key] = "[REDACTED]"
            elif isinstance(value, dict):
                sanitized[key] = cls.sanitize_dict(value)
            else:
                sanitized[key] = value
        return sanitized


data_sanitizer = DataSanitizer()


def mask_account_number(account_number: str) -> str:
    return data_sanitizer.mask_account_number(account_number)


def sanitize_for_log(data: Any) -> str:
    """Sanitize any data for safe logging"""
    if isinstance(data, dict):
        return json.dumps(data_sanitizer.sanitize_dict(data), default=str)
    return str(data)
