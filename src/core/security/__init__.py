"""
Security helpers for logging sensitive material.

Components:
    - mask_credentials(): log-safe view of storage credentials
    - mask_value(): partial masking of identifiers
    - sanitize_url(): remove signatures/tokens from presigned URLs
    - sanitize_error_message(): remove sensitive data from error text
"""

from core.security.redaction import (
    REDACTED,
    SENSITIVE_PARAMS,
    mask_credentials,
    mask_value,
    sanitize_error_message,
    sanitize_url,
)

__all__ = [
    "REDACTED",
    "SENSITIVE_PARAMS",
    "mask_credentials",
    "mask_value",
    "sanitize_error_message",
    "sanitize_url",
]
