"""
Utility functions for phone numbers and webhook verification.
"""

import logging
from typing import Mapping, Optional

from twilio.request_validator import RequestValidator

logger = logging.getLogger(__name__)

WHATSAPP_PREFIX = "whatsapp:"


def clean_phone_number(phone_number: str) -> str:
    """Strip the 'whatsapp:' channel prefix, e.g. 'whatsapp:+1555' -> '+1555'."""
    return phone_number.replace(WHATSAPP_PREFIX, "").strip()


def format_whatsapp_number(phone_number: str) -> str:
    """
    Ensure a number carries the 'whatsapp:' channel prefix Twilio expects.

    - 'whatsapp:+1555' is returned unchanged
    - '+1555' becomes 'whatsapp:+1555'
    - '1555' becomes 'whatsapp:+1555'
    """
    phone_number = phone_number.strip()
    if phone_number.startswith(WHATSAPP_PREFIX):
        return phone_number
    if phone_number.startswith("+"):
        return f"{WHATSAPP_PREFIX}{phone_number}"
    return f"{WHATSAPP_PREFIX}+{phone_number}"


def verify_twilio_signature(
    auth_token: str,
    url: str,
    params: Mapping[str, str],
    signature: Optional[str],
) -> bool:
    """
    Verify the X-Twilio-Signature header of an inbound webhook.

    Args:
        auth_token: Twilio auth token used as the HMAC key
        url: Full public URL Twilio posted to
        params: Form parameters of the request
        signature: Value of the X-Twilio-Signature header

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature or not auth_token:
        logger.info("Twilio signature verification: missing signature or auth token")
        return False

    is_valid = RequestValidator(auth_token).validate(url, dict(params), signature)
    logger.info(f"Twilio signature verification: {'valid' if is_valid else 'invalid'}")
    return is_valid
