"""LINE webhook signature verification.

LINE signs every webhook body with HMAC-SHA256 keyed by the channel
secret and sends the base64 digest in the X-Line-Signature header.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
from typing import Optional

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Line-Signature"


def compute_signature(body: bytes, channel_secret: str) -> str:
    digest = hmac.new(channel_secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_line_signature(body: bytes, signature: Optional[str], channel_secret: str) -> bool:
    """Check a webhook body against its X-Line-Signature header.

    Args:
        body: Raw request body, exactly as received.
        signature: Header value, may be missing.
        channel_secret: The channel secret from the LINE console.

    Returns:
        True if the signature matches, False otherwise.
    """
    if not signature:
        logger.warning("LINE webhook request without signature header")
        return False

    expected = compute_signature(body, channel_secret)
    if not hmac.compare_digest(expected, signature.strip()):
        logger.warning("LINE webhook signature mismatch (body %d bytes)", len(body))
        return False
    return True
