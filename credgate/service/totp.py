from __future__ import annotations

import base64
import hashlib
import hmac
import io
import secrets
from typing import Optional
from urllib.parse import quote, urlencode

import qrcode

from credgate.logging import get_logger

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6


def generate_secret(num_bytes: int = 20) -> str:
    """Return a fresh base32 shared secret without padding."""
    return base64.b32encode(secrets.token_bytes(num_bytes)).decode("utf-8").rstrip("=")


def generate_numeric_code() -> str:
    """Six-digit delivery code, uniform over 100000-999999."""
    return str(secrets.randbelow(900000) + 100000)


def generate_totp(
    secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS
) -> str:
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (ValueError, TypeError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    # SHA1 keeps codes compatible with common authenticator apps
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: Optional[str],
    code: Optional[str],
    at: float,
    *,
    window: int = 1,
    interval: int = TOTP_INTERVAL,
) -> bool:
    """Check ``code`` against the steps at ``at - 30s``, ``at`` and ``at + 30s``."""
    if not secret or not code:
        return False
    candidate = code.strip().replace(" ", "")
    if len(candidate) != TOTP_DIGITS or not candidate.isdigit():
        return False
    matched = False
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, at + offset * interval, interval=interval)
        # Constant-time comparison over every step in the window
        if generated and hmac.compare_digest(generated, candidate):
            matched = True
    return matched


def provisioning_uri(secret: str, account: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account}", safe=":@")
    query = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": TOTP_DIGITS,
            "period": TOTP_INTERVAL,
        }
    )
    return f"otpauth://totp/{label}?{query}"


def render_qr_data_uri(payload: str) -> str:
    """Render ``payload`` as a PNG QR code encoded in a data URI."""
    qr = qrcode.QRCode(version=1, box_size=10, border=4)
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    img.save(buffer, "PNG")
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/png;base64,{encoded}"
