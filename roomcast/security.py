"""Security helpers: rate limiting, admin API key, cron secret and display IP whitelist."""

import hmac
import ipaddress
import logging
import os
from typing import Optional, Sequence

from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import APIKeyHeader
from slowapi import Limiter
from slowapi.util import get_remote_address

from roomcast.config import Settings, get_settings

logger = logging.getLogger(__name__)

IS_PRODUCTION = os.getenv("ENVIRONMENT", "").lower() == "production"

# Rate limiter using client IP
limiter = Limiter(key_func=get_remote_address)

# API Key header for admin endpoints
api_key_header = APIKeyHeader(name=get_settings().API_KEY_HEADER, auto_error=False)


async def verify_api_key(
    api_key: Optional[str] = Security(api_key_header),
    settings: Settings = Depends(get_settings),
) -> bool:
    """
    Verify API key for admin endpoints.

    SECURITY: In production, API_KEY must be configured. Empty API_KEY
    blocks all admin requests (fail-closed). In development, empty API_KEY
    allows all requests for convenience.
    """
    if not settings.API_KEY:
        if IS_PRODUCTION:
            logger.error("API_KEY not configured in production - blocking admin access")
            raise HTTPException(
                status_code=503,
                detail="Service misconfigured. Admin access disabled.",
            )
        return True

    if not api_key:
        raise HTTPException(
            status_code=401,
            detail="Missing API key. Provide it via X-API-Key header.",
        )

    if not hmac.compare_digest(api_key.encode(), settings.API_KEY.encode()):
        logger.warning("Invalid API key attempt from request")
        raise HTTPException(
            status_code=403,
            detail="Invalid API key",
        )

    return True


def is_valid_cron_secret(authorization: Optional[str], expected_secret: str) -> bool:
    """Check an `Authorization: Bearer <secret>` header. No secret configured = always invalid."""
    if not expected_secret or not authorization:
        return False
    return hmac.compare_digest(authorization.encode(), f"Bearer {expected_secret}".encode())


def get_client_ip(request: Request) -> str:
    """Client address as seen by the reverse proxy."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    if request.client:
        return request.client.host
    return "unknown"


def is_ip_in_whitelist(ip: str, whitelist: Optional[Sequence[str]]) -> bool:
    """
    Check if an IP address matches any whitelist entry.

    Supports exact addresses ("192.168.1.100") and CIDR ranges
    ("192.168.1.0/24"). An empty whitelist means no restriction.
    """
    if not whitelist:
        return True

    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        address = None

    for entry in whitelist:
        entry = entry.strip()
        if "/" in entry:
            if address is None:
                continue
            try:
                network = ipaddress.ip_network(entry, strict=False)
            except ValueError:
                logger.warning(f"Ignoring malformed whitelist entry: {entry!r}")
                continue
            if address.version == network.version and address in network:
                return True
        elif ip == entry:
            return True

    return False
