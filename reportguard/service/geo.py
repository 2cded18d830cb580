from __future__ import annotations

from ipaddress import ip_address
from typing import Optional

import httpx

from reportguard.logging import get_logger

logger = get_logger(__name__)

UNKNOWN_LOCATION = "Unknown Location"
LOCAL_NETWORK = "Local Network"


class IpGeolocator:
    """Best-effort IP to "City, Region, Country" lookup.

    Never raises: session creation must not depend on a third-party lookup.
    """

    def __init__(
        self,
        url_template: Optional[str],
        *,
        timeout_seconds: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url_template = url_template
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def resolve(self, ip: Optional[str]) -> str:
        if not ip:
            return UNKNOWN_LOCATION
        try:
            parsed = ip_address(ip)
        except ValueError:
            return UNKNOWN_LOCATION
        if parsed.is_private or parsed.is_loopback or parsed.is_link_local:
            return LOCAL_NETWORK
        if not self.url_template:
            return UNKNOWN_LOCATION
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds, follow_redirects=False, transport=self._transport
            ) as client:
                response = await client.get(self.url_template.format(ip=ip))
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning("geoip_http_error", status_code=exc.response.status_code)
            return UNKNOWN_LOCATION
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("geoip_lookup_failed", error=str(exc), error_type=type(exc).__name__)
            return UNKNOWN_LOCATION
        if not isinstance(payload, dict):
            return UNKNOWN_LOCATION
        parts = [
            payload.get("city"),
            payload.get("region") or payload.get("regionName"),
            payload.get("country_name") or payload.get("country"),
        ]
        label = ", ".join(str(p) for p in parts if p)
        return label or UNKNOWN_LOCATION
