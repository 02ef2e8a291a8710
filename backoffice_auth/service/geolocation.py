from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from typing import Optional

import httpx

from backoffice_auth.config import Settings
from backoffice_auth.logging import get_logger

logger = get_logger(__name__)

_FIELDS = "status,message,city,country,countryCode,regionName"


@dataclass(frozen=True)
class GeoLocation:
    city: Optional[str] = None
    country: Optional[str] = None
    country_code: Optional[str] = None
    region: Optional[str] = None

    @property
    def label(self) -> str:
        parts = [part for part in (self.city, self.country) if part]
        return ", ".join(parts) if parts else "Unknown location"


LOCAL_NETWORK = GeoLocation(city="Localhost", country="Local Network")


class GeolocationClient:
    """Coarse IP geolocation with a hard timeout.

    Lookups fail open: any transport error, timeout or unexpected payload
    yields ``None`` so sign-in never waits on this service.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self._transport = transport

    async def lookup(self, ip: Optional[str]) -> Optional[GeoLocation]:
        if not ip or not self.settings.geolocation_enabled:
            return None
        try:
            addr = ipaddress.ip_address(ip)
        except ValueError:
            logger.warning("geolocation_invalid_ip")
            return None
        if addr.is_private or addr.is_loopback or addr.is_link_local:
            return LOCAL_NETWORK

        url = f"{self.settings.geolocation_url.rstrip('/')}/{addr}"
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.geolocation_timeout_seconds,
                transport=self._transport,
            ) as client:
                resp = await client.get(url, params={"fields": _FIELDS})
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "geolocation_lookup_failed", error_type=type(exc).__name__, error=str(exc)
            )
            return None

        if not isinstance(data, dict) or data.get("status") != "success":
            logger.info(
                "geolocation_lookup_unresolved",
                message=data.get("message") if isinstance(data, dict) else None,
            )
            return None
        return GeoLocation(
            city=data.get("city") or None,
            country=data.get("country") or None,
            country_code=data.get("countryCode") or None,
            region=data.get("regionName") or None,
        )
