from __future__ import annotations

import ipaddress
import math
from typing import Dict, Iterable, Optional, Protocol, Tuple

import httpx

from sessionguard.logging import get_logger
from sessionguard.storage.models import GeoLocation

logger = get_logger(__name__)

EARTH_RADIUS_KM = 6371.0


def haversine_km(a: GeoLocation, b: GeoLocation) -> float:
    """Great-circle distance between two coordinates in kilometres."""
    lat1, lon1 = math.radians(a.latitude), math.radians(a.longitude)
    lat2, lon2 = math.radians(b.latitude), math.radians(b.longitude)
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(h)))


class GeoResolver(Protocol):
    async def resolve(self, ip: str) -> Optional[GeoLocation]: ...


def _is_public(ip: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return not (addr.is_private or addr.is_loopback or addr.is_link_local or addr.is_reserved)


class StaticGeoResolver:
    """Resolve addresses from a fixed CIDR table; first matching network wins."""

    def __init__(self, table: Optional[Iterable[Tuple[str, GeoLocation]]] = None) -> None:
        self._networks = [
            (ipaddress.ip_network(cidr, strict=False), location) for cidr, location in (table or [])
        ]

    def add(self, cidr: str, location: GeoLocation) -> None:
        self._networks.append((ipaddress.ip_network(cidr, strict=False), location))

    async def resolve(self, ip: str) -> Optional[GeoLocation]:
        try:
            addr = ipaddress.ip_address(ip)
        except ValueError:
            return None
        for network, location in self._networks:
            if addr.version == network.version and addr in network:
                return location
        return None


class HttpGeoResolver:
    """Look addresses up against a JSON geolocation endpoint.

    ``url_template`` contains an ``{ip}`` placeholder. Responses in the
    ``{"lat", "lon", "countryCode", "city"}`` shape and the
    ``{"latitude", "longitude", "country", "city"}`` shape are both accepted.
    Lookups are best effort: failures are logged and resolve to ``None``.
    """

    def __init__(
        self,
        url_template: str,
        *,
        timeout_seconds: float = 2.0,
        cache_size: int = 1024,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url_template = url_template
        self.timeout_seconds = timeout_seconds
        self.cache_size = cache_size
        self._transport = transport
        self._cache: Dict[str, Optional[GeoLocation]] = {}

    @staticmethod
    def _parse(payload: dict) -> Optional[GeoLocation]:
        lat = payload.get("lat", payload.get("latitude"))
        lon = payload.get("lon", payload.get("longitude"))
        if lat is None or lon is None:
            return None
        try:
            return GeoLocation(
                latitude=float(lat),
                longitude=float(lon),
                country=payload.get("countryCode") or payload.get("country"),
                city=payload.get("city"),
            )
        except (TypeError, ValueError):
            return None

    async def resolve(self, ip: str) -> Optional[GeoLocation]:
        if not _is_public(ip):
            return None
        if ip in self._cache:
            return self._cache[ip]
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds, follow_redirects=False, transport=self._transport
            ) as client:
                response = await client.get(self.url_template.format(ip=ip))
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("geo_lookup_failed", ip=ip, error=str(exc))
            return None
        location = self._parse(payload) if isinstance(payload, dict) else None
        if len(self._cache) >= self.cache_size:
            self._cache.pop(next(iter(self._cache)))
        self._cache[ip] = location
        return location
