"""
Best-effort IP geolocation.

Accuracy of third-party geolocation is not guaranteed, so every caller must
treat a None result as "no signal": lookups time out quickly, errors are
logged and swallowed, and private or loopback addresses are never sent out.
"""
import ipaddress
import logging
import math
import threading
from dataclasses import dataclass
from typing import Dict, Optional

import requests
from flask import current_app

logger = logging.getLogger(__name__)

_cache: Dict[str, "GeoLocation"] = {}
_cache_lock = threading.Lock()
_CACHE_MAX = 5000


@dataclass(frozen=True)
class GeoLocation:
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def label(self) -> str:
        parts = [p for p in (self.city, self.region, self.country) if p]
        return ", ".join(parts) if parts else "Unknown"

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


def _is_public(ip: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return addr.is_global


def _fetch(ip: str) -> Optional[GeoLocation]:
    base = current_app.config.get("GEOIP_API_URL", "https://ipapi.co").rstrip("/")
    timeout = current_app.config.get("GEOIP_TIMEOUT_SECONDS", 3)

    try:
        resp = requests.get(
            f"{base}/{ip}/json/",
            headers={"User-Agent": "SessionGuard/1.0"},
            timeout=timeout,
        )
        resp.raise_for_status()
        data = resp.json()
    except (requests.RequestException, ValueError) as e:
        logger.warning(f"Geolocation lookup failed for {ip}: {e}")
        return None

    if data.get("error"):
        logger.warning(f"Geolocation service refused {ip}: {data.get('reason')}")
        return None

    return GeoLocation(
        country=data.get("country_name") or data.get("country"),
        region=data.get("region"),
        city=data.get("city"),
        latitude=data.get("latitude"),
        longitude=data.get("longitude"),
    )


def lookup_ip(ip: str) -> Optional[GeoLocation]:
    if not current_app.config.get("GEOIP_ENABLED", True) or not _is_public(ip):
        return None

    with _cache_lock:
        cached = _cache.get(ip)
    if cached is not None:
        return cached

    geo = _fetch(ip)
    if geo is not None:
        with _cache_lock:
            if len(_cache) >= _CACHE_MAX:
                _cache.clear()
            _cache[ip] = geo
    return geo


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometres."""
    r = 6371.0
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return 2 * r * math.asin(math.sqrt(a))
