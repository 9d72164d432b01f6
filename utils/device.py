import hashlib
import ipaddress
import re
from dataclasses import dataclass
from typing import Optional

from flask import request

from utils.geo import GeoLocation, lookup_ip

_BOT_PATTERN = re.compile(
    r"bot|crawler|spider|headless|phantomjs|curl|wget|python-requests|httpclient|scrapy",
    re.IGNORECASE,
)


@dataclass
class DeviceInfo:
    ip_address: str
    user_agent: str
    browser: str
    os: str
    device_name: str
    fingerprint: str
    geo: Optional[GeoLocation] = None

    @property
    def location(self) -> str:
        return self.geo.label if self.geo else "Unknown"


def client_ip() -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("X-Real-IP") or request.remote_addr or "unknown"


def parse_user_agent(user_agent: str) -> tuple:
    """Returns (browser, os, device_name)."""
    ua = (user_agent or "").lower()

    if "edg/" in ua or "edge" in ua:
        browser = "Edge"
    elif "opr/" in ua or "opera" in ua:
        browser = "Opera"
    elif "firefox" in ua:
        browser = "Firefox"
    elif "chrome" in ua:
        browser = "Chrome"
    elif "safari" in ua:
        browser = "Safari"
    elif _BOT_PATTERN.search(ua):
        browser = "Bot"
    else:
        browser = "Unknown"

    if "windows" in ua:
        os_name = "Windows"
    elif "iphone" in ua or "ipad" in ua:
        os_name = "iOS"
    elif "android" in ua:
        os_name = "Android"
    elif "mac os" in ua or "macintosh" in ua:
        os_name = "macOS"
    elif "linux" in ua:
        os_name = "Linux"
    else:
        os_name = "Unknown"

    if "iphone" in ua:
        device_name = "iPhone"
    elif "ipad" in ua:
        device_name = "iPad"
    elif "tablet" in ua:
        device_name = "Tablet"
    elif "mobile" in ua or "android" in ua:
        device_name = "Mobile"
    else:
        device_name = "Desktop"

    return browser, os_name, device_name


def looks_like_bot(user_agent: str) -> bool:
    ua = user_agent or ""
    return len(ua) < 10 or bool(_BOT_PATTERN.search(ua))


def ip_block(ip: str) -> str:
    """Coarse network block: /24 for IPv4, /48 for IPv6."""
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return ip or "unknown"
    prefix = 24 if addr.version == 4 else 48
    return str(ipaddress.ip_network(f"{addr}/{prefix}", strict=False))


def device_fingerprint(user_agent: str, ip: str) -> str:
    browser, os_name, device_name = parse_user_agent(user_agent)
    raw = f"{browser}|{os_name}|{device_name}|{ip_block(ip)}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def build_device_info(ip: str, user_agent: str, geo: Optional[GeoLocation] = None) -> DeviceInfo:
    browser, os_name, device_name = parse_user_agent(user_agent)
    return DeviceInfo(
        ip_address=ip,
        user_agent=(user_agent or "")[:255],
        browser=browser,
        os=os_name,
        device_name=device_name,
        fingerprint=device_fingerprint(user_agent, ip),
        geo=geo,
    )


def device_from_request() -> DeviceInfo:
    ip = client_ip()
    user_agent = request.headers.get("User-Agent") or ""
    return build_device_info(ip, user_agent, geo=lookup_ip(ip))
