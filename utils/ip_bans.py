import ipaddress
import logging
from datetime import timedelta

from sqlalchemy import or_, update

from models import db
from models.banned_ip import BannedIP
from security.errors import ValidationError
from utils.clock import utcnow

logger = logging.getLogger(__name__)


def normalize_ip(value: str) -> str:
    try:
        return str(ipaddress.ip_address((value or "").strip()))
    except ValueError:
        raise ValidationError("Invalid IP address")


def _active_filter(now):
    return (
        BannedIP.is_active.is_(True),
        or_(BannedIP.expires_at.is_(None), BannedIP.expires_at > now),
    )


def is_ip_banned(ip: str, now=None) -> bool:
    if not ip:
        return False
    now = now or utcnow()
    return BannedIP.query.filter(BannedIP.ip_address == ip, *_active_filter(now)).first() is not None


def ban_ip(ip: str, reason: str = None, duration_hours=None, banned_by=None, now=None) -> BannedIP:
    """duration_hours=None bans permanently. Re-banning replaces the previous ban."""
    ip = normalize_ip(ip)
    now = now or utcnow()

    if duration_hours is not None:
        try:
            duration_hours = float(duration_hours)
        except (TypeError, ValueError):
            raise ValidationError("duration_hours must be a number")
        if duration_hours <= 0:
            raise ValidationError("duration_hours must be positive")

    db.session.execute(
        update(BannedIP)
        .where(BannedIP.ip_address == ip, BannedIP.is_active.is_(True))
        .values(is_active=False)
    )
    row = BannedIP(
        ip_address=ip,
        reason=(reason or "Manual ban")[:255],
        banned_by=banned_by,
        banned_at=now,
        expires_at=now + timedelta(hours=duration_hours) if duration_hours else None,
        is_active=True,
    )
    db.session.add(row)
    db.session.commit()
    logger.warning(f"IP {ip} banned by {banned_by}: {row.reason}")
    return row


def unban_ip(ip: str) -> int:
    ip = normalize_ip(ip)
    result = db.session.execute(
        update(BannedIP)
        .where(BannedIP.ip_address == ip, BannedIP.is_active.is_(True))
        .values(is_active=False)
    )
    db.session.commit()
    return result.rowcount


def list_banned_ips(now=None):
    now = now or utcnow()
    return (
        BannedIP.query
        .filter(*_active_filter(now))
        .order_by(BannedIP.banned_at.desc())
        .all()
    )


def cleanup_expired_bans(now=None) -> int:
    now = now or utcnow()
    result = db.session.execute(
        update(BannedIP)
        .where(
            BannedIP.is_active.is_(True),
            BannedIP.expires_at.isnot(None),
            BannedIP.expires_at <= now,
        )
        .values(is_active=False)
    )
    db.session.commit()
    if result.rowcount:
        logger.info(f"Deactivated {result.rowcount} expired IP ban(s)")
    return result.rowcount
