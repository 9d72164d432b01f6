"""Default roles, created idempotently at startup and by the CLI."""
import logging
from typing import Iterable, List

from sqlalchemy import inspect

from models import db
from models.user import Role

logger = logging.getLogger(__name__)

DEFAULT_ROLES = ("USER", "ADMIN")


def roles_table_ready() -> bool:
    return inspect(db.engine).has_table(Role.__tablename__)


def seed_roles(roles: Iterable[str] = DEFAULT_ROLES) -> List[str]:
    """Create every missing role and return the names that were added."""
    existing = {name for (name,) in db.session.query(Role.name)}
    missing = [name for name in dict.fromkeys(roles) if name not in existing]
    if not missing:
        return []

    db.session.add_all([Role(name=name) for name in missing])
    db.session.commit()
    logger.info(f"Seeded roles: {', '.join(missing)}")
    return missing


def seed_roles_if_ready() -> List[str]:
    """Startup variant: a fresh database has no tables until `flask db upgrade`."""
    if not roles_table_ready():
        logger.info("Roles table does not exist yet, role seeding deferred")
        return []
    return seed_roles()
