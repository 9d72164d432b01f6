from .db import db
from .user import User, Role, user_roles
from .two_factor import TwoFactorCredential
from .session import UserSession
from .audit_log import AuditEvent
from .banned_ip import BannedIP
