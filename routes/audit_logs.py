from flask import Blueprint, jsonify, request

from security.rbac import require_roles
from utils.audit import audited, recent_events
from utils.audit_events import EventType

audit_bp = Blueprint("audit", __name__, url_prefix="/admin")


@audit_bp.get("/audit-logs")
@require_roles("ADMIN")
@audited(EventType.ADMIN_ACTION, risk_level="low", description="Audit log viewed")
def list_audit_logs():
    limit = request.args.get("limit", type=int) or 200
    limit = max(1, min(limit, 500))
    offset = max(request.args.get("offset", type=int) or 0, 0)

    success = request.args.get("success")
    if success is not None:
        success = success.lower() in ("1", "true", "yes")

    rows = recent_events(
        user_id=request.args.get("user_id", type=int),
        email=request.args.get("email"),
        ip_address=request.args.get("ip_address"),
        event_type=request.args.get("event_type"),
        risk_level=request.args.get("risk_level"),
        success=success,
        limit=limit,
        offset=offset,
    )
    return jsonify(events=[r.to_dict() for r in rows], count=len(rows), limit=limit, offset=offset), 200
