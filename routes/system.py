from flask import Blueprint, jsonify

from security.cleanup import run_session_cleanup
from security.rbac import require_system_token

system_bp = Blueprint("system", __name__, url_prefix="/system")


@system_bp.post("/session-cleanup")
@require_system_token
def session_cleanup():
    stats = run_session_cleanup()
    return jsonify(message="Session cleanup completed", stats=stats.to_dict()), 200
