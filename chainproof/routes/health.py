from flask import Blueprint, jsonify
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from chainproof.models import db
from chainproof.services import progress_service

bp = Blueprint("health", __name__)

@bp.get("/healthz")
def healthz():
    """
    Healthcheck (base de datos + observadores en vivo)
    ---
    tags:
      - Health
    responses:
      200:
        description: OK
      503:
        description: Base de datos no disponible
    """
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        db.session.rollback()
        return jsonify({"ok": False, "db": "unavailable", "error": str(e)}), 503

    live = progress_service.get_channel().active_audits()
    return jsonify({"ok": True, "db": "ok", "live_audits": len(live)}), 200
