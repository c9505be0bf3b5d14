# chainproof/services/progress_service.py
"""Cableado del canal de progreso dentro de la app Flask."""
import logging
import threading
from typing import Optional

from flask import current_app

from chainproof.models import db
from chainproof.models.audit import Audit
from chainproof.services.job_state import JobStateMachine
from chainproof.services.progress_bridge import RedisProgressPublisher, RedisProgressRelay, make_redis
from chainproof.services.progress_channel import ProgressChannel, ProgressEvent

logger = logging.getLogger(__name__)

_relay_lock = threading.Lock()


def load_snapshot(audit_id: str) -> Optional[ProgressEvent]:
    """Último estado persistido, como ProgressEvent (requiere app context)."""
    audit = db.session.get(Audit, audit_id)
    if audit is None:
        return None
    # otro proceso (worker) pudo avanzar la fila desde la última lectura
    db.session.refresh(audit)
    return ProgressEvent.from_audit(audit)


def init_app(app) -> None:
    app.extensions["progress_channel"] = ProgressChannel(
        queue_size=app.config.get("PROGRESS_QUEUE_SIZE", 100),
        snapshot_loader=load_snapshot,
    )


def get_channel(app=None) -> ProgressChannel:
    app = app or current_app
    return app.extensions["progress_channel"]


def ensure_relay(app=None) -> Optional[RedisProgressRelay]:
    """Arranca (una sola vez por proceso) el relay Redis -> canal local."""
    app = app or current_app._get_current_object()
    if not app.config.get("PROGRESS_RELAY_ENABLED"):
        return None
    with _relay_lock:
        relay = app.extensions.get("progress_relay")
        if relay is None or not relay.is_alive():
            relay = RedisProgressRelay(make_redis(app.config["PROGRESS_REDIS_URL"]), get_channel(app))
            relay.start()
            app.extensions["progress_relay"] = relay
            logger.info("progress relay started")
    return relay


def build_state_machine(app=None) -> JobStateMachine:
    """
    En el worker los eventos viajan por Redis; sin relay (tests, modo eager)
    se publican directo en el canal del proceso.
    """
    app = app or current_app._get_current_object()
    if app.config.get("PROGRESS_RELAY_ENABLED"):
        publisher = RedisProgressPublisher(make_redis(app.config["PROGRESS_REDIS_URL"]))
    else:
        publisher = get_channel(app)
    return JobStateMachine(publisher)
