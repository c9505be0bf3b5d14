# chainproof/services/progress_channel.py
"""
Canal de progreso por auditoría (fan-out en proceso).

Cada ``audit_id`` tiene un tópico con N suscripciones. ``publish`` nunca
bloquea: cada suscripción tiene una cola acotada y, si se llena, se descarta
el evento más viejo de ESA suscripción. ``join`` entrega de inmediato el
último evento conocido (memoria o ResultStore) para que un observador tardío
no quede en blanco.

Para llevar eventos entre procesos (worker Celery -> proceso web) ver
``progress_bridge``.
"""
import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from chainproof.models.enums import AuditStatus

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 100


def _now_iso() -> str:
    return datetime.utcnow().isoformat() + "Z"


@dataclass(frozen=True)
class ProgressEvent:
    audit_id: str
    status: str
    progress: int
    message: str = ""
    current_step: Optional[str] = None
    estimated_time_remaining: Optional[int] = None
    timestamp: str = field(default_factory=_now_iso)

    @property
    def is_terminal(self) -> bool:
        return AuditStatus(self.status).is_terminal

    @property
    def order_key(self):
        # ERROR congela el progreso pero siempre es el último evento del job
        status = AuditStatus(self.status)
        rank = len(AuditStatus) if status is AuditStatus.ERROR else status.rank
        return (rank, self.progress)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ProgressEvent":
        return cls(
            audit_id=data["audit_id"],
            status=data["status"],
            progress=int(data["progress"]),
            message=data.get("message") or "",
            current_step=data.get("current_step"),
            estimated_time_remaining=data.get("estimated_time_remaining"),
            timestamp=data.get("timestamp") or _now_iso(),
        )

    @classmethod
    def from_audit(cls, audit, estimated_time_remaining: Optional[int] = None) -> "ProgressEvent":
        return cls(
            audit_id=audit.id,
            status=audit.status,
            progress=audit.progress,
            message=audit.message or "",
            current_step=audit.current_step,
            estimated_time_remaining=estimated_time_remaining,
        )


def more_recent(a: Optional[ProgressEvent], b: Optional[ProgressEvent]) -> Optional[ProgressEvent]:
    if a is None:
        return b
    if b is None:
        return a
    return b if b.order_key > a.order_key else a


class SubscriptionClosed(ConnectionError):
    pass


class Subscription:
    """Cola acotada de un observador para un job."""

    def __init__(self, audit_id: str, observer_id: str, maxlen: int = DEFAULT_QUEUE_SIZE):
        self.audit_id = audit_id
        self.observer_id = observer_id
        self.dropped = 0
        self._queue = deque(maxlen=maxlen)
        self._cond = threading.Condition()
        self._closed = False
        self._high_water = None  # order_key del último evento encolado

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, event: ProgressEvent, replay: bool = False) -> bool:
        """
        Encola sin bloquear. Devuelve False si la suscripción está cerrada.
        Con ``replay`` (snapshot de join) no se repite un evento ya entregado.
        """
        with self._cond:
            if self._closed:
                return False
            stale = self._high_water is not None and (
                event.order_key <= self._high_water if replay else event.order_key < self._high_water
            )
            if stale:
                # evento viejo (reordenado o redelivery): nunca retroceder
                return True
            if len(self._queue) == self._queue.maxlen:
                self.dropped += 1
            self._queue.append(event)
            self._high_water = event.order_key
            self._cond.notify_all()
            return True

    def get(self, timeout: Optional[float] = None) -> Optional[ProgressEvent]:
        """Siguiente evento; None si vence el timeout. Lanza SubscriptionClosed si está cerrada y vacía."""
        with self._cond:
            if not self._queue and not self._closed:
                self._cond.wait(timeout)
            if self._queue:
                return self._queue.popleft()
            if self._closed:
                raise SubscriptionClosed(f"subscription {self.observer_id} for audit {self.audit_id} closed")
            return None

    def drain(self) -> List[ProgressEvent]:
        with self._cond:
            items = list(self._queue)
            self._queue.clear()
            return items

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()


SnapshotLoader = Callable[[str], Optional[ProgressEvent]]


class ProgressChannel:
    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE, snapshot_loader: Optional[SnapshotLoader] = None):
        self.queue_size = queue_size
        self._snapshot_loader = snapshot_loader
        self._lock = threading.RLock()
        self._topics: Dict[str, Dict[str, Subscription]] = {}
        self._last: Dict[str, ProgressEvent] = {}

    def join(self, audit_id: str, observer_id: str) -> Subscription:
        with self._lock:
            topic = self._topics.setdefault(audit_id, {})
            existing = topic.get(observer_id)
            if existing is not None and not existing.closed:
                return existing
            sub = Subscription(audit_id, observer_id, self.queue_size)
            topic[observer_id] = sub
            observers = len(topic)

        # el loader corre sin el lock: publish() nunca espera a la base
        snapshot = None
        if self._snapshot_loader is not None:
            try:
                snapshot = self._snapshot_loader(audit_id)
            except Exception:
                self.leave(audit_id, observer_id)
                raise

        with self._lock:
            last = more_recent(self._last.get(audit_id), snapshot)
            if last is not None and self._topics.get(audit_id, {}).get(observer_id) is sub:
                self._last[audit_id] = last
                sub.offer(last, replay=True)

        logger.info(
            "observer joined",
            extra={"audit_id": audit_id, "observer_id": observer_id, "observers": observers},
        )
        return sub

    def leave(self, audit_id: str, observer_id: str) -> None:
        with self._lock:
            topic = self._topics.get(audit_id)
            if not topic:
                return
            sub = topic.pop(observer_id, None)
            if sub is not None:
                sub.close()
            if not topic:
                self._reclaim(audit_id)
        logger.info("observer left", extra={"audit_id": audit_id, "observer_id": observer_id})

    def publish(self, audit_id: str, event: ProgressEvent) -> int:
        """Entrega a todos los observadores actuales; devuelve a cuántos."""
        delivered = 0
        with self._lock:
            topic = self._topics.get(audit_id)
            if topic or self._snapshot_loader is None:
                self._last[audit_id] = more_recent(self._last.get(audit_id), event)
            if not topic:
                return 0
            for observer_id, sub in list(topic.items()):
                if sub.offer(event):
                    delivered += 1
                else:
                    # desconectado: se descarta, el observador hará re-join
                    del topic[observer_id]
            if not topic:
                self._reclaim(audit_id)
        return delivered

    def _reclaim(self, audit_id: str) -> None:
        self._topics.pop(audit_id, None)
        # sin loader, el caché en memoria es la única fuente para joins tardíos
        if self._snapshot_loader is not None:
            self._last.pop(audit_id, None)

    def last_event(self, audit_id: str) -> Optional[ProgressEvent]:
        with self._lock:
            return self._last.get(audit_id)

    def observer_count(self, audit_id: str) -> int:
        with self._lock:
            return len(self._topics.get(audit_id, {}))

    def active_audits(self) -> List[str]:
        with self._lock:
            return list(self._topics.keys())
