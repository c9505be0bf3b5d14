# chainproof/services/progress_observer.py
"""
Lado observador del canal de progreso.

``ProgressObserver`` mantiene un estado de conexión explícito
(CONNECTED / RECONNECTING / DISCONNECTED). Ante una desconexión reintenta con
backoff exponencial acotado; al reconectar vuelve a hacer ``join`` de cada
auditoría que estaba mirando, lo que provoca la re-entrega del último evento
conocido (sin huecos permanentes). Si el backoff se agota, el observador
queda DISCONNECTED con ``stale=True``; el job sigue su curso igual.
"""
import logging
import time
import uuid
from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, Dict, List, Optional

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from chainproof.services.progress_channel import ProgressChannel, ProgressEvent, Subscription, SubscriptionClosed

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"


class ProgressTransport(ABC):
    """Transporte independiente de la tecnología (SSE, websocket, en proceso...)."""

    @abstractmethod
    def connect(self) -> None:
        """Abre la conexión; lanza ConnectionError si no puede."""

    @abstractmethod
    def join(self, audit_id: str) -> None:
        ...

    @abstractmethod
    def leave(self, audit_id: str) -> None:
        ...

    @abstractmethod
    def receive(self, timeout: float) -> Optional[ProgressEvent]:
        """Siguiente evento o None; lanza ConnectionError si se perdió la conexión."""

    @abstractmethod
    def close(self) -> None:
        ...


class ChannelTransport(ProgressTransport):
    """Transporte en proceso sobre un ProgressChannel."""

    def __init__(self, channel: ProgressChannel, observer_id: Optional[str] = None):
        self.channel = channel
        self.observer_id = observer_id or uuid.uuid4().hex
        self._subs: Dict[str, Subscription] = {}
        self._connected = False

    def connect(self) -> None:
        self._connected = True

    def join(self, audit_id: str) -> None:
        if not self._connected:
            raise ConnectionError("transport not connected")
        self._subs[audit_id] = self.channel.join(audit_id, self.observer_id)

    def leave(self, audit_id: str) -> None:
        self._subs.pop(audit_id, None)
        self.channel.leave(audit_id, self.observer_id)

    def receive(self, timeout: float) -> Optional[ProgressEvent]:
        if not self._connected:
            raise ConnectionError("transport not connected")
        deadline = time.monotonic() + timeout
        while True:
            for sub in list(self._subs.values()):
                try:
                    event = sub.get(timeout=0)
                except SubscriptionClosed as e:
                    self._connected = False
                    raise ConnectionError(str(e)) from e
                if event is not None:
                    return event
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            time.sleep(min(0.05, remaining))

    def close(self) -> None:
        # desconexión "de red": las suscripciones quedan cerradas y el canal las purga al publicar
        for sub in self._subs.values():
            sub.close()
        self._subs.clear()
        self._connected = False


class ProgressObserver:
    def __init__(
        self,
        transport: ProgressTransport,
        *,
        max_retries: int = 5,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.transport = transport
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._sleep = sleep
        self.state = ConnectionState.DISCONNECTED
        self.stale = False
        self.last_error: Optional[str] = None
        self.latest: Dict[str, ProgressEvent] = {}
        self._watched: List[str] = []

    @property
    def watched(self) -> List[str]:
        return list(self._watched)

    def connect(self) -> bool:
        return self._reconnect()

    def watch(self, audit_id: str) -> None:
        if audit_id not in self._watched:
            self._watched.append(audit_id)
        if self.state is ConnectionState.CONNECTED:
            try:
                self.transport.join(audit_id)
            except ConnectionError:
                self._on_disconnect()

    def unwatch(self, audit_id: str) -> None:
        if audit_id in self._watched:
            self._watched.remove(audit_id)
        self.latest.pop(audit_id, None)
        if self.state is ConnectionState.CONNECTED:
            self.transport.leave(audit_id)

    def poll(self, timeout: float = 1.0) -> Optional[ProgressEvent]:
        """Siguiente evento nuevo de alguna auditoría observada (o None)."""
        if self.state is not ConnectionState.CONNECTED:
            if self.stale:
                return None
            self._on_disconnect()
            return None
        try:
            event = self.transport.receive(timeout)
        except ConnectionError as e:
            self.last_error = str(e)
            self._on_disconnect()
            return None
        if event is None or event.audit_id not in self._watched:
            return None
        previous = self.latest.get(event.audit_id)
        if previous is not None and event.order_key < previous.order_key:
            return None
        self.latest[event.audit_id] = event
        return event

    def close(self) -> None:
        for audit_id in list(self._watched):
            try:
                self.transport.leave(audit_id)
            except ConnectionError:
                pass  # ya desconectado: no hay nada que liberar del lado remoto
        self.transport.close()
        self.state = ConnectionState.DISCONNECTED

    def _on_disconnect(self) -> None:
        logger.warning("progress transport disconnected; reconnecting")
        self._reconnect()

    def _connect_and_rejoin(self) -> None:
        self.transport.connect()
        for audit_id in self._watched:
            self.transport.join(audit_id)

    def _log_retry(self, retry_state) -> None:
        logger.info(
            "reconnect attempt %s failed; next try in %.2fs",
            retry_state.attempt_number,
            retry_state.next_action.sleep if retry_state.next_action else 0.0,
        )

    def _reconnect(self) -> bool:
        self.state = ConnectionState.RECONNECTING
        retrying = Retrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=self.backoff_base, max=self.backoff_max),
            retry=retry_if_exception_type(ConnectionError),
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )
        try:
            retrying(self._connect_and_rejoin)
        except ConnectionError as e:
            self.state = ConnectionState.DISCONNECTED
            self.stale = True
            self.last_error = str(e)
            logger.error(f"reconnect gave up after {self.max_retries} attempts: {e}")
            return False
        self.state = ConnectionState.CONNECTED
        self.stale = False
        return True
