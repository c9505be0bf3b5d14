# chainproof/services/progress_bridge.py
"""
Puente Redis pub/sub entre procesos.

El JobStateMachine corre dentro del worker Celery, pero los observadores SSE
viven en el proceso web. El worker publica cada ProgressEvent como JSON en
``chainproof:audit-progress:<audit_id>``; el relay del proceso web escucha
el patrón y re-publica en su ProgressChannel local.
"""
import json
import logging
import threading
from typing import Optional

import redis
from tenacity import Retrying, retry_if_exception_type, wait_exponential

from chainproof.services.progress_channel import ProgressChannel, ProgressEvent

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "chainproof:audit-progress:"


def channel_name(audit_id: str) -> str:
    return f"{CHANNEL_PREFIX}{audit_id}"


def make_redis(url: str) -> redis.Redis:
    return redis.Redis.from_url(url, decode_responses=True, socket_connect_timeout=5)


class RedisProgressPublisher:
    """Mismo contrato que ProgressChannel.publish, pero hacia Redis."""

    def __init__(self, client: redis.Redis):
        self._redis = client

    def publish(self, audit_id: str, event: ProgressEvent) -> int:
        payload = json.dumps(event.to_dict(), ensure_ascii=False)
        try:
            return int(self._redis.publish(channel_name(audit_id), payload))
        except redis.RedisError:
            # entrega best-effort: el estado ya está persistido, el observador lo relee al reconectar
            logger.warning("progress publish failed", exc_info=True, extra={"audit_id": audit_id})
            return 0


class RedisProgressRelay(threading.Thread):
    """Hilo daemon del proceso web: Redis -> ProgressChannel local."""

    def __init__(self, client: redis.Redis, channel: ProgressChannel,
                 retry_delay: float = 1.0, max_retry_delay: float = 30.0):
        super().__init__(name="progress-relay", daemon=True)
        self._redis = client
        self._channel = channel
        self._retry_delay = retry_delay
        self._max_retry_delay = max_retry_delay
        self._stop_event = threading.Event()
        self._pubsub: Optional[redis.client.PubSub] = None

    def stop(self) -> None:
        self._stop_event.set()
        self._close_pubsub()

    def _close_pubsub(self) -> None:
        if self._pubsub is not None:
            try:
                self._pubsub.close()
            except redis.RedisError:
                logger.debug("error closing pubsub", exc_info=True)

    def handle_message(self, message: dict) -> None:
        if message.get("type") != "pmessage":
            return
        try:
            event = ProgressEvent.from_dict(json.loads(message["data"]))
        except (KeyError, TypeError, ValueError):
            logger.warning("discarding malformed progress message: %r", message.get("data"))
            return
        self._channel.publish(event.audit_id, event)

    def _subscribe(self) -> "redis.client.PubSub":
        pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
        pubsub.psubscribe(f"{CHANNEL_PREFIX}*")
        return pubsub

    def _log_retry(self, retry_state) -> None:
        logger.error(
            f"progress relay cannot reach Redis: {retry_state.outcome.exception()}; "
            f"retrying in {retry_state.next_action.sleep:.1f}s"
        )

    def _subscribe_with_backoff(self) -> "redis.client.PubSub":
        # backoff exponencial con tope; stop() corta la espera en curso
        retrying = Retrying(
            stop=lambda retry_state: self._stop_event.is_set(),
            wait=wait_exponential(multiplier=self._retry_delay, max=self._max_retry_delay),
            retry=retry_if_exception_type(redis.RedisError),
            sleep=self._stop_event.wait,
            before_sleep=self._log_retry,
            reraise=True,
        )
        return retrying(self._subscribe)

    def run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self._pubsub = self._subscribe_with_backoff()
            except redis.RedisError:
                if self._stop_event.is_set():
                    break
                raise
            logger.info("progress relay subscribed to %s*", CHANNEL_PREFIX)
            try:
                while not self._stop_event.is_set():
                    message = self._pubsub.get_message(timeout=1.0)
                    if message:
                        self.handle_message(message)
            except redis.RedisError as e:
                if self._stop_event.is_set():
                    break
                # cada reconexión arranca el backoff desde cero
                logger.error(f"progress relay lost Redis connection: {e}")
                self._close_pubsub()
