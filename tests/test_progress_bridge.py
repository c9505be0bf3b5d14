import json

import redis

from chainproof.services.progress_bridge import (
    CHANNEL_PREFIX,
    RedisProgressPublisher,
    RedisProgressRelay,
    channel_name,
)
from chainproof.services.progress_channel import ProgressChannel, ProgressEvent


class FakeRedis:
    def __init__(self, fail=False):
        self.fail = fail
        self.messages = []

    def publish(self, channel, payload):
        if self.fail:
            raise redis.ConnectionError("redis down")
        self.messages.append((channel, payload))
        return 1


def test_publisher_serializes_event():
    client = FakeRedis()
    event = ProgressEvent("a1", "ANALYZING", 20, "Analyzing", "Code Analysis")
    assert RedisProgressPublisher(client).publish("a1", event) == 1

    channel, payload = client.messages[0]
    assert channel == f"{CHANNEL_PREFIX}a1" == channel_name("a1")
    assert ProgressEvent.from_dict(json.loads(payload)) == event


def test_publisher_swallows_redis_outage():
    event = ProgressEvent("a1", "STARTED", 5)
    assert RedisProgressPublisher(FakeRedis(fail=True)).publish("a1", event) == 0


def test_relay_forwards_pattern_messages_to_local_channel():
    local = ProgressChannel()
    sub = local.join("a1", "ui")
    relay = RedisProgressRelay(FakeRedis(), local)

    event = ProgressEvent("a1", "DETECTING", 60, "Detecting vulnerabilities...")
    relay.handle_message({
        "type": "pmessage",
        "pattern": f"{CHANNEL_PREFIX}*",
        "channel": channel_name("a1"),
        "data": json.dumps(event.to_dict()),
    })
    assert sub.get(timeout=0) == event


def test_relay_ignores_other_and_malformed_messages():
    local = ProgressChannel()
    sub = local.join("a1", "ui")
    relay = RedisProgressRelay(FakeRedis(), local)

    relay.handle_message({"type": "psubscribe", "data": 1})
    relay.handle_message({"type": "pmessage", "data": "not json"})
    relay.handle_message({"type": "pmessage", "data": json.dumps({"status": "STARTED"})})
    assert sub.get(timeout=0) is None


class FakePubSub:
    def __init__(self, relay, patterns):
        self.relay = relay
        self.patterns = patterns

    def psubscribe(self, pattern):
        self.patterns.append(pattern)

    def get_message(self, timeout=None):
        self.relay.stop()
        return None

    def close(self):
        pass


class FlakyRedis(FakeRedis):
    """pubsub() falla ``failures`` veces antes de conectar."""

    def __init__(self, failures):
        super().__init__()
        self.failures = failures
        self.attempts = 0
        self.patterns = []
        self.relay = None

    def pubsub(self, ignore_subscribe_messages=False):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise redis.ConnectionError("connection refused")
        return FakePubSub(self.relay, self.patterns)


def test_relay_retries_subscribe_until_redis_is_back():
    client = FlakyRedis(failures=2)
    relay = RedisProgressRelay(client, ProgressChannel(), retry_delay=0.01, max_retry_delay=0.02)
    client.relay = relay

    relay.run()

    assert client.attempts == 3
    assert client.patterns == [f"{CHANNEL_PREFIX}*"]


def test_relay_stop_interrupts_backoff():
    client = FlakyRedis(failures=100)
    relay = RedisProgressRelay(client, ProgressChannel(), retry_delay=0.01, max_retry_delay=0.01)

    def pubsub(ignore_subscribe_messages=False):
        client.attempts += 1
        if client.attempts == 2:
            relay.stop()
        raise redis.ConnectionError("connection refused")

    client.pubsub = pubsub
    relay.run()

    assert client.attempts == 2
    assert client.patterns == []
