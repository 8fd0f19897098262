import asyncio
import json

from redis.exceptions import ConnectionError as RedisConnectionError

from arena.services.invalidation import InvalidationBus, InvalidationSignal, UpdateThrottler


class FakeRedis:
    """Records publishes; optionally fails like an unreachable server."""

    def __init__(self, fail=False):
        self.fail = fail
        self.published = []
        self.closed = False

    async def publish(self, channel, message):
        if self.fail:
            raise RedisConnectionError("connection refused")
        self.published.append((channel, message))

    async def aclose(self):
        self.closed = True


def collector():
    received = []

    async def handler(signal):
        received.append(signal)

    return received, handler


def test_signal_json_round_trip_keeps_identity_only():
    signal = InvalidationSignal('user_contests', contest_id=3, user_id=8)
    payload = json.loads(signal.to_json('origin-a'))

    assert payload == {'origin': 'origin-a', 'table': 'user_contests', 'contest_id': 3, 'user_id': 8}
    assert InvalidationSignal.from_json(signal.to_json('origin-a')) == signal


def test_publish_reaches_local_subscribers_and_redis():
    async def scenario():
        redis_client = FakeRedis()
        bus = InvalidationBus(redis_client, channel='test:invalidation')
        received, handler = collector()
        bus.subscribe(handler)
        bus.subscribe(handler)

        signal = InvalidationSignal('contests', contest_id=1)
        await bus.publish(signal)

        assert received == [signal]
        [(channel, message)] = redis_client.published
        assert channel == 'test:invalidation'
        assert json.loads(message)['origin'] == bus.origin

        bus.unsubscribe(handler)
        await bus.publish(signal)
        assert received == [signal]

        await bus.stop()
        assert redis_client.closed

    asyncio.run(scenario())


def test_redis_outage_does_not_break_publish():
    async def scenario():
        bus = InvalidationBus(FakeRedis(fail=True))
        received, handler = collector()
        bus.subscribe(handler)

        await bus.publish(InvalidationSignal('contests', contest_id=2))
        assert len(received) == 1

    asyncio.run(scenario())


def test_failing_handler_does_not_block_others():
    async def scenario():
        bus = InvalidationBus()
        received, handler = collector()

        async def broken(signal):
            raise RuntimeError("subscriber crashed")

        bus.subscribe(broken)
        bus.subscribe(handler)
        await bus.publish(InvalidationSignal('player_game_progress', contest_id=5, user_id=1))

        assert len(received) == 1

    asyncio.run(scenario())


def test_remote_messages_are_dispatched_and_own_echo_ignored():
    async def scenario():
        bus = InvalidationBus()
        received, handler = collector()
        bus.subscribe(handler)

        remote = InvalidationSignal('contests', contest_id=9)
        await bus._handle_message(remote.to_json('another-process').encode('utf-8'))
        await bus._handle_message(remote.to_json(bus.origin))
        await bus._handle_message('not json at all')
        await bus._handle_message(json.dumps({'origin': 'x'}))

        assert received == [remote]

    asyncio.run(scenario())


def test_throttler_spaces_refetches_per_key(monotonic):
    throttler = UpdateThrottler(min_interval=0.2, clock=monotonic)

    assert throttler.should_process('contests:1')
    assert not throttler.should_process('contests:1')
    assert throttler.should_process('contests:2')

    monotonic.advance(0.25)
    assert throttler.should_process('contests:1')

    monotonic.advance(5)
    throttler.cleanup(max_age=2.0)
    assert throttler._last_processed == {}
