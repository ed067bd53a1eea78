import asyncio

from regdesk.client.event_queue import EventQueue, QueueConfig
from regdesk.client.transport import DeliveryError


class FakeTransport:
    def __init__(
        self,
        fail_times: int = 0,
        fail_always: bool = False,
        beacon_delay: float = 0.0,
        reject: bool = False,
    ) -> None:
        self.fail_times = fail_times
        self.reject = reject
        self.fail_always = fail_always
        self.beacon_delay = beacon_delay
        self.posts: list[tuple[str, dict]] = []
        self.beacons: list[tuple[str, dict]] = []
        self.attempts = 0

    async def post(self, endpoint, payload):
        self.attempts += 1
        if self.reject:
            raise DeliveryError("HTTP 422", retryable=False)
        if self.fail_always or self.attempts <= self.fail_times:
            raise DeliveryError("HTTP 503")
        self.posts.append((endpoint, payload))

    async def beacon(self, endpoint, payload):
        if self.beacon_delay:
            await asyncio.sleep(self.beacon_delay)
        self.beacons.append((endpoint, payload))


def _config(**overrides) -> QueueConfig:
    values = {"batch_size": 10, "batch_interval": 60.0, "max_retries": 3, "retry_delay": 0.01}
    values.update(overrides)
    return QueueConfig(**values)


def test_enqueue_reaching_batch_size_flushes_exactly_that_batch():
    async def scenario():
        transport = FakeTransport()
        queue = EventQueue(transport, _config(batch_size=10))
        for index in range(12):
            queue.enqueue("event", {"category": "Test", "action": "Click", "value": index})
        await asyncio.sleep(0.05)
        sent = [payload["value"] for _, payload in transport.posts]
        pending = queue.pending
        await queue.aclose()
        return sent, pending

    sent, pending = asyncio.run(scenario())
    assert sorted(sent) == list(range(10))
    assert pending == 2


def test_payload_carries_session_and_timing_fields():
    async def scenario():
        transport = FakeTransport()
        queue = EventQueue(transport, _config(), session_id="session_abc")
        queue.enqueue("pageview", {"page": "/"})
        await queue.flush()
        await queue.aclose()
        return transport.posts

    posts = asyncio.run(scenario())
    endpoint, payload = posts[0]
    assert endpoint == "pageview"
    assert payload["page"] == "/"
    assert payload["sessionId"] == "session_abc"
    assert "timestamp" in payload
    assert payload["timeOnPage"] >= 0


def test_failing_event_is_sent_max_retries_plus_one_times_then_dropped():
    async def scenario():
        transport = FakeTransport(fail_always=True)
        queue = EventQueue(transport, _config(max_retries=3, retry_delay=0.01))
        queue.enqueue("event", {"category": "Test", "action": "Fail"})
        await queue.flush()
        await asyncio.sleep(0.2)
        result = (transport.attempts, queue.dropped, queue.waiting_retries)
        await queue.aclose()
        return result

    attempts, dropped, waiting = asyncio.run(scenario())
    assert attempts == 4
    assert dropped == 1
    assert waiting == 0


def test_retry_delay_grows_with_attempts(monkeypatch):
    delays = []

    async def scenario():
        loop = asyncio.get_running_loop()
        original = loop.call_later
        queue = EventQueue(FakeTransport(fail_always=True), _config(max_retries=3, retry_delay=1.0))

        def recording_call_later(delay, callback, *args):
            # asyncio.sleep also goes through call_later; only retries are shortened.
            if callback == queue._on_retry_due:
                delays.append(delay)
                delay = 0
            return original(delay, callback, *args)

        monkeypatch.setattr(loop, "call_later", recording_call_later)
        queue.enqueue("event", {"category": "Test", "action": "Fail"})
        await queue.flush()
        await asyncio.sleep(0.05)
        await queue.aclose()

    asyncio.run(scenario())
    assert delays == [1.0, 2.0, 3.0]


def test_transient_failure_recovers_on_retry():
    async def scenario():
        transport = FakeTransport(fail_times=1)
        queue = EventQueue(transport, _config())
        queue.enqueue("event", {"category": "Test", "action": "Flaky"})
        await queue.flush()
        await asyncio.sleep(0.1)
        await queue.aclose()
        return transport, queue

    transport, queue = asyncio.run(scenario())
    assert len(transport.posts) == 1
    assert queue.delivered == 1
    assert queue.dropped == 0


def test_offline_queue_sends_nothing_until_back_online():
    async def scenario():
        transport = FakeTransport()
        queue = EventQueue(transport, _config(batch_size=2), online=False)
        for index in range(5):
            queue.enqueue("event", {"category": "Test", "action": "Offline", "value": index})
        flushed = await queue.flush()
        before = len(transport.posts)
        queue.set_online(True)
        await asyncio.sleep(0.05)
        after = len(transport.posts)
        await queue.aclose()
        return flushed, before, after

    flushed, before, after = asyncio.run(scenario())
    assert flushed == 0
    assert before == 0
    assert after == 5


def test_retry_due_while_offline_is_parked_and_replayed():
    async def scenario():
        transport = FakeTransport(fail_times=1)
        queue = EventQueue(transport, _config(retry_delay=0.01))
        queue.enqueue("event", {"category": "Test", "action": "Parked"})
        await queue.flush()
        queue.set_online(False)
        await asyncio.sleep(0.05)
        parked = (len(transport.posts), queue.waiting_retries)
        queue.set_online(True)
        await asyncio.sleep(0.05)
        delivered = len(transport.posts)
        await queue.aclose()
        return parked, delivered

    parked, delivered = asyncio.run(scenario())
    assert parked == (0, 1)
    assert delivered == 1


def test_interval_ticker_flushes_partial_batches():
    async def scenario():
        transport = FakeTransport()
        queue = EventQueue(transport, _config(batch_interval=0.02))
        queue.start()
        queue.enqueue("event", {"category": "Test", "action": "Tick"})
        await asyncio.sleep(0.1)
        await queue.aclose()
        return transport.posts

    assert len(asyncio.run(scenario())) == 1


def test_send_immediate_bypasses_queue_and_never_raises():
    async def scenario():
        ok_transport = FakeTransport()
        ok_queue = EventQueue(ok_transport, _config())
        ok = await ok_queue.send_immediate("form", {"action": "start"})

        bad_queue = EventQueue(FakeTransport(fail_always=True), _config())
        failed = await bad_queue.send_immediate("form", {"action": "submit"})

        pending = (ok_queue.pending, bad_queue.pending)
        await ok_queue.aclose()
        await bad_queue.aclose()
        return ok, failed, pending, ok_transport.posts

    ok, failed, pending, posts = asyncio.run(scenario())
    assert ok is True
    assert failed is False
    assert pending == (0, 0)
    assert posts[0][1]["action"] == "start"


def test_beacon_survives_close_within_grace_period():
    async def scenario():
        transport = FakeTransport(beacon_delay=0.05)
        queue = EventQueue(transport, _config(beacon_grace=1.0))
        queue.send_beacon("event", {"category": "Session", "action": "End"})
        await queue.aclose()
        return transport.beacons

    beacons = asyncio.run(scenario())
    assert len(beacons) == 1
    assert beacons[0][1]["category"] == "Session"


def test_no_activity_after_close():
    async def scenario():
        transport = FakeTransport(fail_always=True)
        queue = EventQueue(transport, _config(retry_delay=0.05))
        queue.enqueue("event", {"category": "Test", "action": "Fail"})
        await queue.flush()
        await queue.aclose()
        attempts = transport.attempts
        queue.enqueue("event", {"category": "Test", "action": "Late"})
        await asyncio.sleep(0.15)
        return attempts, transport.attempts, queue.pending

    attempts_at_close, attempts_later, pending = asyncio.run(scenario())
    assert attempts_at_close == 1
    assert attempts_later == 1
    assert pending == 0


def test_rejected_event_is_dropped_without_retry():
    async def scenario():
        transport = FakeTransport(reject=True)
        queue = EventQueue(transport, _config(retry_delay=0.01))
        queue.enqueue("event", {"category": "Error", "action": "custom", "label": "boom"})
        await queue.flush()
        await asyncio.sleep(0.1)
        result = (transport.attempts, queue.dropped, queue.waiting_retries)
        await queue.aclose()
        return result

    assert asyncio.run(scenario()) == (1, 1, 0)
