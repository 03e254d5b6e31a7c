import json
import os
import time
import unittest

from src.flagbucket.events import Event, EventQueue, EventQueueOptions, QueueFullError
from src.flagbucket.registry import ConfigRegistry
from src.flagbucket.user import PlatformData, User


def _raw_fixture() -> bytes:
    with open(os.path.join(os.path.dirname(__file__), "fixtures", "config.json"), "rb") as f:
        return f.read()


def _platform_data() -> PlatformData:
    return PlatformData(sdk_type="server", sdk_version="0.1.0", platform="Python", platform_version="3.12.1", hostname="test-host")


class TestEventQueueOptions(unittest.TestCase):
    def test_check_bounds(self):
        cases = [(1, 100), (100, 100), (500, 500), (1000, 1000), (5000, 1000)]
        for size, expected in cases:
            with self.subTest(size=size):
                o = EventQueueOptions(max_event_queue_size=size)
                o.check_bounds()
                self.assertEqual(o.max_event_queue_size, expected)
        o = EventQueueOptions(event_request_chunk_size=0)
        o.check_bounds()
        self.assertEqual(o.event_request_chunk_size, 100)


class TestEventQueue(unittest.TestCase):
    def setUp(self):
        self.registry = ConfigRegistry()
        self.registry.set(_raw_fixture(), "sdk-key", etag="etag-1", ray_id="ray-1")

    def _queue(self, **options) -> EventQueue:
        return EventQueue("sdk-key", self.registry, EventQueueOptions(**options), _platform_data())

    def test_requires_sdk_key(self):
        with self.assertRaises(ValueError):
            EventQueue("", self.registry)

    def test_aggregate_backpressure(self):
        eq = self._queue(max_event_queue_size=100)
        for i in range(100):
            eq.queue_variable_evaluated_event(f"var-{i}", "f1", "v1")
        with self.assertRaises(QueueFullError):
            eq.queue_variable_defaulted_event("var-x", "MISSING_CONFIG")
        self.assertEqual(eq.metrics(), (0, 0, 1))
        eq.process_queued_events()
        eq.queue_variable_evaluated_event("var-y", "f1", "v1")

    def test_user_event_backpressure(self):
        eq = self._queue(max_event_queue_size=100)
        user = User("u1")
        for i in range(100):
            eq.queue_event(user, Event("custom"))
        with self.assertRaises(QueueFullError):
            eq.queue_event(user, Event("custom"))
        with self.assertRaises(QueueFullError):
            eq.queue_event(user, Event("custom"))
        self.assertEqual(eq.metrics()[2], 2)

    def test_empty_flush(self):
        eq = self._queue()
        self.assertEqual(eq.flush_event_queue(), {})
        self.assertEqual(eq.flush_event_queue("uuid", "etag", "ray"), {})
        self.assertEqual(eq.metrics(), (0, 0, 0))

    def test_aggregate_variable_key_required(self):
        eq = self._queue()
        with self.assertRaises(ValueError):
            eq.queue_variable_evaluated_event("", "f1", "v1")
        with self.assertRaises(ValueError):
            eq.queue_variable_defaulted_event("", "MISSING_CONFIG")

    def test_automatic_logging_disabled(self):
        eq = self._queue(disable_automatic_event_logging=True)
        eq.queue_variable_evaluated_event("var", "f1", "v1")
        eq.queue_variable_defaulted_event("", "MISSING_CONFIG")
        eq.queue_event(User("u1"), Event("variableEvaluated", target="var"))
        eq.queue_event(User("u1"), Event("purchase"))
        self.assertEqual(eq.process_queued_events(), 1)
        self.assertEqual(eq.aggregate_counts(), {})

    def test_custom_logging_disabled(self):
        eq = self._queue(disable_custom_event_logging=True)
        eq.queue_event(User("u1"), Event("purchase"))
        eq.queue_event(User("u1"), Event("variableDefaulted", target="var"))
        eq.queue_variable_evaluated_event("var", "f1", "v1")
        self.assertEqual(eq.process_queued_events(), 2)
        self.assertEqual(eq.user_queue_length(), 1)

    def test_aggregation(self):
        eq = self._queue()
        for _ in range(3):
            eq.queue_variable_evaluated_event("test", "f1", "va")
        eq.queue_variable_evaluated_event("test", "f1", "vb")
        eq.queue_variable_evaluated_event("other", "f2", "vc")
        for _ in range(2):
            eq.queue_variable_defaulted_event("test", "USER_NOT_TARGETED")
        eq.queue_variable_defaulted_event("missing", "MISSING_VARIABLE")
        self.assertEqual(eq.process_queued_events(), 8)
        self.assertEqual(
            eq.aggregate_counts(),
            {
                "aggVariableEvaluated": {
                    "test": {"f1": {"va": 3, "vb": 1}},
                    "other": {"f2": {"vc": 1}},
                },
                "aggVariableDefaulted": {
                    "test": {"defaulted": {"USER_NOT_TARGETED": 2}},
                    "missing": {"defaulted": {"MISSING_VARIABLE": 1}},
                },
            },
        )

        payloads = eq.flush_event_queue("client-uuid", "etag-1", "ray-1")
        self.assertEqual(len(payloads), 1)
        payload = next(iter(payloads.values()))
        self.assertEqual(payload.status, "sending")
        self.assertEqual(payload.event_count, 5)
        self.assertEqual(len(payload.records), 1)
        record = payload.records[0]
        self.assertEqual(record.user.user_id, "test-host")

        events = {(e.type, e.target, e.metadata.get("_variation") or e.metadata.get("defaultReason")): e for e in record.events}
        e = events[("aggVariableEvaluated", "test", "va")]
        self.assertEqual(e.value, 3)
        self.assertEqual(e.user_id, "test-host")
        self.assertEqual(e.metadata, {"_feature": "f1", "_variation": "va", "clientUUID": "client-uuid", "configEtag": "etag-1", "configRayId": "ray-1"})
        e = events[("aggVariableDefaulted", "test", "USER_NOT_TARGETED")]
        self.assertEqual(e.value, 2)
        self.assertEqual(e.metadata, {"defaultReason": "USER_NOT_TARGETED", "clientUUID": "client-uuid", "configEtag": "etag-1", "configRayId": "ray-1"})

        # Aggregation starts over after a flush.
        self.assertEqual(eq.aggregate_counts(), {})
        self.assertEqual(eq.flush_event_queue(), {})

    def test_aggregate_user_without_hostname(self):
        eq = EventQueue("sdk-key", self.registry, EventQueueOptions(), PlatformData(platform="Python"))
        eq.queue_variable_evaluated_event("test", "f1", "va")
        eq.process_queued_events()
        payload = next(iter(eq.flush_event_queue().values()))
        self.assertEqual(payload.records[0].user.user_id, "aggregate")
        self.assertNotIn("configEtag", payload.records[0].events[0].metadata)

    def test_user_events(self):
        eq = self._queue()
        user = User("u1", email="a@example.com", country="AU", private_custom_data={"secret": "x"})
        eq.queue_event(user, Event("purchase", target="sku-1", value=9.5, metadata={"currency": "AUD"}))
        eq.queue_event(user, Event("variableEvaluated", target="test"))
        eq.queue_event(User("u2"), Event("signup"))
        eq.process_queued_events()
        self.assertEqual(eq.user_queue_length(), 3)

        payloads = eq.flush_event_queue()
        self.assertEqual(len(payloads), 1)
        payload = next(iter(payloads.values()))
        records = {r.user.user_id: r for r in payload.records}
        self.assertEqual(set(records), {"u1", "u2"})

        purchase, evaluated = records["u1"].events
        self.assertEqual((purchase.type, purchase.custom_type, purchase.user_id), ("customEvent", "purchase", "u1"))
        self.assertEqual(purchase.feature_vars["614ef6aa473928459060721a"], "6153553b8cf4e45e0464268d")
        self.assertIn("614ef6aa475928459060721c", purchase.feature_vars)
        self.assertEqual((evaluated.type, evaluated.custom_type), ("variableEvaluated", ""))
        self.assertEqual(eq.user_queue_length(), 0)

        d = payload.to_dict()
        self.assertEqual(list(d), ["batch"])
        u1 = next(r for r in d["batch"] if r["user"]["user_id"] == "u1")
        self.assertEqual(u1["user"]["email"], "a@example.com")
        self.assertEqual(u1["user"]["platform"], "Python")
        self.assertNotIn("privateCustomData", u1["user"])
        self.assertNotIn("secret", json.dumps(d))
        self.assertEqual(u1["events"][0]["customType"], "purchase")
        self.assertEqual(u1["events"][0]["value"], 9.5)
        self.assertEqual(u1["events"][0]["metaData"], {"currency": "AUD"})
        self.assertNotIn("customType", u1["events"][1])
        self.assertNotIn("value", u1["events"][1])

    def test_user_event_without_config(self):
        eq = EventQueue("no-config", self.registry, EventQueueOptions(), _platform_data())
        eq.queue_event(User("u1"), Event("purchase"))
        with self.assertLogs("src.flagbucket.events", "WARNING"):
            eq.process_queued_events()
        payload = next(iter(eq.flush_event_queue().values()))
        self.assertEqual(payload.records[0].events[0].feature_vars, {})

    def test_chunking(self):
        eq = self._queue(event_request_chunk_size=2)
        for _ in range(5):
            eq.queue_event(User("u1"), Event("purchase"))
        eq.process_queued_events()
        payloads = eq.flush_event_queue()
        self.assertEqual(sorted(p.event_count for p in payloads.values()), [1, 2, 2])
        for p in payloads.values():
            self.assertEqual([r.user.user_id for r in p.records], ["u1"])

    def test_small_records_share_payload(self):
        eq = self._queue(event_request_chunk_size=3)
        for user_id in ("u1", "u2", "u3", "u4"):
            eq.queue_event(User(user_id), Event("purchase"))
        eq.process_queued_events()
        payloads = eq.flush_event_queue()
        self.assertEqual(sorted(p.event_count for p in payloads.values()), [1, 3])
        self.assertEqual(sum(len(p.records) for p in payloads.values()), 4)

    def test_flush_results(self):
        eq = self._queue(event_request_chunk_size=1)
        for user_id in ("u1", "u2", "u3"):
            eq.queue_event(User(user_id), Event("purchase"))
        eq.process_queued_events()
        payloads = eq.flush_event_queue()
        self.assertEqual(len(payloads), 3)
        ok, fail, retry = list(payloads)

        # Payloads being sent are not handed out again.
        self.assertEqual(eq.flush_event_queue(), {})

        eq.handle_flush_results([ok], [fail], [retry])
        self.assertEqual(eq.pending_payload_count(), 1)
        again = eq.flush_event_queue()
        self.assertEqual(list(again), [retry])
        self.assertEqual(again[retry].status, "sending")

        with self.assertLogs("src.flagbucket.events", "ERROR"):
            eq.handle_flush_results([retry, "unknown"], [], [])
        self.assertEqual(eq.pending_payload_count(), 0)
        self.assertEqual(eq.metrics(), (4, 4, 0))

    def test_retry_payload_merges_with_new_events(self):
        eq = self._queue()
        eq.queue_event(User("u1"), Event("purchase"))
        eq.process_queued_events()
        (first,) = eq.flush_event_queue()
        eq.handle_flush_results([], [], [first])
        eq.queue_event(User("u2"), Event("purchase"))
        eq.process_queued_events()
        payloads = eq.flush_event_queue()
        self.assertIn(first, payloads)
        self.assertEqual(len(payloads), 2)

    def test_worker(self):
        eq = self._queue()
        eq.start()
        eq.start()
        try:
            eq.queue_event(User("u1"), Event("purchase"))
            eq.queue_variable_evaluated_event("test", "f1", "va")
        finally:
            eq.close()
        self.assertEqual(eq.user_queue_length(), 1)
        self.assertEqual(eq.aggregate_counts(), {"aggVariableEvaluated": {"test": {"f1": {"va": 1}}}})

    def test_bad_event_does_not_lose_the_rest(self):
        eq = self._queue()
        bad = User("bad")
        # Bypass constructor validation to get an email filters can't handle.
        bad.email = 123  # type: ignore
        eq.queue_event(bad, Event("purchase"))
        eq.queue_event(User("good"), Event("purchase"))
        with self.assertLogs("src.flagbucket.events", "ERROR"):
            self.assertEqual(eq.process_queued_events(), 1)
        self.assertEqual(eq.user_queue_length(), 1)
        self.assertEqual(eq.metrics()[2], 1)
        payload = next(iter(eq.flush_event_queue().values()))
        self.assertEqual([r.user.user_id for r in payload.records], ["good"])

    def test_worker_survives_bad_event(self):
        eq = self._queue()
        eq.start()
        self.addCleanup(eq.close)
        bad = User("bad")
        bad.email = 123  # type: ignore

        def _wait_for(cond):
            deadline = time.monotonic() + 5
            while not cond():
                if time.monotonic() > deadline:
                    self.fail("timed out waiting for the event worker")
                time.sleep(0.01)

        with self.assertLogs("src.flagbucket.events", "ERROR"):
            eq.queue_event(bad, Event("purchase"))
            _wait_for(lambda: eq.metrics()[2] == 1)
        self.assertTrue(eq._worker.is_alive())

        eq.queue_event(User("good"), Event("purchase"))
        _wait_for(lambda: eq.user_queue_length() == 1)
        eq.close()
        payload = next(iter(eq.flush_event_queue().values()))
        self.assertEqual([r.user.user_id for r in payload.records], ["good"])

    def test_client_custom_data_is_reported_with_user(self):
        self.registry.set_client_custom_data("sdk-key", {"plan": "pro", "region": "apac", "tier": "gold"})
        eq = self._queue()
        user = User("u1", custom_data={"plan": "free"}, private_custom_data={"region": "emea"})
        eq.queue_event(user, Event("purchase"))
        eq.process_queued_events()
        payload = next(iter(eq.flush_event_queue().values()))
        reported = payload.to_dict()["batch"][0]["user"]
        # User values win and private keys are never filled from client data.
        self.assertEqual(reported["customData"], {"plan": "free", "tier": "gold"})
        self.assertEqual(user.custom_data, {"plan": "free"})
