"""
Event aggregation queue.

Evaluation outcomes and custom events are put on bounded queues without
blocking the caller. A single worker thread drains the queues into the
aggregation structures, which are periodically flushed into payloads for an
uploader to send.

Structure of the aggregation counts:

    counts[event_type][variable_key][feature_id][variation_id] = n

Defaulted variables have no feature or variation so they're counted as:

    counts["aggVariableDefaulted"][variable_key]["defaulted"][default_reason] = n
"""

from __future__ import annotations
import datetime
import logging
import queue
import threading
import uuid
from typing import Any, Literal, TypeAlias

from prometheus_client import Counter

from .bucketing import BucketingError, ConfigMissingError, generate_bucketed_config
from .registry import ConfigRegistry
from .user import PlatformData, PopulatedUser, User


logger = logging.getLogger(__name__)

EVENT_TYPE_VARIABLE_EVALUATED = "variableEvaluated"
EVENT_TYPE_AGG_VARIABLE_EVALUATED = "aggVariableEvaluated"
EVENT_TYPE_VARIABLE_DEFAULTED = "variableDefaulted"
EVENT_TYPE_AGG_VARIABLE_DEFAULTED = "aggVariableDefaulted"
EVENT_TYPE_CUSTOM_EVENT = "customEvent"

_automatic_event_types = frozenset(
    {
        EVENT_TYPE_VARIABLE_EVALUATED,
        EVENT_TYPE_AGG_VARIABLE_EVALUATED,
        EVENT_TYPE_VARIABLE_DEFAULTED,
        EVENT_TYPE_AGG_VARIABLE_DEFAULTED,
    }
)

PayloadStatus: TypeAlias = Literal["pending", "sending", "failed"]
AggregateCounts: TypeAlias = dict[str, dict[str, dict[str, dict[str, int]]]]

_prom_labels = ["sdk_key"]
_prom_events_flushed = Counter(
    "flagbucket_events_flushed",
    "Number of event payloads handed out for upload",
    labelnames=_prom_labels,
)
_prom_events_reported = Counter(
    "flagbucket_events_reported",
    "Number of event payloads whose upload result was reported",
    labelnames=_prom_labels,
)
_prom_events_dropped = Counter(
    "flagbucket_events_dropped",
    "Number of events dropped because the event queue was full",
    labelnames=_prom_labels,
)


class QueueFullError(Exception):
    def __init__(self, msg: str = "Max queue size reached"):
        super().__init__(msg)


class Event:
    __slots__ = ("type", "target", "custom_type", "user_id", "client_date", "value", "feature_vars", "metadata")
    type: str
    target: str
    custom_type: str
    user_id: str
    client_date: datetime.datetime
    value: float | None
    feature_vars: dict[str, str]
    metadata: dict[str, Any]

    def __init__(
        self,
        type: str,
        target: str = "",
        custom_type: str = "",
        user_id: str = "",
        client_date: datetime.datetime | None = None,
        value: float | None = None,
        feature_vars: dict[str, str] | None = None,
        metadata: dict[str, Any] | None = None,
    ):
        if not type:
            raise ValueError("event type is required")
        self.type = type
        self.target = target
        self.custom_type = custom_type
        self.user_id = user_id
        self.client_date = client_date or datetime.datetime.now(datetime.timezone.utc)
        self.value = value
        self.feature_vars = dict(feature_vars or {})
        self.metadata = dict(metadata or {})

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "type": self.type,
            "user_id": self.user_id,
            "clientDate": self.client_date.isoformat(),
            "featureVars": dict(self.feature_vars),
        }
        if self.target:
            d["target"] = self.target
        if self.custom_type:
            d["customType"] = self.custom_type
        if self.value:
            d["value"] = self.value
        if self.metadata:
            d["metaData"] = dict(self.metadata)
        return d


class UserEventsBatchRecord:
    __slots__ = ("user", "events")
    user: PopulatedUser
    events: list[Event]

    def __init__(self, user: PopulatedUser, events: list[Event] | None = None):
        self.user = user
        self.events = list(events or [])

    def to_dict(self) -> dict[str, Any]:
        return {"user": self.user.to_dict(), "events": [e.to_dict() for e in self.events]}


class FlushPayload:
    __slots__ = ("payload_id", "event_count", "records", "status")
    payload_id: str
    event_count: int
    records: list[UserEventsBatchRecord]
    status: PayloadStatus

    def __init__(self, payload_id: str | None = None):
        self.payload_id = payload_id or str(uuid.uuid4())
        self.event_count = 0
        self.records = []
        self.status = "pending"

    def add_record(self, record: UserEventsBatchRecord):
        self.records.append(record)
        self.event_count += len(record.events)

    def to_dict(self) -> dict[str, Any]:
        return {"batch": [r.to_dict() for r in self.records]}


class EventQueueOptions:
    __slots__ = (
        "flush_events_interval",
        "disable_automatic_event_logging",
        "disable_custom_event_logging",
        "max_event_queue_size",
        "event_request_chunk_size",
    )
    flush_events_interval: float
    disable_automatic_event_logging: bool
    disable_custom_event_logging: bool
    max_event_queue_size: int
    event_request_chunk_size: int

    def __init__(
        self,
        flush_events_interval: float = 10.0,
        disable_automatic_event_logging: bool = False,
        disable_custom_event_logging: bool = False,
        max_event_queue_size: int = 1000,
        event_request_chunk_size: int = 100,
    ):
        self.flush_events_interval = flush_events_interval
        self.disable_automatic_event_logging = disable_automatic_event_logging
        self.disable_custom_event_logging = disable_custom_event_logging
        self.max_event_queue_size = max_event_queue_size
        self.event_request_chunk_size = event_request_chunk_size

    def check_bounds(self):
        self.max_event_queue_size = min(max(self.max_event_queue_size, 100), 1000)
        if self.event_request_chunk_size < 1:
            self.event_request_chunk_size = 100

    def is_event_logging_disabled(self, event_type: str) -> bool:
        if event_type in _automatic_event_types:
            return self.disable_automatic_event_logging
        return self.disable_custom_event_logging


class _AggEventData:
    __slots__ = ("type", "variable_key", "feature_id", "variation_id", "default_reason")

    def __init__(self, type: str, variable_key: str, feature_id: str = "", variation_id: str = "", default_reason: str = ""):
        self.type = type
        self.variable_key = variable_key
        self.feature_id = feature_id
        self.variation_id = variation_id
        self.default_reason = default_reason


class EventQueue:
    """
    Collects events for a single SDK key. Queueing is thread-safe and never
    blocks, events that don't fit are dropped with QueueFullError.
    """

    def __init__(
        self,
        sdk_key: str,
        registry: ConfigRegistry,
        options: EventQueueOptions | None = None,
        platform_data: PlatformData | None = None,
    ):
        if not sdk_key:
            raise ValueError("sdk key is required")
        self._sdk_key = sdk_key
        self._registry = registry
        self._options = options or EventQueueOptions()
        self._options.check_bounds()
        self._platform_data = platform_data or PlatformData.default()

        self._user_events_raw: queue.Queue[tuple[User, Event]] = queue.Queue(self._options.max_event_queue_size)
        self._agg_events_raw: queue.Queue[_AggEventData] = queue.Queue(self._options.max_event_queue_size)

        # Guards everything below. Never held while reading the registry.
        self._state_lock = threading.Lock()
        self._user_event_queue: dict[str, UserEventsBatchRecord] = {}
        self._user_event_count = 0
        self._agg_event_queue: AggregateCounts = {}
        self._pending_payloads: dict[str, FlushPayload] = {}
        self._events_flushed = 0
        self._events_reported = 0
        self._events_dropped = 0

        # Serializes draining between the worker and synchronous callers.
        self._process_mu = threading.Lock()
        self._wakeup = threading.Event()
        self._stop = threading.Event()
        self._worker: threading.Thread | None = None

    @property
    def options(self) -> EventQueueOptions:
        return self._options

    def start(self):
        """
        Start the worker that drains queued events into the aggregation
        structures.
        """
        if self._worker is not None and self._worker.is_alive():
            return
        self._stop.clear()

        def _worker():
            while not self._stop.is_set():
                self._wakeup.wait(1)
                self._wakeup.clear()
                try:
                    self.process_queued_events()
                except Exception:
                    logger.exception("Error processing queued events")
            # Drain whatever was queued before close.
            try:
                self.process_queued_events()
            except Exception:
                logger.exception("Error processing queued events")

        self._worker = threading.Thread(target=_worker, name=f"flagbucket-events-{self._sdk_key[:8]}", daemon=True)
        self._worker.start()

    def close(self, timeout: float | None = 5):
        self._stop.set()
        self._wakeup.set()
        if self._worker is not None:
            self._worker.join(timeout)
            self._worker = None

    # Ingestion

    def _dropped(self):
        with self._state_lock:
            self._events_dropped += 1
        _prom_events_dropped.labels(sdk_key=self._sdk_key).inc()

    def queue_event(self, user: User, event: Event):
        """
        Queue an event for the given user. Events outside the automatic
        variable event types are reported as custom events.
        """
        if self._options.is_event_logging_disabled(event.type):
            return
        try:
            self._user_events_raw.put_nowait((user, event))
        except queue.Full:
            self._dropped()
            raise QueueFullError() from None
        self._wakeup.set()

    def _queue_aggregate_event(self, agg: _AggEventData):
        if self._options.disable_automatic_event_logging:
            return
        if not agg.variable_key:
            raise ValueError("A variable key is required for aggregate events")
        try:
            self._agg_events_raw.put_nowait(agg)
        except queue.Full:
            self._dropped()
            raise QueueFullError() from None
        self._wakeup.set()

    def queue_variable_evaluated_event(self, variable_key: str, feature_id: str, variation_id: str):
        self._queue_aggregate_event(_AggEventData(EVENT_TYPE_AGG_VARIABLE_EVALUATED, variable_key, feature_id=feature_id, variation_id=variation_id))

    def queue_variable_defaulted_event(self, variable_key: str, default_reason: str):
        self._queue_aggregate_event(_AggEventData(EVENT_TYPE_AGG_VARIABLE_DEFAULTED, variable_key, default_reason=default_reason))

    # Processing

    def process_queued_events(self) -> int:
        """
        Drain both raw queues into the aggregation structures. Returns the
        number of events processed.
        """
        n = 0
        with self._process_mu:
            while True:
                try:
                    agg = self._agg_events_raw.get_nowait()
                except queue.Empty:
                    break
                self._process_aggregate_event(agg)
                n += 1
            while True:
                try:
                    user, event = self._user_events_raw.get_nowait()
                except queue.Empty:
                    break
                # A single bad event is dropped without losing the rest.
                try:
                    self._process_user_event(user, event)
                except Exception:
                    logger.exception("Error processing event %r for user %s, dropping it", event.type, user.user_id)
                    self._dropped()
                    continue
                n += 1
        return n

    def _process_user_event(self, user: User, event: Event):
        populated = user.populate(self._platform_data)
        client_custom_data = self._registry.get_client_custom_data(self._sdk_key)
        populated.merge_client_custom_data(client_custom_data)
        try:
            config = self._registry.get(self._sdk_key)
            feature_vars = dict(generate_bucketed_config(config, populated, client_custom_data).feature_variation_map)
        except ConfigMissingError:
            logger.warning("No config loaded for %s, queueing event %r without feature variables", self._sdk_key, event.type)
            feature_vars = {}
        except BucketingError as e:
            logger.warning("Failed to bucket user %s for event %r: %s", user.user_id, event.type, e)
            feature_vars = {}

        event.feature_vars = feature_vars
        if event.type not in _automatic_event_types:
            event.custom_type = event.type
            event.type = EVENT_TYPE_CUSTOM_EVENT
            event.user_id = user.user_id

        with self._state_lock:
            record = self._user_event_queue.get(user.user_id)
            if record is None:
                self._user_event_queue[user.user_id] = UserEventsBatchRecord(populated, [event])
            else:
                record.user = populated
                record.events.append(event)
            self._user_event_count += 1

    def _process_aggregate_event(self, agg: _AggEventData):
        with self._state_lock:
            by_feature = self._agg_event_queue.setdefault(agg.type, {}).setdefault(agg.variable_key, {})
            if agg.type == EVENT_TYPE_AGG_VARIABLE_EVALUATED:
                counts = by_feature.setdefault(agg.feature_id, {})
                counts[agg.variation_id] = counts.get(agg.variation_id, 0) + 1
            else:
                counts = by_feature.setdefault("defaulted", {})
                counts[agg.default_reason] = counts.get(agg.default_reason, 0) + 1

    def user_queue_length(self) -> int:
        with self._state_lock:
            return self._user_event_count

    def aggregate_counts(self) -> AggregateCounts:
        """
        A copy of the current aggregation counts.
        """
        with self._state_lock:
            return {t: {k: {f: dict(c) for f, c in fm.items()} for k, fm in vm.items()} for t, vm in self._agg_event_queue.items()}

    # Flushing

    def _build_aggregate_record(self, agg: AggregateCounts, client_uuid: str, config_etag: str, ray_id: str) -> UserEventsBatchRecord:
        user_id = self._platform_data.hostname or "aggregate"
        now = datetime.datetime.now(datetime.timezone.utc)
        events = []
        for event_type, by_variable in agg.items():
            for variable_key, by_feature in by_variable.items():
                for feature, by_variation in by_feature.items():
                    for variation, count in by_variation.items():
                        if count == 0:
                            continue
                        if event_type == EVENT_TYPE_AGG_VARIABLE_DEFAULTED:
                            metadata: dict[str, Any] = {"defaultReason": variation}
                        else:
                            metadata = {"_feature": feature, "_variation": variation}
                        if client_uuid:
                            metadata["clientUUID"] = client_uuid
                        if config_etag:
                            metadata["configEtag"] = config_etag
                        if ray_id:
                            metadata["configRayId"] = ray_id
                        events.append(
                            Event(
                                event_type,
                                target=variable_key,
                                user_id=user_id,
                                client_date=now,
                                value=float(count),
                                metadata=metadata,
                            )
                        )
        return UserEventsBatchRecord(User(user_id).populate(self._platform_data, now), events)

    def _add_record(self, record: UserEventsBatchRecord):
        chunk_size = self._options.event_request_chunk_size
        n = len(record.events)
        for payload in self._pending_payloads.values():
            if payload.status == "pending" and payload.event_count + n <= chunk_size:
                payload.add_record(record)
                return
        if n <= chunk_size:
            payload = FlushPayload()
            payload.add_record(record)
            self._pending_payloads[payload.payload_id] = payload
            return
        # A user with more events than fit a single request is split.
        for i in range(0, n, chunk_size):
            payload = FlushPayload()
            payload.add_record(UserEventsBatchRecord(record.user, record.events[i : i + chunk_size]))
            self._pending_payloads[payload.payload_id] = payload

    def flush_event_queue(self, client_uuid: str = "", config_etag: str = "", ray_id: str = "") -> dict[str, FlushPayload]:
        """
        Move everything aggregated so far into payloads and return all
        payloads that need sending, including those whose previous upload
        failed with a retryable error. Returned payloads are marked as
        sending until their result is reported with handle_flush_results.
        """
        with self._state_lock:
            agg, self._agg_event_queue = self._agg_event_queue, {}
            user_records, self._user_event_queue = self._user_event_queue, {}
            self._user_event_count = 0

            records = []
            agg_record = self._build_aggregate_record(agg, client_uuid, config_etag, ray_id)
            if agg_record.events:
                records.append(agg_record)
            records.extend(r for r in user_records.values() if r.events)

            for record in records:
                self._add_record(record)

            to_send: dict[str, FlushPayload] = {}
            for payload_id, payload in self._pending_payloads.items():
                if payload.status in ("pending", "failed"):
                    payload.status = "sending"
                    to_send[payload_id] = payload
            self._events_flushed += len(to_send)

        if to_send:
            _prom_events_flushed.labels(sdk_key=self._sdk_key).inc(len(to_send))
        return to_send

    def handle_flush_results(self, success: list[str], failure: list[str], failure_with_retry: list[str]):
        """
        Report the outcome of uploading flushed payloads. Successful and
        terminally failed payloads are discarded, the rest are sent again on
        the next flush.
        """
        reported = 0
        with self._state_lock:
            for payload_id in success:
                if self._pending_payloads.pop(payload_id, None) is None:
                    logger.error("Failed to find payload %s to mark as success", payload_id)
                    continue
                reported += 1
            for payload_id in failure:
                if self._pending_payloads.pop(payload_id, None) is None:
                    logger.error("Failed to find payload %s to mark as failed", payload_id)
                    continue
                reported += 1
            for payload_id in failure_with_retry:
                payload = self._pending_payloads.get(payload_id)
                if payload is None:
                    logger.error("Failed to find payload %s to mark as failed with retry", payload_id)
                    continue
                payload.status = "failed"
                reported += 1
            self._events_reported += reported

        if reported:
            _prom_events_reported.labels(sdk_key=self._sdk_key).inc(reported)

    def pending_payload_count(self) -> int:
        with self._state_lock:
            return len(self._pending_payloads)

    def metrics(self) -> tuple[int, int, int]:
        """
        Return the number of payloads flushed, payload results reported and
        events dropped.
        """
        with self._state_lock:
            return self._events_flushed, self._events_reported, self._events_dropped
