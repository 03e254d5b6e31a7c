from __future__ import annotations
import logging
import threading
import time
import uuid
from abc import abstractmethod
from typing import Any

from prometheus_client import Histogram

from .bucketing import (
    BucketedFeature,
    BucketedVariable,
    BucketingError,
    ConfigMissingError,
    EvalReason,
    InvalidVariableTypeError,
    generate_bucketed_config,
    resolve_variable,
)
from .config import Configuration, VariableType
from .events import Event, EventQueue, EventQueueOptions, FlushPayload, QueueFullError
from .registry import ConfigRegistry
from .user import CustomData, PlatformData, User


logger = logging.getLogger(__name__)


def variable_type_of(value: Any) -> VariableType:
    """
    Map a default value to the variable type it stands for.
    """
    # bool is a subclass of int so it's checked first.
    if isinstance(value, bool):
        return "Boolean"
    if isinstance(value, str):
        return "String"
    if isinstance(value, (int, float)):
        return "Number"
    if isinstance(value, (dict, list)):
        return "JSON"
    raise TypeError(f"default value must be a string, number, bool, dict or list, not {type(value).__name__}")


class Variable:
    """
    The value of a variable for a user. When the user could not be bucketed
    into a value, is_defaulted is set and default_reason tells why.
    """

    __slots__ = ("key", "type", "value", "default_value", "is_defaulted", "eval_reason", "eval_details", "default_reason")
    key: str
    type: VariableType
    value: Any
    default_value: Any
    is_defaulted: bool
    eval_reason: EvalReason
    eval_details: str
    default_reason: str

    def __init__(self, key: str, type: VariableType, default_value: Any):
        self.key = key
        self.type = type
        self.value = default_value
        self.default_value = default_value
        self.is_defaulted = True
        self.eval_reason = "DEFAULT"
        self.eval_details = ""
        self.default_reason = ""

    def __repr__(self):
        return f"Variable(key={self.key!r}, value={self.value!r}, is_defaulted={self.is_defaulted!r}, eval_reason={self.eval_reason!r})"


class FlushResult:
    """
    Outcome of uploading a batch of payloads, by payload id.
    """

    __slots__ = ("success", "failure", "failure_with_retry")
    success: list[str]
    failure: list[str]
    failure_with_retry: list[str]

    def __init__(self, success: list[str] | None = None, failure: list[str] | None = None, failure_with_retry: list[str] | None = None):
        self.success = list(success or [])
        self.failure = list(failure or [])
        self.failure_with_retry = list(failure_with_retry or [])


class EventUploader:
    """
    The uploader is responsible for sending flushed event payloads to the
    events API and reporting back which payloads made it. Payloads reported
    under failure_with_retry are sent again on the next flush.
    """

    @abstractmethod
    def upload(self, payloads: list[FlushPayload]) -> FlushResult: ...


_prom_labels = ["variable", "reason", "defaulted"]
_prom_eval_duration = Histogram(
    "flagbucket_evaluation_seconds",
    "Variable evaluation duration in seconds",
    buckets=[1e-5, 1e-4, 1e-3, 1e-2, 1e-1, 1],
    labelnames=_prom_labels,
)


class Evaluator:
    """
    The evaluator buckets users into variables of the config of a single SDK
    key and records the outcomes as events. If an uploader is given, events
    are flushed to it every flush_events_interval seconds. The evaluator is
    thread-safe.
    """

    def __init__(
        self,
        sdk_key: str,
        registry: ConfigRegistry | None = None,
        event_queue_options: EventQueueOptions | None = None,
        uploader: EventUploader | None = None,
        platform_data: PlatformData | None = None,
    ):
        if not isinstance(sdk_key, str):
            raise TypeError(f"sdk_key must be a string, not {type(sdk_key).__name__}")
        self._sdk_key = sdk_key
        self._registry = registry if registry is not None else ConfigRegistry()
        self._platform_data = platform_data or PlatformData.default()
        self._client_uuid = str(uuid.uuid4())
        self._event_queue = EventQueue(sdk_key, self._registry, event_queue_options, self._platform_data)
        self._event_queue.start()
        self._flush_mu = threading.Lock()
        self._uploader = uploader
        self._stop_wait = threading.Event()
        self._flusher: threading.Thread | None = None
        if uploader:
            self._start_flusher()

    def _start_flusher(self):
        def _worker():
            while not self._stop_wait.is_set():
                self._stop_wait.wait(self._event_queue.options.flush_events_interval)
                try:
                    self.flush_events()
                except Exception:
                    logger.exception("Error flushing events")

        self._flusher = threading.Thread(target=_worker, name="flagbucket-flush", daemon=True)
        self._flusher.start()

    @property
    def event_queue(self) -> EventQueue:
        return self._event_queue

    @property
    def client_uuid(self) -> str:
        return self._client_uuid

    def set_config(self, raw: bytes | str, etag: str = "", ray_id: str = "", last_modified: str = "") -> Configuration:
        """
        Compile and load the raw config document. set_config is thread-safe.
        """
        return self._registry.set(raw, self._sdk_key, etag=etag, ray_id=ray_id, last_modified=last_modified)

    def set_client_custom_data(self, data: CustomData):
        """
        Set custom data shared by all users. Custom data set on a user
        overrides these values. set_client_custom_data is thread-safe.
        """
        self._registry.set_client_custom_data(self._sdk_key, data)

    @staticmethod
    def _validate_user(user: User):
        if not isinstance(user, User):
            raise TypeError(f"user must be a User, not {type(user).__name__}")

    def _record_eval_metrics(self, v: Variable, dur: float):
        labels = {
            "variable": v.key,
            "reason": v.default_reason or v.eval_reason,
            "defaulted": str(v.is_defaulted),
        }
        _prom_eval_duration.labels(**labels).observe(dur)

    def variable(self, user: User, key: str, default: Any, type_: VariableType | None = None) -> Variable:
        """
        Evaluate the variable for the user. Any reason for not bucketing the
        user into a value results in a defaulted variable, never an exception.

        user: The user to evaluate the variable for.
        key: The key of the variable.
        default: The value to use when the variable can't be evaluated.
        type_: Expected variable type, inferred from default when not given.
        """
        self._validate_user(user)
        if not isinstance(key, str) or not key:
            raise ValueError("variable key must be a non empty string")
        if default is None:
            raise ValueError("default value is required")
        expected_type = type_ or variable_type_of(default)

        start = time.perf_counter()
        v = Variable(key, expected_type, default)
        try:
            config = self._registry.get(self._sdk_key)
            populated = user.populate(self._platform_data)
            rv = resolve_variable(config, populated, key, self._registry.get_client_custom_data(self._sdk_key))
            if rv.type != expected_type:
                raise InvalidVariableTypeError(f"variable {key} is of type {rv.type}, expected {expected_type}")
        except BucketingError as e:
            if isinstance(e, ConfigMissingError):
                logger.warning("Variable called before config was loaded, returning default value")
            v.default_reason = e.default_reason
            v.eval_reason = e.eval_reason
            self._queue_aggregate(self._event_queue.queue_variable_defaulted_event, key, e.default_reason)
        else:
            v.value = rv.value
            v.is_defaulted = False
            v.eval_reason = rv.eval_reason
            v.eval_details = rv.eval_details
            self._queue_aggregate(self._event_queue.queue_variable_evaluated_event, key, rv.feature_id, rv.variation_id)
        self._record_eval_metrics(v, time.perf_counter() - start)
        return v

    def variable_value(self, user: User, key: str, default: Any) -> Any:
        return self.variable(user, key, default).value

    @staticmethod
    def _queue_aggregate(fn, *args):
        try:
            fn(*args)
        except QueueFullError:
            logger.warning("Event queue full, dropping aggregate event for variable %s", args[0])

    def _bucketed_config(self, user: User):
        self._validate_user(user)
        try:
            config = self._registry.get(self._sdk_key)
        except ConfigMissingError:
            logger.warning("Bucketed config requested before config was loaded")
            return None
        return generate_bucketed_config(config, user.populate(self._platform_data), self._registry.get_client_custom_data(self._sdk_key))

    def all_variables(self, user: User) -> dict[str, BucketedVariable]:
        bc = self._bucketed_config(user)
        return bc.variables if bc else {}

    def all_features(self, user: User) -> dict[str, BucketedFeature]:
        bc = self._bucketed_config(user)
        return bc.features if bc else {}

    def track(self, user: User, event: Event):
        """
        Queue a custom event for the user. Raises QueueFullError when the
        event queue is full.
        """
        self._validate_user(user)
        if not isinstance(event, Event):
            raise TypeError(f"event must be an Event, not {type(event).__name__}")
        self._event_queue.queue_event(user, event)

    def flush_events(self) -> FlushResult | None:
        """
        Flush queued events and hand them to the uploader. Returns None when
        there was nothing to send.
        """
        if self._uploader is None:
            raise RuntimeError("no event uploader configured")
        with self._flush_mu:
            self._event_queue.process_queued_events()
            etag = ray_id = ""
            if self._registry.has_config(self._sdk_key):
                etag = self._registry.get_etag(self._sdk_key)
                ray_id = self._registry.get_ray_id(self._sdk_key)
            payloads = self._event_queue.flush_event_queue(self._client_uuid, etag, ray_id)
            if not payloads:
                return None
            try:
                result = self._uploader.upload(list(payloads.values()))
            except Exception:
                self._event_queue.handle_flush_results([], [], list(payloads))
                raise
            reported = {*result.success, *result.failure, *result.failure_with_retry}
            unreported = [payload_id for payload_id in payloads if payload_id not in reported]
            if unreported:
                logger.warning("Uploader reported no result for %d payloads, retrying them", len(unreported))
            self._event_queue.handle_flush_results(result.success, result.failure, [*result.failure_with_retry, *unreported])
            return result

    def close(self):
        """
        Stop the background threads. Events queued so far are processed and,
        when an uploader is configured, flushed one last time.
        """
        self._event_queue.close()
        self._stop_wait.set()
        if self._flusher is not None:
            self._flusher.join(5)
            self._flusher = None
