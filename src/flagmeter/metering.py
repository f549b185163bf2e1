from __future__ import annotations
import time
import logging
import threading
from abc import abstractmethod
from collections import defaultdict
from collections.abc import Callable
from typing import Any, Literal, TypeAlias

import httpx
from prometheus_client import Counter

from . import __version__


logger = logging.getLogger(__name__)

Endpoint: TypeAlias = Literal["usage", "analytics"]
Body: TypeAlias = dict[str, Any]
Schedule: TypeAlias = Callable[[float, Callable[[], None]], Any]

# Sentinel id for "no entity"/"no segment". Sent to the collector as null.
_NULL_ID = "$$null$$"

_prom_sends = Counter(
    "flagmeter_metering_sends_total",
    "Metering batches handed to the transport by outcome",
    labelnames=["pipeline", "outcome"],
)


class TransportError(Exception):
    """
    A failed delivery. status_code is None when no HTTP response was received.
    """

    def __init__(self, status_code: int | None, message: str = ""):
        super().__init__(f"HTTP {status_code}: {message}" if status_code is not None else message)
        self.status_code = status_code
        self.message = message

    @property
    def retryable(self) -> bool:
        s = self.status_code
        return s is not None and (s == 429 or 500 <= s <= 599)


class Transport:
    """
    The transport is responsible for delivering metering bodies to the
    collector. It raises TransportError on failure.
    """

    @abstractmethod
    def post(self, endpoint: Endpoint, body: Body, keepalive: bool = False) -> None: ...

    def close(self):
        pass


class HttpTransport(Transport):
    """
    Posts metering bodies to the configuration service over one pooled httpx
    client. Call close() to release its connections.
    """

    def __init__(self, base_url: str, guid: str, apikey: str, timeout: float = 10.0, retries: int = 3):
        self._urls = {
            "usage": f"{base_url.rstrip('/')}/apprapp/events/v1/instances/{guid}/usage",
            "analytics": f"{base_url.rstrip('/')}/apprapp/metrics/v1/instances/{guid}/analytics",
        }
        self._retries = max(1, retries)
        self._client = httpx.Client(
            headers={
                "Authorization": apikey,
                "Content-Type": "application/json",
                "User-Agent": f"flagmeter/{__version__}",
            },
            timeout=timeout,
        )

    def post(self, endpoint: Endpoint, body: Body, keepalive: bool = False) -> None:
        headers = {"Connection": "close"} if keepalive else None
        url = self._urls[endpoint]
        try:
            for attempt in range(self._retries):
                resp = self._client.post(url, json=body, headers=headers)
                if resp.is_success:
                    return
                err = TransportError(resp.status_code, resp.text)
                if not err.retryable:
                    break
                logger.debug("Attempt %d posting to %s failed with %d", attempt + 1, url, resp.status_code)
        except httpx.HTTPError as e:
            raise TransportError(None, f"{type(e).__name__}: {e}") from e
        raise err

    def close(self):
        self._client.close()


def _utc_timestamp(t: float) -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(t))


class _Pipeline:
    """
    Common parts of the metering pipelines: the periodic flush worker that is
    started on the first record, and delivery with retry of retryable
    failures after one interval.
    """

    name: str
    endpoint: Endpoint

    def __init__(self, transport: Transport, interval: float, schedule: Schedule, clock: Callable[[], float]):
        self._transport = transport
        self.interval = interval
        self._schedule = schedule
        self._clock = clock
        self._mu = threading.Lock()
        self._stop_wait = threading.Event()
        self._started = False

    def _ensure_started(self):
        # Caller holds self._mu.
        if self._started:
            return
        self._started = True

        def _worker():
            while not self._stop_wait.is_set():
                self._stop_wait.wait(self.interval)
                if self._stop_wait.is_set():
                    break
                try:
                    self.flush(False)
                except Exception:
                    logger.exception("Error flushing %s metering", self.name)

        threading.Thread(target=_worker, daemon=True).start()

    def stop(self):
        self._stop_wait.set()

    def _send(self, body: Body, keepalive: bool):
        try:
            self._transport.post(self.endpoint, body, keepalive)
        except TransportError as e:
            if e.retryable:
                logger.warning("Sending %s metering failed with %s, retrying in %ss", self.name, e.status_code, self.interval)
                _prom_sends.labels(pipeline=self.name, outcome="retry").inc()
                self._schedule(self.interval, lambda: self._send(body, keepalive))
                return
            logger.error("Sending %s metering failed, dropping batch: %s", self.name, e)
            _prom_sends.labels(pipeline=self.name, outcome="dropped").inc()
            return
        except Exception:
            logger.exception("Unexpected error sending %s metering, dropping batch", self.name)
            _prom_sends.labels(pipeline=self.name, outcome="dropped").inc()
            return
        _prom_sends.labels(pipeline=self.name, outcome="sent").inc()

    @abstractmethod
    def flush(self, keepalive: bool = False) -> None: ...


_Aggregate: TypeAlias = dict[str, dict[str, dict[str, dict[str, Any]]]]


def _new_aggregate() -> _Aggregate:
    return defaultdict(lambda: defaultdict(dict))


class UsageMetering(_Pipeline):
    """
    Aggregates feature and property evaluation counts per
    (id, entity, segment) and sends them in batches of at most usage_limit.
    """

    name = "usage"
    endpoint = "usage"

    def __init__(
        self,
        transport: Transport,
        collection_id: str,
        environment_id: str,
        interval: float = 60 * 5,
        usage_limit: int = 25,
        schedule: Schedule | None = None,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(transport, interval, schedule or _default_schedule, clock)
        self.collection_id = collection_id
        self.environment_id = environment_id
        self.usage_limit = usage_limit
        self._features: _Aggregate = _new_aggregate()
        self._properties: _Aggregate = _new_aggregate()

    def add(self, entity_id: str, segment_id: str, feature_id: str | None = None, property_id: str | None = None):
        evaluation_time = _utc_timestamp(self._clock())
        with self._mu:
            self._ensure_started()
            if feature_id is not None:
                segments = self._features[feature_id][entity_id]
            else:
                assert property_id is not None
                segments = self._properties[property_id][entity_id]
            usage = segments.get(segment_id)
            if usage is None:
                segments[segment_id] = {"count": 1, "evaluation_time": evaluation_time}
            else:
                usage["count"] += 1
                usage["evaluation_time"] = evaluation_time

    def _body(self, aggregate: _Aggregate, key: Literal["feature_id", "property_id"]) -> Body:
        usages = []
        for item_id, entities in aggregate.items():
            for entity_id, segments in entities.items():
                for segment_id, usage in segments.items():
                    usages.append(
                        {
                            key: item_id,
                            "entity_id": None if entity_id == _NULL_ID else entity_id,
                            "segment_id": None if segment_id == _NULL_ID else segment_id,
                            "evaluation_time": usage["evaluation_time"],
                            "count": usage["count"],
                        }
                    )
        return {
            "collection_id": self.collection_id,
            "environment_id": self.environment_id,
            "usages": usages,
        }

    def _split(self, body: Body) -> list[Body]:
        usages = body["usages"]
        if len(usages) <= self.usage_limit:
            return [body]
        return [
            {
                "collection_id": body["collection_id"],
                "environment_id": body["environment_id"],
                "usages": usages[i : i + self.usage_limit],
            }
            for i in range(0, len(usages), self.usage_limit)
        ]

    def flush(self, keepalive: bool = False):
        with self._mu:
            features, self._features = self._features, _new_aggregate()
            properties, self._properties = self._properties, _new_aggregate()
        if not features and not properties:
            return
        bodies = []
        if features:
            bodies.append(self._body(features, "feature_id"))
        if properties:
            bodies.append(self._body(properties, "property_id"))
        for body in bodies:
            for b in self._split(body):
                self._send(b, keepalive)


class _EventMetering(_Pipeline):
    """
    A flat list of experiment events, each sent as its own record.
    """

    event_type: str

    def __init__(
        self,
        transport: Transport,
        environment_id: str,
        interval: float = 60,
        schedule: Schedule | None = None,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(transport, interval, schedule or _default_schedule, clock)
        self.environment_id = environment_id
        self._usages: list[Body] = []

    def add(self, usage: Body):
        usage = {**usage, "timestamp": _utc_timestamp(self._clock())}
        with self._mu:
            self._ensure_started()
            self._usages.append(usage)

    def flush(self, keepalive: bool = False):
        with self._mu:
            usages, self._usages = self._usages, []
        if not usages:
            return
        self._send(
            {
                "type": self.event_type,
                "environment_id": self.environment_id,
                "usages": usages,
            },
            keepalive,
        )


class ExperimentEvaluationMetering(_EventMetering):
    """
    Records which variation each entity was assigned to.
    """

    name = "experiment_evaluation"
    endpoint = "analytics"
    event_type = "evaluation_event"


class ExperimentMetricMetering(_EventMetering):
    """
    Records business events attributed to a running experiment.
    """

    name = "experiment_metric"
    endpoint = "analytics"
    event_type = "metric_event"


def _default_schedule(delay: float, fn: Callable[[], None]):
    t = threading.Timer(delay, fn)
    t.daemon = True
    t.start()
    return t
