from __future__ import annotations
import re
import math
import time
import json
import os
import logging
import threading
from collections.abc import Callable
from typing import Any, Literal, TypeAlias

import dill
import jsonschema
import mmh3
from prometheus_client import Histogram

__version__ = "0.1.0"

from .metering import (
    ExperimentEvaluationMetering,
    ExperimentMetricMetering,
    HttpTransport,
    Transport,
    TransportError,
    UsageMetering,
)


logger = logging.getLogger(__name__)

AttributeValue: TypeAlias = None | str | bool | int | float | list | set
Attributes: TypeAlias = dict[str, AttributeValue]
DictConfig: TypeAlias = dict[str, Any]

# Sentinel ids used in metering aggregates. They are sent as JSON null.
DEFAULT_ENTITY_ID = "$$null$$"
DEFAULT_SEGMENT_ID = "$$null$$"
# Segment rule sentinel for "inherit the owner's value/percentage".
DEFAULT_VALUE = "$default"
DEFAULT_ROLLOUT_PERCENTAGE = "$default"
EXPERIMENT_RUNNING = "RUNNING"

MAX_HASH_VALUE = 1 << 32
NORMALIZER = 100


class NotFoundError(KeyError):
    """
    Raised when a feature or property id is not part of the loaded snapshot.
    """


class RuleEvaluationError(ValueError):
    """
    Raised when rule data in the snapshot cannot be evaluated.
    """


def hash_bucket(key: str) -> int:
    """
    Hashes the given key to an integer bucket in the range [0, 100).

    The hash is MurmurHash3 (x86, 32 bit) with seed 0 over the UTF-8 bytes of
    the key. Stability of this function is crucial: every client of the
    configuration service, in every language, must put the same entity in the
    same bucket, otherwise rollouts and experiments disagree between clients.
    """
    h = mmh3.hash(key, 0, signed=False)
    return math.floor(h / MAX_HASH_VALUE * NORMALIZER)


_LEADING_NUMBER = re.compile(r"[+-]?(?:Infinity|(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")


def _to_number(v: Any) -> float:
    """
    Parse the leading number of v, ignoring any trailing text, so
    "12px" is 12. Raises ValueError when there is no leading number.
    """
    if isinstance(v, bool):
        raise ValueError(f"{v!r} is not a number")
    if isinstance(v, (int, float)):
        return float(v)
    if not isinstance(v, str):
        raise ValueError(f"{v!r} is not a number")
    m = _LEADING_NUMBER.match(v.lstrip())
    if m is None:
        raise ValueError(f"{v!r} is not a number")
    return float(m.group(0).replace("Infinity", "inf"))


def _to_str(v: Any) -> str:
    # Booleans compare against the lowercase literals used in the snapshot.
    if isinstance(v, bool):
        return "true" if v else "false"
    return str(v)


class Rule:
    """
    A single attribute comparison. The rule matches if the attribute is
    present and the comparison holds for any of the values.
    """

    __slots__ = ("attribute_name", "operator", "values")

    def __init__(self, attribute_name: str, operator: str, values: list[Any]):
        self.attribute_name = attribute_name
        self.operator = operator
        self.values = values

    @staticmethod
    def from_dict(d: DictConfig) -> Rule:
        return Rule(d["attribute_name"], d["operator"], list(d.get("values", [])))

    def _check(self, key: Any, value: Any) -> bool:
        if key is None or value is None or value == "":
            return False
        match self.operator:
            case "endsWith" | "startsWith":
                pattern = f"{value}$" if self.operator == "endsWith" else f"^{value}"
                try:
                    return re.search(pattern, _to_str(key), flags=re.IGNORECASE) is not None
                except re.error as e:
                    raise RuleEvaluationError(f"invalid {self.operator} pattern {value!r}: {e}") from e
            case "contains":
                if isinstance(key, (list, tuple, set, frozenset)):
                    try:
                        return value in key
                    except TypeError as e:
                        raise RuleEvaluationError(f"cannot look up {value!r} in {self.attribute_name}: {e}") from e
                return _to_str(value) in _to_str(key)
            case "is":
                if isinstance(key, (int, float)) and not isinstance(key, bool):
                    try:
                        return key == _to_number(value)
                    except ValueError:
                        return False
                return _to_str(key) == _to_str(value)
            case "greaterThan" | "lesserThan" | "greaterThanEquals" | "lesserThanEquals":
                try:
                    lhs, rhs = _to_number(key), _to_number(value)
                except ValueError:
                    # Either side without a number never compares, like NaN.
                    return False
                match self.operator:
                    case "greaterThan":
                        return lhs > rhs
                    case "lesserThan":
                        return lhs < rhs
                    case "greaterThanEquals":
                        return lhs >= rhs
                    case _:
                        return lhs <= rhs
            case _:
                return False

    def evaluate(self, attributes: Attributes) -> bool:
        if self.attribute_name not in attributes:
            return False
        key = attributes[self.attribute_name]
        return any(self._check(key, v) for v in self.values)


class Segment:
    """
    A named conjunction of rules.
    """

    __slots__ = ("segment_id", "name", "rules")

    def __init__(self, segment_id: str, name: str, rules: list[Rule]):
        self.segment_id = segment_id
        self.name = name
        self.rules = rules

    @staticmethod
    def from_dict(d: DictConfig) -> Segment:
        return Segment(d["segment_id"], d.get("name", ""), [Rule.from_dict(r) for r in d.get("rules", [])])

    def evaluate(self, attributes: Attributes) -> bool:
        return all(r.evaluate(attributes) for r in self.rules)


class SegmentRule:
    """
    An ordered targeting rule of a feature or property. `levels` holds the
    segment ids of each rule level in their listed order.
    """

    __slots__ = ("order", "value", "rollout_percentage", "levels")

    def __init__(
        self,
        order: int,
        value: Any,
        levels: list[list[str]],
        rollout_percentage: float | str = 100,
    ):
        self.order = order
        self.value = value
        self.levels = levels
        self.rollout_percentage = rollout_percentage

    @staticmethod
    def from_dict(d: DictConfig) -> SegmentRule:
        return SegmentRule(
            order=d["order"],
            value=d.get("value"),
            levels=[list(level.get("segments", [])) for level in d.get("rules", [])],
            rollout_percentage=d.get("rollout_percentage", 100),
        )


class _RuleMatch:
    """
    Outcome of searching segment rules for an entity: either a matching rule
    and segment, no match at all, or malformed rule data.
    """

    __slots__ = ("status", "rule", "segment_id", "error")
    status: Literal["matched", "no_match", "malformed"]
    rule: SegmentRule | None
    segment_id: str
    error: Exception | None

    def __init__(self, status, rule=None, segment_id=DEFAULT_SEGMENT_ID, error=None):
        self.status = status
        self.rule = rule
        self.segment_id = segment_id
        self.error = error


_NO_MATCH = _RuleMatch("no_match")


def _find_segment_rule(
    rules_by_order: dict[int, SegmentRule],
    attributes: Attributes,
    segments: dict[str, Segment],
) -> _RuleMatch:
    """
    Walk the segment rules by ascending order, their levels and the segments of
    each level in listed order, and return the first segment that matches.
    Unknown segment ids never match.
    """
    try:
        for order in range(1, len(rules_by_order) + 1):
            rule = rules_by_order.get(order)
            if rule is None:
                raise RuleEvaluationError(f"segment rule with order {order} is missing")
            for level in rule.levels:
                for segment_id in level:
                    segment = segments.get(segment_id)
                    if segment is not None and segment.evaluate(attributes):
                        return _RuleMatch("matched", rule, segment_id)
    except (RuleEvaluationError, TypeError) as e:
        return _RuleMatch("malformed", error=e)
    return _NO_MATCH


class Group:
    __slots__ = ("variation_id", "rollout_percentage")

    def __init__(self, variation_id: str, rollout_percentage: float):
        self.variation_id = variation_id
        self.rollout_percentage = rollout_percentage

    @staticmethod
    def from_dict(d: DictConfig) -> Group:
        return Group(d["variation_id"], d.get("rollout_percentage", 0))


class TrafficDistribution:
    __slots__ = ("type", "rule_id", "control_group", "experimental_group")
    type: Literal["ALL", "NO_RULE", "RULE"]
    rule_id: str | None
    control_group: Group
    experimental_group: list[Group]

    @staticmethod
    def from_dict(d: DictConfig) -> TrafficDistribution:
        td = TrafficDistribution()
        td.type = d["type"]
        td.rule_id = d.get("rule_id")
        td.control_group = Group.from_dict(d["control_group"])
        td.experimental_group = [Group.from_dict(g) for g in d.get("experimental_group", [])]
        return td


class Iteration:
    __slots__ = ("iteration_id", "iteration_key")

    def __init__(self, iteration_id: str, iteration_key: str):
        self.iteration_id = iteration_id
        self.iteration_key = iteration_key


class Variation:
    __slots__ = ("variation_id", "variation_value", "variation_name")

    def __init__(self, variation_id: str, variation_value: Any, variation_name: str = ""):
        self.variation_id = variation_id
        self.variation_value = variation_value
        self.variation_name = variation_name


class Metric:
    __slots__ = ("metric_id", "event_key", "metric_type", "primary")

    def __init__(self, metric_id: str, event_key: str, metric_type: str = "", primary: bool = False):
        self.metric_id = metric_id
        self.event_key = event_key
        self.metric_type = metric_type
        self.primary = primary


class Experiment:
    """
    An A/B experiment attached to a feature. Only a RUNNING experiment takes
    part in evaluation.
    """

    __slots__ = (
        "experiment_id",
        "experiment_status",
        "traffic_distribution",
        "iteration",
        "variations",
        "metrics",
    )
    experiment_id: str
    experiment_status: str
    traffic_distribution: TrafficDistribution
    iteration: Iteration
    variations: dict[str, Variation]
    metrics: list[Metric]

    @staticmethod
    def from_dict(d: DictConfig) -> Experiment:
        ex = Experiment()
        ex.experiment_id = d["experiment_id"]
        ex.experiment_status = d.get("experiment_status", "")
        ex.traffic_distribution = TrafficDistribution.from_dict(d["traffic_distribution_json"])
        ex.iteration = Iteration(d["iteration"]["iteration_id"], d["iteration"]["iteration_key"])
        ex.variations = {
            v["variation_id"]: Variation(v["variation_id"], v.get("variation_value"), v.get("variation_name", ""))
            for v in d.get("variations", [])
        }
        ex.metrics = [
            Metric(m["metric_id"], m["event_key"], m.get("metric_type", ""), m.get("primary", False))
            for m in d.get("metrics", [])
        ]
        return ex

    @property
    def running(self) -> bool:
        return self.experiment_status == EXPERIMENT_RUNNING


class ExperimentAssignment:
    """
    The variation an entity was assigned to by a running experiment.
    """

    __slots__ = (
        "experiment_id",
        "iteration_id",
        "feature_id",
        "variation_id",
        "entity_id",
        "audience_group",
    )
    experiment_id: str
    iteration_id: str
    feature_id: str
    variation_id: str
    entity_id: str
    audience_group: Literal["experiment", "control"]

    def to_dict(self) -> DictConfig:
        return {k: getattr(self, k) for k in self.__slots__}


class FeatureEvaluation:
    """
    The result of evaluating a feature.
    """

    __slots__ = (
        "feature_id",
        "entity_id",
        "value",
        "is_enabled",
        "segment_id",
        "reason",
        "assignment",
    )
    feature_id: str
    entity_id: str
    value: Any
    is_enabled: bool
    segment_id: str
    reason: Literal["invalid_entity", "disabled", "segment_rule", "default", "experiment"]
    assignment: ExperimentAssignment | None


class PropertyEvaluation:
    """
    The result of evaluating a property.
    """

    __slots__ = ("property_id", "entity_id", "value", "segment_id", "reason")
    property_id: str
    entity_id: str
    value: Any
    segment_id: str
    reason: Literal["invalid_entity", "segment_rule", "default"]


def _rules_by_order(rules: list[SegmentRule]) -> dict[int, SegmentRule]:
    return {r.order: r for r in rules}


def _lazy_format(item: Feature | Property) -> str | None:
    # Only string typed items carry a format and it defaults to TEXT.
    if item._format is None and item.type == "STRING":
        item._format = "TEXT"
    return item._format


class Feature:
    __slots__ = (
        "feature_id",
        "name",
        "type",
        "_format",
        "enabled_value",
        "disabled_value",
        "enabled",
        "rollout_percentage",
        "segment_rules",
        "experiment",
        "_rules_by_order",
    )
    feature_id: str
    name: str
    type: Literal["BOOLEAN", "STRING", "NUMERIC"]
    _format: str | None
    enabled_value: Any
    disabled_value: Any
    enabled: bool
    rollout_percentage: float
    segment_rules: list[SegmentRule]
    experiment: Experiment | None
    _rules_by_order: dict[int, SegmentRule]

    @staticmethod
    def from_dict(d: DictConfig) -> Feature:
        f = Feature()
        f.feature_id = d["feature_id"]
        f.name = d.get("name", "")
        f.type = d["type"]
        f._format = d.get("format")
        f.enabled_value = d.get("enabled_value")
        f.disabled_value = d.get("disabled_value")
        f.enabled = d.get("enabled", False)
        f.rollout_percentage = d.get("rollout_percentage", 100)
        f.segment_rules = [SegmentRule.from_dict(r) for r in d.get("segment_rules", [])]
        f._rules_by_order = _rules_by_order(f.segment_rules)
        f.experiment = Experiment.from_dict(d["experiment"]) if d.get("experiment") else None
        return f

    @property
    def format(self) -> str | None:
        return _lazy_format(self)

    def _in_rollout(self, entity_id: str, percentage: float) -> bool:
        return percentage == 100 or hash_bucket(f"{entity_id}:{self.feature_id}") < percentage

    def _apply_default(self, e: FeatureEvaluation, entity_id: str):
        e.reason = "default"
        e.is_enabled = self._in_rollout(entity_id, self.rollout_percentage)
        e.value = self.enabled_value if e.is_enabled else self.disabled_value

    def _apply_segment_rule(self, e: FeatureEvaluation, entity_id: str, m: _RuleMatch):
        rule = m.rule
        assert rule is not None
        e.reason = "segment_rule"
        e.segment_id = m.segment_id
        if rule.rollout_percentage == DEFAULT_ROLLOUT_PERCENTAGE:
            percentage = self.rollout_percentage
        else:
            percentage = rule.rollout_percentage
        if self._in_rollout(entity_id, percentage):
            e.is_enabled = True
            e.value = self.enabled_value if rule.value == DEFAULT_VALUE else rule.value
        else:
            e.is_enabled = False
            e.value = self.disabled_value

    def _match(self, attributes: Attributes, segments: dict[str, Segment]) -> _RuleMatch:
        if not self.segment_rules or not attributes:
            return _NO_MATCH
        m = _find_segment_rule(self._rules_by_order, attributes, segments)
        if m.status == "malformed":
            logger.error("Feature flag %s rule evaluation failed: %s", self.feature_id, m.error)
        return m

    def _assign_variation(self, e: FeatureEvaluation, entity_id: str):
        """
        Pick a variation from the experiment's traffic distribution using
        cumulative weights: experimental groups first, control group last.
        """
        ex = self.experiment
        assert ex is not None
        td = ex.traffic_distribution
        pool: list[tuple[Group, Literal["experiment", "control"]]] = [(g, "experiment") for g in td.experimental_group]
        pool.append((td.control_group, "control"))
        bucket = hash_bucket(f"{entity_id}:{self.feature_id}:{ex.iteration.iteration_key}")

        total_percentage = 0
        for group, audience in pool:
            total_percentage += group.rollout_percentage
            if bucket < total_percentage:
                break
        else:
            logger.error("Experiment %s traffic distribution did not select a variation", ex.experiment_id)
            e.reason = "experiment"
            e.value = None
            e.is_enabled = False
            return

        variation = ex.variations.get(group.variation_id)
        if variation is None:
            logger.error("Experiment %s has no variation %s", ex.experiment_id, group.variation_id)
            e.reason = "experiment"
            e.value = None
            e.is_enabled = False
            return

        a = ExperimentAssignment()
        a.experiment_id = ex.experiment_id
        a.iteration_id = ex.iteration.iteration_id
        a.feature_id = self.feature_id
        a.variation_id = variation.variation_id
        a.entity_id = entity_id
        a.audience_group = audience
        e.assignment = a
        e.reason = "experiment"
        e.value = variation.variation_value
        e.is_enabled = True

    def _eval_experiment(self, e: FeatureEvaluation, entity_id: str, attributes: Attributes, segments: dict[str, Segment]):
        ex = self.experiment
        assert ex is not None
        td = ex.traffic_distribution
        if td.type == "ALL":
            self._assign_variation(e, entity_id)
            return
        m = self._match(attributes, segments)
        if m.status != "matched":
            self._assign_variation(e, entity_id)
            return
        assert m.rule is not None
        if td.type == "RULE" and str(m.rule.order) == str(td.rule_id):
            e.segment_id = m.segment_id
            self._assign_variation(e, entity_id)
            return
        self._apply_segment_rule(e, entity_id, m)

    def eval(self, entity_id: str, attributes: Attributes, segments: dict[str, Segment]) -> FeatureEvaluation:
        """
        Evaluate the feature for the given entity. `segments` is the segment
        mapping of the snapshot generation this feature belongs to.
        """
        e = FeatureEvaluation()
        e.feature_id = self.feature_id
        e.entity_id = entity_id
        e.segment_id = DEFAULT_SEGMENT_ID
        e.assignment = None

        if not entity_id:
            logger.warning("Feature flag evaluation: invalid entity id passed for %s", self.feature_id)
            e.reason = "invalid_entity"
            e.value = None
            e.is_enabled = False
            return e

        if not self.enabled:
            e.reason = "disabled"
            e.value = self.disabled_value
            e.is_enabled = False
            return e

        if self.experiment is not None and self.experiment.running:
            self._eval_experiment(e, entity_id, attributes, segments)
            return e

        m = self._match(attributes, segments)
        if m.status == "matched":
            self._apply_segment_rule(e, entity_id, m)
        else:
            self._apply_default(e, entity_id)
        return e


class Property:
    __slots__ = (
        "property_id",
        "name",
        "type",
        "_format",
        "value",
        "segment_rules",
        "_rules_by_order",
    )
    property_id: str
    name: str
    type: Literal["BOOLEAN", "STRING", "NUMERIC"]
    _format: str | None
    value: Any
    segment_rules: list[SegmentRule]
    _rules_by_order: dict[int, SegmentRule]

    @staticmethod
    def from_dict(d: DictConfig) -> Property:
        p = Property()
        p.property_id = d["property_id"]
        p.name = d.get("name", "")
        p.type = d["type"]
        p._format = d.get("format")
        p.value = d.get("value")
        p.segment_rules = [SegmentRule.from_dict(r) for r in d.get("segment_rules", [])]
        p._rules_by_order = _rules_by_order(p.segment_rules)
        return p

    @property
    def format(self) -> str | None:
        return _lazy_format(self)

    def eval(self, entity_id: str, attributes: Attributes, segments: dict[str, Segment]) -> PropertyEvaluation:
        e = PropertyEvaluation()
        e.property_id = self.property_id
        e.entity_id = entity_id
        e.segment_id = DEFAULT_SEGMENT_ID

        if not entity_id:
            logger.warning("Property evaluation: invalid entity id passed for %s", self.property_id)
            e.reason = "invalid_entity"
            e.value = None
            return e

        e.reason = "default"
        e.value = self.value
        if not self.segment_rules or not attributes:
            return e

        m = _find_segment_rule(self._rules_by_order, attributes, segments)
        if m.status == "malformed":
            logger.error("Property %s rule evaluation failed: %s", self.property_id, m.error)
        elif m.status == "matched":
            assert m.rule is not None
            e.reason = "segment_rule"
            e.segment_id = m.segment_id
            if m.rule.value != DEFAULT_VALUE:
                e.value = m.rule.value
        return e


with open(os.path.join(os.path.dirname(__file__), "snapshot_schema.json")) as f:
    _snapshot_schema = json.load(f)


class Snapshot:
    """
    One immutable generation of the cached configuration. A refresh builds a
    new Snapshot and swaps it in whole, so readers never see a mix of
    generations.
    """

    __slots__ = ("features", "properties", "segments")
    features: dict[str, Feature]
    properties: dict[str, Property]
    segments: dict[str, Segment]

    @staticmethod
    def from_bytes(b: bytes) -> Snapshot:
        obj = dill.loads(b)
        assert isinstance(obj, Snapshot)
        return obj

    def to_bytes(self) -> bytes:
        return dill.dumps(self)

    @staticmethod
    def from_dict(c: DictConfig, environment_id: str | None = None) -> Snapshot:
        """
        Build a snapshot from a fetched configuration payload. Both the
        initial fetch shape ({features, properties, segments}) and the push
        update shape ({environments: [{features, properties}], segments}) are
        accepted.
        """
        jsonschema.validate(c, _snapshot_schema)

        if "environments" in c:
            envs = c["environments"]
            env = next((e for e in envs if e.get("environment_id") == environment_id), envs[0] if envs else {})
        else:
            env = c

        s = Snapshot()
        s.features = {f["feature_id"]: Feature.from_dict(f) for f in env.get("features", [])}
        s.properties = {p["property_id"]: Property.from_dict(p) for p in env.get("properties", [])}
        s.segments = {seg["segment_id"]: Segment.from_dict(seg) for seg in c.get("segments", [])}
        return s


_prom_eval_duration = Histogram(
    "flagmeter_evaluation_seconds",
    "Feature and property evaluation duration in seconds",
    buckets=[1e-5, 1e-4, 1e-3, 1e-2, 1e-1, 1],
    labelnames=["kind", "reason"],
)


class ConfigurationClient:
    """
    Evaluates features and properties of the loaded snapshot and meters the
    evaluations. The client owns its snapshot and metering pipelines; nothing
    is shared between clients. The client is thread-safe.
    """

    def __init__(
        self,
        collection_id: str,
        environment_id: str,
        transport: Transport | None = None,
        metering_interval: float = 60 * 5,
        experiment_interval: float = 60,
        usage_limit: int = 25,
        schedule: Callable[[float, Callable[[], None]], Any] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.collection_id = collection_id
        self.environment_id = environment_id
        self._snapshot_mu = threading.RLock()
        self._snapshot: Snapshot | None = None

        if transport:
            self._transport = transport
            self._usage = UsageMetering(
                transport,
                collection_id,
                environment_id,
                interval=metering_interval,
                usage_limit=usage_limit,
                schedule=schedule,
                clock=clock,
            )
            self._exp_evaluations = ExperimentEvaluationMetering(
                transport,
                environment_id,
                interval=experiment_interval,
                schedule=schedule,
                clock=clock,
            )
            self._exp_metrics = ExperimentMetricMetering(
                transport,
                environment_id,
                interval=experiment_interval,
                schedule=schedule,
                clock=clock,
            )

    def load_snapshot(self, snapshot: Snapshot):
        """
        Replace the current snapshot. load_snapshot is thread-safe.
        """
        with self._snapshot_mu:
            self._snapshot = snapshot

    def refresh(self, payload: DictConfig) -> Snapshot:
        """
        Build a snapshot from a fetched payload and load it. If the payload is
        invalid, the exception propagates and the current snapshot is kept.
        """
        snapshot = Snapshot.from_dict(payload, self.environment_id)
        self.load_snapshot(snapshot)
        return snapshot

    def _get_snapshot(self) -> Snapshot:
        with self._snapshot_mu:
            snapshot = self._snapshot
        if snapshot is None:
            raise RuntimeError("snapshot not loaded")
        return snapshot

    def get_feature(self, feature_id: str) -> Feature:
        f = self._get_snapshot().features.get(feature_id)
        if f is None:
            raise NotFoundError(f"Invalid feature flag id: {feature_id}")
        return f

    def get_features(self) -> dict[str, Feature]:
        return self._get_snapshot().features

    def get_property(self, property_id: str) -> Property:
        p = self._get_snapshot().properties.get(property_id)
        if p is None:
            raise NotFoundError(f"Invalid property id: {property_id}")
        return p

    def get_properties(self) -> dict[str, Property]:
        return self._get_snapshot().properties

    @staticmethod
    def _validate_input(entity_id: str, attributes: Attributes):
        if not isinstance(entity_id, str):
            raise TypeError(f"entity id must be a string, not {type(entity_id).__name__}")
        if not isinstance(attributes, dict):
            raise TypeError(f"attributes must be a dict, not {type(attributes).__name__}")
        for k, v in attributes.items():
            if not isinstance(k, str):
                raise TypeError(f"attribute key must be a string, not {type(k).__name__}")
            if not isinstance(v, (str, int, float, bool, list, set, type(None))):
                raise TypeError(f"attribute value must be a string, int, float, bool, list, set, None, not {type(v).__name__}")

    def detailed_evaluate_feature(self, feature_id: str, entity_id: str, attributes: Attributes = {}) -> FeatureEvaluation:
        """
        Evaluate the given feature and return the FeatureEvaluation. Every
        evaluation with a valid entity id is metered, including ones that fail
        unexpectedly.
        """
        self._validate_input(entity_id, attributes)
        snapshot = self._get_snapshot()
        feature = snapshot.features.get(feature_id)
        if feature is None:
            raise NotFoundError(f"Invalid feature flag id: {feature_id}")
        if not entity_id:
            return feature.eval(entity_id, attributes, snapshot.segments)

        e: FeatureEvaluation | None = None
        start = time.perf_counter()
        try:
            e = feature.eval(entity_id, attributes, snapshot.segments)
            _prom_eval_duration.labels(kind="feature", reason=e.reason).observe(time.perf_counter() - start)
            return e
        finally:
            if hasattr(self, "_usage"):
                if e is not None and e.assignment is not None:
                    self._exp_evaluations.add(e.assignment.to_dict())
                else:
                    segment_id = e.segment_id if e is not None else DEFAULT_SEGMENT_ID
                    self._usage.add(entity_id, segment_id, feature_id=feature_id)

    def evaluate_feature(self, feature_id: str, entity_id: str, attributes: Attributes = {}) -> Any:
        """
        Evaluate the given feature and return its value for the entity.

        feature_id: The id of the feature.
        entity_id: The id of the entity the feature is evaluated for.
        attributes: The attributes of the entity used by segment rules.
        """
        return self.detailed_evaluate_feature(feature_id, entity_id, attributes).value

    def is_feature_enabled(self, feature_id: str, entity_id: str, attributes: Attributes = {}) -> bool:
        return self.detailed_evaluate_feature(feature_id, entity_id, attributes).is_enabled

    def detailed_evaluate_property(self, property_id: str, entity_id: str, attributes: Attributes = {}) -> PropertyEvaluation:
        self._validate_input(entity_id, attributes)
        snapshot = self._get_snapshot()
        prop = snapshot.properties.get(property_id)
        if prop is None:
            raise NotFoundError(f"Invalid property id: {property_id}")
        if not entity_id:
            return prop.eval(entity_id, attributes, snapshot.segments)

        e: PropertyEvaluation | None = None
        start = time.perf_counter()
        try:
            e = prop.eval(entity_id, attributes, snapshot.segments)
            _prom_eval_duration.labels(kind="property", reason=e.reason).observe(time.perf_counter() - start)
            return e
        finally:
            if hasattr(self, "_usage"):
                segment_id = e.segment_id if e is not None else DEFAULT_SEGMENT_ID
                self._usage.add(entity_id, segment_id, property_id=property_id)

    def evaluate_property(self, property_id: str, entity_id: str, attributes: Attributes = {}) -> Any:
        return self.detailed_evaluate_property(property_id, entity_id, attributes).value

    def _running_experiment_feature(self) -> Feature | None:
        running = [f for f in self._get_snapshot().features.values() if f.experiment is not None and f.experiment.running]
        if not running:
            return None
        return min(running, key=lambda f: f.feature_id)

    def record_metric_event(self, event_key: str, entity_id: str):
        """
        Attribute a business event of the entity to the running experiment.
        If several experiments are running, the feature with the smallest id
        gets the event.
        """
        if not entity_id or not event_key:
            logger.warning("Metric event ignored: event key and entity id are required")
            return
        feature = self._running_experiment_feature()
        if feature is None:
            logger.warning("Metric event %s ignored: no running experiment", event_key)
            return
        if not hasattr(self, "_exp_metrics"):
            return
        ex = feature.experiment
        assert ex is not None
        self._exp_metrics.add(
            {
                "experiment_id": ex.experiment_id,
                "iteration_id": ex.iteration.iteration_id,
                "feature_id": feature.feature_id,
                "entity_id": entity_id,
                "event_key": event_key,
            }
        )

    def flush(self, keepalive: bool = False):
        """
        Send everything recorded so far. keepalive marks a last delivery
        before the process exits.
        """
        if not hasattr(self, "_usage"):
            return
        self._usage.flush(keepalive)
        self._exp_evaluations.flush(keepalive)
        self._exp_metrics.flush(keepalive)

    def close(self):
        """
        Flush one final time, stop the periodic flush workers and close the
        transport.
        """
        if not hasattr(self, "_usage"):
            return
        self.flush(keepalive=True)
        self._usage.stop()
        self._exp_evaluations.stop()
        self._exp_metrics.stop()
        self._transport.close()


__all__ = [
    "ConfigurationClient",
    "Experiment",
    "ExperimentAssignment",
    "Feature",
    "FeatureEvaluation",
    "HttpTransport",
    "NotFoundError",
    "Property",
    "PropertyEvaluation",
    "Rule",
    "RuleEvaluationError",
    "Segment",
    "SegmentRule",
    "Snapshot",
    "Transport",
    "TransportError",
    "hash_bucket",
]
