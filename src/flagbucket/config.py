from __future__ import annotations
import datetime
import json
import logging
import os
from typing import Any, Literal, TypeAlias

import dill
import jsonschema

from .filters import Audiences, AudienceOperator, FilterError, parse_operator


logger = logging.getLogger(__name__)

DictConfig: TypeAlias = dict[str, Any]
VariableType: TypeAlias = Literal["String", "Boolean", "Number", "JSON"]

VARIABLE_TYPES = ("String", "Boolean", "Number", "JSON")


class ConfigError(ValueError):
    """
    The configuration document is well formed but inconsistent.
    """


with open(os.path.join(os.path.dirname(__file__), "config_schema.json")) as f:
    _config_schema = json.load(f)


def _unix_seconds_from_tz_time(s: str) -> float:
    """
    Parse the given ISO 8601 time string and return the number of seconds since
    the unix epoch.
    """
    t = datetime.datetime.fromisoformat(s)
    if t.tzinfo is None:
        raise ConfigError(f"Timezone missing in {s!r}")
    return t.timestamp()


class Project:
    __slots__ = ("id", "key", "organization", "settings", "disable_passthrough_rollouts")
    id: str
    key: str
    organization: str
    settings: dict[str, Any]
    disable_passthrough_rollouts: bool

    def to_dict(self) -> dict[str, Any]:
        return {"_id": self.id, "key": self.key, "a0_organization": self.organization, "settings": self.settings}


class Environment:
    __slots__ = ("id", "key")
    id: str
    key: str

    def to_dict(self) -> dict[str, str]:
        return {"_id": self.id, "key": self.key}


class Variable:
    __slots__ = ("id", "key", "type")
    id: str
    key: str
    type: VariableType


class VariationVariable:
    __slots__ = ("var", "value")
    var: str
    value: Any

    def __init__(self, var: str, value: Any):
        self.var = var
        self.value = value


class Variation:
    __slots__ = ("id", "key", "name", "variables")
    id: str
    key: str
    name: str
    variables: list[VariationVariable]

    def get_variable(self, variable_id: str) -> VariationVariable | None:
        for v in self.variables:
            if v.var == variable_id:
                return v
        return None


class RolloutStage:
    __slots__ = ("type", "date", "percentage")
    type: Literal["linear", "discrete"]
    date: float
    percentage: float

    def __init__(self, type: str, date: float, percentage: float):
        self.type = type
        self.date = date
        self.percentage = percentage


class Rollout:
    """
    A rollout limits a target to a percentage of its audience that changes
    over time. Dates are stored as unix seconds.
    """

    __slots__ = ("type", "start_percentage", "start_date", "stages")
    type: Literal["schedule", "gradual", "stepped"]
    start_percentage: float
    start_date: float | None
    stages: list[RolloutStage]


class TargetDistribution:
    __slots__ = ("variation", "percentage")
    variation: str
    percentage: float

    def __init__(self, variation: str, percentage: float):
        self.variation = variation
        self.percentage = percentage


class Audience:
    __slots__ = ("id", "filters")
    id: str
    filters: AudienceOperator

    def __init__(self, id: str, filters: AudienceOperator):
        self.id = id
        self.filters = filters


class Target:
    __slots__ = ("id", "audience", "rollout", "distribution", "bucketing_key")
    id: str
    audience: Audience
    rollout: Rollout | None
    distribution: list[TargetDistribution]
    bucketing_key: str


class FeaturePrerequisite:
    __slots__ = ("feature", "comparator")
    feature: str
    comparator: Literal["=", "!="]

    def __init__(self, feature: str, comparator: str):
        self.feature = feature
        self.comparator = comparator


class FeatureConfiguration:
    """
    Prerequisites, forced users and the winning variation are carried along
    for completeness but are not taken into account when bucketing.
    """

    __slots__ = ("id", "targets", "prerequisites", "forced_users", "winning_variation")
    id: str
    targets: list[Target]
    prerequisites: list[FeaturePrerequisite]
    forced_users: dict[str, str]
    winning_variation: dict[str, Any]


class Feature:
    __slots__ = ("id", "key", "type", "variations", "configuration", "settings")
    id: str
    key: str
    type: Literal["release", "experiment", "permission", "ops"]
    variations: list[Variation]
    configuration: FeatureConfiguration
    settings: dict[str, Any]

    def get_variation(self, variation_id: str) -> Variation | None:
        for v in self.variations:
            if v.id == variation_id:
                return v
        return None


def _parse_audience_filters(raw: dict[str, Any] | None, where: str) -> AudienceOperator:
    if not raw:
        return AudienceOperator("and", [])
    try:
        return parse_operator(raw)
    except FilterError as e:
        raise ConfigError(f"invalid filters in {where}: {e}") from e


def _parse_rollout(raw: dict[str, Any]) -> Rollout:
    r = Rollout()
    r.type = raw["type"]
    r.start_percentage = float(raw.get("startPercentage", 0))
    start_date = raw.get("startDate")
    r.start_date = _unix_seconds_from_tz_time(start_date) if start_date else None
    r.stages = [RolloutStage(s["type"], _unix_seconds_from_tz_time(s["date"]), float(s["percentage"])) for s in raw.get("stages") or []]
    return r


def _parse_target(raw: dict[str, Any]) -> Target:
    t = Target()
    t.id = raw["_id"]
    raw_audience = raw.get("_audience") or {}
    t.audience = Audience(raw_audience.get("_id", ""), _parse_audience_filters(raw_audience.get("filters"), f"target {t.id}"))
    t.rollout = _parse_rollout(raw["rollout"]) if raw.get("rollout") else None
    t.distribution = [TargetDistribution(d["_variation"], float(d["percentage"])) for d in raw["distribution"]]
    # Sorted once here so variation selection is independent of the order
    # the document lists the distribution in.
    t.distribution.sort(key=lambda d: d.variation, reverse=True)
    t.bucketing_key = raw.get("bucketingKey") or ""
    return t


def _parse_feature(raw: dict[str, Any]) -> Feature:
    feature = Feature()
    feature.id = raw["_id"]
    feature.key = raw["key"]
    feature.type = raw["type"]
    feature.settings = dict(raw.get("settings") or {})

    feature.variations = []
    for rv in raw.get("variations") or []:
        v = Variation()
        v.id = rv["_id"]
        v.key = rv["key"]
        v.name = rv.get("name", "")
        v.variables = [VariationVariable(vv["_var"], vv.get("value")) for vv in rv.get("variables") or []]
        feature.variations.append(v)

    rc = raw.get("configuration") or {}
    fc = FeatureConfiguration()
    fc.id = rc.get("_id", "")
    fc.targets = [_parse_target(t) for t in rc.get("targets") or []]
    fc.prerequisites = [FeaturePrerequisite(p.get("_feature", ""), p.get("comparator", "=")) for p in rc.get("prerequisites") or []]
    fc.forced_users = dict(rc.get("forcedUsers") or {})
    fc.winning_variation = dict(rc.get("winningVariation") or {})
    feature.configuration = fc
    return feature


class Configuration:
    """
    Compiled tenant configuration. It's immutable once compiled and safe to
    share between threads.
    """

    __slots__ = (
        "project",
        "environment",
        "features",
        "variables",
        "audiences",
        "variable_by_key",
        "variable_by_id",
        "feature_by_variable_id",
        "etag",
        "ray_id",
        "last_modified",
    )
    project: Project
    environment: Environment
    features: list[Feature]
    variables: list[Variable]
    audiences: Audiences
    variable_by_key: dict[str, Variable]
    variable_by_id: dict[str, Variable]
    feature_by_variable_id: dict[str, Feature]
    etag: str
    ray_id: str
    last_modified: str

    @staticmethod
    def from_bytes(b: bytes) -> Configuration:
        obj = dill.loads(b)
        assert isinstance(obj, Configuration)
        return obj

    def to_bytes(self) -> bytes:
        return dill.dumps(self)

    @staticmethod
    def from_json(raw: bytes | str, etag: str = "", ray_id: str = "", last_modified: str = "") -> Configuration:
        """
        Compile a raw JSON configuration document. Malformed JSON raises
        json.JSONDecodeError.
        """
        return Configuration.from_dict(json.loads(raw), etag=etag, ray_id=ray_id, last_modified=last_modified)

    @staticmethod
    def from_dict(c: DictConfig, etag: str = "", ray_id: str = "", last_modified: str = "") -> Configuration:
        """
        Compile the config document into a format that can be bucketed against.
        """
        jsonschema.validate(c, _config_schema)

        # Project and environment.

        project = Project()
        project.id = c["project"]["_id"]
        project.key = c["project"]["key"]
        project.organization = c["project"].get("a0_organization", "")
        project.settings = dict(c["project"].get("settings") or {})
        project.disable_passthrough_rollouts = bool(project.settings.get("disablePassthroughRollouts", False))

        environment = Environment()
        environment.id = c["environment"]["_id"]
        environment.key = c["environment"]["key"]

        # Variables.

        variables: list[Variable] = []
        variable_by_key: dict[str, Variable] = {}
        variable_by_id: dict[str, Variable] = {}
        for rv in c["variables"]:
            v = Variable()
            v.id = rv["_id"]
            v.key = rv["key"]
            v.type = rv["type"]
            variables.append(v)
            variable_by_key[v.key] = v
            variable_by_id[v.id] = v

        # Audiences referenced by audience match filters.

        audiences: dict[str, AudienceOperator] = {}
        for audience_id, a in (c.get("audiences") or {}).items():
            audiences[audience_id] = _parse_audience_filters(a.get("filters"), f"audience {audience_id}")

        # Features.

        features = [_parse_feature(f) for f in c["features"]]

        feature_by_variable_id: dict[str, Feature] = {}
        for feature in features:
            for variation in feature.variations:
                for vv in variation.variables:
                    if vv.var not in variable_by_id:
                        raise ConfigError(f"variation {variation.id} of feature {feature.key} references unknown variable {vv.var}")
                    # First feature referencing a variable owns it.
                    feature_by_variable_id.setdefault(vv.var, feature)

        cc = Configuration()
        cc.project = project
        cc.environment = environment
        cc.features = features
        cc.variables = variables
        cc.audiences = audiences
        cc.variable_by_key = variable_by_key
        cc.variable_by_id = variable_by_id
        cc.feature_by_variable_id = feature_by_variable_id
        cc.etag = etag
        cc.ray_id = ray_id
        cc.last_modified = last_modified
        logger.debug("Compiled config for project %s environment %s with %d features", project.key, environment.key, len(features))
        return cc

    def get_variable_for_key(self, key: str) -> Variable | None:
        return self.variable_by_key.get(key)

    def get_variable_for_id(self, variable_id: str) -> Variable | None:
        return self.variable_by_id.get(variable_id)

    def get_feature_for_variable_id(self, variable_id: str) -> Feature | None:
        return self.feature_by_variable_id.get(variable_id)
