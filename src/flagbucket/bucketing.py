"""
Deterministic bucketing of users into feature variations.

A feature's targets are walked in order and the first one whose rollout gate
and audience pass is selected. The user is then placed into one of the
target's distribution entries by a bounded murmur3 hash of their bucketing
value, so the same user always lands in the same variation for the same
config.
"""

from __future__ import annotations
import math
import time
from typing import Any, Literal, TypeAlias

from .config import Configuration, Feature, Rollout, RolloutStage, Target, Variation
from .filters import AllFilter
from .hashing import BoundedHashes, determine_bucketing_value, generate_bounded_hashes
from .user import CustomData, PopulatedUser

EvalReason: TypeAlias = Literal["TARGETING_MATCH", "SPLIT", "DEFAULT", "DISABLED", "ERROR"]


class BucketingError(Exception):
    """
    Base of all outcomes that make a variable fall back to its default value.
    """

    default_reason: str = "UNKNOWN"
    eval_reason: EvalReason = "ERROR"


class ConfigMissingError(BucketingError, RuntimeError):
    default_reason = "MISSING_CONFIG"
    eval_reason = "DISABLED"


class MissingVariableError(BucketingError):
    default_reason = "MISSING_VARIABLE"
    eval_reason = "DISABLED"


class MissingFeatureError(BucketingError):
    default_reason = "MISSING_FEATURE"
    eval_reason = "DISABLED"


class MissingVariationError(BucketingError):
    default_reason = "MISSING_VARIATION"


class MissingVariableForVariationError(BucketingError):
    default_reason = "MISSING_VARIABLE_FOR_VARIATION"


class UserNotInRolloutError(BucketingError):
    default_reason = "USER_NOT_IN_ROLLOUT"
    eval_reason = "DEFAULT"


class UserNotTargetedError(BucketingError):
    default_reason = "USER_NOT_TARGETED"
    eval_reason = "DEFAULT"


class InvalidVariableTypeError(BucketingError):
    default_reason = "INVALID_VARIABLE_TYPE"


class FailedToDecideVariationError(BucketingError):
    pass


# Rollouts


def current_rollout_percentage(rollout: Rollout, now: float) -> float:
    """
    Return the fraction of the audience the rollout lets through at the given
    unix time, in the range [0, 1].
    """
    if rollout.type == "schedule":
        return 1 if rollout.start_date is not None and now > rollout.start_date else 0

    current_stage: RolloutStage | None = None
    next_stage: RolloutStage | None = None
    for stage in rollout.stages:
        if stage.date < now:
            current_stage = stage
        elif next_stage is None:
            next_stage = stage

    if current_stage is None and rollout.start_date is not None and rollout.start_date < now:
        current_stage = RolloutStage("discrete", rollout.start_date, rollout.start_percentage)
    if current_stage is None:
        return 0

    if next_stage is None or next_stage.type == "discrete":
        pct = current_stage.percentage
    else:
        span = next_stage.date - current_stage.date
        progress = (now - current_stage.date) / span if span > 0 else 1
        pct = current_stage.percentage + (next_stage.percentage - current_stage.percentage) * progress
    return min(max(pct, 0.0), 1.0)


def does_user_pass_rollout(rollout: Rollout, rollout_hash: float, now: float) -> bool:
    pct = current_rollout_percentage(rollout, now)
    return pct != 0 and rollout_hash <= pct


# Targeting


def _target_hashes(target: Target, user: PopulatedUser, merged_custom_data: CustomData) -> BoundedHashes:
    bucketing_value = determine_bucketing_value(target.bucketing_key, user.user_id, merged_custom_data)
    return generate_bounded_hashes(bucketing_value, target.id)


def _merged_custom_data(user: PopulatedUser, client_custom_data: CustomData | None) -> CustomData:
    # User's data overrides the client wide data.
    return {**(client_custom_data or {}), **user.combined_custom_data()}


def evaluate_segmentation_for_feature(
    config: Configuration,
    feature: Feature,
    user: PopulatedUser,
    client_custom_data: CustomData | None,
    now: float,
) -> Target | None:
    """
    Return the first target of the feature the user passes, or None. When
    passthrough rollouts are enabled a target's rollout gates it before its
    audience is evaluated.
    """
    passthrough = not config.project.disable_passthrough_rollouts
    merged = _merged_custom_data(user, client_custom_data)
    for target in feature.configuration.targets:
        if target.rollout is not None and passthrough:
            hashes = _target_hashes(target, user, merged)
            if not does_user_pass_rollout(target.rollout, hashes.rollout_hash, now):
                continue
        if target.audience.filters.evaluate(config.audiences, user, client_custom_data):
            return target
    return None


def does_user_qualify_for_feature(
    config: Configuration,
    feature: Feature,
    user: PopulatedUser,
    client_custom_data: CustomData | None,
    now: float,
) -> tuple[Target, BoundedHashes]:
    target = evaluate_segmentation_for_feature(config, feature, user, client_custom_data, now)
    if target is None:
        raise UserNotTargetedError(f"user {user.user_id} does not qualify for any target of feature {feature.key}")

    hashes = _target_hashes(target, user, _merged_custom_data(user, client_custom_data))
    if target.rollout is not None and config.project.disable_passthrough_rollouts:
        if not does_user_pass_rollout(target.rollout, hashes.rollout_hash, now):
            raise UserNotInRolloutError(f"user {user.user_id} is not in the rollout of target {target.id}")
    return target, hashes


def decide_target_variation(target: Target, bucketing_hash: float) -> str:
    """
    Pick the variation id of the distribution entry the hash falls into.
    """
    cumulative = 0.0
    for d in target.distribution:
        cumulative += d.percentage
        if bucketing_hash < cumulative:
            return d.variation
    # The hash range is inclusive of 1 and float sums of percentages rarely
    # add up to exactly 1.
    if math.isclose(cumulative, 1) and bucketing_hash <= 1:
        for d in reversed(target.distribution):
            if d.percentage > 0:
                return d.variation
    raise FailedToDecideVariationError(f"failed to decide target variation: {target.id}")


def bucket_user_for_variation(feature: Feature, target: Target, hashes: BoundedHashes) -> Variation:
    variation_id = decide_target_variation(target, hashes.bucketing_hash)
    variation = feature.get_variation(variation_id)
    if variation is None:
        raise MissingVariationError(f"variation {variation_id} does not exist in feature {feature.key}")
    return variation


def evaluation_reason(target: Target) -> tuple[EvalReason, str]:
    filters = target.audience.filters.filters
    details = "All Users" if filters and all(isinstance(f, AllFilter) for f in filters) else "Audience Match"
    if target.rollout is not None:
        details += " | Rollout"
    if len(target.distribution) > 1:
        details += " | Random Distribution"
    reason: EvalReason = "SPLIT" if target.rollout is not None or len(target.distribution) > 1 else "TARGETING_MATCH"
    return reason, details


# Results


class ResolvedVariable:
    __slots__ = ("key", "type", "value", "feature_id", "variation_id", "eval_reason", "eval_details")
    key: str
    type: str
    value: Any
    feature_id: str
    variation_id: str
    eval_reason: EvalReason
    eval_details: str


class BucketedFeature:
    __slots__ = ("id", "key", "type", "variation", "variation_key", "variation_name", "eval_reason", "eval_details")
    id: str
    key: str
    type: str
    variation: str
    variation_key: str
    variation_name: str
    eval_reason: EvalReason
    eval_details: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "_id": self.id,
            "key": self.key,
            "type": self.type,
            "_variation": self.variation,
            "variationKey": self.variation_key,
            "variationName": self.variation_name,
            "eval": {"reason": self.eval_reason, "details": self.eval_details},
        }


class BucketedVariable:
    __slots__ = ("id", "key", "type", "value", "eval_reason", "eval_details")
    id: str
    key: str
    type: str
    value: Any
    eval_reason: EvalReason
    eval_details: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "_id": self.id,
            "key": self.key,
            "type": self.type,
            "value": self.value,
            "eval": {"reason": self.eval_reason, "details": self.eval_details},
        }


class BucketedUserConfig:
    """
    Everything a user is bucketed into for a single config.
    """

    __slots__ = ("project", "environment", "features", "feature_variation_map", "variable_variation_map", "variables")
    project: dict[str, Any]
    environment: dict[str, Any]
    features: dict[str, BucketedFeature]
    feature_variation_map: dict[str, str]
    variable_variation_map: dict[str, dict[str, str]]
    variables: dict[str, BucketedVariable]

    def to_dict(self) -> dict[str, Any]:
        return {
            "project": self.project,
            "environment": self.environment,
            "features": {k: f.to_dict() for k, f in self.features.items()},
            "featureVariationMap": dict(self.feature_variation_map),
            "variableVariationMap": {k: dict(v) for k, v in self.variable_variation_map.items()},
            "variables": {k: v.to_dict() for k, v in self.variables.items()},
        }


def resolve_variable(
    config: Configuration,
    user: PopulatedUser,
    key: str,
    client_custom_data: CustomData | None = None,
    now: float | None = None,
) -> ResolvedVariable:
    """
    Resolve the value of a single variable for the user. Raises a
    BucketingError describing why the variable defaults when it does.
    """
    now = time.time() if now is None else now
    variable = config.get_variable_for_key(key)
    if variable is None:
        raise MissingVariableError(f"variable {key} does not exist")
    feature = config.get_feature_for_variable_id(variable.id)
    if feature is None:
        raise MissingFeatureError(f"no feature uses variable {key}")

    target, hashes = does_user_qualify_for_feature(config, feature, user, client_custom_data, now)
    variation = bucket_user_for_variation(feature, target, hashes)
    vv = variation.get_variable(variable.id)
    if vv is None:
        raise MissingVariableForVariationError(f"variation {variation.id} has no value for variable {key}")

    rv = ResolvedVariable()
    rv.key = variable.key
    rv.type = variable.type
    rv.value = vv.value
    rv.feature_id = feature.id
    rv.variation_id = variation.id
    rv.eval_reason, rv.eval_details = evaluation_reason(target)
    return rv


def generate_bucketed_config(
    config: Configuration,
    user: PopulatedUser,
    client_custom_data: CustomData | None = None,
    now: float | None = None,
) -> BucketedUserConfig:
    """
    Bucket the user into every feature of the config. Features the user does
    not qualify for are left out, any other error propagates.
    """
    now = time.time() if now is None else now
    bc = BucketedUserConfig()
    bc.project = config.project.to_dict()
    bc.environment = config.environment.to_dict()
    bc.features = {}
    bc.feature_variation_map = {}
    bc.variable_variation_map = {}
    bc.variables = {}

    for feature in config.features:
        try:
            target, hashes = does_user_qualify_for_feature(config, feature, user, client_custom_data, now)
        except (UserNotTargetedError, UserNotInRolloutError):
            continue
        variation = bucket_user_for_variation(feature, target, hashes)
        reason, details = evaluation_reason(target)

        bf = BucketedFeature()
        bf.id = feature.id
        bf.key = feature.key
        bf.type = feature.type
        bf.variation = variation.id
        bf.variation_key = variation.key
        bf.variation_name = variation.name
        bf.eval_reason = reason
        bf.eval_details = details
        bc.features[feature.key] = bf
        bc.feature_variation_map[feature.id] = variation.id

        for vv in variation.variables:
            variable = config.get_variable_for_id(vv.var)
            if variable is None:
                raise MissingVariableError(f"variable {vv.var} does not exist")
            bc.variable_variation_map[variable.key] = {"_feature": feature.id, "_variation": variation.id}
            bv = BucketedVariable()
            bv.id = variable.id
            bv.key = variable.key
            bv.type = variable.type
            bv.value = vv.value
            bv.eval_reason = reason
            bv.eval_details = details
            bc.variables[variable.key] = bv

    return bc
