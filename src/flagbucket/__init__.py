__version__ = "0.1.0"

from .bucketing import (
    BucketedFeature,
    BucketedUserConfig,
    BucketedVariable,
    BucketingError,
    ConfigMissingError,
    FailedToDecideVariationError,
    InvalidVariableTypeError,
    MissingFeatureError,
    MissingVariableError,
    MissingVariableForVariationError,
    MissingVariationError,
    ResolvedVariable,
    UserNotInRolloutError,
    UserNotTargetedError,
    current_rollout_percentage,
    decide_target_variation,
    does_user_pass_rollout,
    generate_bucketed_config,
    resolve_variable,
)
from .config import ConfigError, Configuration
from .evaluator import Evaluator, EventUploader, FlushResult, Variable
from .events import Event, EventQueue, EventQueueOptions, FlushPayload, QueueFullError, UserEventsBatchRecord
from .filters import MAX_AUDIENCE_DEPTH, FilterError
from .hashing import generate_bounded_hash, generate_bounded_hashes
from .registry import ConfigRegistry
from .user import PlatformData, PopulatedUser, User

__all__ = [
    "BucketedFeature",
    "BucketedUserConfig",
    "BucketedVariable",
    "BucketingError",
    "ConfigError",
    "ConfigMissingError",
    "ConfigRegistry",
    "Configuration",
    "Evaluator",
    "Event",
    "EventQueue",
    "EventQueueOptions",
    "EventUploader",
    "FailedToDecideVariationError",
    "FilterError",
    "FlushPayload",
    "FlushResult",
    "InvalidVariableTypeError",
    "MAX_AUDIENCE_DEPTH",
    "MissingFeatureError",
    "MissingVariableError",
    "MissingVariableForVariationError",
    "MissingVariationError",
    "PlatformData",
    "PopulatedUser",
    "QueueFullError",
    "ResolvedVariable",
    "User",
    "UserEventsBatchRecord",
    "UserNotInRolloutError",
    "UserNotTargetedError",
    "Variable",
    "current_rollout_percentage",
    "decide_target_variation",
    "does_user_pass_rollout",
    "generate_bounded_hash",
    "generate_bounded_hashes",
    "generate_bucketed_config",
    "resolve_variable",
]
