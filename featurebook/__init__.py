from .common_types import (
    AutoExperimentResult,
    Experiment,
    Feature,
    FeatureResult,
    FeatureRule,
    Options,
    Result,
)
from .featurebook import FeatureBook, logger
from .conditions import eval_condition
from .bucketing import hash_to_unit, get_bucket_ranges, choose_variation
from .cache_interfaces import AbstractFeatureCache, InMemoryFeatureCache
from .repository import (
    AsyncFeatureRepository,
    FeatureRepository,
    PayloadSnapshot,
    clear_cache,
    get_feature_repository,
)
from .sticky_bucket import (
    AbstractStickyBucketService,
    InMemoryStickyBucketService,
    KeyValueStickyBucketService,
)
from .transport import (
    AbstractAsyncPayloadTransport,
    AbstractPayloadTransport,
    AsyncHttpTransport,
    HttpTransport,
    SSEClient,
    TransportResponse,
    decrypt,
)

__version__ = "0.1.0"
