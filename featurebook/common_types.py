#!/usr/bin/env python

import copy

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, TypedDict

from .sticky_bucket import AbstractStickyBucketService, StickyAssignmentsDocument


class VariationMeta(TypedDict, total=False):
    key: str
    name: str
    passthrough: bool


class Filter(TypedDict, total=False):
    seed: str
    ranges: List[Tuple[float, float]]
    hashVersion: int
    attribute: str


class ParentCondition(TypedDict, total=False):
    id: str
    condition: Dict[str, Any]
    gate: bool


class UrlTarget(TypedDict, total=False):
    include: bool
    type: str
    pattern: str


class ExperimentOverride(TypedDict, total=False):
    condition: Dict[str, Any]
    weights: List[float]
    active: bool
    status: str
    force: int
    coverage: float
    groups: List[str]
    namespace: Tuple[str, float, float]
    url: str


def _known_fields(cls, data: dict) -> dict:
    return {k: v for k, v in data.items() if k in cls._FIELDS}


class Experiment(object):
    _FIELDS = frozenset((
        "key", "variations", "weights", "active", "status", "coverage", "condition",
        "parentConditions", "namespace", "url", "urlPatterns", "include", "groups",
        "force", "hashAttribute", "fallbackAttribute", "hashVersion", "ranges", "meta",
        "filters", "seed", "name", "phase", "disableStickyBucketing", "bucketVersion",
        "minBucketVersion", "changeId", "manual", "persistQueryString",
    ))

    def __init__(
        self,
        key: str,
        variations: list,
        weights: List[float] = None,
        active: bool = True,
        status: str = "running",
        coverage: float = None,
        condition: dict = None,
        parentConditions: List[ParentCondition] = None,
        namespace: Tuple[str, float, float] = None,
        url: str = "",
        urlPatterns: List[UrlTarget] = None,
        include: Callable[[], bool] = None,
        groups: List[str] = None,
        force: int = None,
        hashAttribute: str = None,
        fallbackAttribute: str = None,
        hashVersion: int = None,
        ranges: List[Tuple[float, float]] = None,
        meta: List[VariationMeta] = None,
        filters: List[Filter] = None,
        seed: str = None,
        name: str = None,
        phase: str = None,
        disableStickyBucketing: bool = False,
        bucketVersion: int = None,
        minBucketVersion: int = None,
        changeId: str = None,
        manual: bool = False,
        persistQueryString: bool = False,
    ) -> None:
        self.key = key
        self.variations = variations
        self.weights = weights
        self.active = active
        self.status = status
        self.coverage = coverage
        self.condition = condition
        self.parentConditions = parentConditions
        self.namespace = namespace
        self.url = url
        self.urlPatterns = urlPatterns
        self.include = include
        self.groups = groups
        self.force = force
        self.hashAttribute = hashAttribute
        self.hashVersion = hashVersion or 1
        self.ranges = ranges
        self.meta = meta
        self.filters = filters
        self.seed = seed
        self.name = name
        self.phase = phase
        self.disableStickyBucketing = disableStickyBucketing
        self.bucketVersion = bucketVersion or 0
        self.minBucketVersion = minBucketVersion or 0
        self.changeId = changeId
        self.manual = manual
        self.persistQueryString = persistQueryString
        # Cross-device fallback only makes sense when assignments can be persisted
        self.fallbackAttribute = None if disableStickyBucketing else fallbackAttribute

    @classmethod
    def from_dict(cls, data: dict) -> "Experiment":
        return cls(**_known_fields(cls, data))

    def with_override(self, override: ExperimentOverride) -> "Experiment":
        """Returns a copy with the session override applied; the original is untouched."""
        exp = copy.copy(self)
        for k in ("condition", "weights", "active", "status", "force", "coverage",
                  "groups", "namespace", "url"):
            if override.get(k) is not None:
                setattr(exp, k, override[k])
        return exp

    def get_meta(self, index: int) -> Optional[VariationMeta]:
        if self.meta and 0 <= index < len(self.meta):
            return self.meta[index]
        return None

    def to_dict(self) -> dict:
        obj: Dict[str, Any] = {
            "key": self.key,
            "variations": self.variations,
            "weights": self.weights,
            "active": self.active,
            "coverage": 1 if self.coverage is None else self.coverage,
            "condition": self.condition,
            "namespace": self.namespace,
            "force": self.force,
            "hashAttribute": self.hashAttribute or "id",
            "hashVersion": self.hashVersion,
            "ranges": self.ranges,
            "meta": self.meta,
            "filters": self.filters,
            "seed": self.seed,
            "name": self.name,
            "phase": self.phase,
        }
        optional = {
            "fallbackAttribute": self.fallbackAttribute,
            "disableStickyBucketing": self.disableStickyBucketing,
            "bucketVersion": self.bucketVersion,
            "minBucketVersion": self.minBucketVersion,
            "parentConditions": self.parentConditions,
            "urlPatterns": self.urlPatterns,
            "changeId": self.changeId,
            "manual": self.manual,
            "persistQueryString": self.persistQueryString,
        }
        obj.update({k: v for k, v in optional.items() if v})
        return obj


class Result(object):
    def __init__(
        self,
        variationId: int,
        inExperiment: bool,
        value,
        hashUsed: bool,
        hashAttribute: str,
        hashValue: str,
        featureId: Optional[str],
        meta: VariationMeta = None,
        bucket: float = None,
        stickyBucketUsed: bool = False,
    ) -> None:
        self.variationId = variationId
        self.inExperiment = inExperiment
        self.value = value
        self.hashUsed = hashUsed
        self.hashAttribute = hashAttribute
        self.hashValue = hashValue
        self.featureId = featureId or None
        self.bucket = bucket
        self.stickyBucketUsed = stickyBucketUsed

        meta = meta or {}
        self.key = meta.get("key", str(variationId))
        self.name = meta.get("name", "")
        self.passthrough = bool(meta.get("passthrough", False))

    def to_dict(self) -> dict:
        obj = {
            "featureId": self.featureId,
            "variationId": self.variationId,
            "inExperiment": self.inExperiment,
            "value": self.value,
            "hashUsed": self.hashUsed,
            "hashAttribute": self.hashAttribute,
            "hashValue": self.hashValue,
            "key": self.key,
            "stickyBucketUsed": self.stickyBucketUsed,
        }
        if self.bucket is not None:
            obj["bucket"] = self.bucket
        if self.name:
            obj["name"] = self.name
        if self.passthrough:
            obj["passthrough"] = True
        return obj


class FeatureRule(object):
    _FIELDS = frozenset((
        "id", "condition", "parentConditions", "force", "variations", "weights", "key",
        "hashAttribute", "fallbackAttribute", "hashVersion", "range", "coverage",
        "namespace", "ranges", "meta", "filters", "seed", "name", "phase",
        "disableStickyBucketing", "bucketVersion", "minBucketVersion",
    ))

    def __init__(
        self,
        id: str = None,
        condition: dict = None,
        parentConditions: List[ParentCondition] = None,
        force=None,
        variations: list = None,
        weights: List[float] = None,
        key: str = None,
        hashAttribute: str = None,
        fallbackAttribute: str = None,
        hashVersion: int = None,
        range: Tuple[float, float] = None,
        coverage: float = None,
        namespace: Tuple[str, float, float] = None,
        ranges: List[Tuple[float, float]] = None,
        meta: List[VariationMeta] = None,
        filters: List[Filter] = None,
        seed: str = None,
        name: str = None,
        phase: str = None,
        disableStickyBucketing: bool = False,
        bucketVersion: int = None,
        minBucketVersion: int = None,
    ) -> None:
        self.id = id
        self.condition = condition
        self.parentConditions = parentConditions
        self.force = force
        self.variations = variations
        self.weights = weights
        self.key = key
        self.hashAttribute = hashAttribute
        self.fallbackAttribute = fallbackAttribute
        self.hashVersion = hashVersion
        self.range = range
        self.coverage = coverage
        self.namespace = namespace
        self.ranges = ranges
        self.meta = meta
        self.filters = filters
        self.seed = seed
        self.name = name
        self.phase = phase
        self.disableStickyBucketing = disableStickyBucketing
        self.bucketVersion = bucketVersion
        self.minBucketVersion = minBucketVersion

    @classmethod
    def from_dict(cls, data: dict) -> "FeatureRule":
        return cls(**_known_fields(cls, data))

    def to_dict(self) -> dict:
        data = {}
        for k in sorted(self._FIELDS):
            v = getattr(self, k)
            if v is not None and v is not False:
                data[k] = v
        return data


class Feature(object):
    def __init__(self, defaultValue=None, rules: list = None) -> None:
        self.defaultValue = defaultValue
        self.rules: List[FeatureRule] = [
            r if isinstance(r, FeatureRule) else FeatureRule.from_dict(r)
            for r in rules or []
            if isinstance(r, (FeatureRule, dict))
        ]

    @classmethod
    def from_dict(cls, data) -> "Feature":
        if isinstance(data, Feature):
            return data
        if not isinstance(data, dict):
            return cls()
        return cls(defaultValue=data.get("defaultValue"), rules=data.get("rules") or [])

    def to_dict(self) -> dict:
        return {
            "defaultValue": self.defaultValue,
            "rules": [rule.to_dict() for rule in self.rules],
        }


class FeatureResult(object):
    def __init__(
        self,
        value,
        source: str,
        experiment: Experiment = None,
        experimentResult: Result = None,
        ruleId: str = None,
    ) -> None:
        self.value = value
        self.source = source
        self.ruleId = ruleId
        self.experiment = experiment
        self.experimentResult = experimentResult
        self.on = bool(value)
        self.off = not bool(value)

    def to_dict(self) -> dict:
        data = {
            "value": self.value,
            "source": self.source,
            "on": self.on,
            "off": self.off,
        }
        if self.ruleId:
            data["ruleId"] = self.ruleId
        if self.experiment:
            data["experiment"] = self.experiment.to_dict()
        if self.experimentResult:
            data["experimentResult"] = self.experimentResult.to_dict()
        return data


@dataclass
class AutoExperimentResult:
    experiment: Experiment
    result: Result
    changeType: str
    redirectUrl: Optional[str] = None


@dataclass
class Options:
    url: str = ""
    api_host: Optional[str] = "https://cdn.growthbook.io"
    client_key: Optional[str] = None
    decryption_key: Optional[str] = None
    cache_ttl: int = 60
    enabled: bool = True
    qa_mode: bool = False
    hash_attribute: str = "id"
    fallback_attribute: Optional[str] = None
    sticky_bucketing: bool = True
    sticky_bucket_service: Optional[AbstractStickyBucketService] = None
    sticky_bucket_identifier_attributes: Optional[List[str]] = None
    on_experiment_viewed: Optional[Callable[[Experiment, Result], None]] = None
    on_feature_usage: Optional[Callable[[str, FeatureResult], None]] = None

    @property
    def sticky_bucketing_enabled(self) -> bool:
        return self.sticky_bucketing and self.sticky_bucket_service is not None


@dataclass
class UserContext:
    attributes: Dict[str, Any] = field(default_factory=dict)
    url: str = ""
    groups: Dict[str, bool] = field(default_factory=dict)
    forced_variations: Dict[str, int] = field(default_factory=dict)
    forced_features: Dict[str, Any] = field(default_factory=dict)
    overrides: Dict[str, ExperimentOverride] = field(default_factory=dict)
    sticky_bucket_assignment_docs: Dict[str, StickyAssignmentsDocument] = field(default_factory=dict)


@dataclass
class GlobalContext:
    options: Options
    features: Dict[str, Feature] = field(default_factory=dict)
    saved_groups: Dict[str, List[Any]] = field(default_factory=dict)


@dataclass
class StackContext:
    # Features whose resolution is in progress on the current call chain
    evaluated_features: Set[str] = field(default_factory=set)


@dataclass
class EvaluationContext:
    user: UserContext
    global_ctx: GlobalContext
    stack: StackContext = field(default_factory=StackContext)
