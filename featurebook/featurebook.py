#!/usr/bin/env python
"""
FeatureBook: deterministic feature flag and experiment evaluation on top
of GrowthBook-compatible payloads.
"""

import logging
import threading

from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from .cache_interfaces import AbstractFeatureCache
from .common_types import (
    AutoExperimentResult,
    EvaluationContext,
    Experiment,
    Feature,
    FeatureResult,
    GlobalContext,
    Options,
    Result,
    StackContext,
    UserContext,
)
from .core import eval_feature as core_eval_feature, run_experiment, stringify_attribute
from .repository import AsyncFeatureRepository, FeatureRepository, get_feature_repository
from .sticky_bucket import AbstractStickyBucketService
from .transport import DEFAULT_API_HOST, AsyncHttpTransport, HttpTransport, SSEClient
from .url_targeting import get_auto_experiment_change_type, merge_query_strings

logger = logging.getLogger("featurebook")


class FeatureBook(object):
    def __init__(
        self,
        enabled: bool = True,
        attributes: dict = None,
        url: str = "",
        features: dict = None,
        saved_groups: dict = None,
        experiments: list = None,
        qa_mode: bool = False,
        on_experiment_viewed: Callable[[Experiment, Result], None] = None,
        on_feature_usage: Callable[[str, FeatureResult], None] = None,
        api_host: str = "",
        client_key: str = "",
        decryption_key: str = "",
        cache_ttl: int = 60,
        forced_variations: dict = None,
        forced_features: dict = None,
        overrides: dict = None,
        groups: dict = None,
        hash_attribute: str = "id",
        fallback_attribute: str = None,
        sticky_bucketing: bool = True,
        sticky_bucket_service: AbstractStickyBucketService = None,
        sticky_bucket_identifier_attributes: List[str] = None,
        repository: FeatureRepository = None,
        persistent_cache: AbstractFeatureCache = None,
        streaming: bool = False,
    ) -> None:
        self._options = Options(
            url=url,
            api_host=api_host or DEFAULT_API_HOST,
            client_key=client_key or None,
            decryption_key=decryption_key or None,
            cache_ttl=cache_ttl,
            enabled=enabled,
            qa_mode=qa_mode,
            hash_attribute=hash_attribute,
            fallback_attribute=fallback_attribute,
            sticky_bucketing=sticky_bucketing,
            sticky_bucket_service=sticky_bucket_service,
            sticky_bucket_identifier_attributes=sticky_bucket_identifier_attributes,
            on_experiment_viewed=on_experiment_viewed,
            on_feature_usage=on_feature_usage,
        )
        self._derive_sticky_attributes = not sticky_bucket_identifier_attributes
        self._sticky_bucket_attributes: Optional[Dict[str, str]] = None

        self._global_ctx = GlobalContext(options=self._options, saved_groups=dict(saved_groups or {}))
        self._user_ctx = UserContext(
            attributes=dict(attributes or {}),
            url=url,
            groups=dict(groups or {}),
            forced_variations=dict(forced_variations or {}),
            forced_features=dict(forced_features or {}),
            overrides=dict(overrides or {}),
        )
        self._auto_experiments: List[Experiment] = []

        self._tracked: Set[Tuple[str, str, str, int]] = set()
        self._tracked_lock = threading.Lock()
        self._assigned: Dict[str, Dict[str, Any]] = {}
        self._assigned_lock = threading.Lock()
        self._subscriptions: List[Callable[[Experiment, Result], None]] = []
        self._subscriptions_lock = threading.Lock()

        self._persistent_cache = persistent_cache
        self._repository = repository
        if self._repository is None and client_key:
            self._repository = get_feature_repository(
                HttpTransport(api_host, client_key, decryption_key or None), cache_ttl, persistent_cache
            )
        self._async_repository: Optional[AsyncFeatureRepository] = None
        self._unsubscribers: List[Callable[[], None]] = []
        if self._repository is not None:
            self._unsubscribers.append(self._repository.subscribe(self._on_payload))

        if features:
            self.set_features(features)
        if experiments:
            self.set_auto_experiments(experiments)

        self._streaming = streaming
        if self._streaming:
            self.load_features()
            self.start_auto_refresh()

    # Payload handling

    def _on_payload(self, payload: Dict) -> None:
        if not payload:
            return
        features = self._parse_features(payload.get("features") or {})
        saved_groups = payload.get("savedGroups") or {}
        # Swap in a new context so an evaluation in progress keeps a consistent view
        self._global_ctx = GlobalContext(options=self._options, features=features, saved_groups=saved_groups)
        if "experiments" in payload:
            self.set_auto_experiments(payload.get("experiments") or [])
        self.refresh_sticky_buckets()

    def load_features(self) -> None:
        if self._repository is None:
            raise ValueError("Must specify `client_key` or a repository to load features")
        payload = self._repository.get_payload()
        if payload is not None:
            self._on_payload(payload)

    async def load_features_async(self) -> None:
        if self._async_repository is None:
            if not self._options.client_key:
                raise ValueError("Must specify `client_key` to load features")
            self._async_repository = AsyncFeatureRepository(
                AsyncHttpTransport(self._options.api_host, self._options.client_key, self._options.decryption_key),
                self._options.cache_ttl,
                self._persistent_cache,
            )
            self._unsubscribers.append(self._async_repository.subscribe(self._on_payload))
        payload = await self._async_repository.get_payload()
        if payload is not None:
            self._on_payload(payload)

    def refresh_features(self) -> None:
        """Forces a fetch, bypassing the TTL."""
        if self._repository is None:
            raise ValueError("Must specify `client_key` or a repository to refresh features")
        self._repository.refresh(force=True)

    def start_auto_refresh(self) -> None:
        if not self._options.client_key or self._repository is None:
            raise ValueError("Must specify `client_key` to start features streaming")
        client = SSEClient(
            api_host=self._options.api_host,
            client_key=self._options.client_key,
            on_event=self._repository.handle_stream_event,
        )
        self._repository.start_streaming(client)

    def stop_auto_refresh(self) -> None:
        if self._repository is not None:
            self._repository.stop_streaming()

    @staticmethod
    def _parse_features(features: dict) -> Dict[str, Feature]:
        parsed = {}
        for key, feature in features.items():
            try:
                parsed[key] = Feature.from_dict(feature)
            except TypeError as e:
                logger.warning("Skipping malformed feature %s: %s", key, e)
        return parsed

    def set_features(self, features: dict) -> None:
        self._global_ctx = GlobalContext(
            options=self._options,
            features=self._parse_features(features),
            saved_groups=self._global_ctx.saved_groups,
        )
        self.refresh_sticky_buckets()

    def get_features(self) -> Dict[str, Feature]:
        return self._global_ctx.features

    def set_saved_groups(self, saved_groups: dict) -> None:
        self._global_ctx = GlobalContext(
            options=self._options, features=self._global_ctx.features, saved_groups=saved_groups
        )

    def set_auto_experiments(self, experiments: list) -> None:
        parsed = []
        for data in experiments:
            try:
                parsed.append(data if isinstance(data, Experiment) else Experiment.from_dict(data))
            except (TypeError, AttributeError) as e:
                logger.warning("Skipping malformed auto experiment: %s", e)
        self._auto_experiments = parsed

    def get_auto_experiments(self) -> List[Experiment]:
        return self._auto_experiments

    # User context

    def set_attributes(self, attributes: dict) -> None:
        self._user_ctx.attributes = attributes
        self.refresh_sticky_buckets()

    def get_attributes(self) -> dict:
        return self._user_ctx.attributes

    def set_url(self, url: str) -> None:
        self._user_ctx.url = url
        self._options.url = url

    def set_forced_variations(self, forced_variations: dict) -> None:
        self._user_ctx.forced_variations = forced_variations

    def set_forced_features(self, forced_features: dict) -> None:
        self._user_ctx.forced_features = forced_features

    def set_overrides(self, overrides: dict) -> None:
        self._user_ctx.overrides = overrides

    def _get_eval_context(self) -> EvaluationContext:
        # Kicks off a background revalidation when the cached payload is stale
        if self._repository is not None and self._repository.snapshot is not None:
            self._repository.get_payload()

        return EvaluationContext(
            user=self._user_ctx,
            global_ctx=self._global_ctx,
            stack=StackContext(),
        )

    # Evaluation

    def eval_feature(self, key: str) -> FeatureResult:
        try:
            result = core_eval_feature(
                key,
                self._get_eval_context(),
                tracking_cb=self._track,
                on_experiment_eval=self._fire_subscriptions,
            )
        except Exception:
            logger.exception("Failed to evaluate feature %s", key)
            result = FeatureResult(None, "unknownFeature")

        if self._options.on_feature_usage:
            try:
                self._options.on_feature_usage(key, result)
            except Exception as e:
                logger.warning("Error in feature usage callback: %s", e)
        return result

    def is_on(self, key: str) -> bool:
        return self.eval_feature(key).on

    def is_off(self, key: str) -> bool:
        return self.eval_feature(key).off

    def get_feature_value(self, key: str, fallback):
        res = self.eval_feature(key)
        return res.value if res.value is not None else fallback

    def run(self, experiment: Experiment) -> Result:
        try:
            result = run_experiment(experiment, eval_context=self._get_eval_context(), tracking_cb=self._track)
        except Exception:
            logger.exception("Failed to run experiment %s", experiment.key)
            variations = experiment.variations or [None]
            return Result(
                variationId=0,
                inExperiment=False,
                value=variations[0],
                hashUsed=False,
                hashAttribute=experiment.hashAttribute or self._options.hash_attribute,
                hashValue="",
                featureId=None,
            )
        self._fire_subscriptions(experiment, result)
        return result

    def _run_auto_experiment(self, experiment: Experiment) -> AutoExperimentResult:
        result = self.run(experiment)
        change_type = get_auto_experiment_change_type(experiment)

        redirect_url = None
        value = result.value
        if result.inExperiment and change_type in ("redirect", "both") and isinstance(value, dict):
            target = value.get("urlRedirect")
            if target:
                if experiment.persistQueryString:
                    target = merge_query_strings(self._user_ctx.url, target)
                if target != self._user_ctx.url:
                    redirect_url = target

        return AutoExperimentResult(experiment, result, change_type, redirect_url)

    def run_auto_experiments(self) -> List[AutoExperimentResult]:
        """
        Evaluates every non-manual auto experiment for the current URL.

        The caller applies the outcome: navigate when ``redirectUrl`` is
        set, otherwise apply the variation's visual changes in place.
        """
        return [self._run_auto_experiment(exp) for exp in self._auto_experiments if not exp.manual]

    def trigger_experiment(self, key: str) -> List[AutoExperimentResult]:
        """Runs the manual auto experiments registered under ``key``."""
        return [self._run_auto_experiment(exp) for exp in self._auto_experiments if exp.manual and exp.key == key]

    # Tracking and subscriptions

    def _track(self, experiment: Experiment, result: Result) -> None:
        if not self._options.on_experiment_viewed:
            return

        key = (experiment.key, result.hashAttribute, str(result.hashValue), result.variationId)
        with self._tracked_lock:
            if key in self._tracked:
                return
            self._tracked.add(key)

        try:
            self._options.on_experiment_viewed(experiment, result)
        except Exception as e:
            logger.warning("Error in tracking callback for %s: %s", experiment.key, e)

    def subscribe(self, callback: Callable[[Experiment, Result], None]) -> Callable[[], None]:
        with self._subscriptions_lock:
            self._subscriptions.append(callback)

        def unsubscribe() -> None:
            with self._subscriptions_lock:
                if callback in self._subscriptions:
                    self._subscriptions.remove(callback)

        return unsubscribe

    def _fire_subscriptions(self, experiment: Experiment, result: Result) -> None:
        with self._assigned_lock:
            prev = self._assigned.get(experiment.key)
            if (
                prev
                and prev["result"].inExperiment == result.inExperiment
                and prev["result"].variationId == result.variationId
            ):
                return
            self._assigned[experiment.key] = {"experiment": experiment, "result": result}

        with self._subscriptions_lock:
            callbacks = list(self._subscriptions)
        for cb in callbacks:
            try:
                cb(experiment, result)
            except Exception as e:
                logger.warning("Error in subscription callback: %s", e)

    def get_all_results(self) -> Dict[str, Dict[str, Any]]:
        with self._assigned_lock:
            return self._assigned.copy()

    # Sticky bucketing

    def _derive_sticky_bucket_identifier_attributes(self) -> List[str]:
        attributes = set()
        default = self._options.hash_attribute or "id"
        for feature in self._global_ctx.features.values():
            for rule in feature.rules:
                if rule.variations:
                    attributes.add(rule.hashAttribute or default)
                    if rule.fallbackAttribute:
                        attributes.add(rule.fallbackAttribute)
        for exp in self._auto_experiments:
            attributes.add(exp.hashAttribute or default)
            if exp.fallbackAttribute:
                attributes.add(exp.fallbackAttribute)
        if self._options.fallback_attribute:
            attributes.add(self._options.fallback_attribute)
        return sorted(attributes)

    def _get_sticky_bucket_attributes(self) -> Dict[str, str]:
        if self._derive_sticky_attributes:
            self._options.sticky_bucket_identifier_attributes = self._derive_sticky_bucket_identifier_attributes()

        attributes = {}
        for attr in self._options.sticky_bucket_identifier_attributes or []:
            value = self._user_ctx.attributes.get(attr)
            if value is not None and value != "":
                attributes[attr] = stringify_attribute(value)
        return attributes

    def refresh_sticky_buckets(self, force: bool = False) -> None:
        service = self._options.sticky_bucket_service
        if not self._options.sticky_bucketing_enabled:
            return

        attributes = self._get_sticky_bucket_attributes()
        if not force and attributes == self._sticky_bucket_attributes:
            logger.debug("Skipping refresh of sticky bucket assignments, no changes")
            return

        self._sticky_bucket_attributes = attributes
        try:
            docs = service.get_all_assignments(attributes)
        except Exception as e:
            logger.warning("Failed to load sticky bucket assignments: %s", e)
            docs = {}
        self._user_ctx.sticky_bucket_assignment_docs = dict(docs or {})

    def destroy(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

        with self._subscriptions_lock:
            self._subscriptions.clear()
        with self._tracked_lock:
            self._tracked.clear()
        with self._assigned_lock:
            self._assigned.clear()
        self._options.on_experiment_viewed = None
        self._options.on_feature_usage = None
        self._auto_experiments = []
        self._global_ctx = GlobalContext(options=self._options)
