import logging

from typing import Callable, List, Optional, Tuple

from .bucketing import choose_variation, get_bucket_ranges, hash_to_unit, in_namespace, in_range
from .common_types import (
    EvaluationContext,
    Experiment,
    FeatureResult,
    FeatureRule,
    Filter,
    ParentCondition,
    Result,
)
from .conditions import eval_condition
from .sticky_bucket import (
    build_assignment_doc,
    get_document_key,
    get_sticky_bucket_experiment_key,
    is_version_blocked,
    merge_assignments,
)
from .url_targeting import get_query_string_override, is_url_targeted, url_is_valid

logger = logging.getLogger("featurebook.core")

ExperimentCallback = Callable[[Experiment, Result], None]


def stringify_attribute(value) -> str:
    # Match the string form other SDKs hash for non-string attributes
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def get_orig_hash_value(
    attr: Optional[str], fallback_attr: Optional[str], eval_context: EvaluationContext
) -> Tuple[str, object]:
    attributes = eval_context.user.attributes
    options = eval_context.global_ctx.options

    attr = attr or options.hash_attribute or "id"
    value = attributes.get(attr)
    if value is None or value == "":
        fallback_attr = fallback_attr or options.fallback_attribute
        if fallback_attr and attributes.get(fallback_attr) not in (None, ""):
            return fallback_attr, attributes[fallback_attr]
        return attr, ""
    return attr, value


def get_hash_value(
    attr: Optional[str], fallback_attr: Optional[str], eval_context: EvaluationContext
) -> Tuple[str, str]:
    attr, value = get_orig_hash_value(attr, fallback_attr, eval_context)
    return attr, stringify_attribute(value) if value != "" else ""


def _is_included_in_rollout(rule: FeatureRule, seed: str, eval_context: EvaluationContext) -> bool:
    if rule.coverage is None and rule.range is None:
        return True

    _, hash_value = get_hash_value(rule.hashAttribute, rule.fallbackAttribute, eval_context)
    if not hash_value:
        return False

    n = hash_to_unit(seed, hash_value, rule.hashVersion or 1)
    if n is None:
        return False
    if rule.range:
        return in_range(n, rule.range)
    return n <= rule.coverage


def _is_filtered_out(filters: List[Filter], eval_context: EvaluationContext) -> bool:
    for f in filters:
        _, hash_value = get_hash_value(f.get("attribute"), None, eval_context)
        if not hash_value:
            return True
        n = hash_to_unit(f.get("seed", ""), hash_value, f.get("hashVersion", 2))
        if n is None:
            return True
        if not any(in_range(n, r) for r in f.get("ranges", [])):
            return True
    return False


def eval_prereqs(
    parent_conditions: List[ParentCondition],
    eval_context: EvaluationContext,
    tracking_cb: ExperimentCallback = None,
    on_experiment_eval: ExperimentCallback = None,
) -> str:
    """Returns "pass", "fail", "gate" (a failed gating parent) or "cyclic"."""
    for parent in parent_conditions:
        parent_res = eval_feature(
            parent.get("id"), eval_context, tracking_cb=tracking_cb, on_experiment_eval=on_experiment_eval
        )
        if parent_res.source == "cyclicPrerequisite":
            return "cyclic"

        if not eval_condition(
            {"value": parent_res.value}, parent.get("condition") or {}, eval_context.global_ctx.saved_groups
        ):
            return "gate" if parent.get("gate") else "fail"
    return "pass"


def _experiment_from_rule(key: str, rule: FeatureRule) -> Experiment:
    return Experiment(
        key=rule.key or key,
        variations=rule.variations,
        coverage=rule.coverage,
        weights=rule.weights,
        hashAttribute=rule.hashAttribute,
        fallbackAttribute=rule.fallbackAttribute,
        namespace=rule.namespace,
        hashVersion=rule.hashVersion,
        meta=rule.meta,
        ranges=rule.ranges,
        name=rule.name,
        phase=rule.phase,
        seed=rule.seed,
        filters=rule.filters,
        condition=rule.condition,
        disableStickyBucketing=rule.disableStickyBucketing,
        bucketVersion=rule.bucketVersion,
        minBucketVersion=rule.minBucketVersion,
    )


def _resolve_feature(
    key: str,
    eval_context: EvaluationContext,
    tracking_cb: Optional[ExperimentCallback],
    on_experiment_eval: Optional[ExperimentCallback],
) -> FeatureResult:
    feature = eval_context.global_ctx.features[key]

    for rule in feature.rules:
        if rule.parentConditions:
            prereq = eval_prereqs(rule.parentConditions, eval_context, tracking_cb, on_experiment_eval)
            if prereq == "gate":
                logger.debug("Top-level prerequisite failed, feature %s", key)
                return FeatureResult(None, "prerequisite")
            if prereq == "cyclic":
                return FeatureResult(None, "cyclicPrerequisite")
            if prereq == "fail":
                logger.debug("Skip rule because of failing prerequisite, feature %s", key)
                continue

        if rule.condition and not eval_condition(
            eval_context.user.attributes, rule.condition, eval_context.global_ctx.saved_groups
        ):
            logger.debug("Skip rule because of failed condition, feature %s", key)
            continue

        if rule.filters and _is_filtered_out(rule.filters, eval_context):
            logger.debug("Skip rule because of filters, feature %s", key)
            continue

        if rule.force is not None:
            if not _is_included_in_rollout(rule, rule.seed or key, eval_context):
                logger.debug("Skip rule because user not included in rollout, feature %s", key)
                continue
            logger.debug("Force value from rule, feature %s", key)
            return FeatureResult(rule.force, "force", ruleId=rule.id)

        if not rule.variations:
            logger.warning("Skip invalid rule, feature %s", key)
            continue

        exp = _experiment_from_rule(key, rule)
        result = run_experiment(exp, feature_id=key, eval_context=eval_context, tracking_cb=tracking_cb)
        if on_experiment_eval:
            on_experiment_eval(exp, result)

        if not result.inExperiment:
            logger.debug("Skip rule because user not included in experiment, feature %s", key)
            continue
        if result.passthrough:
            logger.debug("Continue to next rule after passthrough variation, feature %s", key)
            continue

        logger.debug("Assign value from experiment, feature %s", key)
        return FeatureResult(result.value, "experiment", exp, result, ruleId=rule.id)

    logger.debug("Use default value for feature %s", key)
    return FeatureResult(feature.defaultValue, "defaultValue")


def eval_feature(
    key: str,
    eval_context: EvaluationContext = None,
    tracking_cb: ExperimentCallback = None,
    on_experiment_eval: ExperimentCallback = None,
) -> FeatureResult:
    """
    Resolves a single feature for the user in ``eval_context``.

    Rules are tried in order; parent conditions recurse into this function
    with the in-progress keys kept in ``eval_context.stack`` so that a
    cycle resolves to ``cyclicPrerequisite`` instead of looping.
    """
    if eval_context is None:
        raise ValueError("eval_context is required - eval_feature")

    if key in eval_context.user.forced_features:
        logger.debug("Forced value for feature %s", key)
        return FeatureResult(eval_context.user.forced_features[key], "override")

    if key not in eval_context.global_ctx.features:
        logger.warning("Unknown feature %s", key)
        return FeatureResult(None, "unknownFeature")

    in_progress = eval_context.stack.evaluated_features
    if key in in_progress:
        logger.warning("Cyclic prerequisite detected, stack: %s", in_progress)
        return FeatureResult(None, "cyclicPrerequisite")

    in_progress.add(key)
    try:
        return _resolve_feature(key, eval_context, tracking_cb, on_experiment_eval)
    except Exception:
        logger.exception("Failed to evaluate feature %s", key)
        return FeatureResult(None, "unknownFeature")
    finally:
        in_progress.discard(key)


def _get_sticky_bucket_assignments(experiment: Experiment, eval_context: EvaluationContext) -> dict:
    docs = eval_context.user.sticky_bucket_assignment_docs or {}
    options = eval_context.global_ctx.options
    attributes = eval_context.user.attributes

    candidates = []
    primary = experiment.hashAttribute or options.hash_attribute or "id"
    fallback = experiment.fallbackAttribute or options.fallback_attribute
    for attr in (primary, fallback):
        if not attr or attributes.get(attr) in (None, ""):
            continue
        candidates.append(docs.get(get_document_key(attr, stringify_attribute(attributes[attr]))))
    return merge_assignments(candidates)


def _get_sticky_bucket_variation(experiment: Experiment, eval_context: EvaluationContext) -> Tuple[int, bool]:
    """Returns (variation index or -1, whether an older bucket version blocks the user)."""
    assignments = _get_sticky_bucket_assignments(experiment, eval_context)
    if is_version_blocked(assignments, experiment.key, experiment.minBucketVersion):
        return -1, True

    variation_key = assignments.get(get_sticky_bucket_experiment_key(experiment.key, experiment.bucketVersion))
    if not variation_key:
        return -1, False

    for i, meta in enumerate(experiment.meta or []):
        if meta.get("key") == variation_key:
            return i, False
    return -1, False


def _persist_sticky_bucket(
    experiment: Experiment, hash_attribute: str, hash_value: str, result: Result, eval_context: EvaluationContext
) -> None:
    service = eval_context.global_ctx.options.sticky_bucket_service
    docs = eval_context.user.sticky_bucket_assignment_docs
    key = get_document_key(hash_attribute, hash_value)

    doc, changed = build_assignment_doc(
        docs.get(key),
        hash_attribute,
        hash_value,
        {get_sticky_bucket_experiment_key(experiment.key, experiment.bucketVersion): result.key},
    )
    if not changed:
        return

    docs[key] = doc
    try:
        service.save_assignments(doc)
    except Exception as e:
        logger.warning("Failed to save sticky bucket assignment for %s: %s", experiment.key, e)


def _get_experiment_result(
    experiment: Experiment,
    eval_context: EvaluationContext,
    variation_id: int = -1,
    hash_used: bool = False,
    feature_id: str = None,
    bucket: float = None,
    sticky_bucket_used: bool = False,
) -> Result:
    in_experiment = True
    if not isinstance(variation_id, int) or not 0 <= variation_id < len(experiment.variations):
        variation_id = 0
        in_experiment = False

    hash_attribute, hash_value = get_orig_hash_value(
        experiment.hashAttribute, experiment.fallbackAttribute, eval_context
    )

    return Result(
        featureId=feature_id,
        inExperiment=in_experiment,
        variationId=variation_id,
        value=experiment.variations[variation_id],
        hashUsed=hash_used,
        hashAttribute=hash_attribute,
        hashValue=hash_value,
        meta=experiment.get_meta(variation_id),
        bucket=bucket,
        stickyBucketUsed=sticky_bucket_used,
    )


def _is_excluded(experiment: Experiment, hash_value: str, eval_context: EvaluationContext) -> Optional[str]:
    """Targeting checks that a sticky bucket skips. Returns the reason a user is excluded."""
    if experiment.filters:
        if _is_filtered_out(experiment.filters, eval_context):
            return "filters"
    elif experiment.namespace and not in_namespace(hash_value, experiment.namespace):
        return "namespace"

    if experiment.include:
        try:
            if not experiment.include():
                return "include() returned false"
        except Exception:
            logger.warning("include() raised an Exception, experiment %s", experiment.key)
            return "include() raised an Exception"

    if experiment.condition and not eval_condition(
        eval_context.user.attributes, experiment.condition, eval_context.global_ctx.saved_groups
    ):
        return "failed condition"

    if experiment.parentConditions:
        if eval_prereqs(experiment.parentConditions, eval_context) != "pass":
            return "failed prerequisite"

    if experiment.groups:
        user_groups = eval_context.user.groups or {}
        if not any(user_groups.get(g) for g in experiment.groups):
            return "not in required group"

    return None


def run_experiment(
    experiment: Experiment,
    feature_id: Optional[str] = None,
    eval_context: EvaluationContext = None,
    tracking_cb: ExperimentCallback = None,
) -> Result:
    if eval_context is None:
        raise ValueError("eval_context is required - run_experiment")

    user = eval_context.user
    options = eval_context.global_ctx.options

    def excluded(**kwargs) -> Result:
        return _get_experiment_result(experiment, eval_context, feature_id=feature_id, **kwargs)

    if len(experiment.variations) < 2:
        logger.warning("Experiment %s has less than 2 variations, skip", experiment.key)
        return excluded()

    if not options.enabled:
        logger.debug("Skip experiment %s because the SDK is disabled", experiment.key)
        return excluded()

    override = user.overrides.get(experiment.key)
    if override:
        experiment = experiment.with_override(override)
        if override.get("force") is not None:
            logger.debug("Override forces variation %s, experiment %s", override["force"], experiment.key)
            return excluded(variation_id=override["force"])

    forced = get_query_string_override(experiment.key, user.url, len(experiment.variations))
    if forced is None:
        forced = user.forced_variations.get(experiment.key)
    if forced is not None:
        logger.debug("Force variation %s, experiment %s", forced, experiment.key)
        return excluded(variation_id=forced)

    if experiment.status == "draft" or not experiment.active:
        logger.debug("Experiment %s is not active, skip", experiment.key)
        return excluded()

    hash_attribute, hash_value = get_hash_value(experiment.hashAttribute, experiment.fallbackAttribute, eval_context)
    if not hash_value:
        logger.debug("Skip experiment %s because the hash attribute is empty", experiment.key)
        return excluded()

    sticky = options.sticky_bucketing_enabled and not experiment.disableStickyBucketing
    assigned, version_blocked = -1, False
    if sticky:
        assigned, version_blocked = _get_sticky_bucket_variation(experiment, eval_context)
    found_sticky_bucket = assigned >= 0

    if found_sticky_bucket:
        logger.debug("Found sticky bucket for experiment %s, variation %s", experiment.key, assigned)
    else:
        reason = _is_excluded(experiment, hash_value, eval_context)
        if reason:
            logger.debug("Skip experiment %s: %s", experiment.key, reason)
            return excluded()

    # URL targeting applies even to sticky buckets
    if experiment.url and not url_is_valid(user.url, experiment.url):
        logger.debug("Skip experiment %s because the URL is not targeted", experiment.key)
        return excluded()
    if experiment.urlPatterns and not is_url_targeted(user.url, experiment.urlPatterns):
        logger.debug("Skip experiment %s because the URL does not match its patterns", experiment.key)
        return excluded()

    n = hash_to_unit(experiment.seed or experiment.key, hash_value, experiment.hashVersion or 1)
    if n is None:
        logger.warning("Skip experiment %s because of invalid hashVersion", experiment.key)
        return excluded()

    if not found_sticky_bucket:
        coverage = experiment.coverage
        ranges = experiment.ranges or get_bucket_ranges(
            len(experiment.variations), 1 if coverage is None else coverage, experiment.weights
        )
        assigned = choose_variation(n, ranges)

    if version_blocked:
        logger.debug("Skip experiment %s because the sticky bucket version is blocked", experiment.key)
        return excluded(sticky_bucket_used=True)

    if assigned < 0:
        logger.debug("Skip experiment %s because user is not included in the rollout", experiment.key)
        return excluded()

    if experiment.force is not None:
        logger.debug("Force variation %s in experiment %s", experiment.force, experiment.key)
        return excluded(variation_id=experiment.force)

    if options.qa_mode:
        logger.debug("Skip experiment %s because of QA mode", experiment.key)
        return excluded()

    if experiment.status == "stopped":
        logger.debug("Skip experiment %s because it is stopped", experiment.key)
        return excluded()

    result = _get_experiment_result(
        experiment,
        eval_context,
        variation_id=assigned,
        hash_used=True,
        feature_id=feature_id,
        bucket=n,
        sticky_bucket_used=found_sticky_bucket,
    )

    if sticky:
        _persist_sticky_bucket(experiment, hash_attribute, hash_value, result, eval_context)

    if tracking_cb:
        tracking_cb(experiment, result)

    logger.debug("Assigned variation %d in experiment %s", assigned, experiment.key)
    return result
