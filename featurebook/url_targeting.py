import logging
import re

from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, parse_qsl, urlencode, urljoin, urlparse, urlunparse

logger = logging.getLogger("featurebook.url_targeting")

_PLACEHOLDER = "_____"


def get_query_string_override(key: str, url: str, num_variations: int) -> Optional[int]:
    if not url:
        return None
    res = urlparse(url)
    if not res.query:
        return None
    qs = parse_qs(res.query)
    if key not in qs:
        return None
    variation = qs[key][0]
    if not re.fullmatch(r"[0-9]+", variation):
        return None
    index = int(variation)
    if index >= num_variations:
        return None
    return index


def url_is_valid(url: str, pattern: str) -> bool:
    """Legacy ``experiment.url`` regex targeting, tried on the full URL then the path."""
    if not url:
        return False
    try:
        r = re.compile(pattern)
    except re.error:
        # An unusable pattern shouldn't hide the experiment
        return True
    if r.search(url):
        return True
    path_only = re.sub(r"^[^/]*/", "/", re.sub(r"^https?://", "", url))
    return bool(r.search(path_only))


def _simple_part_matches(actual: str, pattern: str, is_path: bool) -> bool:
    escaped = re.escape(pattern).replace(re.escape(_PLACEHOLDER), ".*")
    if is_path:
        escaped = "/?" + re.sub(r"(^\\?/|\\?/$)", "", escaped) + "/?"
    return re.match("^" + escaped + "$", actual, re.IGNORECASE) is not None


def _simple_target_matches(actual, pattern: str) -> bool:
    # A missing scheme with a host present gets "https://"
    pattern = re.sub(r"^([^:/?]*)\.", r"https://\1.", pattern).replace("*", _PLACEHOLDER)
    expected = urlparse(urljoin("https://" + _PLACEHOLDER + "/", pattern))

    comps = [
        (actual.netloc, expected.netloc, False),
        (actual.path or "/", expected.path or "/", True),
    ]
    if expected.fragment:
        comps.append((actual.fragment, expected.fragment, False))

    actual_qs = dict(parse_qsl(actual.query, keep_blank_values=True))
    for k, v in parse_qsl(expected.query, keep_blank_values=True):
        comps.append((actual_qs.get(k, ""), v, False))

    return all(_simple_part_matches(a, p, is_path) for a, p, is_path in comps)


def _target_matches(url: str, target_type: str, pattern: str) -> bool:
    try:
        parsed = urlparse(urljoin("https://_/", url))
        if target_type == "regex":
            r = re.compile(pattern)
            relative = urlunparse(("", "", parsed.path, parsed.params, parsed.query, parsed.fragment))
            return bool(r.search(parsed.geturl()) or r.search(relative))
        if target_type == "simple":
            return _simple_target_matches(parsed, pattern)
    except (re.error, ValueError, TypeError) as e:
        logger.debug("Ignoring URL target %s: %s", pattern, e)
    return False


def is_url_targeted(url: str, targets: List[Dict[str, Any]]) -> bool:
    """
    Evaluates ``urlPatterns`` targets. Any matching exclude target wins;
    otherwise the URL must match at least one include target (if there
    are any).
    """
    if not targets:
        return False

    has_includes = False
    included = False
    for target in targets:
        match = _target_matches(url, target.get("type", "simple"), target.get("pattern", ""))
        if target.get("include") is False:
            if match:
                return False
        else:
            has_includes = True
            if match:
                included = True

    return included or not has_includes


def get_auto_experiment_change_type(experiment) -> str:
    """Classifies what applying a variation does to the page: redirect, visual, both or unknown."""
    variations = [v for v in experiment.variations if isinstance(v, dict)]
    redirect = bool(experiment.urlPatterns) and any("urlRedirect" in v for v in variations)
    visual = any(v.get("domMutations") or "css" in v or "js" in v for v in variations)

    if redirect and visual:
        return "both"
    if redirect:
        return "redirect"
    if visual:
        return "visual"
    return "unknown"


def merge_query_strings(current_url: str, redirect_url: str) -> str:
    """Carries the current page's query params over to ``redirect_url`` without overriding its own."""
    current = urlparse(current_url or "")
    target = urlparse(redirect_url)
    params = dict(parse_qsl(current.query, keep_blank_values=True))
    params.update(parse_qsl(target.query, keep_blank_values=True))
    return urlunparse(target._replace(query=urlencode(params)))
