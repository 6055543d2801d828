import json
import logging

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple, TypedDict

logger = logging.getLogger("featurebook.sticky_bucket")


class StickyAssignmentsDocument(TypedDict):
    attributeName: str
    attributeValue: str
    # "{experimentKey}__{bucketVersion}" -> variation key
    assignments: Dict[str, str]


def get_document_key(attribute_name: str, attribute_value: str) -> str:
    return f"{attribute_name}||{attribute_value}"


def get_sticky_bucket_experiment_key(experiment_key: str, bucket_version: int = 0) -> str:
    return f"{experiment_key}__{bucket_version or 0}"


class AbstractStickyBucketService(ABC):
    @abstractmethod
    def get_assignments(self, attributeName: str, attributeValue: str) -> Optional[StickyAssignmentsDocument]:
        pass

    @abstractmethod
    def save_assignments(self, doc: StickyAssignmentsDocument) -> None:
        pass

    def get_key(self, attributeName: str, attributeValue: str) -> str:
        return get_document_key(attributeName, attributeValue)

    # Backends that support batched reads should override this
    def get_all_assignments(self, attributes: Dict[str, str]) -> Dict[str, StickyAssignmentsDocument]:
        docs = {}
        for attributeName, attributeValue in attributes.items():
            doc = self.get_assignments(attributeName, attributeValue)
            if doc:
                docs[self.get_key(attributeName, attributeValue)] = doc
        return docs


class InMemoryStickyBucketService(AbstractStickyBucketService):
    def __init__(self) -> None:
        self.docs: Dict[str, StickyAssignmentsDocument] = {}

    def get_assignments(self, attributeName: str, attributeValue: str) -> Optional[StickyAssignmentsDocument]:
        return self.docs.get(self.get_key(attributeName, attributeValue), None)

    def save_assignments(self, doc: StickyAssignmentsDocument) -> None:
        self.docs[self.get_key(doc["attributeName"], doc["attributeValue"])] = doc

    def destroy(self) -> None:
        self.docs.clear()


class KeyValueStickyBucketService(AbstractStickyBucketService):
    """
    Stores each document as JSON in a key/value backend.

    ``backend`` only needs ``get(key)`` returning a str/bytes or None and
    ``set(key, value)``, which a Redis client already provides.
    """

    def __init__(self, backend, prefix: str = "gbStickyBuckets__") -> None:
        self.backend = backend
        self.prefix = prefix

    def get_assignments(self, attributeName: str, attributeValue: str) -> Optional[StickyAssignmentsDocument]:
        raw = self.backend.get(self.prefix + self.get_key(attributeName, attributeValue))
        if not raw:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            doc = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring corrupt sticky bucket document for %s", attributeName)
            return None
        if not isinstance(doc, dict) or not isinstance(doc.get("assignments"), dict):
            return None
        return doc

    def save_assignments(self, doc: StickyAssignmentsDocument) -> None:
        key = self.get_key(doc["attributeName"], doc["attributeValue"])
        self.backend.set(self.prefix + key, json.dumps(doc))


def merge_assignments(docs: List[Optional[StickyAssignmentsDocument]]) -> Dict[str, str]:
    """
    Merges documents given in priority order (primary identifier first).

    Each attribution key already carries its bucket version, so documents
    only conflict on an identical key; the earlier document wins.
    """
    merged: Dict[str, str] = {}
    for doc in docs:
        if not doc:
            continue
        for k, v in (doc.get("assignments") or {}).items():
            merged.setdefault(k, v)
    return merged


def is_version_blocked(assignments: Dict[str, str], experiment_key: str, min_bucket_version: int) -> bool:
    return any(
        get_sticky_bucket_experiment_key(experiment_key, v) in assignments
        for v in range(min_bucket_version or 0)
    )


def build_assignment_doc(
    existing: Optional[StickyAssignmentsDocument],
    attribute_name: str,
    attribute_value: str,
    assignments: Dict[str, str],
) -> Tuple[StickyAssignmentsDocument, bool]:
    """Returns the updated document and whether it differs from ``existing``."""
    previous = (existing or {}).get("assignments") or {}
    merged = {**previous, **assignments}
    doc: StickyAssignmentsDocument = {
        "attributeName": attribute_name,
        "attributeValue": attribute_value,
        "assignments": merged,
    }
    return doc, merged != previous
