from abc import ABC, abstractmethod
from time import time
from typing import Dict, Optional


class AbstractFeatureCache(ABC):
    """
    Optional persistent store for payloads, shared between processes or
    restarts. The repository reads it to warm up before its first fetch
    and writes every applied update through to it.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[Dict]:
        pass

    @abstractmethod
    def set(self, key: str, value: Dict, ttl: int) -> None:
        pass

    def clear(self) -> None:
        pass


class CacheEntry(object):
    def __init__(self, value: Dict, ttl: int) -> None:
        self.value = value
        self.expires = time() + ttl


class InMemoryFeatureCache(AbstractFeatureCache):
    def __init__(self) -> None:
        self.cache: Dict[str, CacheEntry] = {}

    def get(self, key: str) -> Optional[Dict]:
        entry = self.cache.get(key)
        if entry is None or entry.expires < time():
            return None
        return entry.value

    def set(self, key: str, value: Dict, ttl: int) -> None:
        self.cache[key] = CacheEntry(value, ttl)

    def clear(self) -> None:
        self.cache.clear()
