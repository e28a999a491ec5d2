import collections
import datetime
import logging
import threading
import time
import typing

from . import edge_hook
from .exceptions import ConfigurationError, MethodNotAllowed
from .fallback import FallbackMapper
from .models import SAFE_METHODS, CacheEntry, CacheKey, ErrorMapping, normalize_methods

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = int(datetime.timedelta(minutes=5).total_seconds())
MAX_TTL_SECONDS = int(datetime.timedelta(days=365).total_seconds())
DEFAULT_CACHE_CAPACITY = 10_000


class TtlPolicy(
    collections.namedtuple(
        "TtlPolicy",
        ["min_ttl", "default_ttl", "max_ttl"],
        defaults=(0, DEFAULT_TTL_SECONDS, MAX_TTL_SECONDS),
    )
):
    """TTL bounds in seconds, applied the way CloudFront cache policies do.

    With all three bounds at zero every stored response is already expired,
    so each request goes back to the origin. That is a supported "always
    fresh" mode, not a misconfiguration.
    """

    def validate(self):
        if not 0 <= self.min_ttl <= self.default_ttl <= self.max_ttl:
            raise ConfigurationError(
                "TTL bounds must satisfy 0 <= min <= default <= max, "
                f"got min={self.min_ttl} default={self.default_ttl} max={self.max_ttl}"
            )
        return self

    @property
    def always_fresh(self) -> bool:
        return self.min_ttl == self.default_ttl == self.max_ttl == 0

    def effective_ttl(self, requested: typing.Optional[int] = None) -> int:
        if requested is None:
            return self.default_ttl
        return max(self.min_ttl, min(requested, self.max_ttl))


class CacheStore:
    """Shared CacheEntry mapping with a capacity bound.

    When full, expired entries are dropped first, then the least frequently
    read entry goes, oldest first among equals. A put for an existing key
    replaces it (last writer wins).
    """

    def __init__(self, capacity: int = DEFAULT_CACHE_CAPACITY):
        if capacity <= 0:
            raise ConfigurationError("Cache capacity must be positive")
        self.capacity = capacity
        self._lock = threading.Lock()
        self._entries: typing.Dict[CacheKey, typing.Tuple[CacheEntry, int]] = {}
        # read count -> keys in insertion order
        self._freq_count = collections.defaultdict(collections.OrderedDict)
        self._min_freq = 0

    def get(self, key: CacheKey) -> typing.Optional[CacheEntry]:
        with self._lock:
            if key not in self._entries:
                return None
            entry, freq = self._entries[key]
            self._unlink(key, freq)
            self._link(key, freq + 1)
            self._entries[key] = (entry, freq + 1)
            return entry

    def put(self, entry: CacheEntry) -> None:
        with self._lock:
            if entry.key in self._entries:
                _, freq = self._entries[entry.key]
                self._entries[entry.key] = (entry, freq)
                return
            if len(self._entries) >= self.capacity:
                self._purge_expired(entry.stored_at)
            if len(self._entries) >= self.capacity:
                victim, _ = self._freq_count[self._min_freq].popitem(last=False)
                if not self._freq_count[self._min_freq]:
                    del self._freq_count[self._min_freq]
                del self._entries[victim]
                logger.debug("Evicted %s %s to make room", victim.method, victim.path)
            self._entries[entry.key] = (entry, 1)
            self._link(entry.key, 1)
            self._min_freq = 1

    def evict(self, key: CacheKey, expected: typing.Optional[CacheEntry] = None) -> None:
        """Drop ``key``, but only if it still holds ``expected`` when one is given."""
        with self._lock:
            if key not in self._entries:
                return
            entry, freq = self._entries[key]
            if expected is not None and entry is not expected:
                return
            self._remove(key, freq)

    def purge_expired(self, now) -> int:
        with self._lock:
            return self._purge_expired(now)

    def _purge_expired(self, now) -> int:
        expired = [
            (key, freq)
            for key, (entry, freq) in self._entries.items()
            if not entry.is_fresh(now)
        ]
        for key, freq in expired:
            self._remove(key, freq)
        return len(expired)

    def _remove(self, key, freq):
        del self._entries[key]
        self._unlink(key, freq)
        self._min_freq = min(self._freq_count) if self._freq_count else 0

    def _link(self, key, freq):
        self._freq_count[freq][key] = None

    def _unlink(self, key, freq):
        self._freq_count[freq].pop(key)
        if not self._freq_count[freq]:
            del self._freq_count[freq]
            if freq == self._min_freq:
                self._min_freq = freq + 1

    def __len__(self):
        return len(self._entries)

    def __contains__(self, key):
        return key in self._entries


def cache_key_for(request) -> CacheKey:
    # original path, before any rewrite; query string and cookies never count
    return CacheKey(method=request.method, path=request.path)


class CacheBehavior:
    def __init__(
        self,
        policy: TtlPolicy = TtlPolicy(),
        store: typing.Optional[CacheStore] = None,
        allowed_methods=SAFE_METHODS,
        mapping: ErrorMapping = ErrorMapping(),
        clock=time.monotonic,
    ):
        self.policy = policy.validate()
        self.store = store if store is not None else CacheStore()
        self.allowed_methods = normalize_methods(allowed_methods)
        self.mapping = mapping
        self._clock = clock

    def check_method(self, request):
        if request.method not in self.allowed_methods:
            raise MethodNotAllowed(request.method, self.allowed_methods)

    def lookup(self, key: CacheKey):
        entry = self.store.get(key)
        if entry is None:
            logger.debug("Cache miss for %s %s", key.method, key.path)
            return None
        if entry.is_fresh(self._clock()):
            logger.debug("Cache hit for %s %s", key.method, key.path)
            return entry.response
        logger.debug("Cache entry expired for %s %s", key.method, key.path)
        self.store.evict(key, entry)
        return None

    def lookup_or_fetch(self, request, fetch):
        """Serve ``request`` from the cache, or from ``fetch`` on a miss.

        ``fetch`` takes an object path and returns an ``OriginObject`` or an
        ``OriginNotFound``. It only ever sees the rewritten path.
        """
        self.check_method(request)
        key = cache_key_for(request)
        response = self.lookup(key)
        if response is not None:
            return response

        decision = edge_hook.rewrite(request)
        result = fetch(decision.rewritten_path)
        response = FallbackMapper(fetch, self.mapping).map(result)

        ttl = self.policy.effective_ttl(result.max_age if result.found else None)
        self.store.put(
            CacheEntry(key=key, response=response, stored_at=self._clock(), ttl=ttl)
        )
        return response
