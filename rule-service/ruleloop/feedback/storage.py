"""
Redis storage layer for the rule loop.

Thin key/blob store used by the feedback log and the rule version history:
- Connection pooling via redis.from_url (TLS aware)
- Circuit breaker around every call (fail fast when Redis is down)
- JSON serialization for dict/list values
- Set-if-absent, sorted sets and lists
- In-memory client when persistence is disabled
"""
import json
import logging
import threading
from collections import defaultdict
from typing import Optional, Any, Callable, Dict, List

import redis

from ..config.settings import StorageConfig
from ..utils.circuit_breaker import CircuitBreaker
from ..utils.errors import StorageError, CircuitBreakerError


class RedisStorage:
    """
    Redis client wrapper with circuit breaker and key namespacing.

    All keys are prefixed with ``config.key_prefix``; callers build keys
    with :meth:`key`. Every Redis failure surfaces as StorageError.

    Usage:
        storage = RedisStorage(StorageConfig())
        storage.set_if_absent(storage.key("event", event_id), payload)
        storage.zadd(storage.key("timeline", "all"), event_id, timestamp)
    """

    def __init__(
        self,
        config: Optional[StorageConfig] = None,
        disabled: Optional[bool] = None,
        on_breaker_state_change: Optional[Callable] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or StorageConfig()
        self.logger = logger or logging.getLogger(__name__)
        self._disabled = self.config.disable_persistence if disabled is None else disabled

        self.circuit_breaker = CircuitBreaker(
            name="redis",
            failure_threshold=self.config.breaker_failure_threshold,
            timeout_seconds=self.config.breaker_timeout_seconds,
            on_state_change=on_breaker_state_change,
        )

        self._client = None

        if self._disabled:
            self._client = _InMemoryRedisClient()
            self.logger.info("Persistence disabled, using in-memory storage")
        else:
            self._initialize_connection()

    @property
    def disabled(self) -> bool:
        return self._disabled

    def _initialize_connection(self):
        """Initialize Redis connection pool."""
        cfg = self.config
        protocol = "rediss" if cfg.tls_enabled else "redis"
        if cfg.password:
            redis_url = f"{protocol}://default:{cfg.password}@{cfg.host}:{cfg.port}/{cfg.db}"
        else:
            redis_url = f"{protocol}://{cfg.host}:{cfg.port}/{cfg.db}"

        kwargs = {
            "max_connections": cfg.max_connections,
            "decode_responses": True,
            "socket_connect_timeout": cfg.socket_timeout_seconds,
            "socket_timeout": cfg.socket_timeout_seconds,
        }
        if cfg.tls_enabled:
            kwargs["ssl_cert_reqs"] = None

        try:
            self._client = redis.from_url(redis_url, **kwargs)
            self._client.ping()
        except redis.RedisError as e:
            raise StorageError(f"Failed to connect to Redis at {cfg.host}:{cfg.port}: {e}") from e

        self.logger.info(
            "Connected to Redis",
            extra={"host": cfg.host, "port": cfg.port, "db": cfg.db, "tls": cfg.tls_enabled},
        )

    def key(self, *parts: str) -> str:
        """Build a namespaced key: ``<prefix>:<part>:<part>...``."""
        return ":".join((self.config.key_prefix,) + tuple(str(p) for p in parts))

    def _execute(self, description: str, func: Callable, *args, **kwargs) -> Any:
        try:
            return self.circuit_breaker.call(func, *args, **kwargs)
        except CircuitBreakerError:
            raise
        except redis.RedisError as e:
            raise StorageError(f"Failed to {description}: {e}") from e

    @staticmethod
    def _encode(value: Any) -> str:
        if isinstance(value, (dict, list)):
            return json.dumps(value, sort_keys=True)
        return value

    @staticmethod
    def _decode(value: Any) -> Any:
        if value is None:
            return None
        try:
            return json.loads(value)
        except (json.JSONDecodeError, TypeError):
            return value

    # Strings -----------------------------------------------------------------
    def set(self, key: str, value: Any) -> bool:
        """
        Set key to value, JSON-encoding dicts and lists.

        Raises:
            StorageError: On Redis failure
        """
        return bool(self._execute(f"set key {key}", self._client.set, key, self._encode(value)))

    def set_if_absent(self, key: str, value: Any) -> bool:
        """
        Set key only if it does not exist (SET NX).

        Returns:
            True if the key was written, False if it already existed

        Raises:
            StorageError: On Redis failure
        """
        result = self._execute(f"set key {key}", self._client.set, key, self._encode(value), nx=True)
        return bool(result)

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get value by key, JSON-decoding when possible.

        Raises:
            StorageError: On Redis failure
        """
        value = self._execute(f"get key {key}", self._client.get, key)
        if value is None:
            return default
        return self._decode(value)

    def get_many(self, keys: List[str]) -> Dict[str, Any]:
        """Get multiple keys; missing keys are excluded from the result."""
        if not keys:
            return {}
        values = self._execute("get multiple keys", self._client.mget, keys)
        return {
            key: self._decode(value)
            for key, value in zip(keys, values)
            if value is not None
        }

    def exists(self, key: str) -> bool:
        return bool(self._execute(f"check key {key}", self._client.exists, key))

    # Sorted sets -------------------------------------------------------------
    def zadd(self, key: str, member: str, score: float) -> int:
        return self._execute(f"zadd {key}", self._client.zadd, key, {member: score})

    def zrangebyscore(self, key: str, min_score: Any = "-inf", max_score: Any = "+inf") -> List[str]:
        """Members with min_score <= score <= max_score, ascending by score then member."""
        return list(self._execute(f"zrangebyscore {key}", self._client.zrangebyscore, key, min_score, max_score))

    def zcard(self, key: str) -> int:
        return int(self._execute(f"zcard {key}", self._client.zcard, key))

    # Lists -------------------------------------------------------------------
    def rpush(self, key: str, value: Any) -> int:
        return int(self._execute(f"rpush {key}", self._client.rpush, key, self._encode(value)))

    def lrange(self, key: str, start: int = 0, end: int = -1) -> List[Any]:
        raw = self._execute(f"lrange {key}", self._client.lrange, key, start, end)
        return [self._decode(v) for v in raw]

    # Batches -----------------------------------------------------------------
    def index_event(self, index_keys: List[str], member: str, score: float):
        """
        Add one member to several sorted-set indexes in a single pipeline.

        Returns:
            ZADD added-count per index key, in order (0 where already indexed)

        Raises:
            StorageError: On Redis failure
        """
        def _run():
            pipe = self._client.pipeline(transaction=True)
            for index_key in index_keys:
                pipe.zadd(index_key, {member: score})
            return pipe.execute()

        return [int(added) for added in self._execute("index event", _run)]

    def health_check(self) -> bool:
        """Return True if Redis is reachable."""
        try:
            self._client.ping()
            return True
        except redis.RedisError:
            return False

    def close(self):
        """Close Redis connection."""
        if self._client:
            self._client.close()


class _InMemoryPipeline:
    """Pipeline stand-in that buffers commands and applies them on execute()."""

    def __init__(self, client: "_InMemoryRedisClient"):
        self._client = client
        self._commands: List[Callable[[], Any]] = []

    def zadd(self, key: str, mapping: Dict[str, float]):
        self._commands.append(lambda: self._client.zadd(key, mapping))
        return self

    def execute(self):
        with self._client._lock:
            commands, self._commands = self._commands, []
            return [command() for command in commands]


class _InMemoryRedisClient:
    """Subset of redis.Redis used by the rule loop, kept in process memory."""

    def __init__(self):
        self._lock = threading.RLock()
        self._strings: Dict[str, str] = {}
        self._sorted_sets: Dict[str, Dict[str, float]] = defaultdict(dict)
        self._lists: Dict[str, List[str]] = defaultdict(list)

    # Strings -----------------------------------------------------------------
    def set(self, key: str, value: Any, nx: bool = False):
        with self._lock:
            if nx and key in self._strings:
                return None
            self._strings[key] = str(value)
            return True

    def get(self, key: str):
        with self._lock:
            return self._strings.get(key)

    def mget(self, keys: List[str]):
        with self._lock:
            return [self._strings.get(k) for k in keys]

    def exists(self, key: str):
        with self._lock:
            return int(
                key in self._strings or key in self._sorted_sets or key in self._lists
            )

    def ping(self):
        return True

    def close(self):
        return True

    # Sorted sets -------------------------------------------------------------
    def zadd(self, key: str, mapping: Dict[str, float]):
        with self._lock:
            added = 0
            for member, score in mapping.items():
                if member not in self._sorted_sets[key]:
                    added += 1
                self._sorted_sets[key][str(member)] = float(score)
            return added

    def zrangebyscore(self, key: str, min_score: Any, max_score: Any):
        min_val = _parse_score(min_score)
        max_val = _parse_score(max_score)
        with self._lock:
            items = list(self._sorted_sets.get(key, {}).items())
        return [
            member
            for member, score in sorted(items, key=lambda item: (item[1], item[0]))
            if min_val <= score <= max_val
        ]

    def zcard(self, key: str):
        with self._lock:
            return len(self._sorted_sets.get(key, {}))

    # Lists -------------------------------------------------------------------
    def rpush(self, key: str, *values: Any):
        with self._lock:
            self._lists[key].extend(str(v) for v in values)
            return len(self._lists[key])

    def lrange(self, key: str, start: int, end: int):
        with self._lock:
            items = list(self._lists.get(key, []))
        # Redis end index is inclusive
        if end == -1:
            return items[start:]
        return items[start:end + 1]

    def pipeline(self, transaction: bool = False):
        return _InMemoryPipeline(self)


def _parse_score(value: Any) -> float:
    if isinstance(value, (int, float)):
        return float(value)
    if value in ("-inf", "-infinity"):
        return float("-inf")
    if value in ("+inf", "inf", "infinity"):
        return float("inf")
    return float(value)
