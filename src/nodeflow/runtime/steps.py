"""
Step runners.

Every side effect an executor performs goes through ``StepRunner.run`` under
a name that is unique within the run. The checkpointed runner memoizes the
JSON result of each completed step under (run id, step name), so replaying
a partially failed run skips what already happened, and it retries steps
that raise a retriable ``WorkflowError``.
"""
import json
import time
from typing import Any, Callable, Protocol, TypeVar

import redis
from pydantic_core import to_jsonable_python

from nodeflow.errors import WorkflowError
from nodeflow.observability import get_logger
from nodeflow.runtime.retry import retry_call

logger = get_logger(__name__)

T = TypeVar("T")

_MISSING = object()


def is_retriable(e: BaseException) -> bool:
    return isinstance(e, WorkflowError) and e.retriable


class CheckpointStore(Protocol):
    """Key/value store for completed step results."""

    def load(self, key: str) -> Any:
        """Return the stored value or the ``MISSING`` sentinel."""
        ...

    def save(self, key: str, value: Any) -> None:
        ...


class InMemoryCheckpointStore:
    """Process-local checkpoint store."""

    MISSING = _MISSING

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def load(self, key: str) -> Any:
        raw = self._data.get(key)
        if raw is None:
            return _MISSING
        return json.loads(raw)

    def save(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value)

    def __len__(self) -> int:
        return len(self._data)


class RedisCheckpointStore:
    """Checkpoint store backed by Redis string keys with a TTL."""

    MISSING = _MISSING

    def __init__(
        self,
        redis_client: redis.Redis,
        ttl_s: int,
        prefix: str = "nodeflow:step",
    ):
        self.redis_client = redis_client
        self.ttl_s = ttl_s
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def load(self, key: str) -> Any:
        raw = self.redis_client.get(self._key(key))
        if raw is None:
            return _MISSING
        return json.loads(raw)

    def save(self, key: str, value: Any) -> None:
        self.redis_client.set(self._key(key), json.dumps(value), ex=self.ttl_s)


class InlineStepRunner:
    """Runs steps directly with no checkpointing and no retries."""

    def run(self, step_name: str, fn: Callable[[], T]) -> T:
        return fn()

    def run_generation(self, step_name: str, fn: Callable[[], T], **telemetry: Any) -> T:
        return _timed_generation(step_name, fn, telemetry)


class CheckpointedStepRunner:
    """Memoizes step results per run and retries transient failures.

    Args:
        run_id: Identifier of the run (the execution correlation id)
        store: Where completed step results are kept
        max_attempts: Attempts per step for retriable errors
        base_delay_s: First backoff delay, doubled on each retry
        sleep: Sleep function (injected in tests)
    """

    def __init__(
        self,
        run_id: str,
        store: CheckpointStore,
        max_attempts: int = 3,
        base_delay_s: float = 0.6,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.run_id = run_id
        self.store = store
        self.max_attempts = max_attempts
        self.base_delay_s = base_delay_s
        self.sleep = sleep

    def run(self, step_name: str, fn: Callable[[], T]) -> T:
        key = f"{self.run_id}:{step_name}"
        cached = self.store.load(key)
        if cached is not _MISSING:
            logger.info(
                "Step replayed from checkpoint",
                extra={"correlation_id": self.run_id, "step": step_name},
            )
            return cached

        result = retry_call(
            fn,
            attempts=self.max_attempts,
            base_delay=self.base_delay_s,
            retry_on=is_retriable,
            sleep=self.sleep,
        )
        value = to_jsonable_python(result)
        self.store.save(key, value)
        return value

    def run_generation(self, step_name: str, fn: Callable[[], T], **telemetry: Any) -> T:
        return self.run(step_name, lambda: _timed_generation(step_name, fn, telemetry))


def _timed_generation(step_name: str, fn: Callable[[], T], telemetry: dict[str, Any]) -> T:
    started = time.perf_counter()
    result = fn()
    extra = {
        "step": step_name,
        "duration_ms": round((time.perf_counter() - started) * 1000, 1),
        **telemetry,
    }
    if isinstance(result, dict) and result.get("usage"):
        extra["usage"] = result["usage"]
    logger.info("Model generation completed", extra=extra)
    return result
