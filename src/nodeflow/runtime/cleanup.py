"""Scoped cleanup of resources opened during one node execution."""
from typing import Any, Callable, TypeVar

from nodeflow.observability import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CleanupScope:
    """Collects cleanup callbacks and runs each of them exactly once.

    Use as a context manager; callbacks run in reverse registration order on
    both normal exit and error. A failing callback is logged and the rest
    still run.
    """

    def __init__(self) -> None:
        self._callbacks: list[tuple[str, Callable[[], None]]] = []
        self._resources: dict[str, Any] = {}
        self._closed = False

    def register(self, name: str, callback: Callable[[], None]) -> None:
        if self._closed:
            # Scope already finished; release the resource right away
            self._run(name, callback)
            return
        self._callbacks.append((name, callback))

    def resource(self, key: str, factory: Callable[[], T], closer: Callable[[T], None]) -> T:
        """
        Open a resource once per scope and schedule its release.

        Later calls with the same key return the already opened resource.
        """
        if key in self._resources:
            return self._resources[key]
        value = factory()
        self._resources[key] = value
        self.register(key, lambda: closer(value))
        return value

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        while self._callbacks:
            name, callback = self._callbacks.pop()
            self._run(name, callback)
        self._resources.clear()

    @staticmethod
    def _run(name: str, callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception as e:
            logger.warning(
                "Cleanup callback failed",
                extra={"cleanup": name, "error": str(e)},
                exc_info=True,
            )

    def __enter__(self) -> "CleanupScope":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
