"""VariableStore — write-once variable scope flowing through a pipeline run."""

from typing import Any, Self

from imgflow.core.errors import ExecutionError

_MISSING = object()


class VariableStore:
    """Variable name -> runtime value, written at most once.

    Steps read with ``get()`` / ``require()`` and the scheduler writes step
    results with ``set()``. Branches run against a ``child()`` scope: reads
    fall through to the parent, writes stay local, and the parent is never
    modified from inside a branch.
    """

    def __init__(self, initial: dict[str, Any] | None = None, parent: "VariableStore | None" = None) -> None:
        self._parent = parent
        self._data: dict[str, Any] = {}
        for key, value in (initial or {}).items():
            self.set(key, value)

    def _lookup(self, key: str) -> Any:
        if key in self._data:
            return self._data[key]
        if self._parent is not None:
            return self._parent._lookup(key)
        return _MISSING

    def get(self, key: str, default: Any = None) -> Any:
        value = self._lookup(key)
        return default if value is _MISSING else value

    def require(self, key: str, step_id: str | None = None) -> Any:
        """Return ``key`` or raise ``ExecutionError`` naming the reading step.

        ``None`` is a real value (e.g. an empty fan-out branch seed), only an
        unbound name is missing.
        """
        value = self._lookup(key)
        if value is _MISSING:
            who = f"Step {step_id!r}" if step_id else "A step"
            raise ExecutionError(f"{who} needs variable {key!r}, which is not set", step_id=step_id)
        return value

    def set(self, key: str, value: Any) -> None:
        if key in self:
            raise ExecutionError(f"Variable {key!r} is already set")
        self._data[key] = value

    def child(self, initial: dict[str, Any] | None = None) -> Self:
        """Branch scope: reads see this store, writes stay in the child."""
        return type(self)(initial, parent=self)

    def local_items(self) -> dict[str, Any]:
        """Values written to this scope only (not inherited ones)."""
        return dict(self._data)

    def snapshot(self) -> dict[str, Any]:
        """Shallow copy of every visible value, local ones winning."""
        merged = self._parent.snapshot() if self._parent is not None else {}
        merged.update(self._data)
        return merged

    def __contains__(self, key: str) -> bool:
        return self._lookup(key) is not _MISSING

    def __repr__(self) -> str:
        return f"VariableStore({self._data!r}, parent={self._parent is not None})"
