"""Runtime control handles for a built invention, keyed as "module_id.handle_name"."""

from __future__ import annotations

from typing import Any, Iterator, Mapping, TypeVar

T = TypeVar("T")


class InventionHandles:
    """Collection of runtime control handles with flat keys such as "clock.controls"."""

    def __init__(self, handles: Mapping[str, Any] | None = None) -> None:
        self._handles: dict[str, Any] = dict(handles or {})

    def get(self, key: str, kind: type[T] = object) -> T | None:
        """Return the handle under ``key`` if it exists and is an instance of ``kind``."""
        value = self._handles.get(key)
        return value if isinstance(value, kind) else None

    def all(self, kind: type[T] = object) -> list[tuple[str, T]]:
        """Return every (key, handle) pair whose handle is an instance of ``kind``."""
        return [(key, value) for key, value in self._handles.items() if isinstance(value, kind)]

    def with_prefix(self, prefix: str) -> list[tuple[str, Any]]:
        """Return every (key, handle) pair whose key starts with ``prefix``."""
        return [(key, value) for key, value in self._handles.items() if key.startswith(prefix)]

    def keys(self) -> Iterator[str]:
        return iter(self._handles)

    def merge(self, other: InventionHandles) -> None:
        """Add the handles of ``other``; on a shared key the value from ``other`` wins."""
        self._handles.update(other._handles)

    def __len__(self) -> int:
        return len(self._handles)

    def __contains__(self, key: object) -> bool:
        return key in self._handles

    def __iter__(self) -> Iterator[str]:
        return iter(self._handles)

    def __repr__(self) -> str:
        return f"InventionHandles(keys={list(self._handles)!r})"