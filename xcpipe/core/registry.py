from __future__ import annotations

from typing import Callable, Iterator, List, Optional

from .backend_api import Resource
from .diagnostics import BackendFailure, CleanupFailure


ReleaseHook = Callable[[Resource, Optional[BackendFailure]], None]


class ResourceRegistry:
    """Ordered record of every backend resource created during a run.

    Resources are appended as soon as they exist and released together,
    exactly once, by :meth:`release_all`.
    """

    def __init__(self, release: Callable[[Resource], None], on_release: Optional[ReleaseHook] = None) -> None:
        self._release = release
        self._on_release = on_release
        self._items: List[Resource] = []
        self._released = False

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Resource]:
        return iter(list(self._items))

    @property
    def released(self) -> bool:
        return self._released

    def register(self, resource: Resource) -> Resource:
        if self._released:
            raise RuntimeError(f"Cannot register {resource.name}: registry already released")
        if any(item is resource for item in self._items):
            raise ValueError(f"Resource already registered: {resource.name}")
        self._items.append(resource)
        return resource

    def release_all(self) -> None:
        if self._released:
            raise RuntimeError("release_all() called twice")
        self._released = True
        failures: List[BackendFailure] = []
        for resource in self._items:
            failure: Optional[BackendFailure] = None
            try:
                self._release(resource)
            except BackendFailure as exc:
                failure = exc
                failures.append(exc)
            if self._on_release is not None:
                self._on_release(resource, failure)
        if failures:
            raise CleanupFailure(failures)
