from __future__ import annotations

import inspect
from importlib import metadata
from typing import Any, Dict, List

from .backend_api import API_VERSION, Backend, BackendMeta
from .diagnostics import InvalidOption


ENTRY_POINT_GROUP = "xcpipe.backend"


def _major(version: str) -> str:
    return version.split(".")[0]


def _iter_entry_points(group: str):
    eps = metadata.entry_points()
    if hasattr(eps, "select"):
        return list(eps.select(group=group))
    return list(eps.get(group, []))


class BackendRegistry:
    def __init__(self) -> None:
        self._providers: Dict[str, Any] = {}

    def register(self, name: str, provider: Any) -> None:
        self._providers[name] = provider

    def names(self) -> List[str]:
        return sorted(self._providers)

    def discover(self) -> "BackendRegistry":
        for ep in _iter_entry_points(ENTRY_POINT_GROUP):
            self.register(ep.name, ep.load)
        # Fallback for source checkouts without installed entry points.
        if "gauxc" not in self._providers:
            from xcpipe.backends_builtin.gauxc_native import GauXCBackend

            self.register("gauxc", GauXCBackend)
        return self

    def get(self, name: str, **options: Any) -> Backend:
        if name not in self._providers:
            raise InvalidOption("backend", name, hints=[f"available: {', '.join(self.names())}"])
        backend = _instantiate_backend(self._providers[name], options)
        _check_compatibility(backend.meta())
        return backend


def _check_compatibility(meta: BackendMeta) -> None:
    if _major(meta.api_version) != _major(API_VERSION):
        raise RuntimeError(
            f"Backend API version mismatch: host {API_VERSION} vs backend {meta.api_version}"
        )


def _instantiate_backend(provider: Any, options: Dict[str, Any]) -> Backend:
    obj = provider
    if inspect.isclass(obj):
        obj = obj(**_accepted(obj, options))
    elif callable(obj):
        obj = obj()
        if inspect.isclass(obj):
            obj = obj(**_accepted(obj, options))
    if not isinstance(obj, Backend):
        raise RuntimeError(f"Loaded backend does not implement the Backend interface: {type(obj)}")
    return obj


def _accepted(cls: type, options: Dict[str, Any]) -> Dict[str, Any]:
    params = inspect.signature(cls).parameters
    return {key: value for key, value in options.items() if key in params and value is not None}
