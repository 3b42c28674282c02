from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from .options import AtomicGridSize, ExecutionSpace, PruningScheme, RadialQuad


API_VERSION = "1.0.0"

MOLECULE_RECORD = "/MOLECULE"
BASIS_RECORD = "/BASIS"
DENSITY_SCALAR_RECORD = "/DENSITY_SCALAR"
DENSITY_Z_RECORD = "/DENSITY_Z"


@dataclass(frozen=True)
class BackendMeta:
    name: str
    api_version: str
    backend_version: str
    capabilities: Dict[str, Any] = field(default_factory=dict)


@dataclass(eq=False)
class Resource:
    """Opaque backend-owned handle.

    Identity based: two resources are the same only if they are the same
    object, whatever their handles compare to.
    """

    kind: str
    handle: Any
    label: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.label or self.kind

    def note(self, message: str) -> None:
        """Attach a notice the driver shows the user once the resource is kept."""
        self.metadata.setdefault("notices", []).append(message)

    @property
    def notices(self) -> List[str]:
        return list(self.metadata.get("notices", ()))


@dataclass(frozen=True)
class XcResult:
    exc: float
    vxc_scalar: Resource
    vxc_z: Resource


class Runtime(Protocol):
    @property
    def rank(self) -> int: ...

    @property
    def size(self) -> int: ...

    def barrier(self) -> None: ...

    def close(self) -> None: ...


class SerialRuntime:
    rank = 0
    size = 1

    def barrier(self) -> None:
        return

    def close(self) -> None:
        return


class Backend(ABC):
    """Construction and computation operations of a numerical XC backend.

    Every operation either returns its product or raises
    :class:`~xcpipe.core.diagnostics.BackendFailure` with the backend status.
    Returned resources are owned by the caller until passed to
    :meth:`release`.
    """

    @abstractmethod
    def meta(self) -> BackendMeta:
        raise NotImplementedError

    def open_runtime(self) -> Runtime:
        return SerialRuntime()

    @abstractmethod
    def read_molecule(self, path: Path, record: str) -> Resource:
        raise NotImplementedError

    @abstractmethod
    def read_basis(self, path: Path, record: str, *, tolerance: float) -> Resource:
        raise NotImplementedError

    @abstractmethod
    def create_molgrid(
        self,
        molecule: Resource,
        *,
        grid_size: AtomicGridSize,
        radial_quad: RadialQuad,
        pruning_scheme: PruningScheme,
        batch_size: int,
    ) -> Resource:
        raise NotImplementedError

    @abstractmethod
    def create_load_balancer(
        self,
        runtime: Runtime,
        molecule: Resource,
        grid: Resource,
        basis: Resource,
        *,
        exec_space: ExecutionSpace,
    ) -> Resource:
        raise NotImplementedError

    @abstractmethod
    def modify_weights(self, load_balancer: Resource, *, exec_space: ExecutionSpace) -> Resource:
        raise NotImplementedError

    @abstractmethod
    def create_functional(self, name: str, *, polarized: bool) -> Resource:
        raise NotImplementedError

    @abstractmethod
    def create_integrator(
        self, functional: Resource, load_balancer: Resource, *, exec_space: ExecutionSpace
    ) -> Resource:
        raise NotImplementedError

    @abstractmethod
    def read_matrix(self, path: Path, record: str) -> Resource:
        raise NotImplementedError

    @abstractmethod
    def eval_exc_vxc(
        self, integrator: Resource, density_scalar: Resource, density_z: Resource, model: str
    ) -> XcResult:
        raise NotImplementedError

    @abstractmethod
    def release(self, resource: Resource) -> None:
        raise NotImplementedError
