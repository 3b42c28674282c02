from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional

import pytest

from xcpipe.core.backend_api import Backend, BackendMeta, Resource, XcResult
from xcpipe.core.config import RawOptions, assemble_configuration
from xcpipe.core.diagnostics import BackendFailure, Status


class FakeRuntime:
    def __init__(self, rank: int = 0, size: int = 1, close_code: int = 0) -> None:
        self.rank = rank
        self.size = size
        self.close_code = close_code
        self.barriers = 0
        self.closed = 0

    def barrier(self) -> None:
        self.barriers += 1

    def close(self) -> None:
        self.closed += 1
        if self.close_code:
            raise BackendFailure(Status(self.close_code, "runtime teardown failed"), operation="close")


class RecordingBackend(Backend):
    """In-memory backend that records every call and fails on request."""

    def __init__(
        self,
        fail_at: Optional[str] = None,
        fail_code: int = 7,
        fail_message: str = "backend exploded",
        release_failures: Optional[Dict[str, int]] = None,
        runtime: Optional[FakeRuntime] = None,
        fail_with: Optional[BaseException] = None,
        tolerance_setter: bool = True,
    ) -> None:
        self.fail_at = fail_at
        self.fail_with = fail_with
        self.tolerance_setter = tolerance_setter
        self.fail_code = fail_code
        self.fail_message = fail_message
        self.release_failures = release_failures or {}
        self.runtime = runtime or FakeRuntime()
        self.calls: List[str] = []
        self.created: List[Resource] = []
        self.released: List[Resource] = []
        self.basis_tolerance: Optional[float] = None

    def meta(self) -> BackendMeta:
        return BackendMeta(name="recording", api_version="1.0.0", backend_version="0.0.1")

    def _op(self, name: str) -> None:
        self.calls.append(name)
        if name == self.fail_at:
            if self.fail_with is not None:
                raise self.fail_with
            raise BackendFailure(Status(self.fail_code, self.fail_message), operation=name)

    def _make(self, kind: str, label: Optional[str] = None, **metadata) -> Resource:
        resource = Resource(kind=kind, handle=len(self.created), label=label, metadata=metadata)
        self.created.append(resource)
        return resource

    def open_runtime(self):
        self._op("open_runtime")
        return self.runtime

    def read_molecule(self, path: Path, record: str) -> Resource:
        self._op("read_molecule")
        if not Path(path).exists():
            raise BackendFailure(Status(2, f"unable to open {path}"), operation="read_molecule")
        return self._make("molecule")

    def read_basis(self, path: Path, record: str, *, tolerance: float) -> Resource:
        self._op("read_basis")
        basis = self._make("basis")
        if self.tolerance_setter:
            self.basis_tolerance = tolerance
        else:
            basis.note(f"basis_tol={tolerance:g} not applied")
        return basis

    def create_molgrid(self, molecule, *, grid_size, radial_quad, pruning_scheme, batch_size) -> Resource:
        self._op("create_molgrid")
        return self._make("molgrid", grid_size=grid_size.value, batch_size=batch_size)

    def create_load_balancer(self, runtime, molecule, grid, basis, *, exec_space) -> Resource:
        self._op("create_load_balancer")
        assert runtime is self.runtime
        return self._make("load_balancer", exec_space=exec_space.value)

    def modify_weights(self, load_balancer, *, exec_space) -> Resource:
        self._op("modify_weights")
        return self._make("molecular_weights")

    def create_functional(self, name: str, *, polarized: bool) -> Resource:
        self._op("create_functional")
        return self._make("functional", label=name)

    def create_integrator(self, functional, load_balancer, *, exec_space) -> Resource:
        self._op("create_integrator")
        return self._make("integrator")

    def read_matrix(self, path: Path, record: str) -> Resource:
        self._op(f"read_matrix:{record}")
        return self._make("matrix", label=record, shape=(3, 3))

    def eval_exc_vxc(self, integrator, density_scalar, density_z, model: str) -> XcResult:
        self._op("eval_exc_vxc")
        return XcResult(
            exc=-1.2345678901,
            vxc_scalar=self._make("matrix", label="VXC_s", shape=(3, 3)),
            vxc_z=self._make("matrix", label="VXC_z", shape=(3, 3)),
        )

    def release(self, resource: Resource) -> None:
        self.released.append(resource)
        code = self.release_failures.get(resource.name)
        if code:
            raise BackendFailure(Status(code, f"cannot free {resource.name}"), operation="release")


@pytest.fixture
def input_file(tmp_path: Path) -> Path:
    path = tmp_path / "h2o.h5"
    path.write_bytes(b"\x89HDF\r\n\x1a\n")
    return path


@pytest.fixture
def config(input_file: Path):
    return assemble_configuration(RawOptions(input_file=str(input_file), model="onedft-small"))


@pytest.fixture
def make_backend():
    def _make(**kwargs) -> RecordingBackend:
        return RecordingBackend(**kwargs)

    return _make


@pytest.fixture
def make_runtime():
    def _make(**kwargs) -> FakeRuntime:
        return FakeRuntime(**kwargs)

    return _make
