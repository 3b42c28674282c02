from __future__ import annotations

import ctypes
import ctypes.util
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from xcpipe.core.backend_api import API_VERSION, Backend, BackendMeta, Resource, XcResult
from xcpipe.core.diagnostics import BackendFailure, Status
from xcpipe.core.logging import get_logger
from xcpipe.core.options import AtomicGridSize, ExecutionSpace, PruningScheme, RadialQuad

LIBRARY_ENV = "XCPIPE_GAUXC_LIB"

LOAD_BALANCER_KERNEL = "Replicated"
WEIGHTS_KERNEL = "Default"
INTEGRATOR_KERNELS = ("Replicated", "Default", "Default", "Default")

# Values of the GauXC C enums
EXECUTION_SPACES = {ExecutionSpace.HOST: 0, ExecutionSpace.DEVICE: 1}
RADIAL_QUADS = {
    RadialQuad.BECKE: 0,
    RadialQuad.MURA_KNOWLES: 1,
    RadialQuad.TREUTLER_AHLRICHS: 2,
    RadialQuad.MURRAY_HANDY_LAMING: 3,
}
GRID_SIZES = {
    AtomicGridSize.FINE: 0,
    AtomicGridSize.ULTRAFINE: 1,
    AtomicGridSize.SUPERFINE: 2,
    AtomicGridSize.GM3: 3,
    AtomicGridSize.GM5: 4,
}
PRUNING_SCHEMES = {PruningScheme.UNPRUNED: 0, PruningScheme.ROBUST: 1, PruningScheme.TREUTLER: 2}
XC_WEIGHT_ALG_SSF = 2

logger = get_logger("backend.gauxc")


class GauXCStatus(ctypes.Structure):
    _fields_ = [("code", ctypes.c_int), ("message", ctypes.c_char_p)]


class GauXCHandle(ctypes.Structure):
    _fields_ = [("hdr", ctypes.c_int), ("ptr", ctypes.c_void_p)]


class GauXCMolecularWeightsSettings(ctypes.Structure):
    _fields_ = [("weight_alg", ctypes.c_int), ("becke_size_adjustment", ctypes.c_bool)]


_H = GauXCHandle
_S = ctypes.POINTER(GauXCStatus)
_STR = ctypes.c_char_p
_INT = ctypes.c_int

# name -> (restype, argtypes after the status pointer)
_SIGNATURES: Dict[str, tuple] = {
    "gauxc_runtime_environment_new": (_H, []),
    "gauxc_runtime_environment_comm_rank": (_INT, [_H]),
    "gauxc_runtime_environment_comm_size": (_INT, [_H]),
    "gauxc_molecule_new": (_H, []),
    "gauxc_molecule_read_hdf5_record": (None, [_H, _STR, _STR]),
    "gauxc_basisset_new": (_H, []),
    "gauxc_basisset_read_hdf5_record": (None, [_H, _STR, _STR]),
    "gauxc_molgrid_new_default": (_H, [_H, _INT, ctypes.c_int64, _INT, _INT]),
    "gauxc_load_balancer_factory_new": (_H, [_INT, _STR]),
    "gauxc_load_balancer_factory_get_shared_instance": (_H, [_H, _H, _H, _H, _H]),
    "gauxc_molecular_weights_factory_new": (_H, [_INT, _STR, GauXCMolecularWeightsSettings]),
    "gauxc_molecular_weights_factory_get_instance": (_H, [_H]),
    "gauxc_molecular_weights_modify_weights": (None, [_H, _H]),
    "gauxc_functional_from_string": (_H, [_STR, ctypes.c_bool]),
    "gauxc_integrator_factory_new": (_H, [_INT, _STR, _STR, _STR, _STR]),
    "gauxc_integrator_factory_get_instance": (_H, [_H, _H, _H]),
    "gauxc_matrix_empty": (_H, []),
    "gauxc_matrix_read_hdf5_record": (None, [_H, _STR, _STR]),
    "gauxc_integrator_eval_exc_vxc_onedft_uks": (
        None,
        [_H, _H, _H, _STR, ctypes.POINTER(ctypes.c_double), ctypes.POINTER(_H), ctypes.POINTER(_H)],
    ),
    "gauxc_objects_delete": (None, [ctypes.POINTER(ctypes.c_void_p), ctypes.c_size_t]),
}

# Exported only by some builds of the library
_OPTIONAL_SIGNATURES: Dict[str, tuple] = {
    "gauxc_basisset_set_shell_tolerance": (None, [_H, ctypes.c_double]),
    "gauxc_matrix_rows": (ctypes.c_int64, [_H]),
    "gauxc_matrix_cols": (ctypes.c_int64, [_H]),
}


def find_library(explicit: Optional[str] = None) -> Optional[str]:
    return explicit or os.environ.get(LIBRARY_ENV) or ctypes.util.find_library("gauxc")


class _GauXCLib:
    def __init__(self, path: str) -> None:
        self.path = path
        try:
            self.lib = ctypes.CDLL(path)
        except OSError as exc:
            raise BackendFailure(Status(1, f"Cannot load GauXC library {path}: {exc}"), operation="load") from exc
        self.optional: Dict[str, bool] = {}
        for name, (restype, argtypes) in _SIGNATURES.items():
            self._bind(name, restype, argtypes)
        for name, (restype, argtypes) in _OPTIONAL_SIGNATURES.items():
            self.optional[name] = hasattr(self.lib, name)
            if self.optional[name]:
                self._bind(name, restype, argtypes)

    def _bind(self, name: str, restype, argtypes: List[Any]) -> None:
        try:
            fn = getattr(self.lib, name)
        except AttributeError as exc:
            raise BackendFailure(Status(1, f"{self.path}: missing symbol {name}"), operation="load") from exc
        fn.restype = restype
        fn.argtypes = [_S] + list(argtypes)

    def has(self, name: str) -> bool:
        return self.optional.get(name, True)

    def call(self, name: str, *args: Any) -> Any:
        status = GauXCStatus(0, None)
        try:
            value = getattr(self.lib, name)(ctypes.byref(status), *args)
        except (ctypes.ArgumentError, OverflowError) as exc:
            raise BackendFailure(Status(1, f"Bad arguments to {name}: {exc}"), operation=name) from exc
        if status.code:
            message = status.message.decode("utf-8", errors="replace") if status.message else None
            raise BackendFailure(Status(status.code, message), operation=name)
        return value

    def delete(self, handle: GauXCHandle) -> None:
        objs = (ctypes.c_void_p * 1)(ctypes.cast(ctypes.pointer(handle), ctypes.c_void_p))
        self.call("gauxc_objects_delete", objs, 1)


class GauXCRuntime:
    """Single-process GauXC runtime environment."""

    def __init__(self, lib: _GauXCLib) -> None:
        self._lib = lib
        self.handle = lib.call("gauxc_runtime_environment_new")
        self._closed = False
        try:
            self.rank = int(lib.call("gauxc_runtime_environment_comm_rank", self.handle))
            self.size = int(lib.call("gauxc_runtime_environment_comm_size", self.handle))
        except BackendFailure:
            self.close()
            raise

    def barrier(self) -> None:
        if self.size > 1:
            raise BackendFailure(
                Status(1, "Multi-process runs need a barrier-capable runtime"), operation="barrier"
            )

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._lib.delete(self.handle)


class GauXCBackend(Backend):
    def __init__(self, library: Optional[str] = None) -> None:
        self._library = library
        self._lib: Optional[_GauXCLib] = None

    def meta(self) -> BackendMeta:
        return BackendMeta(
            name="gauxc",
            api_version=API_VERSION,
            backend_version="0.1.0",
            capabilities={
                "exec_spaces": [space.value for space in EXECUTION_SPACES],
                "records": "hdf5",
                "onedft": True,
            },
        )

    @property
    def lib(self) -> _GauXCLib:
        if self._lib is None:
            path = find_library(self._library)
            if not path:
                raise BackendFailure(
                    Status(1, f"GauXC library not found; pass --backend-lib or set {LIBRARY_ENV}"),
                    operation="load",
                )
            self._lib = _GauXCLib(path)
        return self._lib

    def open_runtime(self) -> GauXCRuntime:
        return GauXCRuntime(self.lib)

    def read_molecule(self, path: Path, record: str) -> Resource:
        mol = self._new("molecule", "gauxc_molecule_new")
        self._fill(mol, "gauxc_molecule_read_hdf5_record", _b(str(path)), _b(record))
        return mol

    def read_basis(self, path: Path, record: str, *, tolerance: float) -> Resource:
        basis = self._new("basis", "gauxc_basisset_new")
        self._fill(basis, "gauxc_basisset_read_hdf5_record", _b(str(path)), _b(record))
        if self.lib.has("gauxc_basisset_set_shell_tolerance"):
            self._fill(basis, "gauxc_basisset_set_shell_tolerance", tolerance)
        else:
            basis.note(f"basis_tol={tolerance:g} not applied; {self.lib.path} has no shell tolerance setter")
        return basis

    def create_molgrid(self, molecule, *, grid_size, radial_quad, pruning_scheme, batch_size) -> Resource:
        handle = self.lib.call(
            "gauxc_molgrid_new_default",
            _h(molecule),
            PRUNING_SCHEMES[pruning_scheme],
            batch_size,
            RADIAL_QUADS[radial_quad],
            GRID_SIZES[grid_size],
        )
        return Resource(kind="molgrid", handle=[handle])

    def create_load_balancer(self, runtime, molecule, grid, basis, *, exec_space) -> Resource:
        factory = self.lib.call(
            "gauxc_load_balancer_factory_new", EXECUTION_SPACES[exec_space], _b(LOAD_BALANCER_KERNEL)
        )
        return self._from_factory(
            "load_balancer",
            factory,
            "gauxc_load_balancer_factory_get_shared_instance",
            runtime.handle,
            _h(molecule),
            _h(grid),
            _h(basis),
        )

    def modify_weights(self, load_balancer, *, exec_space) -> Resource:
        settings = GauXCMolecularWeightsSettings(XC_WEIGHT_ALG_SSF, False)
        factory = self.lib.call(
            "gauxc_molecular_weights_factory_new", EXECUTION_SPACES[exec_space], _b(WEIGHTS_KERNEL), settings
        )
        weights = self._from_factory("molecular_weights", factory, "gauxc_molecular_weights_factory_get_instance")
        try:
            self.lib.call("gauxc_molecular_weights_modify_weights", _h(weights), _h(load_balancer))
        except BackendFailure:
            self._discard(weights)
            raise
        return weights

    def create_functional(self, name: str, *, polarized: bool) -> Resource:
        handle = self.lib.call("gauxc_functional_from_string", _b(name), polarized)
        return Resource(kind="functional", handle=[handle], label=name)

    def create_integrator(self, functional, load_balancer, *, exec_space) -> Resource:
        factory = self.lib.call(
            "gauxc_integrator_factory_new",
            EXECUTION_SPACES[exec_space],
            *(_b(kernel) for kernel in INTEGRATOR_KERNELS),
        )
        return self._from_factory(
            "integrator", factory, "gauxc_integrator_factory_get_instance", _h(functional), _h(load_balancer)
        )

    def read_matrix(self, path: Path, record: str) -> Resource:
        matrix = self._new("matrix", "gauxc_matrix_empty", label=record)
        self._fill(matrix, "gauxc_matrix_read_hdf5_record", _b(str(path)), _b(record))
        self._annotate(matrix)
        return matrix

    def eval_exc_vxc(self, integrator, density_scalar, density_z, model: str) -> XcResult:
        vxc_s = self._new("matrix", "gauxc_matrix_empty", label="VXC_s")
        try:
            vxc_z = self._new("matrix", "gauxc_matrix_empty", label="VXC_z")
        except BackendFailure:
            self._discard(vxc_s)
            raise
        exc = ctypes.c_double(0.0)
        try:
            self.lib.call(
                "gauxc_integrator_eval_exc_vxc_onedft_uks",
                _h(integrator),
                _h(density_scalar),
                _h(density_z),
                _b(model),
                ctypes.byref(exc),
                ctypes.pointer(_h(vxc_s)),
                ctypes.pointer(_h(vxc_z)),
            )
        except BackendFailure:
            self._discard(vxc_s)
            self._discard(vxc_z)
            raise
        try:
            self._annotate(vxc_s)
        except BackendFailure:
            self._discard(vxc_z)
            raise
        self._annotate(vxc_z)
        return XcResult(exc=float(exc.value), vxc_scalar=vxc_s, vxc_z=vxc_z)

    def release(self, resource: Resource) -> None:
        failures: List[BackendFailure] = []
        for handle in resource.handle:
            try:
                self.lib.delete(handle)
            except BackendFailure as exc:
                failures.append(exc)
        if failures:
            raise failures[0]

    def _new(self, kind: str, constructor: str, label: Optional[str] = None) -> Resource:
        return Resource(kind=kind, handle=[self.lib.call(constructor)], label=label)

    def _fill(self, resource: Resource, operation: str, *args: Any) -> None:
        try:
            self.lib.call(operation, _h(resource), *args)
        except BackendFailure:
            self._discard(resource)
            raise

    def _from_factory(self, kind: str, factory: GauXCHandle, getter: str, *args: Any) -> Resource:
        try:
            instance = self.lib.call(getter, factory, *args)
        except BackendFailure:
            self._discard(Resource(kind=f"{kind}_factory", handle=[factory]))
            raise
        # instance first so it is deleted before the factory that produced it
        return Resource(kind=kind, handle=[instance, factory])

    def _discard(self, resource: Resource) -> None:
        try:
            self.release(resource)
        except BackendFailure as exc:
            logger.error("Failed to discard partially built %s: %s", resource.name, exc.status.message)

    def _annotate(self, matrix: Resource) -> None:
        if not (self.lib.has("gauxc_matrix_rows") and self.lib.has("gauxc_matrix_cols")):
            return
        try:
            rows = self.lib.call("gauxc_matrix_rows", _h(matrix))
            cols = self.lib.call("gauxc_matrix_cols", _h(matrix))
        except BackendFailure:
            self._discard(matrix)
            raise
        matrix.metadata["shape"] = (int(rows), int(cols))


def _h(resource: Resource) -> GauXCHandle:
    return resource.handle[0]


def _b(value: str) -> bytes:
    return value.encode("utf-8")
