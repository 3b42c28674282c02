from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, TextIO, Tuple

from .backend_api import (
    BASIS_RECORD,
    DENSITY_SCALAR_RECORD,
    DENSITY_Z_RECORD,
    MOLECULE_RECORD,
    Backend,
    Resource,
    Runtime,
    XcResult,
)
from .config import Configuration
from .diagnostics import BackendFailure, CleanupFailure
from .logging import close_logger, get_event_logger, get_logger
from .registry import ResourceRegistry
from .report import report_configuration, report_results
from .teardown import reported_code, resolve_exit


Keep = Callable[[str, Resource], None]
Notify = Callable[[str, str], None]


@dataclass
class PipelineState:
    config: Configuration
    runtime: Runtime
    resources: Dict[str, Resource] = field(default_factory=dict)
    result: Optional[XcResult] = None


@dataclass(frozen=True)
class Stage:
    name: str
    requires: Tuple[str, ...]
    build: Callable[[Backend, PipelineState, Keep], None]


def _molecule(backend: Backend, state: PipelineState, keep: Keep) -> None:
    keep("molecule", backend.read_molecule(state.config.input_file, MOLECULE_RECORD))


def _basis(backend: Backend, state: PipelineState, keep: Keep) -> None:
    basis = backend.read_basis(state.config.input_file, BASIS_RECORD, tolerance=state.config.basis_tol)
    keep("basis", basis)


def _molgrid(backend: Backend, state: PipelineState, keep: Keep) -> None:
    cfg = state.config
    grid = backend.create_molgrid(
        state.resources["molecule"],
        grid_size=cfg.grid_size,
        radial_quad=cfg.radial_quad,
        pruning_scheme=cfg.pruning_scheme,
        batch_size=cfg.batch_size,
    )
    keep("molgrid", grid)


def _load_balancer(backend: Backend, state: PipelineState, keep: Keep) -> None:
    res = state.resources
    lb = backend.create_load_balancer(
        state.runtime,
        res["molecule"],
        res["molgrid"],
        res["basis"],
        exec_space=state.config.lb_exec_space,
    )
    keep("load_balancer", lb)


def _molecular_weights(backend: Backend, state: PipelineState, keep: Keep) -> None:
    # weights are applied to the load balancer's grid in place
    weights = backend.modify_weights(state.resources["load_balancer"], exec_space=state.config.int_exec_space)
    keep("molecular_weights", weights)


def _functional(backend: Backend, state: PipelineState, keep: Keep) -> None:
    keep("functional", backend.create_functional(state.config.functional, polarized=True))


def _integrator(backend: Backend, state: PipelineState, keep: Keep) -> None:
    integrator = backend.create_integrator(
        state.resources["functional"],
        state.resources["load_balancer"],
        exec_space=state.config.int_exec_space,
    )
    keep("integrator", integrator)


def _density_matrices(backend: Backend, state: PipelineState, keep: Keep) -> None:
    path = state.config.input_file
    keep("density_scalar", backend.read_matrix(path, DENSITY_SCALAR_RECORD))
    keep("density_z", backend.read_matrix(path, DENSITY_Z_RECORD))


def _exc_vxc(backend: Backend, state: PipelineState, keep: Keep) -> None:
    res = state.resources
    state.runtime.barrier()
    result = backend.eval_exc_vxc(res["integrator"], res["density_scalar"], res["density_z"], state.config.model)
    keep("vxc_scalar", result.vxc_scalar)
    keep("vxc_z", result.vxc_z)
    state.result = result
    state.runtime.barrier()


STAGES: Tuple[Stage, ...] = (
    Stage("molecule", (), _molecule),
    Stage("basis", (), _basis),
    Stage("molgrid", ("molecule",), _molgrid),
    Stage("load_balancer", ("molecule", "molgrid", "basis"), _load_balancer),
    Stage("molecular_weights", ("load_balancer",), _molecular_weights),
    Stage("functional", (), _functional),
    Stage("integrator", ("functional", "load_balancer"), _integrator),
    Stage("density_matrices", (), _density_matrices),
    Stage("exc_vxc", ("integrator", "density_scalar", "density_z"), _exc_vxc),
)


def run_pipeline(
    config: Configuration,
    backend: Backend,
    runtime: Runtime,
    registry: ResourceRegistry,
    *,
    logger=None,
    events=None,
    notify: Optional[Notify] = None,
    stages: Sequence[Stage] = STAGES,
) -> XcResult:
    """Construct every stage in order, stopping at the first backend failure.

    Each resource is registered the moment it is returned, so whatever was
    built before a failure is still owned by ``registry``.
    """
    logger = logger or get_logger("pipeline")
    state = PipelineState(config=config, runtime=runtime)

    def keep(key: str, resource: Resource) -> None:
        registry.register(resource)
        state.resources[key] = resource
        logger.info("Registered %s (%s)", key, resource.kind)
        for notice in resource.notices:
            logger.warning("%s: %s", key, notice)
            _log_event(events, "resource.notice", key=key, message=notice)
            if notify is not None:
                notify(key, notice)

    for stage in stages:
        missing = [name for name in stage.requires if name not in state.resources]
        if missing:
            raise RuntimeError(f"Stage {stage.name} is missing dependencies: {', '.join(missing)}")
        _log_event(events, "stage.start", stage=stage.name)
        step_start = time.perf_counter()
        try:
            stage.build(backend, state, keep)
        except BackendFailure as exc:
            if exc.stage is None:
                exc.stage = stage.name
                exc.diagnostic.location = stage.name
            logger.error("Stage %s failed (code %s): %s", stage.name, exc.status.code, exc.status.message)
            _log_event(
                events,
                "stage.error",
                stage=stage.name,
                elapsed_s=time.perf_counter() - step_start,
                code=exc.status.code,
                error=exc.diagnostic.to_dict(),
            )
            raise
        _log_event(
            events,
            "stage.end",
            stage=stage.name,
            elapsed_s=time.perf_counter() - step_start,
            registered=len(registry),
        )

    if state.result is None:
        raise RuntimeError("Pipeline finished without an exchange-correlation result")
    return state.result


def execute_run(
    config: Configuration,
    backend: Backend,
    *,
    stdout: TextIO,
    stderr: TextIO,
    logs_dir: Optional[Path] = None,
    stages: Sequence[Stage] = STAGES,
) -> int:
    """Run the pipeline and tear down on every path; return the exit status."""
    logger = get_logger("pipeline", logs_dir)
    events = get_event_logger(logs_dir)

    def on_release(resource: Resource, failure: Optional[BackendFailure]) -> None:
        _log_event(
            events,
            "resource.release",
            kind=resource.kind,
            label=resource.name,
            ok=failure is None,
            code=failure.status.code if failure else 0,
        )

    def notify(key: str, notice: str) -> None:
        stderr.write(f"Warning [{key}]: {notice}\n")

    registry = ResourceRegistry(backend.release, on_release=on_release)
    runtime: Optional[Runtime] = None
    failure: Optional[BackendFailure] = None
    cleanup: Optional[CleanupFailure] = None
    pipeline_start = time.perf_counter()

    _log_event(events, "pipeline.start", backend=backend.meta().name, input_file=str(config.input_file))
    try:
        runtime = backend.open_runtime()
        logger.info("Runtime rank %s of %s", runtime.rank, runtime.size)
        if runtime.rank == 0:
            report_configuration(config, stdout)
        result = run_pipeline(
            config, backend, runtime, registry, logger=logger, events=events, notify=notify, stages=stages
        )
        if runtime.rank == 0:
            report_results(result, stdout)
    except BackendFailure as exc:
        failure = exc
    except BaseException:
        # not a backend status: still release, and report any cleanup failure before propagating
        cleanup = _teardown(registry, runtime, logger)
        resolve_exit(None, cleanup, stderr)
        _log_event(events, "pipeline.end", status="aborted", released=len(registry))
        if logs_dir is not None:
            close_logger(logger)
        raise

    cleanup = _teardown(registry, runtime, logger)
    status = resolve_exit(failure, cleanup, stderr)
    _log_event(
        events,
        "pipeline.end",
        status="success" if status == 0 else "failed",
        code=reported_code(failure, cleanup),
        released=len(registry),
        elapsed_s=time.perf_counter() - pipeline_start,
    )
    if logs_dir is not None:
        close_logger(logger)
    return status


def _teardown(registry: ResourceRegistry, runtime: Optional[Runtime], logger) -> Optional[CleanupFailure]:
    failures: List[BackendFailure] = []
    try:
        registry.release_all()
    except CleanupFailure as exc:
        failures.extend(exc.failures)
    if runtime is not None:
        try:
            runtime.close()
        except BackendFailure as exc:
            failures.append(exc)
    logger.info("Released %d resources", len(registry))
    if not failures:
        return None
    for exc in failures:
        logger.error("Release failed (code %s): %s", exc.status.code, exc.status.message)
    return CleanupFailure(failures)


def _log_event(event_logger, event: str, **data: Any) -> None:
    if event_logger is None:
        return
    payload = {"event": event}
    payload.update(data)
    try:
        event_logger.record(payload)
    except Exception:
        return
