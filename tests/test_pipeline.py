import io
import json

import pytest

from xcpipe.core.pipeline import STAGES, Stage, execute_run, run_pipeline
from xcpipe.core.registry import ResourceRegistry

ALL_OPS = [
    "open_runtime",
    "read_molecule",
    "read_basis",
    "create_molgrid",
    "create_load_balancer",
    "modify_weights",
    "create_functional",
    "create_integrator",
    "read_matrix:/DENSITY_SCALAR",
    "read_matrix:/DENSITY_Z",
    "eval_exc_vxc",
]


def _run(config, backend, **kwargs):
    stdout, stderr = io.StringIO(), io.StringIO()
    status = execute_run(config, backend, stdout=stdout, stderr=stderr, **kwargs)
    return status, stdout.getvalue(), stderr.getvalue()


def test_stage_order():
    assert [stage.name for stage in STAGES] == [
        "molecule",
        "basis",
        "molgrid",
        "load_balancer",
        "molecular_weights",
        "functional",
        "integrator",
        "density_matrices",
        "exc_vxc",
    ]


def test_full_success(config, make_backend):
    backend = make_backend()
    status, out, err = _run(config, backend)

    assert status == 0
    assert err == ""
    assert backend.calls == ALL_OPS
    assert out.startswith("Configuration\n")
    assert "-> Model             : onedft-small" in out
    assert "-> EXC : -1.2345678901" in out
    assert out.count("-> EXC") == 1
    assert "-> VXC_s : 3 x 3" in out
    assert "-> VXC_z : 3 x 3" in out
    # nine inputs plus two output matrices, each released once in creation order
    assert backend.released == backend.created
    assert len(backend.released) == 11
    assert backend.runtime.barriers == 2
    assert backend.runtime.closed == 1


def test_basis_tolerance_reaches_backend(input_file, make_backend):
    from xcpipe.core.config import RawOptions, assemble_configuration

    cfg = assemble_configuration(RawOptions(input_file=str(input_file), model="m", basis_tol=1e-7))
    backend = make_backend()
    assert _run(cfg, backend)[0] == 0
    assert backend.basis_tolerance == 1e-7


def test_unapplied_basis_tolerance_is_reported(config, make_backend, tmp_path):
    logs = tmp_path / "logs"
    backend = make_backend(tolerance_setter=False)
    status, out, err = _run(config, backend, logs_dir=logs)

    assert status == 0
    assert backend.basis_tolerance is None
    assert err == "Warning [basis]: basis_tol=1e-10 not applied\n"
    assert "Warning" not in out
    assert "basis_tol=1e-10 not applied" in (logs / "pipeline.log").read_text(encoding="utf-8")
    events = [json.loads(line) for line in (logs / "events.jsonl").read_text(encoding="utf-8").splitlines()]
    notices = [event for event in events if event["event"] == "resource.notice"]
    assert [event["key"] for event in notices] == ["basis"]


@pytest.mark.parametrize("index", range(1, len(ALL_OPS)))
def test_fail_fast_at_every_stage(config, make_backend, index):
    failing = ALL_OPS[index]
    backend = make_backend(fail_at=failing)
    status, out, err = _run(config, backend)

    assert status == 1
    assert backend.calls == ALL_OPS[: index + 1]
    # everything built before the failure, and nothing after it
    assert len(backend.created) == index - 1
    assert backend.released == backend.created
    assert "Results" not in out
    assert err.startswith("Error (code 7)")
    assert "backend exploded" in err
    assert backend.runtime.closed == 1


def test_missing_input_file_fails_in_molecule_stage(tmp_path, make_backend):
    from xcpipe.core.config import RawOptions, assemble_configuration

    cfg = assemble_configuration(RawOptions(input_file=str(tmp_path / "absent.h5"), model="m"))
    backend = make_backend()
    status, out, err = _run(cfg, backend)

    assert status == 1
    assert backend.released == []
    assert not [r for r in backend.created if r.kind == "matrix"]
    assert "Error (code 2) [molecule]" in err
    assert "absent.h5" in err
    assert "Error" not in out


def test_computation_failure_releases_nine_resources(config, make_backend):
    backend = make_backend(fail_at="eval_exc_vxc", fail_code=42, fail_message="model checkpoint rejected")
    status, out, err = _run(config, backend)

    assert status == 1
    assert len(backend.released) == 9
    assert err == "Error (code 42) [exc_vxc]: model checkpoint rejected\n"
    # the barrier before the evaluation is reached, the one after is not
    assert backend.runtime.barriers == 1


def test_cleanup_failure_alone_is_reported(config, make_backend):
    backend = make_backend(release_failures={"PBE": 5})
    status, out, err = _run(config, backend)

    assert status == 1
    assert "-> EXC" in out
    assert err == "Error during cleanup (code 5): cannot free PBE\n"
    assert len(backend.released) == 11


def test_pipeline_failure_takes_precedence_over_cleanup(config, make_backend):
    backend = make_backend(fail_at="create_integrator", release_failures={"molgrid": 5})
    status, out, err = _run(config, backend)

    lines = err.splitlines()
    assert status == 1
    assert lines[0].startswith("Error (code 7) [integrator]")
    assert lines[1] == "Error during cleanup (code 5): cannot free molgrid"
    assert len(backend.released) == 6


def test_unexpected_error_still_reports_cleanup_failure(config, make_backend):
    backend = make_backend(
        fail_at="create_molgrid",
        fail_with=OverflowError("int too big to convert"),
        release_failures={"molecule": 5},
    )
    stdout, stderr = io.StringIO(), io.StringIO()
    with pytest.raises(OverflowError):
        execute_run(config, backend, stdout=stdout, stderr=stderr)

    assert len(backend.released) == 2
    assert backend.runtime.closed == 1
    assert stderr.getvalue() == "Error during cleanup (code 5): cannot free molecule\n"


def test_unexpected_error_with_clean_teardown_writes_nothing(config, make_backend):
    backend = make_backend(fail_at="create_functional", fail_with=RuntimeError("bad handle"))
    stderr = io.StringIO()
    with pytest.raises(RuntimeError, match="bad handle"):
        execute_run(config, backend, stdout=io.StringIO(), stderr=stderr)

    assert backend.released == backend.created
    assert stderr.getvalue() == ""


def test_runtime_failure_creates_nothing(config, make_backend):
    backend = make_backend(fail_at="open_runtime")
    status, out, err = _run(config, backend)

    assert status == 1
    assert out == ""
    assert backend.calls == ["open_runtime"]
    assert backend.released == []


def test_runtime_close_failure_is_a_cleanup_failure(config, make_backend, make_runtime):
    backend = make_backend(runtime=make_runtime(close_code=11))
    status, out, err = _run(config, backend)

    assert status == 1
    assert err == "Error during cleanup (code 11): runtime teardown failed\n"


def test_only_rank_zero_reports(config, make_backend, make_runtime):
    backend = make_backend(runtime=make_runtime(rank=1, size=2))
    status, out, err = _run(config, backend)

    assert status == 0
    assert out == ""
    assert backend.runtime.barriers == 2


def test_events_log(config, make_backend, tmp_path):
    logs = tmp_path / "logs"
    backend = make_backend(fail_at="modify_weights")
    status, _, _ = _run(config, backend, logs_dir=logs)

    events = [json.loads(line) for line in (logs / "events.jsonl").read_text(encoding="utf-8").splitlines()]
    names = [event["event"] for event in events]
    assert status == 1
    assert names[0] == "pipeline.start"
    assert names[-1] == "pipeline.end"
    assert events[-1]["status"] == "failed"
    assert events[-1]["code"] == 7
    assert len({event["run_id"] for event in events}) == 1
    assert [event["seq"] for event in events] == list(range(len(events)))
    errors = [event for event in events if event["event"] == "stage.error"]
    assert [event["stage"] for event in errors] == ["molecular_weights"]
    assert errors[0]["error"]["code"] == "E-BACKEND"
    assert names.count("resource.release") == 4
    assert (logs / "pipeline.log").exists()


def test_missing_dependency_is_detected(config, make_backend):
    backend = make_backend()
    registry = ResourceRegistry(backend.release)
    stages = [stage for stage in STAGES if stage.name != "molgrid"]
    with pytest.raises(RuntimeError, match="load_balancer"):
        run_pipeline(config, backend, backend.open_runtime(), registry, stages=stages)
    assert len(registry) == 2


def test_pipeline_without_result_is_an_error(config, make_backend):
    backend = make_backend()
    registry = ResourceRegistry(backend.release)
    with pytest.raises(RuntimeError, match="without"):
        run_pipeline(config, backend, backend.open_runtime(), registry, stages=[Stage("noop", (), lambda b, s, k: None)])
