from __future__ import annotations

from typing import List, TextIO

from .backend_api import Resource, XcResult
from .config import Configuration


def format_configuration(config: Configuration) -> str:
    lines = [
        "Configuration",
        f"-> Input file        : {config.input_file}",
        f"-> Model             : {config.model}",
        f"-> Grid              : {config.grid_size.value}",
        f"-> Radial quadrature : {config.radial_quad.value}",
        f"-> Pruning scheme    : {config.pruning_scheme.value}",
        f"-> LB exec space     : {config.lb_exec_space.value}",
        f"-> Int exec space    : {config.int_exec_space.value}",
        f"-> Batch size        : {config.batch_size}",
        f"-> Basis tolerance   : {config.basis_tol:g}",
        f"-> Functional        : {config.functional}",
        "",
    ]
    return "\n".join(lines) + "\n"


def format_results(result: XcResult) -> str:
    lines: List[str] = [
        "Results",
        f"-> EXC : {result.exc:.10f}",
        _matrix_line("VXC_s", result.vxc_scalar),
        _matrix_line("VXC_z", result.vxc_z),
        "",
    ]
    return "\n".join(lines) + "\n"


def report_configuration(config: Configuration, stream: TextIO) -> None:
    stream.write(format_configuration(config))
    stream.flush()


def report_results(result: XcResult, stream: TextIO) -> None:
    stream.write(format_results(result))
    stream.flush()


def _matrix_line(label: str, matrix: Resource) -> str:
    shape = matrix.metadata.get("shape")
    if shape:
        return f"-> {label} : {' x '.join(str(n) for n in shape)}"
    return f"-> {label} : computed"
