from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, TextIO

from .core.backend_loader import BackendRegistry
from .core.config import DEFAULT_OPTIONS, RawOptions, assemble_configuration, load_config_file
from .core.diagnostics import ConfigurationError
from .core.options import choices
from .core.pipeline import execute_run
from .core.teardown import resolve_exit


@dataclass(frozen=True)
class CliArgs:
    raw: RawOptions
    config: Optional[Path] = None
    backend: str = "gauxc"
    backend_lib: Optional[str] = None
    log_dir: Optional[Path] = None
    show_help: bool = False


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="xcpipe",
        description="Evaluate the exchange-correlation energy and potential for a stored density.",
        add_help=False,
    )
    parser.add_argument(
        "-h", "--help", action="store_true", dest="show_help", help="Show this help message and exit"
    )
    parser.add_argument(
        "input_file",
        nargs="?",
        metavar="<file>",
        help="Input file containing molecular geometry, basis and density matrices",
    )
    parser.add_argument("--model", metavar="<str>", help="OneDFT model to use, can be a path to a checkpoint")
    parser.add_argument(
        "--grid-spec",
        metavar="<str>",
        help=_enum_help("Atomic grid size specification", "grid_spec", "atomic grid size"),
    )
    parser.add_argument(
        "--radial-quad",
        metavar="<str>",
        help=_enum_help("Radial quadrature scheme", "radial_quad", "radial quadrature"),
    )
    parser.add_argument(
        "--prune-scheme",
        metavar="<str>",
        help=_enum_help("Pruning scheme", "prune_scheme", "pruning scheme"),
    )
    parser.add_argument(
        "--lb-exec-space",
        metavar="<str>",
        help=_enum_help("Load balancer execution space", "lb_exec_space", "execution space"),
    )
    parser.add_argument(
        "--int-exec-space",
        metavar="<str>",
        help=_enum_help("Integrator execution space", "int_exec_space", "execution space"),
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        metavar="<int>",
        help=f"Batch size for grid point processing (default: {DEFAULT_OPTIONS['batch_size']})",
    )
    parser.add_argument(
        "--basis-tol",
        type=float,
        metavar="<double>",
        help=f"Basis function evaluation tolerance (default: {DEFAULT_OPTIONS['basis_tol']:g})",
    )
    parser.add_argument(
        "--functional",
        metavar="<str>",
        help=f"Exchange-correlation functional (default: {DEFAULT_OPTIONS['functional']})",
    )
    parser.add_argument("--config", metavar="<file>", help="JSON, YAML or TOML file with option defaults")
    parser.add_argument("--backend", default="gauxc", metavar="<str>", help="Backend name (default: gauxc)")
    parser.add_argument("--backend-lib", metavar="<file>", help="Path to the backend shared library")
    parser.add_argument("--log-dir", metavar="<dir>", help="Directory for the run log and events.jsonl")
    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> CliArgs:
    args = build_parser().parse_args(argv)
    raw = RawOptions(
        input_file=args.input_file,
        model=args.model,
        grid_spec=args.grid_spec,
        radial_quad=args.radial_quad,
        prune_scheme=args.prune_scheme,
        lb_exec_space=args.lb_exec_space,
        int_exec_space=args.int_exec_space,
        batch_size=args.batch_size,
        basis_tol=args.basis_tol,
        functional=args.functional,
    )
    return CliArgs(
        raw=raw,
        config=Path(args.config) if args.config else None,
        backend=args.backend,
        backend_lib=args.backend_lib,
        log_dir=Path(args.log_dir) if args.log_dir else None,
        show_help=args.show_help,
    )


def run(
    argv: Optional[Sequence[str]] = None,
    *,
    stdout: Optional[TextIO] = None,
    stderr: Optional[TextIO] = None,
    backends: Optional[BackendRegistry] = None,
) -> int:
    stdout = stdout or sys.stdout
    stderr = stderr or sys.stderr
    try:
        args = parse_args(argv)
    except SystemExit as exc:
        return _exit_code(exc)
    if args.show_help:
        build_parser().print_help(stdout)
        return 0

    try:
        defaults = load_config_file(args.config) if args.config else None
        config = assemble_configuration(args.raw, defaults)
        registry = backends or BackendRegistry().discover()
        backend = registry.get(args.backend, library=args.backend_lib)
    except ConfigurationError as exc:
        return resolve_exit(exc, None, stderr)

    return execute_run(config, backend, stdout=stdout, stderr=stderr, logs_dir=args.log_dir)


def main() -> None:
    raise SystemExit(run())


def _enum_help(text: str, option: str, enumeration: str) -> str:
    values = ", ".join(choices(enumeration))
    return f"{text} (default: {DEFAULT_OPTIONS[option]}). Possible values are: {values}"


def _exit_code(exc: SystemExit) -> int:
    if exc.code is None:
        return 0
    if isinstance(exc.code, int):
        return exc.code
    return 1


if __name__ == "__main__":
    main()
