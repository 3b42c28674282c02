from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, Optional, TextIO, Union

from .core.backend_api import Backend
from .core.backend_loader import BackendRegistry
from .core.config import Configuration, RawOptions, assemble_configuration, load_config_file
from .core.pipeline import execute_run


def assemble(
    input_file: Union[Path, str],
    model: str,
    *,
    config_file: Union[Path, str, None] = None,
    **options: Any,
) -> Configuration:
    defaults: Optional[Dict[str, Any]] = None
    if config_file is not None:
        defaults = load_config_file(Path(config_file))
    raw = RawOptions(input_file=str(input_file), model=model, **options)
    return assemble_configuration(raw, defaults)


def run(
    config: Configuration,
    backend: Union[Backend, str] = "gauxc",
    *,
    library: Optional[str] = None,
    stdout: Optional[TextIO] = None,
    stderr: Optional[TextIO] = None,
    logs_dir: Union[Path, str, None] = None,
) -> int:
    if isinstance(backend, str):
        backend = BackendRegistry().discover().get(backend, library=library)
    return execute_run(
        config,
        backend,
        stdout=stdout or sys.stdout,
        stderr=stderr or sys.stderr,
        logs_dir=Path(logs_dir) if logs_dir is not None else None,
    )
