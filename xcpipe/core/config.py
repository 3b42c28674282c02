from __future__ import annotations

import json
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import jsonschema
from pydantic import BaseModel, ConfigDict, Field, PositiveFloat, PositiveInt, ValidationError

from .diagnostics import (
    ConfigFileError,
    Diagnostic,
    Diagnostics,
    InvalidOption,
    MissingRequiredArgument,
)
from .options import (
    AtomicGridSize,
    ExecutionSpace,
    PruningScheme,
    RadialQuad,
    read_atomic_grid_size,
    read_execution_space,
    read_pruning_scheme,
    read_radial_quad,
)

SCHEMA_PATH = Path(__file__).resolve().parent.parent / "schemas" / "driver_config.schema.json"

DEFAULT_OPTIONS: Dict[str, Any] = {
    "grid_spec": "fine",
    "radial_quad": "muraknowles",
    "prune_scheme": "robust",
    "lb_exec_space": "host",
    "int_exec_space": "host",
    "batch_size": 512,
    "basis_tol": 1e-10,
    "functional": "PBE",
}

# (raw option, configuration field, reader); order is the validation order
ENUM_FIELDS = (
    ("grid_spec", "grid_size", read_atomic_grid_size),
    ("radial_quad", "radial_quad", read_radial_quad),
    ("prune_scheme", "pruning_scheme", read_pruning_scheme),
    ("lb_exec_space", "lb_exec_space", read_execution_space),
    ("int_exec_space", "int_exec_space", read_execution_space),
)


@dataclass(frozen=True)
class RawOptions:
    input_file: Optional[str] = None
    model: Optional[str] = None
    grid_spec: Optional[str] = None
    radial_quad: Optional[str] = None
    prune_scheme: Optional[str] = None
    lb_exec_space: Optional[str] = None
    int_exec_space: Optional[str] = None
    batch_size: Optional[int] = None
    basis_tol: Optional[float] = None
    functional: Optional[str] = None

    def supplied(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}


class Configuration(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    input_file: Path
    model: str = Field(min_length=1)
    grid_size: AtomicGridSize = AtomicGridSize.FINE
    radial_quad: RadialQuad = RadialQuad.MURA_KNOWLES
    pruning_scheme: PruningScheme = PruningScheme.ROBUST
    lb_exec_space: ExecutionSpace = ExecutionSpace.HOST
    int_exec_space: ExecutionSpace = ExecutionSpace.HOST
    batch_size: PositiveInt = 512
    basis_tol: PositiveFloat = 1e-10
    functional: str = Field(default="PBE", min_length=1)


def assemble_configuration(raw: RawOptions, defaults: Optional[Dict[str, Any]] = None) -> Configuration:
    """Build a :class:`Configuration` from raw CLI values.

    Values are taken from ``raw`` first, then ``defaults`` (usually a
    configuration file), then :data:`DEFAULT_OPTIONS`. Validation stops at
    the first violated constraint.
    """
    values: Dict[str, Any] = dict(DEFAULT_OPTIONS)
    values.update({k: v for k, v in (defaults or {}).items() if v is not None})
    values.update(raw.supplied())

    if _blank(values.get("input_file")):
        raise MissingRequiredArgument("input_file")
    if _blank(values.get("model")):
        raise MissingRequiredArgument("--model")

    settings: Dict[str, Any] = {
        "input_file": Path(values["input_file"]),
        "model": values["model"],
        "batch_size": values["batch_size"],
        "basis_tol": values["basis_tol"],
        "functional": values["functional"],
    }
    for option, field_name, read in ENUM_FIELDS:
        settings[field_name] = read(values[option])

    try:
        return Configuration(**settings)
    except ValidationError as exc:
        error = exc.errors()[0]
        name = str(error["loc"][0]) if error.get("loc") else "configuration"
        raise InvalidOption(
            name,
            settings.get(name),
            message=f"Invalid {name}: {error['msg']}",
        ) from None


def load_config_file(path: Path) -> Dict[str, Any]:
    try:
        data = _load_data(path)
    except OSError as exc:
        raise ConfigFileError(str(path), f"cannot read configuration file ({exc})") from exc
    except ValueError as exc:
        raise ConfigFileError(str(path), f"malformed configuration file ({exc})") from exc
    if data is None:
        return {}
    if isinstance(data, dict) and "xcpipe" in data:
        data = data["xcpipe"]
    if not isinstance(data, dict):
        raise ConfigFileError(str(path), "configuration file must contain a mapping")
    diagnostics = validate_config_data(data)
    first = diagnostics.first_error()
    if first is not None:
        raise InvalidOption(first.location or "configuration", None, message=first.message)
    return data


def validate_config_data(data: Dict[str, Any], schema_path: Path = SCHEMA_PATH) -> Diagnostics:
    diagnostics = Diagnostics()
    with schema_path.open("r", encoding="utf-8") as handle:
        schema = json.load(handle)
    schema["$id"] = schema_path.resolve().as_uri()
    validator = jsonschema.Draft202012Validator(schema)
    for error in sorted(validator.iter_errors(data), key=str):
        diagnostics.add(
            Diagnostic(
                code="E-CONFIG-SCHEMA",
                message=error.message,
                location="/".join(str(x) for x in error.path) or "configuration",
            )
        )
    return diagnostics


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _load_data(path: Path) -> Any:
    if path.suffix in {".yaml", ".yml"}:
        import yaml

        with path.open("r", encoding="utf-8") as handle:
            try:
                return yaml.safe_load(handle)
            except yaml.YAMLError as exc:
                raise ValueError(str(exc)) from exc
    if path.suffix == ".toml":
        try:
            import tomllib
        except ImportError:  # pragma: no cover - python <3.11
            import tomli as tomllib  # type: ignore

        with path.open("rb") as handle:
            return tomllib.load(handle)
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)
