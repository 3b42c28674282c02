from __future__ import annotations

from enum import Enum
from typing import Dict, List, Type

from .diagnostics import InvalidOption


class ExecutionSpace(str, Enum):
    HOST = "host"
    DEVICE = "device"


class RadialQuad(str, Enum):
    BECKE = "becke"
    MURA_KNOWLES = "muraknowles"
    TREUTLER_AHLRICHS = "treutlerahlrichs"
    MURRAY_HANDY_LAMING = "murrayhandylaming"


class AtomicGridSize(str, Enum):
    FINE = "fine"
    ULTRAFINE = "ultrafine"
    SUPERFINE = "superfine"
    GM3 = "gm3"
    GM5 = "gm5"


class PruningScheme(str, Enum):
    UNPRUNED = "unpruned"
    ROBUST = "robust"
    TREUTLER = "treutler"


ENUMERATIONS: Dict[str, Type[Enum]] = {
    "execution space": ExecutionSpace,
    "radial quadrature": RadialQuad,
    "atomic grid size": AtomicGridSize,
    "pruning scheme": PruningScheme,
}

# canonical lowercase spelling -> member, one table per enumeration
_LOOKUP: Dict[str, Dict[str, Enum]] = {
    name: {member.value: member for member in enum_cls} for name, enum_cls in ENUMERATIONS.items()
}


def choices(enumeration: str) -> List[str]:
    return list(_LOOKUP[enumeration])


def decode_option(enumeration: str, value: str) -> Enum:
    """Map a user-supplied string onto a member of ``enumeration``.

    Matching is exact after lower-casing; anything else raises
    :class:`InvalidOption` naming both the enumeration and the input.
    """
    table = _LOOKUP.get(enumeration)
    if table is None:
        raise KeyError(f"Unknown enumeration: {enumeration}")
    if not isinstance(value, str):
        raise InvalidOption(enumeration, value, hints=[f"expected one of: {', '.join(table)}"])
    member = table.get(value.lower())
    if member is None:
        raise InvalidOption(enumeration, value, hints=[f"expected one of: {', '.join(table)}"])
    return member


def read_execution_space(value: str) -> ExecutionSpace:
    return decode_option("execution space", value)  # type: ignore[return-value]


def read_radial_quad(value: str) -> RadialQuad:
    return decode_option("radial quadrature", value)  # type: ignore[return-value]


def read_atomic_grid_size(value: str) -> AtomicGridSize:
    return decode_option("atomic grid size", value)  # type: ignore[return-value]


def read_pruning_scheme(value: str) -> PruningScheme:
    return decode_option("pruning scheme", value)  # type: ignore[return-value]
