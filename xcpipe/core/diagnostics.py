from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Optional


@dataclass(frozen=True)
class Status:
    code: int = 0
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.code == 0


@dataclass
class Diagnostic:
    code: str
    message: str
    severity: str = "ERROR"
    location: Optional[str] = None
    hints: List[str] = field(default_factory=list)
    data: Optional[dict] = None

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "location": self.location,
            "hints": self.hints,
            "data": self.data,
        }


class XcPipeError(Exception):
    status_code = 1

    def __init__(self, diagnostic: Diagnostic, status: Optional[Status] = None):
        super().__init__(diagnostic.message)
        self.diagnostic = diagnostic
        self.status = status or Status(self.status_code, diagnostic.message)


class ConfigurationError(XcPipeError):
    pass


class MissingRequiredArgument(ConfigurationError):
    status_code = 2

    def __init__(self, argument: str):
        super().__init__(
            Diagnostic(
                code="E-ARG-MISSING",
                message=f"Missing required argument: {argument}",
                location=argument,
            )
        )
        self.argument = argument


class InvalidOption(ConfigurationError):
    status_code = 1

    def __init__(self, enumeration: str, value: Any, *, message: Optional[str] = None, hints=None):
        super().__init__(
            Diagnostic(
                code="E-OPTION-INVALID",
                message=message or f"Invalid {enumeration} specification: {value!r}",
                location=enumeration,
                hints=list(hints or []),
                data={"enumeration": enumeration, "value": value},
            )
        )
        self.enumeration = enumeration
        self.value = value


class ConfigFileError(ConfigurationError):
    status_code = 2

    def __init__(self, path: str, message: str):
        super().__init__(
            Diagnostic(code="E-CONFIG-FILE", message=f"{path}: {message}", location=path)
        )


class BackendFailure(XcPipeError):
    def __init__(self, status: Status, *, operation: Optional[str] = None, stage: Optional[str] = None):
        message = status.message or f"backend call failed (code {status.code})"
        super().__init__(
            Diagnostic(
                code="E-BACKEND",
                message=message,
                location=stage or operation,
                data={"code": status.code, "operation": operation},
            ),
            status,
        )
        self.operation = operation
        self.stage = stage


class CleanupFailure(XcPipeError):
    def __init__(self, failures: List[BackendFailure]):
        if not failures:
            raise ValueError("CleanupFailure requires at least one failed release")
        first = failures[0].status
        if len(failures) == 1:
            message = first.message
        else:
            details = "; ".join(f.status.message or f"code {f.status.code}" for f in failures)
            message = f"{len(failures)} resources failed to release: {details}"
        super().__init__(
            Diagnostic(
                code="E-CLEANUP",
                message=message or f"release failed (code {first.code})",
                data={"codes": [f.status.code for f in failures]},
            ),
            Status(first.code, message),
        )
        self.failures = list(failures)


class Diagnostics:
    def __init__(self) -> None:
        self.items: List[Diagnostic] = []

    def add(self, diagnostic: Diagnostic) -> None:
        self.items.append(diagnostic)

    def has_errors(self) -> bool:
        return any(d.severity == "ERROR" for d in self.items)

    def first_error(self) -> Optional[Diagnostic]:
        return next((d for d in self.items if d.severity == "ERROR"), None)
