from __future__ import annotations

from typing import Optional, TextIO

from .diagnostics import CleanupFailure, XcPipeError

EXIT_SUCCESS = 0
EXIT_FAILURE = 1


def resolve_exit(
    failure: Optional[XcPipeError],
    cleanup: Optional[CleanupFailure],
    stderr: TextIO,
) -> int:
    """Fold the run outcome and the cleanup outcome into one exit status.

    A run failure is reported as the primary cause; a cleanup failure is
    always reported as well, after it. Only the error stream is written.
    """
    if failure is not None:
        stderr.write(format_error("Error", failure) + "\n")
    if cleanup is not None:
        stderr.write(format_error("Error during cleanup", cleanup) + "\n")
    if failure is None and cleanup is None:
        return EXIT_SUCCESS
    stderr.flush()
    return EXIT_FAILURE


def reported_code(failure: Optional[XcPipeError], cleanup: Optional[CleanupFailure]) -> int:
    if failure is not None:
        return failure.status.code
    if cleanup is not None:
        return cleanup.status.code
    return 0


def format_error(prefix: str, error: XcPipeError) -> str:
    text = f"{prefix} (code {error.status.code})"
    stage = getattr(error, "stage", None)
    if stage:
        text += f" [{stage}]"
    message = error.status.message or error.diagnostic.message
    if message:
        text += f": {message}"
    return text
