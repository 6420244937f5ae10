from __future__ import annotations

from typing import Final

# Typed errors let callers (humans or agents) branch without parsing messages.
# Keep this list minimal and grow it only when a new type is actually emitted.
KNOWN_ERROR_TYPES: Final[set[str]] = {
    "ALREADY_INITIALIZED",
    "BACKEND_FAILED",
    "DEPENDENCY_MISSING",
    "INVALID_ARGUMENT",
    "NOT_A_GIT_REPO",
    "NOT_A_PROJECT",
    "NOT_FOUND",
    "NOTHING_TO_COMMIT",
    "OPEN_FAILED",
    "STEP_FAILED",
    "TOOL_MISSING",
}


def assert_known_error_type(error_type: str) -> None:
    if error_type not in KNOWN_ERROR_TYPES:
        raise ValueError(f"Unknown error type: {error_type!r}. Add it to lra.core.error_types.KNOWN_ERROR_TYPES.")
