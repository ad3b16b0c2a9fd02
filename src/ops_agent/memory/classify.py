"""Best-effort detection of answers that must not be cached."""

from __future__ import annotations

from collections.abc import Iterable

ITERATION_LIMIT_WARNING = (
    "⚠️ Reached the maximum number of tool-call iterations ({limit}); "
    "the answer may be incomplete."
)
CANCELLED_NOTICE = "⏹️ Request cancelled."

DEFAULT_ERROR_MARKERS: tuple[str, ...] = (
    "❌",
    "⚠️ Reached the maximum number of tool-call iterations",
    CANCELLED_NOTICE,
    "LLM call failed",
    "Agent call failed",
    "Agent is not initialized",
    "i/o timeout",
    "connection refused",
    "dial tcp",
    "context deadline exceeded",
    "failed to",
    "error:",
    "Error:",
    "失败:",
    "错误:",
    "异常:",
)


class ErrorResponseClassifier:
    """Substring predicate over a configurable list of failure markers."""

    def __init__(self, markers: Iterable[str] = DEFAULT_ERROR_MARKERS) -> None:
        self.markers = tuple(markers)

    def __call__(self, answer: str) -> bool:
        return any(marker in answer for marker in self.markers)

    def with_markers(self, *extra: str) -> "ErrorResponseClassifier":
        return ErrorResponseClassifier((*self.markers, *extra))
