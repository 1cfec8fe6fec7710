"""Authentication metrics.

Emits one line per event on stderr, never on stdout (stdout carries the MCP
protocol stream)::

    AUTH_METRIC event=refresh_success duration_ms=182 type=proactive

Values are sanitized to ``[A-Za-z0-9._-]``; any run of other characters
becomes a single ``_`` and leading or trailing ``_`` is dropped. Collection
is on by default and disabled with ``AUTH_METRICS=off`` (also ``false`` or
``0``, case-insensitive). When disabled, every ``emit_*`` method returns
before building the line.
"""

import os
import re
import sys
from collections.abc import Mapping
from typing import Any, TextIO

METRICS_ENV_VAR = "AUTH_METRICS"
DISABLING_VALUES = frozenset({"off", "false", "0"})

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
_UNDERSCORE_RUNS = re.compile(r"_+")


def metrics_enabled(environ: Mapping[str, str] | None = None) -> bool:
    """Read the opt-out flag from the environment."""
    value = (environ if environ is not None else os.environ).get(METRICS_ENV_VAR)
    if value is None:
        return True
    return value.strip().lower() not in DISABLING_VALUES


def sanitize_value(value: str) -> str:
    """Restrict a metric value to ``[A-Za-z0-9._-]``."""
    if not value:
        return value
    return _UNDERSCORE_RUNS.sub("_", _UNSAFE_CHARS.sub("_", value)).strip("_")


def _format(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return str(round(value))
    return sanitize_value(str(value))


class AuthMetrics:
    """Structured, opt-out metric emitter for token lifecycle events.

    Constructed explicitly and passed to the storage service and providers;
    there is no module-level instance.

    Attributes:
        enabled: Whether events are written.
    """

    def __init__(self, enabled: bool | None = None, stream: TextIO | None = None) -> None:
        """Initialize the emitter.

        Args:
            enabled: Force collection on or off. Reads ``AUTH_METRICS`` when None.
            stream: Output stream. Defaults to the current ``sys.stderr``.
        """
        self.enabled = metrics_enabled() if enabled is None else enabled
        self._stream = stream

    def emit_refresh_success(
        self,
        duration_ms: float,
        refresh_type: str | None = None,
        time_until_expiry_ms: int | None = None,
        attempts: int | None = None,
    ) -> None:
        """A refresh operation completed."""
        if not self.enabled:
            return
        self._emit(
            "refresh_success",
            {
                "duration_ms": duration_ms,
                "type": refresh_type,
                "time_until_expiry_ms": time_until_expiry_ms,
                "attempts": attempts,
            },
        )

    def emit_refresh_failure(
        self,
        error: str,
        duration_ms: float,
        refresh_type: str | None = None,
        retry_count: int | None = None,
    ) -> None:
        """A refresh operation failed. ``error`` should be a kind or type name."""
        if not self.enabled:
            return
        self._emit(
            "refresh_failure",
            {
                "error": error,
                "duration_ms": duration_ms,
                "type": refresh_type,
                "retry_count": retry_count,
            },
        )

    def emit_refresh_proactive(
        self, time_until_expiry_ms: int, threshold_ms: int | None = None
    ) -> None:
        """A proactive refresh was triggered."""
        if not self.enabled:
            return
        self._emit(
            "refresh_proactive",
            {"time_until_expiry_ms": time_until_expiry_ms, "threshold_ms": threshold_ms},
        )

    def emit_cache_corrupted(
        self,
        source: str,
        corruption_type: str,
        recoverable: bool | None = None,
        error_type: str | None = None,
    ) -> None:
        """A cached record was found corrupted and quarantined."""
        if not self.enabled:
            return
        self._emit(
            "cache_corrupted",
            {
                "source": source,
                "corruption_type": corruption_type,
                "recoverable": recoverable,
                "error_type": error_type,
            },
        )

    def emit_persistence_failure(self, error: str, operation: str = "save") -> None:
        """Credentials could not be written to any backend."""
        if not self.enabled:
            return
        self._emit("persistence_failure", {"error": error, "operation": operation})

    def _emit(self, event: str, data: dict[str, Any]) -> None:
        pairs = [f"event={event}"]
        for key, value in data.items():
            if value is not None:
                pairs.append(f"{key}={_format(value)}")
        line = f"AUTH_METRIC {' '.join(pairs)}\n"
        stream = self._stream or sys.stderr
        try:
            stream.write(line)
        except (OSError, ValueError):
            # Closed or broken stderr must not disturb the auth flow
            pass
