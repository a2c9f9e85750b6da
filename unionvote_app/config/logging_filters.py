import logging
import re

# Matches the request line and status of Django runserver and gunicorn access lines.
_ACCESS_LINE_RE = re.compile(r'"[A-Z]+ (?P<path>/[^ ?"]*)[^"]*" (?P<status>\d{3})\b')

HEALTH_CHECK_PATHS = frozenset({"/healthz", "/readyz"})


class HealthEndpointFilter(logging.Filter):
    """Drop successful health check access lines; keep failing checks visible."""

    def __init__(self, name: str = "", paths: frozenset[str] | None = None) -> None:
        super().__init__(name)
        self.paths = frozenset(paths) if paths is not None else HEALTH_CHECK_PATHS

    def filter(self, record: logging.LogRecord) -> bool:
        match = _ACCESS_LINE_RE.search(record.getMessage())
        if match is None or match.group("path").rstrip("/") not in self.paths:
            return True
        return not match.group("status").startswith("2")
