import logging

from django.test import SimpleTestCase

from config.logging_filters import HealthEndpointFilter


def _record(msg: str, *, name: str = "django.server") -> logging.LogRecord:
    return logging.LogRecord(
        name=name,
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )


class LoggingFilterTests(SimpleTestCase):
    def test_health_endpoint_filter(self) -> None:
        filt = HealthEndpointFilter()

        self.assertFalse(filt.filter(_record('"GET /healthz HTTP/1.1" 200 12')))
        self.assertTrue(filt.filter(_record('"GET /healthz HTTP/1.1" 503 12')))
        self.assertTrue(filt.filter(_record('"POST /api/votings/3/vote/ HTTP/1.1" 201 210')))

    def test_health_endpoint_filter_handles_gunicorn_format(self) -> None:
        filt = HealthEndpointFilter()

        record = _record(
            '- - - [27/Jan/2026:10:49:08 +0000] "GET /readyz HTTP/1.1" 200 37 "-" "Go-http-client/1.1"',
            name="gunicorn.access",
        )
        self.assertFalse(filt.filter(record))

    def test_health_check_paths_are_configurable(self) -> None:
        filt = HealthEndpointFilter(paths=frozenset({"/status"}))

        self.assertFalse(filt.filter(_record('"GET /status/?verbose=1 HTTP/1.1" 204 0')))
        self.assertTrue(filt.filter(_record('"GET /healthz HTTP/1.1" 200 12')))

    def test_non_access_lines_pass_through(self) -> None:
        self.assertTrue(HealthEndpointFilter().filter(_record("voting.sweep.completed activated=1 closed=0")))
