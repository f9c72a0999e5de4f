import pytest
import structlog


@pytest.fixture(autouse=True)
def _isolate_structlog(monkeypatch):
    # CLI commands configure structlog against CliRunner's temporary stderr,
    # which is closed after each invoke. Keep module-level loggers from caching
    # that stream and restore defaults so later tests don't log to a closed file.
    real_configure = structlog.configure

    def _configure_without_cache(**kwargs):
        kwargs["cache_logger_on_first_use"] = False
        real_configure(**kwargs)

    monkeypatch.setattr(structlog, "configure", _configure_without_cache)
    yield
    structlog.reset_defaults()
