import logging
from collections.abc import Iterator

import pytest

from git_relay.constants import APP_NAME

OVERRIDE_VARS = ("SERVICE_NAME", "ENVIRONMENT", "LOG_LEVEL", "LOG_FORMAT", "STORE_PATH")


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Ensures every test starts without config overrides or logger changes."""
    for var in OVERRIDE_VARS:
        monkeypatch.delenv(var, raising=False)

    app_logger = logging.getLogger(APP_NAME)
    handlers, level = list(app_logger.handlers), app_logger.level
    yield
    for handler in list(app_logger.handlers):
        if handler not in handlers:
            app_logger.removeHandler(handler)
            handler.close()
    app_logger.setLevel(level)
