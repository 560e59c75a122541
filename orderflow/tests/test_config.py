import json
import logging

import pytest
from pydantic import ValidationError as SettingsError

from orderflow.core.config import Settings
from orderflow.core.logging import JsonFormatter


class TestSettings:
    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("ORDERFLOW_DATABASE_URL", "sqlite+aiosqlite:///./env.db")
        monkeypatch.setenv("ORDERFLOW_ORDER_RETRY_MAX", "5")
        monkeypatch.setenv("ORDERFLOW_LOG_JSON", "true")

        settings = Settings(_env_file=None)

        assert settings.database_url == "sqlite+aiosqlite:///./env.db"
        assert settings.order_retry_max == 5
        assert settings.log_json is True
        assert settings.redis_url is None

    def test_rejects_bad_values(self):
        with pytest.raises(SettingsError):
            Settings(_env_file=None, cache_default_ttl_seconds=0)


class TestJsonFormatter:
    def test_formats_one_object_per_record(self):
        record = logging.LogRecord(
            name="orderflow.services.order_service",
            level=logging.WARNING,
            pathname=__file__,
            lineno=1,
            msg="Order for key %s timed out",
            args=("k-1",),
            exc_info=None,
        )

        payload = json.loads(JsonFormatter().format(record))

        assert payload["level"] == "WARNING"
        assert payload["logger"] == "orderflow.services.order_service"
        assert payload["message"] == "Order for key k-1 timed out"
