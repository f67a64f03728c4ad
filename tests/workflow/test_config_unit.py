"""Tests for WorkflowSettings loading."""

import pytest
from pydantic import ValidationError

from src.workflow.config import WorkflowSettings, get_settings
from src.workflow.events import EventSinkType


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "WORKFLOW_DATABASE_URL",
        "WORKFLOW_DB_MIN_POOL_SIZE",
        "WORKFLOW_DB_MAX_POOL_SIZE",
        "WORKFLOW_DEFAULT_ACTOR",
        "WORKFLOW_ACTOR_HEADER",
        "WORKFLOW_EVENT_SINKS",
        "WORKFLOW_PORT",
    ):
        monkeypatch.delenv(name, raising=False)


class TestWorkflowSettings:
    def test_defaults(self):
        settings = get_settings()

        assert settings.database_url is None
        assert settings.db_min_pool_size == 2
        assert settings.db_max_pool_size == 10
        assert settings.default_actor == "system"
        assert settings.actor_header == "X-Actor"
        assert settings.event_sinks == [EventSinkType.LOGGING, EventSinkType.METRICS]
        assert settings.port == 8080

    def test_load_from_env(self, monkeypatch):
        monkeypatch.setenv("WORKFLOW_DATABASE_URL", "postgresql://shop:pw@db:5432/shop")
        monkeypatch.setenv("WORKFLOW_DEFAULT_ACTOR", "  front-desk  ")
        monkeypatch.setenv("WORKFLOW_EVENT_SINKS", '["metrics"]')
        monkeypatch.setenv("WORKFLOW_PORT", "9090")

        settings = get_settings()

        assert settings.database_url == "postgresql://shop:pw@db:5432/shop"
        assert settings.default_actor == "front-desk"
        assert settings.event_sinks == [EventSinkType.METRICS]
        assert settings.port == 9090

    def test_blank_database_url_means_in_memory(self, monkeypatch):
        monkeypatch.setenv("WORKFLOW_DATABASE_URL", "  ")

        assert get_settings().database_url is None

    def test_database_url_scheme_checked(self, monkeypatch):
        monkeypatch.setenv("WORKFLOW_DATABASE_URL", "mysql://db/shop")

        with pytest.raises(ValidationError):
            get_settings()

    @pytest.mark.parametrize("port", [0, 70000])
    def test_port_range(self, port):
        with pytest.raises(ValidationError):
            WorkflowSettings(port=port)

    def test_pool_bounds(self):
        with pytest.raises(ValidationError):
            WorkflowSettings(db_min_pool_size=5, db_max_pool_size=2)
        with pytest.raises(ValidationError):
            WorkflowSettings(db_min_pool_size=0)

    def test_empty_actor_header_rejected(self):
        with pytest.raises(ValidationError):
            WorkflowSettings(actor_header=" ")

    def test_unknown_sink_rejected(self, monkeypatch):
        monkeypatch.setenv("WORKFLOW_EVENT_SINKS", '["carrier-pigeon"]')

        with pytest.raises(ValidationError):
            get_settings()
