"""Tests for the standalone entry points (table creation, worker process)."""
import pytest
import structlog


@pytest.fixture
def isolated_config(tmp_path, monkeypatch):
    """Point FUNDIFY_CONFIG at a throwaway YAML and clear cached singletons."""
    from config.settings import reset_settings
    from database.store_factory import reset_store

    def _write(text: str):
        path = tmp_path / "settings.yaml"
        path.write_text(text)
        monkeypatch.setenv("FUNDIFY_CONFIG", str(path))
        return path

    monkeypatch.delenv("REDIS_URL", raising=False)
    reset_settings()
    reset_store()
    yield _write
    reset_settings()
    reset_store()
    structlog.reset_defaults()


class TestMigrateDb:
    @pytest.mark.asyncio
    async def test_check_reports_missing_tables(self, isolated_config, tmp_path):
        from scripts.migrate_db import run_migration
        isolated_config("app_name: Fundify\n")
        url = f"sqlite:///{tmp_path / 'migrate.db'}"

        missing = await run_migration(check_only=True, database_url=url)
        assert missing == {"welcome_messages", "messages"}

    @pytest.mark.asyncio
    async def test_creates_tables(self, isolated_config, tmp_path):
        from scripts.migrate_db import run_migration
        isolated_config("app_name: Fundify\n")
        url = f"sqlite:///{tmp_path / 'migrate.db'}"

        assert await run_migration(database_url=url) == set()
        assert await run_migration(check_only=True, database_url=url) == set()


class TestRunWorker:
    @pytest.mark.asyncio
    async def test_exits_when_broker_not_configured(self, isolated_config):
        from scripts.run_worker import run_worker
        isolated_config(
            "debug: true\n"
            "database:\n  store_backend: memory\n"
            "queue:\n  backend: redis\n  url: \"${FUNDIFY_UNSET_REDIS}\"\n"
        )
        assert await run_worker(consumer_name="test-worker") is False


class TestConfigureLogging:
    def teardown_method(self):
        structlog.reset_defaults()

    def test_json_in_production(self):
        from config.logging import configure_logging
        from config.settings import Settings
        configure_logging(Settings(debug=False, log_level="WARNING"))
        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)

    def test_console_in_debug(self):
        from config.logging import configure_logging
        from config.settings import Settings
        configure_logging(Settings(debug=True, log_level="nonsense"))
        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)
