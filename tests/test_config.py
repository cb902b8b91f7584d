"""
Tests for settings loading
"""

from sora_studio.config import Settings


class TestDatabaseUrl:
    def test_sqlite_fallback_when_unset(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)

        settings = Settings(_env_file=None)

        assert settings.database_url == "sqlite+aiosqlite:///./sora_studio.db"

    def test_postgres_url_uses_async_driver(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgres://u:p@db:5432/sora")

        settings = Settings(_env_file=None)

        assert settings.database_url == "postgresql+asyncpg://u:p@db:5432/sora"

    def test_postgresql_scheme_normalized(self):
        settings = Settings(_env_file=None, database_url="postgresql://u:p@db/sora")
        assert settings.database_url == "postgresql+asyncpg://u:p@db/sora"
