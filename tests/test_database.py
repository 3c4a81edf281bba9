"""Tests for engine and session factory lifetime."""

from les_audit import database


class TestInitDb:
    """Test the process-wide engine."""

    async def test_created_once_and_reused(self, engine, monkeypatch):
        calls = []

        def fake_engine():
            calls.append(1)
            return engine

        monkeypatch.setattr(database, "get_engine", fake_engine)
        monkeypatch.setattr(database, "_engine", None)
        monkeypatch.setattr(database, "_session_factory", None)

        first_engine, first_factory = database.init_db()
        second_engine, second_factory = database.init_db()

        assert first_engine is engine
        assert second_engine is first_engine
        assert second_factory is first_factory
        assert len(calls) == 1

        async with first_factory() as session:
            assert database.dialect_name(session) == "sqlite"

    async def test_dispose_resets(self, engine, monkeypatch):
        monkeypatch.setattr(database, "get_engine", lambda: engine)
        monkeypatch.setattr(database, "_engine", None)
        monkeypatch.setattr(database, "_session_factory", None)

        database.init_db()
        await database.dispose_db()

        assert database._engine is None
        assert database._session_factory is None
