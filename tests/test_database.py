"""Tests for engine setup and the transaction scope."""

import pytest
from sqlalchemy import text
from sqlalchemy.orm import sessionmaker

from press_tracker.models import Vessel
from press_tracker.services import database
from press_tracker.services.database import session_scope


@pytest.fixture
def file_engine(tmp_path):
    engine = database.create_database_engine(f"sqlite:///{tmp_path / 'cellar.db'}")
    database.init_database(engine)
    yield engine
    engine.dispose()


class TestFileEngine:
    def test_schema_complete(self, file_engine):
        assert database.missing_tables(file_engine) == []

    def test_foreign_keys_enforced(self, file_engine):
        with file_engine.connect() as conn:
            assert conn.execute(text("PRAGMA foreign_keys")).scalar() == 1

    def test_commit_and_rollback(self, file_engine):
        Session = sessionmaker(bind=file_engine, expire_on_commit=False)

        with Session() as session:
            session.add(Vessel(name="Tank 1", capacity_l=500.0))
            session.commit()

        with Session() as session:
            session.add(Vessel(name="Tank 2", capacity_l=500.0))
            session.flush()
            session.rollback()

        with Session() as session:
            assert [v.name for v in session.query(Vessel).all()] == ["Tank 1"]

    def test_savepoint_rolls_back_alone(self, file_engine):
        Session = sessionmaker(bind=file_engine)

        with Session() as session:
            session.add(Vessel(name="Tank 1", capacity_l=500.0))
            session.flush()
            nested = session.begin_nested()
            session.add(Vessel(name="Tank 2", capacity_l=500.0))
            session.flush()
            nested.rollback()
            session.commit()

        with Session() as session:
            assert session.query(Vessel).count() == 1

    def test_missing_tables_on_empty_database(self, tmp_path):
        engine = database.create_database_engine(f"sqlite:///{tmp_path / 'empty.db'}")

        assert "press_runs" in database.missing_tables(engine)
        engine.dispose()


class TestSessionScope:
    def test_commits_on_success(self, test_db):
        with session_scope() as session:
            session.add(Vessel(name="Tank 1", capacity_l=500.0))

        with session_scope() as session:
            assert session.query(Vessel).count() == 1

    def test_rolls_back_and_reraises(self, test_db):
        with pytest.raises(ValueError):
            with session_scope() as session:
                session.add(Vessel(name="Tank 1", capacity_l=500.0))
                session.flush()
                raise ValueError("boom")

        with session_scope() as session:
            assert session.query(Vessel).count() == 0
