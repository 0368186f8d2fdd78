"""Tests for db.py module."""

import pytest
from sqlalchemy import inspect, select

from opi_imagegen.builds.models import BuildRun
from opi_imagegen.db import (
    create_all_tables,
    drop_all_tables,
    get_engine,
    get_session,
    get_session_factory,
)


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite engine in a directory that does not exist yet."""
    engine = get_engine(f"sqlite:///{tmp_path}/nested/history.db")
    create_all_tables(engine)
    return engine


class TestEngine:
    """Tests for engine and table helpers."""

    def test_parent_directory_created(self, engine, tmp_path):
        """The SQLite parent directory is created on demand."""
        assert (tmp_path / "nested").is_dir()

    def test_create_and_drop_tables(self, engine):
        """Tables can be created and dropped again."""
        assert "build_runs" in inspect(engine).get_table_names()
        drop_all_tables(engine)
        assert "build_runs" not in inspect(engine).get_table_names()


class TestGetSession:
    """Tests for the transactional session scope."""

    def test_commits_on_success(self, engine):
        """Changes are committed when the block exits normally."""
        factory = get_session_factory(engine)
        with get_session(factory) as session:
            session.add(BuildRun(output="/tmp/a.img"))

        with get_session(factory) as session:
            runs = session.scalars(select(BuildRun)).all()
        assert [r.output for r in runs] == ["/tmp/a.img"]

    def test_rolls_back_on_error(self, engine):
        """Changes are discarded and the error re-raised on failure."""
        factory = get_session_factory(engine)
        with pytest.raises(RuntimeError):
            with get_session(factory) as session:
                session.add(BuildRun(output="/tmp/b.img"))
                session.flush()
                raise RuntimeError("boom")

        with get_session(factory) as session:
            assert session.scalars(select(BuildRun)).all() == []
