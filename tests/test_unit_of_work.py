"""Unit tests for auth/unit_of_work.py -- transaction, rollback and retry policy."""

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError

from auth.schema import create_store_engine, users_by_email
from auth.unit_of_work import run_unit_of_work


@pytest.fixture
def engine():
    eng = create_store_engine("sqlite:///:memory:")
    yield eng
    eng.dispose()


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    monkeypatch.setattr("auth.unit_of_work._BACKOFF_SECONDS", 0)


def _email_rows(engine) -> int:
    with engine.connect() as conn:
        return conn.execute(select(func.count()).select_from(users_by_email)).scalar()


def _transient() -> OperationalError:
    return OperationalError("INSERT ...", {}, Exception("database is locked"))


class TestUnitOfWork:
    def test_commits_and_returns_result(self, engine) -> None:
        def work(conn):
            conn.execute(users_by_email.insert().values(email="a@example.com", user_id="u1"))
            return "done"

        assert run_unit_of_work(engine, work) == "done"
        assert _email_rows(engine) == 1

    def test_failure_rolls_back_partial_writes(self, engine) -> None:
        def work(conn):
            conn.execute(users_by_email.insert().values(email="a@example.com", user_id="u1"))
            raise RuntimeError("index write failed")

        with pytest.raises(RuntimeError):
            run_unit_of_work(engine, work)
        assert _email_rows(engine) == 0

    def test_transient_errors_are_retried(self, engine) -> None:
        calls = []

        def work(conn):
            calls.append(1)
            conn.execute(users_by_email.insert().values(email=f"a{len(calls)}@example.com", user_id="u1"))
            if len(calls) < 3:
                raise _transient()
            return len(calls)

        assert run_unit_of_work(engine, work, retries=3) == 3
        # Only the successful attempt's write survives.
        assert _email_rows(engine) == 1

    def test_retry_budget_exhausted(self, engine) -> None:
        calls = []

        def work(conn):
            calls.append(1)
            raise _transient()

        with pytest.raises(OperationalError):
            run_unit_of_work(engine, work, retries=2)
        assert len(calls) == 3

    def test_integrity_errors_are_not_retried(self, engine) -> None:
        calls = []

        def work(conn):
            calls.append(1)
            raise IntegrityError("INSERT ...", {}, Exception("UNIQUE constraint failed"))

        with pytest.raises(IntegrityError):
            run_unit_of_work(engine, work, retries=5)
        assert len(calls) == 1
