"""Tests for the unit-of-work helper and conflict retries"""

import pytest
from unittest.mock import MagicMock
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError
from chama_engine.domain.exceptions import ConflictError, InvalidInputError
from chama_engine.infrastructure.database.transaction import retry_on_conflict, transaction


def failing_commit(error):
    session = MagicMock()
    session.commit.side_effect = error
    return session


def test_commit_and_close_on_success():
    session = MagicMock()
    with transaction(lambda: session) as db:
        assert db is session

    session.commit.assert_called_once()
    session.rollback.assert_not_called()
    session.close.assert_called_once()


def test_stale_version_becomes_conflict():
    session = failing_commit(StaleDataError("UPDATE statement on table 'loan' expected to update 1 row(s)"))

    with pytest.raises(ConflictError):
        with transaction(lambda: session):
            pass

    session.rollback.assert_called_once()
    session.close.assert_called_once()


def test_lock_timeout_becomes_conflict():
    session = failing_commit(OperationalError("SELECT ... FOR UPDATE", {}, Exception("could not obtain lock on row")))

    with pytest.raises(ConflictError):
        with transaction(lambda: session):
            pass


def test_other_operational_errors_propagate():
    session = failing_commit(OperationalError("SELECT 1", {}, Exception("server closed the connection")))

    with pytest.raises(OperationalError):
        with transaction(lambda: session):
            pass
    session.rollback.assert_called_once()


def test_domain_errors_roll_back_and_propagate():
    session = MagicMock()

    with pytest.raises(InvalidInputError):
        with transaction(lambda: session):
            raise InvalidInputError("bad amount")

    session.commit.assert_not_called()
    session.rollback.assert_called_once()
    session.close.assert_called_once()


def test_retry_succeeds_after_conflicts():
    attempts = []

    @retry_on_conflict("test_op", max_retries=3, backoff_seconds=0)
    def operation():
        attempts.append(1)
        if len(attempts) < 3:
            raise ConflictError("raced")
        return "done"

    assert operation() == "done"
    assert len(attempts) == 3


def test_retry_gives_up():
    attempts = []

    @retry_on_conflict("test_op", max_retries=2, backoff_seconds=0)
    def operation():
        attempts.append(1)
        raise ConflictError("raced")

    with pytest.raises(ConflictError):
        operation()
    assert len(attempts) == 3


def test_retry_ignores_other_errors():
    attempts = []

    @retry_on_conflict("test_op", max_retries=3, backoff_seconds=0)
    def operation():
        attempts.append(1)
        raise InvalidInputError("bad")

    with pytest.raises(InvalidInputError):
        operation()
    assert len(attempts) == 1
