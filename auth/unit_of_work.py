"""
auth/unit_of_work.py -- Run a primary+index write as one retryable transaction.

Every directory write touches a primary table and one or more index tables.
run_unit_of_work() executes the whole batch inside engine.begin(): either
every statement commits or the transaction is rolled back, which is the
compensating action for a partial write. The rollback also covers the
delete-then-insert sequence of API key rotation.

Retry policy:
  OperationalError (lock timeouts, dropped connections) is transient. The
  unit is re-run from scratch up to `retries` more times with linear backoff.
  The work callable must therefore read everything it needs through the conn
  it is given, so a retry sees fresh state.

  IntegrityError and every other error propagate immediately. A constraint
  violation will fail the same way on every attempt.

Known gap: two requests doing read-modify-write on the same user each run in
their own transaction. The database serializes them, but the later one wins
and may re-propagate values it read before the earlier one committed.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import OperationalError

logger = logging.getLogger("wikiauth.uow")

T = TypeVar("T")

_BACKOFF_SECONDS = 0.05


def run_unit_of_work(
    engine: Engine,
    work: Callable[[Connection], T],
    *,
    retries: int = 3,
    label: str = "write",
) -> T:
    """Run work(conn) in a single transaction and return its result.

    Raises the last OperationalError once the retry budget is spent.
    """
    attempt = 0
    while True:
        try:
            with engine.begin() as conn:
                return work(conn)
        except OperationalError as exc:
            attempt += 1
            if attempt > retries:
                logger.error("%s failed after %d attempts: %s", label, attempt, exc.orig)
                raise
            logger.warning("%s hit a transient error (attempt %d/%d): %s", label, attempt, retries + 1, exc.orig)
            time.sleep(_BACKOFF_SECONDS * attempt)
