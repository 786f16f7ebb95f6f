"""
Bounded transactions for the award and routing operations.

Every award mutation runs in one ``transaction.atomic`` block with two
limits: how long it may wait for row locks (LOCK_TIMEOUT) and how long the
whole block may run (STATEMENT_TIMEOUT). Either limit being hit rolls the
block back and surfaces ``TransactionTimeout``, which callers may retry.
"""
import logging
import math
import time
from contextlib import contextmanager

from django.db import transaction, OperationalError

from .conf import engine_setting
from .exceptions import TransactionTimeout

logger = logging.getLogger(__name__)

LOCK_ERROR_MARKERS = (
    'database is locked',
    'database table is locked',
    'lock timeout',
    'lock wait timeout',
    'could not obtain lock',
    'canceling statement due to',
)


def is_lock_timeout(exc):
    message = str(exc).lower()
    return any(marker in message for marker in LOCK_ERROR_MARKERS)


def apply_timeouts(using=None):
    """Push the engine's limits down to backends that support them"""
    connection = transaction.get_connection(using)
    lock_ms = int(engine_setting('LOCK_TIMEOUT') * 1000)
    statement_ms = int(engine_setting('STATEMENT_TIMEOUT') * 1000)

    with connection.cursor() as cursor:
        if connection.vendor == 'postgresql':
            cursor.execute(f"SET LOCAL lock_timeout = {lock_ms}")
            cursor.execute(f"SET LOCAL statement_timeout = {statement_ms}")
        elif connection.vendor == 'mysql':
            cursor.execute(f"SET SESSION innodb_lock_wait_timeout = {max(1, math.ceil(lock_ms / 1000))}")
        # sqlite waits for the busy timeout configured in DATABASES OPTIONS


@contextmanager
def bounded_atomic(operation, using=None):
    budget = engine_setting('STATEMENT_TIMEOUT')
    started = time.monotonic()
    try:
        with transaction.atomic(using=using):
            apply_timeouts(using)
            yield
            elapsed = time.monotonic() - started
            if elapsed > budget:
                logger.warning("%s exceeded its %.1fs budget (%.2fs); rolling back", operation, budget, elapsed)
                raise TransactionTimeout(operation=operation, elapsed=f'{elapsed:.2f}s')
    except OperationalError as exc:
        if not is_lock_timeout(exc):
            raise
        logger.warning("%s timed out waiting for a lock: %s", operation, exc)
        raise TransactionTimeout(operation=operation) from exc
