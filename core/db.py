import hashlib
import logging
from contextlib import contextmanager

from django.db import connection, transaction

logger = logging.getLogger(__name__)


def advisory_lock_id(key: str) -> int:
    """Stable positive 32-bit lock id for an arbitrary string key."""
    key_hash = hashlib.sha256(key.encode("utf-8")).hexdigest()
    return int(key_hash[:8], 16) & 0x7FFFFFFF


def is_postgres() -> bool:
    return connection.vendor == "postgresql"


@contextmanager
def serializable_atomic():
    """
    Atomic block running at SERIALIZABLE isolation on PostgreSQL.

    The isolation level can only be set as the first statement of a
    transaction, so nested use falls back to a plain savepoint.
    """
    outermost = not connection.in_atomic_block
    with transaction.atomic():
        if outermost and is_postgres():
            with connection.cursor() as cursor:
                cursor.execute("SET TRANSACTION ISOLATION LEVEL SERIALIZABLE")
        yield


def try_advisory_xact_lock(key: str) -> bool:
    """
    Try to take a transaction-scoped advisory lock without waiting.

    Released automatically on commit or rollback. Backends without
    advisory locks always report the lock as acquired.
    """
    if not connection.in_atomic_block:
        raise RuntimeError("Advisory transaction locks require an open transaction")
    if not is_postgres():
        return True
    lock_id = advisory_lock_id(key)
    with connection.cursor() as cursor:
        cursor.execute("SELECT pg_try_advisory_xact_lock(%s)", [lock_id])
        acquired = bool(cursor.fetchone()[0])
    if not acquired:
        logger.warning("Advisory lock busy key=%s lock_id=%s", key, lock_id)
    return acquired
