import time
from typing import Callable, Optional, TypeVar

import psycopg
from loguru import logger
from psycopg import Connection, IsolationLevel
from psycopg.errors import SerializationFailure

from config import get_settings
from db.db import get_conn
from errors import ReferralError, SerializationConflict, TransactionFailed

T = TypeVar("T")

RETRYABLE = (SerializationFailure, SerializationConflict)


def with_serializable_transaction(
    work: Callable[[Connection], T],
    max_retries: Optional[int] = None,
    base_delay: Optional[float] = None,
    connect=get_conn,
) -> T:
    """
    run work(conn) as one SERIALIZABLE unit of work.

    - commits only if work returns normally, rolls back otherwise.
    - serialization conflicts retry the whole unit with exponential backoff
      (base_delay, 2x base_delay, ...) up to max_retries attempts, then
      surface as TransactionFailed.
    - business rule errors propagate untouched and are never retried.
    - any other database error is fatal right away (TransactionFailed).
    """
    settings = get_settings()
    if max_retries is None:
        max_retries = settings.transaction_max_retries
    if base_delay is None:
        base_delay = settings.transaction_retry_base_delay

    for attempt in range(max_retries):
        with connect() as conn:
            conn.isolation_level = IsolationLevel.SERIALIZABLE
            try:
                result = work(conn)
                conn.commit()
                return result
            except RETRYABLE as e:
                conn.rollback()
                if attempt < max_retries - 1:
                    delay = base_delay * (2 ** attempt)
                    logger.warning(
                        "Serialization conflict, retrying transaction",
                        extra={"attempt": attempt + 1, "delay": delay},
                    )
                    time.sleep(delay)
                    continue
                logger.error(
                    "Transaction failed after retries",
                    extra={"attempts": max_retries},
                )
                raise TransactionFailed(
                    f"transaction failed after {max_retries} attempts"
                ) from e
            except ReferralError:
                conn.rollback()
                raise
            except psycopg.Error as e:
                conn.rollback()
                logger.error("Database error, transaction rolled back: {}", e)
                raise TransactionFailed(str(e)) from e
            except Exception:
                conn.rollback()
                raise

    raise TransactionFailed("transaction failed after retries")
