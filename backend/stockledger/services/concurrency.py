# Overview: Retry and rollback discipline shared by every stock write.

from __future__ import annotations

import time

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import InfrastructureError, StockError
from ..extensions import db


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). The session is rolled back after every
    failure, so a raised error never leaves a ledger row without its balance
    effect or the other way round.

    Domain errors (StockError) are re-raised untouched. Storage errors that
    survive the retries, or are not retryable, surface as InfrastructureError.
    """
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise InfrastructureError(f"storage unavailable: {exc}") from exc
            time.sleep(backoff_base * (2 ** attempt))
        except StockError:
            db.session.rollback()
            raise
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise InfrastructureError(f"storage error: {exc}") from exc
        except Exception:
            db.session.rollback()
            raise
