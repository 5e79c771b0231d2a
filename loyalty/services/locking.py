"""
Atomic per-user units of work.

Every balance-affecting operation (earn, spend, adjust, expire, streak update)
runs inside locked_user_state(): the in-process user lock is taken, the
projection row is reloaded with SELECT ... FOR UPDATE, the caller mutates the
row and appends ledger entries, and the whole unit commits or rolls back
together.
"""
from contextlib import contextmanager

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import UserLoyaltyState
from ..utils.exceptions import LedgerError, LoyaltyError, UserNotFoundError
from ..utils.locks import user_locks


def load_state_for_update(tenant_id, user_id):
    """Reload the projection row under a row lock (no-op lock on SQLite)."""
    return (
        UserLoyaltyState.query
        .filter_by(tenant_id=tenant_id, user_id=user_id)
        .with_for_update()
        .populate_existing()
        .first()
    )


@contextmanager
def locked_user_state(tenant_id, user_id):
    """
    Yield the user's locked UserLoyaltyState and commit on clean exit.

    Raises:
        UserNotFoundError: If the user has no loyalty state
        LockTimeoutError: If another operation holds the user too long
        LedgerError: If the commit failed (everything was rolled back)
    """
    timeout = current_app.config.get('LOYALTY_LOCK_TIMEOUT')

    with user_locks.hold(tenant_id, user_id, timeout=timeout):
        try:
            state = load_state_for_update(tenant_id, user_id)
            if state is None:
                raise UserNotFoundError(user_id)

            yield state

            db.session.commit()
        except LoyaltyError:
            db.session.rollback()
            raise
        except SQLAlchemyError as e:
            db.session.rollback()
            current_app.logger.error(f"Points update for user {user_id} rolled back: {e}")
            raise LedgerError(
                f"Points update for user {user_id} failed and was rolled back",
                original_error=e
            )
        except Exception:
            db.session.rollback()
            raise
