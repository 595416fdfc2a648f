import logging

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.util import identity_key

from errors import NotFound, ValidationError
from models import Transaction, TransactionType, User
from schemas import BalanceDrift


logger = logging.getLogger(__name__)


def signed_amount(txn_type: TransactionType, amount: int) -> int:
    return amount if txn_type == TransactionType.income else -amount


def _user_exists(session: Session, user_id: int) -> bool:
    return session.scalar(select(User.id).where(User.id == user_id)) is not None


def apply_delta(session: Session, user_id: int, delta: int) -> None:
    """Add ``delta`` to the user's running balance with a single UPDATE.

    The increment happens inside the caller's transaction; committing is the
    caller's job so the causative row and the balance land together.
    """
    result = session.execute(
        update(User)
        .where(User.id == user_id)
        .values(total_balance=User.total_balance + delta)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotFound("User not found")
    logger.info(f"balance_delta: user_id={user_id} delta={delta}")
    _expire_user(session, user_id)


def apply_stash_delta(session: Session, user_id: int, delta: int) -> None:
    """Move money in (+) or out (-) of the user's stash.

    The stash is a slice of ``total_balance``; the balance itself is not
    touched. A deposit may not exceed the balance and a withdrawal may not
    exceed the stash; both bounds live in the UPDATE's WHERE clause.
    """
    if delta == 0:
        raise ValidationError("Amount must be a positive number")
    new_stash = User.stashed_amount + delta
    bounds = [User.id == user_id, new_stash >= 0]
    if delta > 0:
        bounds.append(new_stash <= User.total_balance)
    result = session.execute(
        update(User)
        .where(*bounds)
        .values(stashed_amount=new_stash)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        if not _user_exists(session, user_id):
            raise NotFound("User not found")
        if delta < 0:
            raise ValidationError("Withdrawal exceeds the stashed amount")
        raise ValidationError("Not enough spendable balance to stash")
    logger.info(f"stash_delta: user_id={user_id} delta={delta}")
    _expire_user(session, user_id)


def set_balance(session: Session, user_id: int, new_balance: int) -> int:
    """Overwrite the stored balance and book the difference as an adjustment."""
    current = session.scalar(select(User.total_balance).where(User.id == user_id))
    if current is None:
        raise NotFound("User not found")
    difference = new_balance - int(current)
    if difference == 0:
        return 0
    session.execute(
        update(User)
        .where(User.id == user_id)
        .values(
            total_balance=User.total_balance + difference,
            manual_adjustment=User.manual_adjustment + difference,
        )
        .execution_options(synchronize_session=False)
    )
    logger.info(f"balance_edit: user_id={user_id} difference={difference}")
    _expire_user(session, user_id)
    return difference


def _signed_sum():
    return func.coalesce(
        func.sum(
            case(
                (Transaction.type == TransactionType.income, Transaction.amount),
                else_=-Transaction.amount,
            )
        ),
        0,
    )


def ledger_balance(session: Session, user_id: int) -> int:
    stmt = select(_signed_sum()).where(Transaction.user_id == user_id)
    return int(session.execute(stmt).scalar_one() or 0)


def _expected_balance():
    """Ledger sum plus manual adjustment, correlated to the enclosing users row."""
    ledger = (
        select(_signed_sum())
        .where(Transaction.user_id == User.id)
        .correlate(User)
        .scalar_subquery()
    )
    return ledger + User.manual_adjustment


def _balance_snapshot(session: Session):
    stmt = select(
        User.id, User.name, User.total_balance, _expected_balance()
    ).order_by(User.id)
    return session.execute(stmt).all()


def _correct_balance(session: Session, user_id: int) -> bool:
    # recomputed inside the UPDATE; commits since the snapshot are counted once
    expected = _expected_balance()
    result = session.execute(
        update(User)
        .where(User.id == user_id, User.total_balance != expected)
        .values(total_balance=expected)
        .execution_options(synchronize_session=False)
    )
    _expire_user(session, user_id)
    return result.rowcount > 0


def reconcile_balances(session: Session, *, fix: bool = False) -> list[BalanceDrift]:
    """Compare stored balances with the ledger and optionally correct them.

    Stored and expected values come from one statement. A correction sets the
    absolute ledger value rather than applying the observed drift, so a write
    that commits while the job runs is never counted twice.
    """
    drifts: list[BalanceDrift] = []
    for user_id, name, stored, expected in _balance_snapshot(session):
        stored = int(stored)
        expected = int(expected)
        if stored == expected:
            continue
        drift = stored - expected
        logger.warning(
            f"reconcile_drift: user_id={user_id} stored={stored} "
            f"expected={expected} drift={drift} fix={fix}"
        )
        fixed = _correct_balance(session, user_id) if fix else False
        drifts.append(
            BalanceDrift(
                user_id=user_id,
                user_name=name,
                stored=stored,
                expected=expected,
                drift=drift,
                fixed=fixed,
            )
        )
    return drifts


def _expire_user(session: Session, user_id: int) -> None:
    cached = session.identity_map.get(identity_key(User, user_id))
    if cached is not None:
        session.expire(cached, ["total_balance", "stashed_amount", "manual_adjustment"])
