"""
SQLAlchemy event listeners for the ledger tables.

    CreditTransaction (INSERT) -> Member.credit_balance = SUM(journal)
    MembershipChange / CreditTransaction (UPDATE) -> rejected, both are append-only
"""
import logging

from sqlalchemy import event, func, select

logger = logging.getLogger(__name__)

_listeners_registered = False


def _recalc_credit_balance(mapper, connection, target):
    from gym_ledger.models.finance import CreditTransaction
    from gym_ledger.models.member import Member

    journal = CreditTransaction.__table__
    result = connection.execute(
        select(func.coalesce(func.sum(journal.c.amount), 0))
        .where(journal.c.member_id == target.member_id)
    )
    real_balance = result.scalar()

    connection.execute(
        Member.__table__.update()
        .where(Member.__table__.c.id == target.member_id)
        .values(credit_balance=real_balance)
    )

    logger.info(
        f"Credit balance recalculated: member={target.member_id}, "
        f"balance={real_balance}, trigger={target.transaction_type}"
    )


def _reject_update(mapper, connection, target):
    raise ValueError(f"{type(target).__name__} records are append-only")


def register_all_listeners():
    """
    Register ledger listeners.

    Safe to call multiple times - listeners are registered only once.
    """
    global _listeners_registered

    if _listeners_registered:
        logger.debug("Listeners already registered, skipping")
        return

    from gym_ledger.models.finance import CreditTransaction
    from gym_ledger.models.membership import MembershipChange

    event.listen(CreditTransaction, 'after_insert', _recalc_credit_balance)
    event.listen(CreditTransaction, 'before_update', _reject_update)
    event.listen(MembershipChange, 'before_update', _reject_update)

    _listeners_registered = True
    logger.info("Ledger listeners registered")
