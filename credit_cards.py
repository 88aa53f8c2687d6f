"""
Credit-card budget bookkeeping.

Spending on a card moves the covered part of the spend from the spending
category into the card's payment category; refunds move it back; payments into
the card release the reserve. Each transaction stores the adjustment it
actually caused (``cc_adjustment`` and ``cc_covered_cents``) so that reversing
it is an exact replay, independent of what the entries look like by then.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from budget_entries import adjust_assigned, get_or_create_entry
from models import Account, AccountType, CardAdjustment, Transaction

logger = logging.getLogger(__name__)


def classify(txn: Transaction, account: Account) -> CardAdjustment:
    """Adjustment kind for a non-transfer row posted to ``account``."""
    if account.type != AccountType.credit_card or account.payment_category_id is None:
        return CardAdjustment.none
    if txn.is_transfer or txn.is_split or txn.amount_cents == 0:
        return CardAdjustment.none
    payment_category_id = account.payment_category_id
    has_spending_category = (
        txn.category_id is not None and txn.category_id != payment_category_id
    )
    if txn.amount_cents < 0:
        return CardAdjustment.spending if has_spending_category else CardAdjustment.none
    if has_spending_category:
        return CardAdjustment.refund_to_category
    return CardAdjustment.refund_to_tbb


def is_card_payment(source: Account, destination: Account) -> bool:
    return (
        destination.type == AccountType.credit_card
        and destination.payment_category_id is not None
        and source.on_budget
        and source.id != destination.id
    )


class CreditCardAdjuster:
    def __init__(self, session: Session) -> None:
        self.session = session

    def apply(self, txn: Transaction, account: Account) -> CardAdjustment:
        kind = classify(txn, account)
        txn.cc_adjustment = kind
        txn.cc_covered_cents = 0
        if kind == CardAdjustment.none:
            return kind

        year, month = txn.date.year, txn.date.month
        amount = abs(txn.amount_cents)
        payment_category_id = account.payment_category_id

        if kind == CardAdjustment.spending:
            entry = get_or_create_entry(
                self.session, txn.category_id, year, month, for_update=True
            )
            covered = min(amount, max(0, entry.assigned_cents))
            entry.assigned_cents -= amount
            adjust_assigned(self.session, payment_category_id, year, month, covered)
        elif kind == CardAdjustment.refund_to_category:
            covered = amount
            adjust_assigned(self.session, txn.category_id, year, month, amount)
            adjust_assigned(self.session, payment_category_id, year, month, -amount)
        else:
            covered = amount
            adjust_assigned(self.session, payment_category_id, year, month, -amount)

        txn.cc_covered_cents = covered
        self.session.flush()
        logger.debug(
            "cc_adjustment_applied: txn=%s kind=%s amount_cents=%s covered_cents=%s",
            txn.id,
            kind.value,
            amount,
            covered,
        )
        return kind

    def apply_payment(
        self, card_row: Transaction, source: Account, card: Account
    ) -> CardAdjustment:
        """Record a transfer from a budget account into ``card`` as a payment."""
        card_row.cc_adjustment = CardAdjustment.none
        card_row.cc_covered_cents = 0
        if not is_card_payment(source, card) or card_row.amount_cents <= 0:
            return CardAdjustment.none
        amount = card_row.amount_cents
        adjust_assigned(
            self.session,
            card.payment_category_id,
            card_row.date.year,
            card_row.date.month,
            -amount,
        )
        card_row.cc_adjustment = CardAdjustment.payment
        card_row.cc_covered_cents = amount
        self.session.flush()
        logger.debug(
            "cc_payment_applied: txn=%s card=%s amount_cents=%s",
            card_row.id,
            card.id,
            amount,
        )
        return CardAdjustment.payment

    def reverse(self, txn: Transaction, account: Optional[Account] = None) -> None:
        """Undo whatever adjustment ``txn`` recorded, using its current fields."""
        kind = txn.cc_adjustment
        if kind == CardAdjustment.none:
            return
        account = account or self.session.get(Account, txn.account_id)
        payment_category_id = account.payment_category_id
        year, month = txn.date.year, txn.date.month
        covered = txn.cc_covered_cents

        if kind == CardAdjustment.spending:
            adjust_assigned(
                self.session, txn.category_id, year, month, abs(txn.amount_cents)
            )
            adjust_assigned(self.session, payment_category_id, year, month, -covered)
        elif kind == CardAdjustment.refund_to_category:
            adjust_assigned(self.session, txn.category_id, year, month, -covered)
            adjust_assigned(self.session, payment_category_id, year, month, covered)
        else:
            adjust_assigned(self.session, payment_category_id, year, month, covered)

        logger.debug(
            "cc_adjustment_reversed: txn=%s kind=%s covered_cents=%s",
            txn.id,
            kind.value,
            covered,
        )
        txn.cc_adjustment = CardAdjustment.none
        txn.cc_covered_cents = 0
        self.session.flush()
