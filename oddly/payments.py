"""Proportional bounty splitting and payment bookkeeping.

Each contribution carries a token value fixed by its type. A challenge's
bounty is divided in proportion to those values, one split per
contribution, in contribution order. Amounts are plain floating-point
quotients: percentages sum to 100 and amounts to the bounty only up to
rounding, and no remainder is redistributed.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import desc, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from oddly import repository
from oddly.errors import NotFoundError, ValidationError
from oddly.models import ContributionType, Payment, PaymentMethod, PaymentStatus

log = logging.getLogger(__name__)

TOKEN_VALUES: dict[str, float] = {
    ContributionType.CODE.value: 30.0,
    ContributionType.DESIGN.value: 25.0,
    ContributionType.IDEA.value: 20.0,
    ContributionType.RESEARCH.value: 15.0,
}


def token_value_for(contribution_type: str) -> float:
    try:
        return TOKEN_VALUES[contribution_type]
    except KeyError:
        raise ValidationError(f"Unknown contribution type: {contribution_type}") from None


@dataclass
class PaymentSplit:
    contributor_id: str
    contribution_id: str
    percentage: float
    amount: float
    token_value: float

    def as_dict(self) -> dict:
        return {
            "contributorId": self.contributor_id,
            "contributionId": self.contribution_id,
            "percentage": self.percentage,
            "amount": self.amount,
            "tokenValue": self.token_value,
        }


def calculate_splits(session: Session, challenge_id: str) -> list[PaymentSplit]:
    challenge = repository.get_challenge(session, challenge_id)
    if challenge is None:
        raise NotFoundError("Challenge")

    contributions = repository.get_contributions(session, challenge_id)
    if not contributions:
        log.warning("Challenge %s has no contributions - no payments to distribute", challenge_id)
        return []

    total_tokens = sum(c.token_value for c in contributions)
    if total_tokens == 0:
        log.error("Challenge %s has zero total tokens despite having contributions", challenge_id)
        raise ValidationError("Cannot distribute payments: total token value is zero")

    splits = [
        PaymentSplit(
            contributor_id=c.user_id,
            contribution_id=c.id,
            percentage=c.token_value / total_tokens * 100,
            amount=c.token_value / total_tokens * challenge.bounty_amount,
            token_value=c.token_value,
        )
        for c in contributions
    ]
    log.info(
        "Calculated payment splits for challenge %s: %d contributions sharing %s bounty",
        challenge_id, len(splits), challenge.bounty_amount,
    )
    return splits


def distribute_payments(
    session: Session,
    challenge_id: str,
    splits: list[PaymentSplit],
    method: str = PaymentMethod.FIAT.value,
) -> list[Payment]:
    """Insert one PENDING payment per split in a single transaction.

    Commits on success. On any database error the whole transaction is
    rolled back, so either every payment exists or none does.
    """
    if method not in {m.value for m in PaymentMethod}:
        raise ValidationError(f"Unknown payment method: {method}")
    if not splits:
        log.warning("No payment splits provided for challenge %s", challenge_id)
        return []

    payments = [
        Payment(
            challenge_id=challenge_id,
            user_id=split.contributor_id,
            amount=split.amount,
            method=method,
            status=PaymentStatus.PENDING.value,
        )
        for split in splits
    ]
    try:
        session.add_all(payments)
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        log.exception("Payment distribution for challenge %s rolled back", challenge_id)
        raise

    log.info(
        "Created %d payment records for challenge %s (total: %.2f)",
        len(payments), challenge_id, sum(s.amount for s in splits),
    )
    return payments


def get_user_payments(session: Session, user_id: str) -> list[Payment]:
    return list(session.execute(
        select(Payment).where(Payment.user_id == user_id).order_by(desc(Payment.created_at))
    ).scalars())


def get_user_total_earnings(session: Session, user_id: str) -> float:
    total = session.execute(
        select(func.sum(Payment.amount)).where(
            Payment.user_id == user_id,
            Payment.status == PaymentStatus.COMPLETED.value,
        )
    ).scalar()
    return float(total or 0.0)


def get_challenge_payments(session: Session, challenge_id: str) -> list[Payment]:
    return repository.get_payments(session, challenge_id)


def update_payment_status(
    session: Session, payment_id: str, status: str, tx_hash: str | None = None,
) -> Payment:
    """Caller must commit."""
    if status not in {s.value for s in PaymentStatus}:
        raise ValidationError(f"Unknown payment status: {status}")
    payment = session.get(Payment, payment_id)
    if payment is None:
        raise NotFoundError("Payment")
    payment.status = status
    payment.blockchain_tx_hash = tx_hash
    session.flush()
    log.info("Payment %s status updated to %s%s", payment_id, status,
             f" (tx: {tx_hash})" if tx_hash else "")
    return payment


def payment_summary(payment: Payment) -> dict:
    return {
        "id": payment.id,
        "challengeId": payment.challenge_id,
        "userId": payment.user_id,
        "amount": payment.amount,
        "method": payment.method,
        "status": payment.status,
        "blockchainTxHash": payment.blockchain_tx_hash,
        "createdAt": payment.created_at.isoformat(),
        "updatedAt": payment.updated_at.isoformat() if payment.updated_at else None,
    }


def splits_as_dicts(splits: list[PaymentSplit]) -> list[dict]:
    return [s.as_dict() for s in splits]
