# Overview: Points ledger writes and reads; every balance change is paired with an immutable entry.

from __future__ import annotations

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import PointsBalance, PointsLedgerEntry
from ..models.rewards import LEDGER_EARNED, LEDGER_REFUNDED, LEDGER_SPENT
from .concurrency import compare_and_set
from .errors import InsufficientPoints, InvalidRequest

"""
Points Ledger Invariants

- points_history is append-only; entries are never updated or deleted.
- user_points.points == sum(points_earned) - sum(points_spent) for the
  same (user, seller).
- Balance and entry are written in the caller's transaction; nothing here
  commits.
- Debits are conditional on the stored balance (points >= n), so the
  balance can never go negative even when two writers race.
"""


def get_or_create_balance(user_id: str, seller_id: str) -> PointsBalance:
    balance = db.session.query(PointsBalance).filter_by(user_id=user_id, seller_id=seller_id).first()
    if balance:
        return balance

    try:
        with db.session.begin_nested():
            balance = PointsBalance(
                user_id=user_id,
                seller_id=seller_id,
                points=0,
                lifetime_earned=0,
                lifetime_spent=0,
            )
            db.session.add(balance)
    except IntegrityError:
        # Another writer created it first
        balance = db.session.query(PointsBalance).filter_by(user_id=user_id, seller_id=seller_id).one()
    return balance


def _append_entry(
    *,
    user_id: str,
    seller_id: str,
    transaction_type: str,
    points_earned: int = 0,
    points_spent: int = 0,
    order_id: int | None = None,
    description: str | None = None,
) -> PointsLedgerEntry:
    entry = PointsLedgerEntry(
        user_id=user_id,
        seller_id=seller_id,
        order_id=order_id,
        points_earned=points_earned,
        points_spent=points_spent,
        transaction_type=transaction_type,
        description=description,
    )
    db.session.add(entry)
    db.session.flush()  # ensures entry.id is assigned without committing
    return entry


def credit_points(
    *,
    user_id: str,
    seller_id: str,
    points: int,
    transaction_type: str = LEDGER_EARNED,
    order_id: int | None = None,
    description: str | None = None,
) -> tuple[PointsLedgerEntry, PointsBalance]:
    """
    Add points to a balance.

    `earned` grows lifetime_earned; `refunded` gives back a reversed spend
    and shrinks lifetime_spent instead.
    """
    if points <= 0:
        raise InvalidRequest("Points to credit must be positive", details={"points": points})
    if transaction_type not in (LEDGER_EARNED, LEDGER_REFUNDED):
        raise InvalidRequest(f"Cannot credit points as {transaction_type}")

    balance = get_or_create_balance(user_id, seller_id)
    values = {"points": PointsBalance.points + points}
    if transaction_type == LEDGER_EARNED:
        values["lifetime_earned"] = PointsBalance.lifetime_earned + points
    else:
        values["lifetime_spent"] = PointsBalance.lifetime_spent - points
    compare_and_set(balance, {}, **values)

    entry = _append_entry(
        user_id=user_id,
        seller_id=seller_id,
        transaction_type=transaction_type,
        points_earned=points,
        order_id=order_id,
        description=description,
    )
    return entry, balance


def debit_points(
    *,
    user_id: str,
    seller_id: str,
    points: int,
    order_id: int | None = None,
    description: str | None = None,
) -> tuple[PointsLedgerEntry, PointsBalance]:
    """Spend points; raises InsufficientPoints when the stored balance is short."""
    if points <= 0:
        raise InvalidRequest("Points to spend must be positive", details={"points": points})

    balance = get_or_create_balance(user_id, seller_id)
    debited = compare_and_set(
        balance,
        {},
        PointsBalance.points >= points,
        points=PointsBalance.points - points,
        lifetime_spent=PointsBalance.lifetime_spent + points,
    )
    if not debited:
        raise InsufficientPoints(
            "Insufficient points",
            details={"requested": points, "available": balance.points},
        )

    entry = _append_entry(
        user_id=user_id,
        seller_id=seller_id,
        transaction_type=LEDGER_SPENT,
        points_spent=points,
        order_id=order_id,
        description=description,
    )
    return entry, balance


def get_balance(user_id: str, seller_id: str) -> int:
    points = (
        db.session.query(PointsBalance.points)
        .filter(PointsBalance.user_id == user_id, PointsBalance.seller_id == seller_id)
        .scalar()
    )
    return points or 0


def has_entry(order_id: int, transaction_type: str) -> bool:
    return db.session.query(
        db.session.query(PointsLedgerEntry)
        .filter_by(order_id=order_id, transaction_type=transaction_type)
        .exists()
    ).scalar()


def list_entries(
    user_id: str,
    seller_id: str | None = None,
    *,
    limit: int = 50,
    offset: int = 0,
) -> list[PointsLedgerEntry]:
    query = db.session.query(PointsLedgerEntry).filter_by(user_id=user_id)
    if seller_id is not None:
        query = query.filter_by(seller_id=seller_id)
    return (
        query.order_by(PointsLedgerEntry.created_at.desc(), PointsLedgerEntry.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def ledger_total(user_id: str, seller_id: str) -> int:
    earned, spent = (
        db.session.query(
            func.coalesce(func.sum(PointsLedgerEntry.points_earned), 0),
            func.coalesce(func.sum(PointsLedgerEntry.points_spent), 0),
        )
        .filter(PointsLedgerEntry.user_id == user_id, PointsLedgerEntry.seller_id == seller_id)
        .one()
    )
    return int(earned) - int(spent)


def points_earned_for_order(order_id: int) -> int:
    points = (
        db.session.query(func.coalesce(func.sum(PointsLedgerEntry.points_earned), 0))
        .filter(PointsLedgerEntry.order_id == order_id)
        .filter(PointsLedgerEntry.transaction_type == LEDGER_EARNED)
        .scalar()
    )
    return int(points)
