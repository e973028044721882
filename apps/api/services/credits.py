"""Credit ledger: balance adjustments on the user row plus an append-only transaction log.

Every balance change is issued as one conditional ``UPDATE ... RETURNING`` so the
new balance comes from the database, never from a value read earlier in the
request. The matching ``CreditTransaction`` is flushed in the same transaction,
which keeps ``balance_after`` exact under concurrent requests for one user.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_transaction import TRANSACTION_TYPES, CreditTransaction
from models.user import User
from services.errors import InsufficientCreditsError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def credits_for_generation_type(generation_type: str) -> int:
    costs = {
        "text-to-image": max(int(settings.CREDIT_COST_TEXT_TO_IMAGE), 0),
        "image-to-image": max(int(settings.CREDIT_COST_IMAGE_TO_IMAGE), 0),
    }
    if generation_type not in costs:
        raise ValidationError(f"Unsupported generation_type: {generation_type}")
    return costs[generation_type]


def _validate_type(transaction_type: str) -> None:
    if transaction_type not in TRANSACTION_TYPES:
        raise ValidationError(f"Unsupported transaction_type: {transaction_type}")


async def get_credit_balance(user_id: str, db: AsyncSession) -> Optional[int]:
    result = await db.execute(select(User.credits).where(User.id == user_id))
    balance = result.scalar_one_or_none()
    return int(balance) if balance is not None else None


async def _apply_delta(
    user_id: str,
    db: AsyncSession,
    *,
    delta: int,
    transaction_type: str,
    description: Optional[str],
    related_id: Optional[str],
) -> CreditTransaction:
    stmt = update(User).where(User.id == user_id)
    if delta < 0:
        stmt = stmt.where(User.credits >= -delta)
    stmt = (
        stmt.values(credits=User.credits + delta)
        .returning(User.credits)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    new_balance = result.scalar_one_or_none()

    if new_balance is None:
        current = await get_credit_balance(user_id, db)
        if current is None:
            raise NotFoundError("User not found")
        raise InsufficientCreditsError(required=-delta, available=current)

    entry = CreditTransaction(
        user_id=user_id,
        amount=int(delta),
        transaction_type=transaction_type,
        description=description,
        related_id=related_id,
        balance_after=int(new_balance),
    )
    db.add(entry)
    await db.flush()
    return entry


async def check_sufficient_credits(user_id: str, amount_needed: int, db: AsyncSession) -> Dict[str, Any]:
    """Report whether the user can afford ``amount_needed``. Fails closed on read errors."""
    try:
        balance = await get_credit_balance(user_id, db)
    except SQLAlchemyError:
        logger.exception("Credit check failed for user %s", user_id)
        return {"sufficient": False, "current_balance": 0}

    if balance is None:
        return {"sufficient": False, "current_balance": 0}
    return {"sufficient": balance >= int(amount_needed), "current_balance": balance}


async def deduct_credits(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    transaction_type: str = "usage",
    description: Optional[str] = None,
    related_id: Optional[str] = None,
    commit: bool = True,
) -> Dict[str, Any]:
    """Debit ``amount`` credits. Raises InsufficientCreditsError instead of overdrawing."""
    debit = int(amount)
    if debit <= 0:
        raise ValidationError("amount must be greater than 0")
    _validate_type(transaction_type)

    entry = await _apply_delta(
        user_id,
        db,
        delta=-debit,
        transaction_type=transaction_type,
        description=description,
        related_id=related_id,
    )
    if commit:
        await db.commit()
    return {"new_balance": entry.balance_after, "transaction_id": entry.id}


async def add_credits(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    transaction_type: str,
    description: Optional[str] = None,
    related_id: Optional[str] = None,
    commit: bool = True,
) -> Dict[str, Any]:
    """Credit ``amount`` credits (initial grants, renewals, purchases, refunds)."""
    grant = int(amount)
    if grant <= 0:
        raise ValidationError("amount must be greater than 0")
    _validate_type(transaction_type)

    entry = await _apply_delta(
        user_id,
        db,
        delta=grant,
        transaction_type=transaction_type,
        description=description,
        related_id=related_id,
    )
    if commit:
        await db.commit()
    return {"new_balance": entry.balance_after, "transaction_id": entry.id}


async def set_credit_balance(
    user_id: str,
    db: AsyncSession,
    *,
    balance: int,
    transaction_type: str,
    description: Optional[str] = None,
    related_id: Optional[str] = None,
    commit: bool = True,
) -> Dict[str, Any]:
    """Set the balance to exactly ``balance``; the ledger row records the actual delta."""
    _validate_type(transaction_type)
    target = max(int(balance), 0)

    result = await db.execute(select(User.credits).where(User.id == user_id).with_for_update())
    current = result.scalar_one_or_none()
    if current is None:
        raise NotFoundError("User not found")

    await db.execute(
        update(User)
        .where(User.id == user_id)
        .values(credits=target)
        .execution_options(synchronize_session=False)
    )
    entry = CreditTransaction(
        user_id=user_id,
        amount=target - int(current),
        transaction_type=transaction_type,
        description=description,
        related_id=related_id,
        balance_after=target,
    )
    db.add(entry)
    await db.flush()
    if commit:
        await db.commit()
    return {"new_balance": target, "previous_balance": int(current), "transaction_id": entry.id}


async def get_credit_summary(
    user: User,
    db: AsyncSession,
    *,
    limit: int = 20,
    offset: int = 0,
    transaction_type: Optional[str] = None,
) -> Dict[str, Any]:
    filters = [CreditTransaction.user_id == user.id]
    if transaction_type:
        _validate_type(transaction_type)
        filters.append(CreditTransaction.transaction_type == transaction_type)

    total_result = await db.execute(select(func.count(CreditTransaction.id)).where(*filters))
    total = int(total_result.scalar() or 0)

    result = await db.execute(
        select(CreditTransaction)
        .where(*filters)
        .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
        .offset(max(int(offset), 0))
        .limit(max(int(limit), 1))
    )
    entries = result.scalars().all()

    balance = await get_credit_balance(user.id, db)
    summary = {
        "current_balance": balance if balance is not None else 0,
        "free_attempts": int(user.free_attempts or 0),
        "total_earned": sum(entry.amount for entry in entries if entry.amount > 0),
        "total_spent": sum(abs(entry.amount) for entry in entries if entry.amount < 0),
    }
    return {
        "success": True,
        "transactions": [
            {
                "id": entry.id,
                "amount": entry.amount,
                "transaction_type": entry.transaction_type,
                "description": entry.description,
                "related_id": entry.related_id,
                "balance_after": entry.balance_after,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in entries
        ],
        "summary": summary,
        "total": total,
        "limit": limit,
        "offset": offset,
    }
