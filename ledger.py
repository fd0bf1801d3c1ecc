"""Balance mutation helpers.

All of these only stage changes on the current db.session; the caller commits
(or rolls back) together with the rest of its unit of work.
"""

import json

from extensions import db
from models_users import POINTS_PER_USD, User, compute_level_from_xp
from models_wallet import TX_STATUS_COMPLETED, Transaction


def points_to_usd(points: int) -> float:
    return round(int(points or 0) / POINTS_PER_USD, 4)


def record_transaction(
    user_id: int,
    tx_type: str,
    points: int,
    description: str,
    *,
    amount: float | None = None,
    status: str = TX_STATUS_COMPLETED,
    reference: str | None = None,
    metadata: dict | None = None,
) -> Transaction:
    tx = Transaction(
        user_id=user_id,
        type=tx_type,
        status=status,
        points=int(points),
        amount=points_to_usd(abs(points)) if amount is None else float(amount),
        description=(description or "")[:500],
        reference=reference,
        metadata_json=json.dumps(metadata, separators=(",", ":")) if metadata is not None else None,
    )
    db.session.add(tx)
    return tx


def credit_points(user: User, points: int, *, count_as_earning: bool = True) -> None:
    points = int(points)
    if points <= 0:
        return
    user.points_balance = int(user.points_balance or 0) + points
    if count_as_earning:
        user.total_earnings = float(user.total_earnings or 0) + points_to_usd(points)


def debit_points(user: User, points: int) -> bool:
    """Debit points if the balance covers it. Returns False without touching the user otherwise."""
    points = int(points)
    if points < 0 or int(user.points_balance or 0) < points:
        return False
    user.points_balance = int(user.points_balance or 0) - points
    return True


def add_xp(user: User, xp: int) -> tuple[int, int]:
    """Add xp and recompute the level. Returns (previous_level, new_level)."""
    previous_level = int(user.level or 1)
    user.xp = int(user.xp or 0) + max(0, int(xp))
    new_level = max(previous_level, compute_level_from_xp(user.xp))
    user.level = new_level
    return previous_level, new_level
