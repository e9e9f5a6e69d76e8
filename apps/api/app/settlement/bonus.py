"""Bonus tables shared by settlement and rankings.

Changing a value here changes the bonus stored on settlement rows recomputed after the
change and every ranking computed after it. Rows already written are not backfilled.
"""

from __future__ import annotations

from decimal import Decimal

BONUS_TABLE_VERSION = "2024-01"

CATEGORY_BONUS: dict[str, int] = {
    "신보": 30,
    "기보": 30,
    "중진공": 30,
    "농신보": 30,
    "기업인증": 30,
    "기타": 30,
    "일시적": 20,
    "상생": 20,
    "재도전": 10,
    "혁신": 10,
    "미소금융": 10,
    "신용취약": 0,
    "지역재단": 0,
    "미등록": 0,
}

# (minimum execution amount in 10,000 KRW, bonus); checked top-down.
AMOUNT_BONUS_TIERS: tuple[tuple[Decimal, int], ...] = (
    (Decimal("15000"), 40),
    (Decimal("10000"), 30),
    (Decimal("5000"), 20),
)
AMOUNT_BONUS_FLOOR = 10


def category_bonus(org: str | None) -> int:
    if not org:
        return 0
    return CATEGORY_BONUS.get(org, 0)


def amount_bonus(amount: Decimal | int | float | None) -> int:
    if amount is None:
        return 0
    value = Decimal(str(amount))
    for threshold, bonus in AMOUNT_BONUS_TIERS:
        if value >= threshold:
            return bonus
    if value > 0:
        return AMOUNT_BONUS_FLOOR
    return 0
