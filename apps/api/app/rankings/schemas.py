from __future__ import annotations

from datetime import date
from typing import Literal

from pydantic import BaseModel, ConfigDict


class CustomerScoreRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    customer_id: str
    score_date: date
    base: int
    category_bonus: int
    amount_bonus: int
    total: int


class RankingEntryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    rank: int
    key: str
    name: str | None
    total_score: int
    breakdown: list[CustomerScoreRead]


class RankingRead(BaseModel):
    period: str
    scope: Literal["manager", "team"]
    entries: list[RankingEntryRead]
