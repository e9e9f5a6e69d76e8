from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.deps import error_response
from app.core.database import get_db
from app.rankings.schemas import RankingRead
from app.rankings.service import ranking_service

router = APIRouter(prefix="/api/rankings", tags=["rankings"])


@router.get("", response_model=RankingRead)
def get_rankings(
    request: Request,
    period: str = Query(min_length=1),
    scope: Literal["manager", "team"] = Query(default="manager"),
    db: Session = Depends(get_db),
) -> RankingRead | JSONResponse:
    try:
        return ranking_service.get_rankings(db, period, scope)
    except HTTPException as exc:
        return error_response(request, exc, code="ranking_failed")
