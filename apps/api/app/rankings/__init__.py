from app.rankings.engine import InvalidPeriodError, RankingEntry, ScoringCustomer, parse_period, rank

__all__ = [
    "InvalidPeriodError",
    "RankingEntry",
    "ScoringCustomer",
    "parse_period",
    "rank",
]
