from app.settlement.models import SettlementItem

__all__ = ["SettlementItem"]
