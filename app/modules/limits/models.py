from sqlalchemy import Column, Integer, String, DateTime, Numeric, ForeignKey, Text
from app.core.database import Base
from app.modules.loans.models import utcnow


class LoanLimitHistory(Base):
    """Append-only audit trail of lending limit changes"""
    __tablename__ = "loan_limit_history"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    limit_type = Column(String(50), nullable=False)
    old_value = Column(Numeric(12, 2), nullable=False)
    new_value = Column(Numeric(12, 2), nullable=False)
    changed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    change_reason = Column(Text, nullable=False)
    changed_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
