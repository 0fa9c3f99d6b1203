# Loan limits module
from app.modules.limits.models import LoanLimitHistory

__all__ = ["LoanLimitHistory"]
