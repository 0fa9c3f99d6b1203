from sqlalchemy import Column, Integer, String, Boolean, DateTime, Numeric, ForeignKey, Enum as SQLEnum
from datetime import datetime, timezone
from app.core.config import settings
from app.core.database import Base
import enum


class UserRole(str, enum.Enum):
    """User role enumeration"""
    USER = "user"
    ADMIN = "admin"


class User(Base):
    """Borrower or administrator, with per-user lending limits"""
    __tablename__ = "users"

    # Primary Key
    id = Column(Integer, primary_key=True, index=True)

    # Identity
    full_name = Column(String(200), nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    phone_number = Column(String(20), nullable=False)
    role = Column(
        SQLEnum(UserRole, values_callable=lambda e: [m.value for m in e], name="userrole"),
        default=UserRole.USER,
        nullable=False
    )
    is_active = Column(Boolean, default=True, nullable=False)

    # Lending limits (0 means unlimited)
    max_total_loan_amount = Column(
        Numeric(12, 2), default=settings.DEFAULT_MAX_TOTAL_LOAN_AMOUNT, nullable=False
    )
    max_active_loans = Column(Integer, default=settings.DEFAULT_MAX_ACTIVE_LOANS, nullable=False)
    max_loan_amount_per_request = Column(
        Numeric(12, 2), default=settings.DEFAULT_MAX_LOAN_AMOUNT_PER_REQUEST, nullable=False
    )
    limits_updated_at = Column(DateTime(timezone=True), nullable=True)
    limits_updated_by = Column(Integer, ForeignKey("users.id"), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    @property
    def loan_limits(self) -> dict:
        return {
            "max_total_loan_amount": self.max_total_loan_amount,
            "max_active_loans": self.max_active_loans,
            "max_loan_amount_per_request": self.max_loan_amount_per_request,
            "last_updated": self.limits_updated_at,
            "updated_by": self.limits_updated_by,
        }

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email}, role={self.role})>"
