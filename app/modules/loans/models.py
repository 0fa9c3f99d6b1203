from sqlalchemy import Column, Integer, String, Boolean, DateTime, Numeric, ForeignKey, Text, CheckConstraint, Enum as SQLEnum
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.core.database import Base
import enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class LoanStatus(str, enum.Enum):
    """Loan lifecycle status"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PARTIALLY_PAID = "partially paid"
    FULLY_PAID = "fully paid"
    DEFAULTED = "defaulted"


class LoanCategory(str, enum.Enum):
    """Borrower category assigned by an admin after approval"""
    PERMANENT = "permanent"
    CASUAL = "casual"


class PaymentRequestStatus(str, enum.Enum):
    """Status of a push-payment request awaiting its callback"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentSource(str, enum.Enum):
    """Where a recorded repayment came from"""
    MPESA = "mpesa"
    MANUAL = "manual"
    ADJUSTMENT = "adjustment"


class Loan(Base):
    """
    Loan aggregate.

    Payment requests and payments are owned by the loan and are only ever
    written together with it, inside the same transaction.
    """
    __tablename__ = "loans"
    __table_args__ = (
        CheckConstraint("remaining_balance >= 0", name="ck_loans_remaining_balance_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    # Amounts
    loan_amount = Column(Numeric(12, 2), nullable=False)
    interest = Column(Numeric(12, 2), nullable=False)
    total_repayment = Column(Numeric(12, 2), nullable=False)
    paid_amount = Column(Numeric(12, 2), default=0, nullable=False)
    remaining_balance = Column(Numeric(12, 2), nullable=False)

    # Lifecycle
    status = Column(
        SQLEnum(LoanStatus, values_callable=_enum_values, name="loanstatus"),
        default=LoanStatus.PENDING,
        nullable=False,
        index=True
    )
    category = Column(
        SQLEnum(LoanCategory, values_callable=_enum_values, name="loancategory"),
        default=LoanCategory.PERMANENT,
        nullable=False
    )
    repayment_date = Column(DateTime(timezone=True), nullable=False)
    extension_count = Column(Integer, default=0, nullable=False)
    extension_month = Column(String(7), nullable=True)  # "YYYY-MM"
    approved_at = Column(DateTime(timezone=True), nullable=True)

    # Default tracking
    is_defaulted = Column(Boolean, default=False, nullable=False)
    defaulted_at = Column(DateTime(timezone=True), nullable=True)
    default_reason = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    # Owned records
    payment_requests = relationship(
        "LoanPaymentRequest",
        back_populates="loan",
        cascade="all, delete-orphan",
        order_by="LoanPaymentRequest.id",
        lazy="selectin"
    )
    payments = relationship(
        "LoanPayment",
        back_populates="loan",
        cascade="all, delete-orphan",
        order_by="LoanPayment.id",
        lazy="selectin"
    )

    def __repr__(self):
        return f"<Loan(id={self.id}, user_id={self.user_id}, status={self.status}, remaining={self.remaining_balance})>"


class LoanPaymentRequest(Base):
    """A push payment initiated against a loan, keyed by the gateway correlation id"""
    __tablename__ = "loan_payment_requests"

    id = Column(Integer, primary_key=True, index=True)
    loan_id = Column(Integer, ForeignKey("loans.id", ondelete="CASCADE"), nullable=False, index=True)
    correlation_id = Column(String(100), unique=True, nullable=False, index=True)
    merchant_request_id = Column(String(100), nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    phone = Column(String(20), nullable=False)
    status = Column(
        SQLEnum(PaymentRequestStatus, values_callable=_enum_values, name="paymentrequeststatus"),
        default=PaymentRequestStatus.PENDING,
        nullable=False,
        index=True
    )
    result_code = Column(Integer, nullable=True)
    result_description = Column(String(255), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    loan = relationship("Loan", back_populates="payment_requests")


class LoanPayment(Base):
    """An applied repayment. Rows are appended, never updated or deleted."""
    __tablename__ = "loan_payments"

    id = Column(Integer, primary_key=True, index=True)
    loan_id = Column(Integer, ForeignKey("loans.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    excess_amount = Column(Numeric(12, 2), default=0, nullable=False)
    reference = Column(String(100), nullable=False)
    phone = Column(String(20), nullable=True)
    transaction_date = Column(String(20), nullable=True)
    correlation_id = Column(String(100), nullable=True, index=True)
    source = Column(
        SQLEnum(PaymentSource, values_callable=_enum_values, name="paymentsource"),
        default=PaymentSource.MPESA,
        nullable=False
    )
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    loan = relationship("Loan", back_populates="payments")
