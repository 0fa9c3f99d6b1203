"""
Test configuration and fixtures for the lending service tests.
"""
import pytest
from typing import AsyncGenerator, List
from decimal import Decimal
from datetime import datetime, timedelta, timezone

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool
from httpx import AsyncClient, ASGITransport
from jose import jwt

from app.core.config import settings
from app.core.database import Base, get_db
from app.modules.loans import ledger
from app.modules.loans.models import utcnow
from app.modules.payments.gateway import PaymentGateway, InitiationResult, get_payment_gateway
from app.modules.users.models import User, UserRole
from main import app


# ============================================================
# Database Fixtures
# ============================================================

# Use SQLite for testing (in-memory)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
async def test_engine():
    """Create a fresh in-memory database for each test"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
async def file_engine(tmp_path):
    """A file-backed database so separate sessions get separate connections"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'lending.db'}",
        connect_args={"timeout": 30},
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for each test"""
    async_session = async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session() as session:
        yield session
        await session.rollback()


# ============================================================
# Gateway Fixtures
# ============================================================

class FakeGateway(PaymentGateway):
    """Records push requests and hands out sequential correlation ids"""

    def __init__(self):
        self.calls: List[dict] = []

    async def initiate(self, phone, amount, account_reference, description="Payment"):
        self.calls.append({
            "phone": phone,
            "amount": amount,
            "account_reference": account_reference,
            "description": description,
        })
        n = len(self.calls)
        return InitiationResult(
            correlation_id=f"ws_CO_TEST_{n:04d}",
            provider_request_id=f"MR-{n:04d}",
            response_code="0",
            response_description="Success. Request accepted for processing",
            customer_message="Success. Request accepted for processing",
        )


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
async def client(db_session, fake_gateway) -> AsyncGenerator[AsyncClient, None]:
    """Create test client with database and gateway overrides"""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: fake_gateway

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ============================================================
# User Fixtures
# ============================================================

def create_access_token(data: dict, expires_delta: timedelta = timedelta(minutes=30)) -> str:
    """Mint an access token the way the identity service does"""
    to_encode = data.copy()
    to_encode.update({"exp": datetime.now(timezone.utc) + expires_delta, "type": "access"})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


@pytest.fixture
async def test_user(db_session):
    """Create a borrower with the default limits"""
    user = User(
        full_name="Test Borrower",
        email="borrower@example.com",
        phone_number="0712345678",
        role=UserRole.USER,
        is_active=True,
        max_total_loan_amount=Decimal("50000.00"),
        max_active_loans=1,
        max_loan_amount_per_request=Decimal("20000.00"),
    )

    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)

    return user


@pytest.fixture
async def admin_user(db_session):
    """Create an administrator"""
    user = User(
        full_name="Test Admin",
        email="admin@example.com",
        phone_number="0722000000",
        role=UserRole.ADMIN,
        is_active=True,
    )

    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)

    return user


@pytest.fixture
def auth_headers(test_user):
    """Generate auth headers for the borrower"""
    token = create_access_token(data={"sub": str(test_user.id)})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(admin_user):
    """Generate auth headers for the administrator"""
    token = create_access_token(data={"sub": str(admin_user.id)})
    return {"Authorization": f"Bearer {token}"}


# ============================================================
# Loan Fixtures
# ============================================================

@pytest.fixture
async def approved_loan(db_session, test_user):
    """An approved loan of 1,000 (1,200 to repay)"""
    loan = ledger.open_loan(
        user_id=test_user.id,
        loan_amount=Decimal("1000"),
        interest_rate=Decimal("0.20"),
        repayment_date=utcnow() + timedelta(days=30),
    )
    ledger.approve(loan)

    db_session.add(loan)
    await db_session.commit()
    await db_session.refresh(loan)

    return loan


@pytest.fixture
async def pending_request(db_session, approved_loan):
    """A pending push-payment request for 500 against ``approved_loan``"""
    request = ledger.record_payment_request(
        approved_loan,
        correlation_id="ws_CO_PENDING_0001",
        amount=Decimal("500"),
        phone="254712345678",
        merchant_request_id="MR-PENDING",
    )
    await db_session.commit()
    await db_session.refresh(request)

    return request


def stk_callback(
    correlation_id: str,
    amount=None,
    result_code: int = 0,
    result_desc: str = "The service request is processed successfully.",
    receipt: str = "QKJ1234ABC"
) -> dict:
    """Build a Daraja STK callback body"""
    callback = {
        "MerchantRequestID": "MR-TEST",
        "CheckoutRequestID": correlation_id,
        "ResultCode": result_code,
        "ResultDesc": result_desc,
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "TransactionDate", "Value": 20240115143022},
                {"Name": "PhoneNumber", "Value": 254712345678},
            ]
        }
    return {"Body": {"stkCallback": callback}}


@pytest.fixture
def make_callback():
    return stk_callback
