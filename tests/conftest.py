"""Test configuration."""
import os
from collections.abc import AsyncIterator, Callable, Iterator
from decimal import Decimal
from pathlib import Path
from types import SimpleNamespace
from uuid import uuid4

from alembic import command
from alembic.config import Config
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

# --- Default env, before anything reads the settings
os.environ.setdefault("DATABASE_URL", "sqlite:///./marketpay_test.db")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("PROMETHEUS_ENABLED", "false")
os.environ.setdefault("PLATFORM_FEE_PERCENT", "5")

from marketpay.main import app  # noqa: E402
from marketpay import models  # noqa: E402
from marketpay.core.cache import cache  # noqa: E402
from marketpay.core import runtime_state  # noqa: E402
from marketpay.db import get_db  # noqa: E402
from marketpay.models import (  # noqa: E402
    Contract,
    EscrowAccount,
    EscrowAccountStatus,
    EscrowAccountType,
    Milestone,
    MilestoneStatus,
    PayoutMethod,
    PayoutMethodType,
    Project,
    Proposal,
    ProposalStatus,
    User,
    UserRole,
)
from marketpay.models.api_key import ApiKey, ApiScope  # noqa: E402
from marketpay.services import psp_stripe  # noqa: E402
from marketpay.utils.apikey import hash_key  # noqa: E402

DB_PATH = Path("./marketpay_test.db")


def _run_migrations() -> None:
    cfg = Config(str(Path(__file__).resolve().parents[1] / "alembic.ini"))
    cfg.set_main_option("script_location", str(Path(__file__).resolve().parents[1] / "alembic"))
    cfg.set_main_option("sqlalchemy.url", os.environ["DATABASE_URL"])
    cfg.attributes["configure_logger"] = False
    command.upgrade(cfg, "head")


# --- (1) Fresh database file per test session
if DB_PATH.exists():
    DB_PATH.unlink()

engine = create_engine(
    os.environ["DATABASE_URL"],
    connect_args={"check_same_thread": False},
    future=True,
)
TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False,
                                   future=True, expire_on_commit=False)

# --- (2) Schema comes from Alembic only
_run_migrations()


@pytest.fixture
def db_session() -> Iterator[Session]:
    # Services commit and roll back on their own, so each test works on real
    # commits and the tables are emptied afterwards.
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        with engine.begin() as conn:
            for table in reversed(models.Base.metadata.sorted_tables):
                conn.execute(table.delete())


@pytest.fixture(autouse=True)
def override_db_dependency(db_session: Session) -> Iterator[None]:
    def _get_db() -> Iterator[Session]:
        yield db_session
    app.dependency_overrides[get_db] = _get_db
    yield
    app.dependency_overrides.pop(get_db, None)


@pytest.fixture(autouse=True)
def reset_process_state() -> Iterator[None]:
    cache.clear()
    runtime_state.reset()
    yield
    cache.clear()


@pytest.fixture
async def client() -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as async_client:
        yield async_client


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


# --- Fake payment processor


class FakeStripe:
    """In-memory stand-in for ``psp_stripe.StripeClient``.

    Knobs: ``intent_status`` (what retrieve returns), ``payout_status``,
    ``refund_status``, ``account_ready`` and ``*_error`` to raise from a call.
    """

    def __init__(self) -> None:
        self.intent_status = "succeeded"
        self.payout_status = "pending"
        self.refund_status = "succeeded"
        self.account_ready = True
        self.intent_error: Exception | None = None
        self.retrieve_intent_error: Exception | None = None
        self.payout_error: Exception | None = None
        self.retrieve_payout_error: Exception | None = None
        self.refund_error: Exception | None = None
        self.transfer_error: Exception | None = None
        self.transfers: list[SimpleNamespace] = []
        self.external_accounts: dict[str, SimpleNamespace] = {}
        self.intents: dict[str, SimpleNamespace] = {}
        self.calls: list[tuple[str, object]] = []

    def create_payment_intent(self, payment, *, payment_method_id, customer_id):
        self.calls.append(("create_payment_intent", payment.id))
        if self.intent_error is not None:
            raise self.intent_error
        intent_id = f"pi_{payment.id}"
        intent = self.intents.setdefault(
            intent_id,
            SimpleNamespace(
                id=intent_id,
                status="processing",
                client_secret=f"{intent_id}_secret_test",
                latest_charge=None,
                last_payment_error=None,
            ),
        )
        return intent

    def retrieve_payment_intent(self, intent_id):
        self.calls.append(("retrieve_payment_intent", intent_id))
        if self.retrieve_intent_error is not None:
            raise self.retrieve_intent_error
        intent = self.intents.setdefault(
            intent_id,
            SimpleNamespace(id=intent_id, client_secret=None, latest_charge=None, last_payment_error=None),
        )
        intent.status = self.intent_status
        if self.intent_status == "succeeded":
            intent.latest_charge = f"ch_{intent_id}"
        elif self.intent_status in ("requires_payment_method", "canceled"):
            intent.last_payment_error = SimpleNamespace(message="Your card was declined.")
        return intent

    def create_connected_account(self, user):
        self.calls.append(("create_connected_account", user.id))
        return SimpleNamespace(id=f"acct_{user.id}")

    def create_account_link(self, account_id):
        return SimpleNamespace(url=f"https://connect.stripe.test/setup/{account_id}")

    def retrieve_account(self, account_id):
        self.calls.append(("retrieve_account", account_id))
        return SimpleNamespace(
            id=account_id,
            charges_enabled=self.account_ready,
            payouts_enabled=self.account_ready,
            details_submitted=self.account_ready,
        )

    def retrieve_external_account(self, account_id, external_method_id):
        return self.external_accounts.get(
            external_method_id,
            SimpleNamespace(
                id=external_method_id,
                object="bank_account",
                last4="6789",
                bank_name="STRIPE TEST BANK",
                country="US",
                status="new",
                brand=None,
                funding=None,
            ),
        )

    def create_transfer(self, payment, *, account):
        self.calls.append(("create_transfer", payment.id))
        if self.transfer_error is not None:
            raise self.transfer_error
        transfer = SimpleNamespace(
            id=f"tr_{payment.id}",
            amount=int(payment.freelancer_amount * 100),
            destination=account.external_account_id,
        )
        self.transfers.append(transfer)
        return transfer

    def create_payout(self, payment, *, account, payout_method):
        self.calls.append(("create_payout", payment.id))
        if self.payout_error is not None:
            raise self.payout_error
        return SimpleNamespace(
            id=f"po_{payment.id}",
            status=self.payout_status,
            amount=int(payment.amount * 100),
            failure_message=None,
        )

    def retrieve_payout(self, payout_id, *, account):
        self.calls.append(("retrieve_payout", payout_id))
        if self.retrieve_payout_error is not None:
            raise self.retrieve_payout_error
        return SimpleNamespace(
            id=payout_id,
            status=self.payout_status,
            failure_message="Bank account closed" if self.payout_status == "failed" else None,
        )

    def create_refund(self, payment, *, amount, reason):
        self.calls.append(("create_refund", payment.id))
        if self.refund_error is not None:
            raise self.refund_error
        return SimpleNamespace(id=f"re_{payment.id}", status=self.refund_status, amount=int(amount * 100))


@pytest.fixture
def fake_stripe(monkeypatch) -> FakeStripe:
    fake = FakeStripe()
    monkeypatch.setattr(psp_stripe, "get_stripe_client", lambda: fake)
    return fake


# --- Factories

SCOPE_FOR_ROLE = {
    UserRole.CLIENT: ApiScope.client,
    UserRole.FREELANCER: ApiScope.freelancer,
    UserRole.ADMIN: ApiScope.admin,
}


@pytest.fixture
def make_user(db_session: Session) -> Callable[..., User]:
    def _factory(role: UserRole = UserRole.CLIENT, **overrides) -> User:
        suffix = uuid4().hex[:8]
        user = User(
            username=overrides.pop("username", f"{role.value.lower()}-{suffix}"),
            email=overrides.pop("email", f"{role.value.lower()}-{suffix}@example.com"),
            role=role,
            **overrides,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _factory


@pytest.fixture
def make_api_key(db_session: Session) -> Callable[..., ApiKey]:
    def _factory(user: User, key: str, *, is_active: bool = True, expires_at=None) -> ApiKey:
        scope = SCOPE_FOR_ROLE[user.role]
        api_key = ApiKey(
            name=f"test-{uuid4().hex}",
            prefix="test_" + scope.value,
            key_hash=hash_key(key),
            scope=scope,
            user_id=user.id,
            is_active=is_active,
            expires_at=expires_at,
        )
        db_session.add(api_key)
        db_session.commit()
        db_session.refresh(api_key)
        return api_key

    return _factory


@pytest.fixture
def headers_for(make_api_key: Callable[..., ApiKey]) -> Callable[[User], dict[str, str]]:
    def _factory(user: User) -> dict[str, str]:
        token = f"{user.role.value.lower()}-{uuid4().hex}"
        make_api_key(user, token)
        return {"Authorization": f"Bearer {token}"}

    return _factory


@pytest.fixture
def client_user(make_user) -> User:
    return make_user(UserRole.CLIENT)


@pytest.fixture
def freelancer(make_user) -> User:
    return make_user(UserRole.FREELANCER)


@pytest.fixture
def admin_user(make_user) -> User:
    return make_user(UserRole.ADMIN)


@pytest.fixture
def make_contract(db_session: Session) -> Callable[..., Contract]:
    """Project + accepted proposal + contract with one milestone per amount."""

    def _factory(
        client: User,
        freelancer: User,
        amounts: tuple[str, ...] = ("500.00",),
        *,
        milestone_status: MilestoneStatus = MilestoneStatus.APPROVED,
        total: str | None = None,
    ) -> Contract:
        project = Project(client_id=client.id, title="Website build")
        db_session.add(project)
        db_session.flush()
        total_amount = Decimal(total) if total is not None else sum((Decimal(a) for a in amounts), Decimal("0"))
        proposal = Proposal(
            project_id=project.id,
            freelancer_id=freelancer.id,
            amount=total_amount,
            status=ProposalStatus.ACCEPTED,
        )
        db_session.add(proposal)
        db_session.flush()
        contract = Contract(
            client_id=client.id,
            freelancer_id=freelancer.id,
            project_id=project.id,
            proposal_id=proposal.id,
            title="Website build",
            total_amount=total_amount,
            currency="usd",
        )
        db_session.add(contract)
        db_session.flush()
        for idx, amount in enumerate(amounts, start=1):
            db_session.add(
                Milestone(
                    contract_id=contract.id,
                    idx=idx,
                    title=f"Milestone {idx}",
                    amount=Decimal(amount),
                    status=milestone_status,
                )
            )
        db_session.commit()
        db_session.refresh(contract)
        return contract

    return _factory


@pytest.fixture
def make_escrow_account(db_session: Session) -> Callable[..., EscrowAccount]:
    def _factory(
        user: User,
        *,
        status: EscrowAccountStatus = EscrowAccountStatus.ACTIVE,
        balance: str = "0.00",
    ) -> EscrowAccount:
        account_type = (
            EscrowAccountType.FREELANCER if user.role == UserRole.FREELANCER else EscrowAccountType.CLIENT
        )
        account = EscrowAccount(
            user_id=user.id,
            external_account_id=f"acct_{user.id}",
            account_type=account_type,
            status=status,
            balance=Decimal(balance),
            currency="usd",
        )
        db_session.add(account)
        db_session.commit()
        db_session.refresh(account)
        return account

    return _factory


@pytest.fixture
def make_payout_method(db_session: Session) -> Callable[..., PayoutMethod]:
    def _factory(account: EscrowAccount, *, is_default: bool = True, **overrides) -> PayoutMethod:
        method = PayoutMethod(
            escrow_account_id=account.id,
            type=overrides.pop("type", PayoutMethodType.BANK_ACCOUNT),
            external_method_id=overrides.pop("external_method_id", f"ba_{uuid4().hex[:12]}"),
            is_default=is_default,
            last4="6789",
            bank_name="STRIPE TEST BANK",
            country="US",
            **overrides,
        )
        db_session.add(method)
        db_session.commit()
        db_session.refresh(method)
        return method

    return _factory


@pytest.fixture
def completed_payment(db_session: Session, fake_stripe: FakeStripe) -> Callable[..., models.Payment]:
    """Charge a milestone end to end through the payment intent service."""

    from marketpay.services import payment_intents

    def _factory(client: User, contract: Contract, milestone: Milestone | None = None) -> models.Payment:
        milestone = milestone or contract.milestones[0]
        payment, intent = payment_intents.create_payment_intent(
            db_session,
            requester=client,
            contract_id=contract.id,
            milestone_id=milestone.id,
            amount=milestone.amount,
            payment_method_id="pm_card_visa",
        )
        fake_stripe.intent_status = "succeeded"
        payment, _ = payment_intents.confirm_payment_intent(db_session, external_intent_id=intent.id)
        return payment

    return _factory
