"""
Shared pytest fixtures.

Provides:
    - engine / db: in-memory SQLite (StaticPool) with all tables, fresh per test
    - gateway: FakeGateway, a scripted stand-in for ChainGateway
    - make_user: user factory with real Algorand addresses
    - farmer / reviewer / investor: common actors
    - submitted_project / active_project: projects at the two most used lifecycle points
    - client: FastAPI TestClient wired to the fixtures above
"""
import os

# Must be set before agrifund.config is imported
os.environ["DATABASE_URL"] = "sqlite://"

from decimal import Decimal
from typing import Dict, List, Optional

import pytest
from algosdk import account
from algosdk.logic import get_application_address
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from agrifund import projects
from agrifund.chain_gateway import DeployResult, DeploymentDraft, OnChainProjectState
from agrifund.database import init_db
from agrifund.errors import ExternalDependencyError
from agrifund.models import Role, User
from agrifund.schemas import Actor, ProjectCreate


def new_address() -> str:
    return account.generate_account()[1]


class FakeGateway:
    """
    Scripted ledger. Set read_error / deploy_error / write_error to simulate outages.

    submit_error fails the create send; with submit_lands=True the app is
    created anyway, like a send that timed out after reaching the ledger.
    """

    def __init__(self):
        self.states: Dict[int, OnChainProjectState] = {}
        self.next_app_id = 1000
        self.read_error: Optional[str] = None
        self.deploy_error: Optional[str] = None
        self.submit_error: Optional[str] = None
        self.submit_lands = False
        self.resolve_error: Optional[str] = None
        self.write_error: Optional[str] = None
        self.prepared = 0
        self.landed: Dict[str, int] = {}
        self.resolved: List[str] = []
        self.deployed: List[dict] = []
        self.set_active_calls: List[tuple] = []

    def network_hint(self) -> str:
        return "testnet"

    def prepare_deployment(self, owner, title, description, goal, category, location, timeline_days) -> DeploymentDraft:
        if self.deploy_error:
            raise ExternalDependencyError("prepare_deployment", self.deploy_error)
        self.prepared += 1
        return DeploymentDraft(
            tx_ref=f"TXCREATE{self.prepared}",
            signed_txn=f"SIGNED{self.prepared}",
            owner=owner,
            goal_base_units=int(Decimal(str(goal)) * 1_000_000),
            deadline=int(timeline_days) * 86400,
            last_valid_round=1000,
        )

    def submit_deployment(self, draft: DeploymentDraft) -> DeployResult:
        if self.submit_error and not self.submit_lands:
            raise ExternalDependencyError("submit_deployment", self.submit_error)
        self.next_app_id += 1
        app_id = self.next_app_id
        self.landed[draft.tx_ref] = app_id
        self.deployed.append({
            "owner": draft.owner,
            "goal": Decimal(draft.goal_base_units) / 1_000_000,
            "timeline_days": draft.deadline // 86400,
            "tx_ref": draft.tx_ref,
        })
        self.states[app_id] = OnChainProjectState(
            on_chain_id=app_id,
            owner=draft.owner,
            goal=Decimal(draft.goal_base_units) / 1_000_000,
            total_funding=Decimal("0"),
            is_active=True,
            is_completed=False,
            funds_released=False,
            deadline=0,
            contributors_count=0,
        )
        if self.submit_error:
            raise ExternalDependencyError("submit_deployment", self.submit_error)
        return DeployResult(on_chain_id=app_id, tx_ref=draft.tx_ref, escrow_address=get_application_address(app_id))

    def resolve_deployment(self, draft: DeploymentDraft) -> Optional[DeployResult]:
        if self.resolve_error:
            raise ExternalDependencyError("resolve_deployment", self.resolve_error)
        self.resolved.append(draft.tx_ref)
        app_id = self.landed.get(draft.tx_ref)
        if app_id is None:
            return None
        return DeployResult(on_chain_id=app_id, tx_ref=draft.tx_ref, escrow_address=get_application_address(app_id))

    def deploy_project(self, owner, title, description, goal, category, location, timeline_days) -> DeployResult:
        draft = self.prepare_deployment(owner, title, description, goal, category, location, timeline_days)
        return self.submit_deployment(draft)

    def set_state(self, app_id: int, **changes) -> None:
        self.states[app_id] = self.states[app_id].model_copy(update=changes)

    def read_project_state(self, on_chain_id: int) -> OnChainProjectState:
        if self.read_error:
            raise ExternalDependencyError("read_project_state", self.read_error)
        if on_chain_id not in self.states:
            raise ExternalDependencyError("read_project_state", f"application {on_chain_id} does not exist")
        return self.states[on_chain_id]

    def set_project_active(self, on_chain_id: int, active: bool) -> str:
        if self.write_error:
            raise ExternalDependencyError("set_project_active", self.write_error)
        self.set_active_calls.append((on_chain_id, active))
        self.set_state(on_chain_id, is_active=active)
        return f"TXSET{on_chain_id}"

    def read_contributor_count(self, on_chain_id: int) -> int:
        return self.read_project_state(on_chain_id).contributors_count

    def read_contributor_amount(self, on_chain_id: int, contributor: str) -> Decimal:
        self.read_project_state(on_chain_id)
        return Decimal("0")

    def read_escrow_balance(self, on_chain_id: int) -> Decimal:
        return self.read_project_state(on_chain_id).total_funding

    def build_contribution_group(self, on_chain_id: int, from_address: str, amount) -> dict:
        self.read_project_state(on_chain_id)
        return {"group": ["UNSIGNED-PAY", "UNSIGNED-CALL"], "message": "Sign and send group with your wallet."}


# ── Database ─────────────────────────────────────────────────────────────


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    init_db(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


# ── Users ────────────────────────────────────────────────────────────────


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role=Role.FARMER, department=None, wallet=True, **kwargs) -> User:
        counter["n"] += 1
        user = User(
            email=f"user{counter['n']}@example.com",
            first_name=kwargs.pop("first_name", "User"),
            last_name=kwargs.pop("last_name", str(counter["n"])),
            role=role,
            department=department,
            wallet_address=new_address() if wallet else None,
            **kwargs,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


def actor_for(user: User) -> Actor:
    return Actor(id=user.id, role=user.role, department=user.department)


@pytest.fixture
def farmer(make_user):
    return make_user(Role.FARMER)


@pytest.fixture
def reviewer(make_user):
    return make_user(Role.GOVERNMENT_OFFICIAL, department="CROPS")


@pytest.fixture
def investor(make_user):
    return make_user(Role.INVESTOR)


# ── Projects ─────────────────────────────────────────────────────────────


def project_payload(**overrides) -> ProjectCreate:
    data = {
        "title": "Maize irrigation",
        "description": "Drip irrigation for two hectares of maize",
        "funding_goal": Decimal("100"),
        "category": "CROP_PRODUCTION",
        "location": "Musanze",
        "timeline": "6 months",
    }
    data.update(overrides)
    return ProjectCreate(**data)


@pytest.fixture
def submitted_project(db, farmer):
    return projects.create_project(db, project_payload(), farmer.id)


@pytest.fixture
def active_project(db, gateway, submitted_project, reviewer):
    return projects.verify_project(db, gateway, submitted_project.id, actor_for(reviewer))


# ── HTTP ─────────────────────────────────────────────────────────────────


@pytest.fixture
def client(session_factory, gateway):
    from fastapi.testclient import TestClient

    from agrifund.app import app, get_chain
    from agrifund.database import get_db

    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_chain] = lambda: gateway
    app.state.user_cache.clear()
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def headers_for(user: User) -> Dict[str, str]:
    h = {"X-Actor-Id": user.id, "X-Actor-Role": user.role}
    if user.department:
        h["X-Actor-Department"] = user.department
    return h
