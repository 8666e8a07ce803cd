import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, BigInteger, String, DateTime, Numeric, Text, JSON, Boolean, ForeignKey, Index,
    UniqueConstraint,
)

from .database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------
# Enumerations (stored as plain strings)
# ---------------------------
class Role:
    FARMER = "FARMER"
    INVESTOR = "INVESTOR"
    GOVERNMENT_OFFICIAL = "GOVERNMENT_OFFICIAL"
    ADMIN = "ADMIN"

    REVIEWERS = (GOVERNMENT_OFFICIAL, ADMIN)


class ProjectStatus:
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    VERIFIED = "verified"
    ACTIVE = "active"
    FUNDED = "funded"
    REJECTED = "rejected"
    CLOSED = "closed"

    # "verify" / "reject" may be called from any of these
    REVIEWABLE = (SUBMITTED, UNDER_REVIEW, VERIFIED)
    TERMINAL = (FUNDED, REJECTED, CLOSED)


class DeploymentStatus:
    NOT_CREATED = "not_created"
    PENDING = "pending"
    CREATED = "created"
    FAILED = "failed"


class DueDiligenceStatus:
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    ALL = (PENDING, IN_PROGRESS, COMPLETED, FAILED)


class ContributionStatus:
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class WithdrawalStatus:
    PENDING = "pending"
    COMPLETED = "completed"


class PaymentMethod:
    MOBILE_MONEY = "mobile_money"
    BANK_TRANSFER = "bank_transfer"

    ALL = (MOBILE_MONEY, BANK_TRANSFER)


# ---------------------------
# Tables
# ---------------------------
class User(Base):
    """Identity record owned by the auth collaborator; read here for payout addresses and departments."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String(200), nullable=False, unique=True)
    first_name = Column(String(100), default="")
    last_name = Column(String(100), default="")
    role = Column(String(40), nullable=False)
    department = Column(String(40), nullable=True)
    wallet_address = Column(String(58), nullable=True, unique=True)
    is_active = Column(Boolean, default=True, nullable=False)
    email_verified = Column(Boolean, default=False, nullable=False)

    current_workload = Column(Integer, default=0, nullable=False)
    max_workload = Column(Integer, default=10, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow)


class Project(Base):
    __tablename__ = "projects"

    id = Column(String(36), primary_key=True, default=new_id)
    slug = Column(String(120), nullable=False, unique=True, index=True)
    owner_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    payout_address = Column(String(58), nullable=False)

    title = Column(String(200), nullable=False)
    description = Column(Text, default="")
    category = Column(String(50), nullable=False)
    location = Column(String(200), default="")
    timeline = Column(String(100), default="")
    images = Column(JSON, default=list)
    documents = Column(JSON, default=list)

    status = Column(String(20), nullable=False, default=ProjectStatus.SUBMITTED, index=True)
    department = Column(String(40), nullable=True, index=True)

    # Locally cached figures; the ledger is authoritative once deployed
    funding_goal = Column(Numeric(20, 6), nullable=False)
    current_funding = Column(Numeric(20, 6), nullable=False, default=0)
    contributors_count = Column(Integer, nullable=False, default=0)

    # Chain deployment
    blockchain_project_id = Column(BigInteger, nullable=True)
    blockchain_tx_ref = Column(String(100), nullable=True)
    blockchain_status = Column(String(20), nullable=False, default=DeploymentStatus.NOT_CREATED)
    blockchain_error = Column(Text, nullable=True)
    # Signed create txn, stored before it is sent; kept until the deployment is resolved
    deployment_draft = Column(JSON, nullable=True)

    # Due diligence
    dd_assigned_to = Column(String(36), nullable=True)
    dd_status = Column(String(20), nullable=False, default=DueDiligenceStatus.PENDING)
    dd_notes = Column(Text, default="")
    dd_documents = Column(JSON, default=list)
    dd_started_at = Column(DateTime(timezone=True), nullable=True)
    dd_completed_at = Column(DateTime(timezone=True), nullable=True)

    # Verification
    verified_by = Column(String(36), nullable=True)
    verified_at = Column(DateTime(timezone=True), nullable=True)
    verification_notes = Column(Text, default="")
    document_hash = Column(String(64), nullable=True)
    rejection_reason = Column(Text, nullable=True)

    submitted_at = Column(DateTime(timezone=True), default=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Contribution(Base):
    __tablename__ = "contributions"
    __table_args__ = (
        Index("ix_contributions_project_status", "project_id", "status"),
        Index("ix_contributions_contributor_created", "contributor_id", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    project_id = Column(String(36), ForeignKey("projects.id"), nullable=False)
    contributor_id = Column(String(36), nullable=False)
    contributor_wallet = Column(String(58), nullable=False)
    blockchain_project_id = Column(BigInteger, nullable=False)

    amount = Column(Numeric(20, 6), nullable=False)               # ALGO
    amount_base_units = Column(BigInteger, nullable=False)        # microAlgos
    local_currency = Column(String(8), nullable=True)
    local_currency_rate = Column(Numeric(20, 6), nullable=True)
    amount_local = Column(Numeric(24, 2), nullable=True)

    # Idempotency key: one ledger transaction funds at most one record.
    # NULLs are allowed for pending intents and do not collide.
    tx_ref = Column(String(128), nullable=True, unique=True)

    status = Column(String(20), nullable=False, default=ContributionStatus.PENDING)
    failure_reason = Column(Text, nullable=True)
    extra = Column(JSON, default=dict)

    contributed_at = Column(DateTime(timezone=True), default=utcnow)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class ProjectContributor(Base):
    """One row per contributor with a confirmed contribution to a project. Decides who counts as new."""

    __tablename__ = "project_contributors"
    __table_args__ = (UniqueConstraint("project_id", "contributor_id", name="uq_project_contributor"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(String(36), ForeignKey("projects.id"), nullable=False)
    contributor_id = Column(String(36), nullable=False)
    first_contribution_id = Column(String(36), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Withdrawal(Base):
    """Off-chain payout of a released escrow to the farmer in local currency."""

    __tablename__ = "withdrawals"
    __table_args__ = (
        Index("ix_withdrawals_farmer_requested", "farmer_id", "requested_at"),
        Index("ix_withdrawals_status_requested", "status", "requested_at"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    # one withdrawal per project: the escrow releases once
    project_id = Column(String(36), ForeignKey("projects.id"), nullable=False, unique=True)
    farmer_id = Column(String(36), nullable=False)
    blockchain_project_id = Column(BigInteger, nullable=False)
    payout_address = Column(String(58), nullable=False)

    # Snapshot of the ledger total and the conversion rate at request time
    amount = Column(Numeric(20, 6), nullable=False)               # ALGO
    amount_base_units = Column(BigInteger, nullable=False)        # microAlgos
    local_currency = Column(String(8), nullable=False)
    local_currency_rate = Column(Numeric(20, 6), nullable=False)
    amount_local = Column(Numeric(24, 2), nullable=False)

    payment_method = Column(String(20), nullable=False, default=PaymentMethod.MOBILE_MONEY)
    recipient_phone = Column(String(40), nullable=True)
    recipient_bank_account = Column(String(60), nullable=True)
    recipient_bank_name = Column(String(120), nullable=True)
    recipient_name = Column(String(200), nullable=True)
    notes = Column(Text, default="")

    status = Column(String(20), nullable=False, default=WithdrawalStatus.PENDING)
    fee_local = Column(Numeric(24, 2), nullable=True)
    net_amount_local = Column(Numeric(24, 2), nullable=True)
    payment_reference = Column(String(100), nullable=True, unique=True)
    release_tx_ref = Column(String(128), nullable=True)
    processed_by = Column(String(36), nullable=True)

    requested_at = Column(DateTime(timezone=True), default=utcnow)
    processed_at = Column(DateTime(timezone=True), nullable=True)


class Favorite(Base):
    __tablename__ = "favorites"
    __table_args__ = (UniqueConstraint("user_id", "project_id", name="uq_favorites_user_project"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), nullable=False)
    project_id = Column(String(36), ForeignKey("projects.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
