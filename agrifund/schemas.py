from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from agrifund.departments import ProjectCategory


class Actor(BaseModel):
    """Authenticated caller as supplied by the identity collaborator."""

    id: str
    role: str
    department: Optional[str] = None


# ---------------------------
# Projects
# ---------------------------
class ProjectDocumentIn(BaseModel):
    name: str = Field(..., min_length=1)
    url: str = Field(..., min_length=1)
    document_type: str = "other"


class ProjectCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1, max_length=2000)
    funding_goal: Decimal = Field(..., gt=0)  # ALGO
    category: ProjectCategory
    location: str = Field(..., min_length=1, max_length=200)
    timeline: str = Field(..., min_length=1, max_length=100)  # e.g. "6 months"
    images: List[str] = []
    documents: List[ProjectDocumentIn] = []


class ProjectUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, min_length=1, max_length=2000)
    funding_goal: Optional[Decimal] = Field(None, gt=0)
    location: Optional[str] = Field(None, min_length=1, max_length=200)
    timeline: Optional[str] = Field(None, min_length=1, max_length=100)
    images: Optional[List[str]] = None
    documents: Optional[List[ProjectDocumentIn]] = None


class DueDiligenceDocument(BaseModel):
    name: str = Field(..., min_length=1)
    url: str = Field(..., min_length=1)


class DueDiligenceUpdate(BaseModel):
    notes: Optional[str] = None
    status: Optional[Literal["pending", "in_progress", "completed", "failed"]] = None
    documents: List[DueDiligenceDocument] = []


class VerifyProject(BaseModel):
    notes: Optional[str] = None


class RejectProject(BaseModel):
    reason: str = Field(..., min_length=1)


class ProjectOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    slug: str
    owner_id: str
    payout_address: str
    title: str
    description: str
    category: str
    location: str
    timeline: str
    status: str
    department: Optional[str] = None
    funding_goal: Decimal
    current_funding: Decimal
    contributors_count: int
    blockchain_project_id: Optional[int] = None
    blockchain_tx_ref: Optional[str] = None
    blockchain_status: str
    dd_assigned_to: Optional[str] = None
    dd_status: str
    dd_notes: Optional[str] = ""
    verified_by: Optional[str] = None
    verified_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    created_at: Optional[datetime] = None


# ---------------------------
# Contributions
# ---------------------------
class ContributionCreate(BaseModel):
    project_id: str
    amount: Decimal = Field(..., gt=0)  # ALGO
    tx_ref: str = Field(..., min_length=1, max_length=128)
    contributor_wallet: str = Field(..., min_length=1)
    anonymous: bool = False
    message: Optional[str] = Field(None, max_length=500)


class ContributionIntent(BaseModel):
    project_id: str
    amount: Decimal = Field(..., gt=0)
    contributor_wallet: str = Field(..., min_length=1)
    anonymous: bool = False
    message: Optional[str] = Field(None, max_length=500)


class ContributionConfirm(BaseModel):
    tx_ref: str = Field(..., min_length=1, max_length=128)


class ContributionFail(BaseModel):
    reason: str = Field(..., min_length=1)


class ContributionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    project_id: str
    contributor_id: str
    contributor_wallet: str
    blockchain_project_id: int
    amount: Decimal
    amount_base_units: int
    local_currency: Optional[str] = None
    amount_local: Optional[Decimal] = None
    tx_ref: Optional[str] = None
    status: str
    failure_reason: Optional[str] = None
    contributed_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None


class ContributionGroupRequest(BaseModel):
    from_address: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0)


class FundingView(BaseModel):
    """What a contributor sees before committing funds."""

    project_id: str
    blockchain_project_id: int
    status: str
    chain_available: bool
    advisory: Optional[str] = None
    funding_goal: Decimal
    current_funding: Decimal
    contributors_count: int
    progress_percent: float
    escrow_balance: Optional[Decimal] = None
    deadline: Optional[int] = None
    is_active: Optional[bool] = None
    is_completed: Optional[bool] = None
    funds_released: Optional[bool] = None
    can_contribute: bool
    blocking_reason: Optional[str] = None


# ---------------------------
# Withdrawals
# ---------------------------
class WithdrawalRequest(BaseModel):
    project_id: str
    payment_method: Literal["mobile_money", "bank_transfer"] = "mobile_money"
    recipient_phone: Optional[str] = Field(None, max_length=40)
    recipient_bank_account: Optional[str] = Field(None, max_length=60)
    recipient_bank_name: Optional[str] = Field(None, max_length=120)
    recipient_name: Optional[str] = Field(None, max_length=200)
    notes: Optional[str] = Field(None, max_length=500)


class WithdrawalProcess(BaseModel):
    payment_reference: str = Field(..., min_length=1, max_length=100)
    release_tx_ref: Optional[str] = Field(None, max_length=128)  # the escrow payout txid, if known


class WithdrawalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    project_id: str
    farmer_id: str
    blockchain_project_id: int
    payout_address: str
    amount: Decimal
    local_currency: str
    local_currency_rate: Decimal
    amount_local: Decimal
    payment_method: str
    status: str
    fee_local: Optional[Decimal] = None
    net_amount_local: Optional[Decimal] = None
    payment_reference: Optional[str] = None
    processed_by: Optional[str] = None
    requested_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None


# ---------------------------
# Users
# ---------------------------
class WalletUpdate(BaseModel):
    wallet_address: str = Field(..., min_length=1)


class UserProfile(BaseModel):
    """Cached, session-independent snapshot of a user row."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    first_name: Optional[str] = ""
    last_name: Optional[str] = ""
    role: str
    department: Optional[str] = None
    wallet_address: Optional[str] = None
    is_active: bool = True
    email_verified: bool = False


def page_of(items: List[Any], total: int, page: int, limit: int, **extra) -> Dict[str, Any]:
    pages = (total + limit - 1) // limit if limit else 0
    return {"items": items, "total": total, "page": page, "pages": pages, **extra}
