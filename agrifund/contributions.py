"""
Contribution reconciliation.

Two paths touch the ledger with deliberately different failure policies:

* Read path, get_funding_view(): an unreachable ledger degrades to the local
  snapshot (_degraded_view) with chain_available=False and contributions
  optimistically allowed.
* Write path, create_contribution(): a fresh ledger read must succeed and
  report the app active, otherwise nothing is recorded.

Keep them separate. Merging them would let unconfirmed money be recorded.

The external transaction reference (tx_ref) is the idempotency key. It is
unique at the table level, so concurrent writers cannot double-credit.
"""
import logging
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from algosdk import encoding
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from agrifund import config, projects
from agrifund.chain_gateway import ChainGateway, OnChainProjectState, to_base_units
from agrifund.errors import (
    AuthorizationError, ConflictError, ExternalDependencyError, NotFoundError, PolicyError, ValidationError,
)
from agrifund.models import Contribution, ContributionStatus, Project, ProjectContributor, ProjectStatus, utcnow
from agrifund.notifications import Notifier, notify_safely
from agrifund.schemas import ContributionCreate, ContributionIntent, ContributionOut, FundingView, page_of

logger = logging.getLogger(__name__)

ANONYMOUS = "anonymous"


def convert_to_local_currency(amount) -> Dict[str, Any]:
    amount = Decimal(str(amount))
    rate = config.LOCAL_CURRENCY_RATE
    return {
        "amount": amount,
        "currency": config.LOCAL_CURRENCY,
        "rate": rate,
        "amount_local": (amount * rate).quantize(Decimal("0.01")),
    }


def _progress(current: Decimal, goal: Decimal) -> float:
    if not goal:
        return 0.0
    return round(float(current / goal * 100), 2)


def _require_deployed(project: Project) -> int:
    if project.blockchain_project_id is None:
        raise ValidationError(f"Project {project.id} is not deployed on chain yet")
    return project.blockchain_project_id


def _require_wallet(wallet: str) -> str:
    wallet = (wallet or "").strip()
    if not encoding.is_valid_address(wallet):
        raise ValidationError(f"Invalid contributor wallet address: {wallet!r}")
    return wallet


def _local_snapshot(db: Session, project_id: str) -> Tuple[Decimal, int]:
    """Confirmed local records only: (total amount, distinct contributors)."""
    total, contributors = (
        db.query(
            func.coalesce(func.sum(Contribution.amount), 0),
            func.count(func.distinct(Contribution.contributor_id)),
        )
        .filter(Contribution.project_id == project_id, Contribution.status == ContributionStatus.CONFIRMED)
        .one()
    )
    return Decimal(str(total)), int(contributors)


def _register_contributor(db: Session, contribution: Contribution) -> bool:
    """
    True on the contributor's first confirmed contribution to the project.

    Call after the confirmed row is flushed. The unique (project, contributor)
    row decides: of two concurrent first contributions only one insert
    succeeds, so contributors_count cannot drift upward.
    """
    try:
        with db.begin_nested():
            db.add(ProjectContributor(
                project_id=contribution.project_id,
                contributor_id=contribution.contributor_id,
                first_contribution_id=contribution.id,
            ))
    except IntegrityError:
        return False
    return True


# ---------------------------
# Read path (degrades)
# ---------------------------
def contribution_blocking_reason(status: str, state: OnChainProjectState, now: Optional[float] = None) -> Optional[str]:
    """Ordered policy check; the first failing rule wins. None means contributions are open."""
    if status != ProjectStatus.ACTIVE:
        return f"Only active projects accept contributions; this project is '{status}'"
    if not state.is_active:
        return "This project has been deactivated or its deadline passed"
    if state.is_completed:
        return "This project is fully funded: goal reached, funds released to the farmer"
    if state.funds_released:
        return "Funds have already been released for this project"
    now = time.time() if now is None else now
    if state.deadline and now > state.deadline:
        deadline = datetime.fromtimestamp(state.deadline, tz=timezone.utc)
        return f"Funding deadline passed on {deadline:%Y-%m-%d %H:%M} UTC"
    return None


def get_funding_view(db: Session, gateway: ChainGateway, project_id: str) -> FundingView:
    project = projects.get_project(db, project_id)
    on_chain_id = _require_deployed(project)

    try:
        state = gateway.read_project_state(on_chain_id)
    except ExternalDependencyError as e:
        logger.warning("Funding view for %s served from local records: %s", project.id, e)
        return _degraded_view(db, project, str(e))
    return _authoritative_view(db, gateway, project, state)


def _authoritative_view(db: Session, gateway: ChainGateway, project: Project, state: OnChainProjectState) -> FundingView:
    # Cached figures follow the ledger; status changes are left to sync_chain_state
    projects.refresh_cached_totals(db, project.id, state.total_funding, state.contributors_count)

    try:
        escrow_balance = gateway.read_escrow_balance(state.on_chain_id)
    except ExternalDependencyError as e:
        logger.info("Escrow balance unavailable for app %s: %s", state.on_chain_id, e)
        escrow_balance = None

    reason = contribution_blocking_reason(project.status, state)
    return FundingView(
        project_id=project.id,
        blockchain_project_id=state.on_chain_id,
        status=project.status,
        chain_available=True,
        funding_goal=state.goal,
        current_funding=state.total_funding,
        contributors_count=state.contributors_count,
        progress_percent=_progress(state.total_funding, state.goal),
        escrow_balance=escrow_balance,
        deadline=state.deadline or None,
        is_active=state.is_active,
        is_completed=state.is_completed,
        funds_released=state.funds_released,
        can_contribute=reason is None,
        blocking_reason=reason,
    )


def _degraded_view(db: Session, project: Project, error: str) -> FundingView:
    total, contributors = _local_snapshot(db, project.id)
    goal = Decimal(str(project.funding_goal))
    reason = None
    if project.status != ProjectStatus.ACTIVE:
        reason = f"Only active projects accept contributions; this project is '{project.status}'"
    return FundingView(
        project_id=project.id,
        blockchain_project_id=project.blockchain_project_id,
        status=project.status,
        chain_available=False,
        advisory=f"Ledger unavailable, showing locally recorded figures ({error})",
        funding_goal=goal,
        current_funding=total,
        contributors_count=contributors,
        progress_percent=_progress(total, goal),
        can_contribute=reason is None,
        blocking_reason=reason,
    )


# ---------------------------
# Write path (strict)
# ---------------------------
def create_contribution(
    db: Session,
    gateway: ChainGateway,
    contributor_id: str,
    payload: ContributionCreate,
    notifier: Optional[Notifier] = None,
) -> Contribution:
    """Record a transfer the contributor's wallet already signed and broadcast."""
    project = projects.get_project(db, payload.project_id)
    if project.status != ProjectStatus.ACTIVE:
        raise PolicyError(
            f"Only active projects accept contributions; this project is '{project.status}'",
            current_status=project.status,
        )
    on_chain_id = _require_deployed(project)
    wallet = _require_wallet(payload.contributor_wallet)
    amount_base = to_base_units(payload.amount)

    # Fresh ledger read; ExternalDependencyError propagates, nothing is recorded
    state = gateway.read_project_state(on_chain_id)
    if not state.is_active:
        raise PolicyError(
            "This project has been deactivated on chain or its deadline passed",
            current_status=project.status,
        )

    tx_ref = payload.tx_ref.strip()
    if db.query(Contribution.id).filter(Contribution.tx_ref == tx_ref).first():
        raise ConflictError("Contribution", "tx_ref", tx_ref)

    local = convert_to_local_currency(payload.amount)
    now = utcnow()
    contribution = Contribution(
        project_id=project.id,
        contributor_id=contributor_id,
        contributor_wallet=wallet,
        blockchain_project_id=on_chain_id,
        amount=payload.amount,
        amount_base_units=amount_base,
        local_currency=local["currency"],
        local_currency_rate=local["rate"],
        amount_local=local["amount_local"],
        tx_ref=tx_ref,
        status=ContributionStatus.CONFIRMED,
        extra={"anonymous": payload.anonymous, "message": payload.message},
        contributed_at=now,
        confirmed_at=now,
    )
    try:
        db.add(contribution)
        db.flush()
        new_contributor = _register_contributor(db, contribution)
        projects.record_funding(db, project.id, payload.amount, new_contributor)
        db.commit()
    except IntegrityError as e:
        # a concurrent writer got the same tx_ref in first
        db.rollback()
        raise ConflictError("Contribution", "tx_ref", tx_ref) from e
    db.refresh(contribution)

    logger.info(
        "Contribution %s recorded: %s ALGO to project %s (tx %s)",
        contribution.id, contribution.amount, project.id, tx_ref,
    )
    notify_safely(
        notifier, "contribution_recorded", project.owner_id,
        project_id=project.id, amount=str(payload.amount), tx_ref=tx_ref,
    )
    return contribution


def create_contribution_intent(db: Session, contributor_id: str, payload: ContributionIntent) -> Contribution:
    """Pending record without a tx_ref. Totals move only on confirm."""
    project = projects.get_project(db, payload.project_id)
    if project.status != ProjectStatus.ACTIVE:
        raise PolicyError(
            f"Only active projects accept contributions; this project is '{project.status}'",
            current_status=project.status,
        )
    on_chain_id = _require_deployed(project)
    wallet = _require_wallet(payload.contributor_wallet)
    local = convert_to_local_currency(payload.amount)

    contribution = Contribution(
        project_id=project.id,
        contributor_id=contributor_id,
        contributor_wallet=wallet,
        blockchain_project_id=on_chain_id,
        amount=payload.amount,
        amount_base_units=to_base_units(payload.amount),
        local_currency=local["currency"],
        local_currency_rate=local["rate"],
        amount_local=local["amount_local"],
        tx_ref=None,
        status=ContributionStatus.PENDING,
        extra={"anonymous": payload.anonymous, "message": payload.message},
    )
    db.add(contribution)
    db.commit()
    db.refresh(contribution)
    logger.info("Pending contribution %s created for project %s", contribution.id, project.id)
    return contribution


def get_contribution(db: Session, contribution_id: str) -> Contribution:
    contribution = db.get(Contribution, contribution_id)
    if not contribution:
        raise NotFoundError("Contribution", contribution_id)
    return contribution


def _require_contributor(contribution: Contribution, actor_id: Optional[str]) -> None:
    if actor_id is not None and actor_id != contribution.contributor_id:
        raise AuthorizationError("Only the contributor can change this contribution")


def confirm_contribution(
    db: Session,
    contribution_id: str,
    tx_ref: str,
    actor_id: Optional[str] = None,
    notifier: Optional[Notifier] = None,
) -> Contribution:
    contribution = get_contribution(db, contribution_id)
    _require_contributor(contribution, actor_id)
    if contribution.status == ContributionStatus.CONFIRMED:
        raise ConflictError(
            "Contribution", "status", contribution.status,
            message=f"Contribution {contribution.id} is already confirmed",
        )
    if contribution.status == ContributionStatus.FAILED:
        raise PolicyError(
            f"Contribution {contribution.id} was marked failed and cannot be confirmed",
            current_status=contribution.status,
        )

    tx_ref = (tx_ref or "").strip()
    if not tx_ref:
        raise ValidationError("A transaction reference is required to confirm a contribution")
    if db.query(Contribution.id).filter(Contribution.tx_ref == tx_ref).first():
        raise ConflictError("Contribution", "tx_ref", tx_ref)

    contribution.tx_ref = tx_ref
    contribution.status = ContributionStatus.CONFIRMED
    contribution.confirmed_at = utcnow()
    try:
        db.flush()
        new_contributor = _register_contributor(db, contribution)
        projects.record_funding(db, contribution.project_id, Decimal(str(contribution.amount)), new_contributor)
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise ConflictError("Contribution", "tx_ref", tx_ref) from e
    db.refresh(contribution)

    logger.info("Contribution %s confirmed (tx %s)", contribution.id, tx_ref)
    project = db.get(Project, contribution.project_id)
    notify_safely(
        notifier, "contribution_recorded", project.owner_id if project else None,
        project_id=contribution.project_id, amount=str(contribution.amount), tx_ref=tx_ref,
    )
    return contribution


def mark_contribution_failed(
    db: Session, contribution_id: str, reason: str, actor_id: Optional[str] = None
) -> Contribution:
    contribution = get_contribution(db, contribution_id)
    _require_contributor(contribution, actor_id)
    if contribution.status != ContributionStatus.PENDING:
        raise ConflictError(
            "Contribution", "status", contribution.status,
            message=f"Only pending contributions can fail; {contribution.id} is '{contribution.status}'",
        )
    contribution.status = ContributionStatus.FAILED
    contribution.failure_reason = reason
    db.commit()
    db.refresh(contribution)
    logger.info("Contribution %s marked failed: %s", contribution.id, reason)
    return contribution


# ---------------------------
# Listings
# ---------------------------
def list_contributor_contributions(
    db: Session,
    contributor_id: str,
    status: Optional[str] = None,
    project_id: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
) -> Dict[str, Any]:
    q = db.query(Contribution).filter(Contribution.contributor_id == contributor_id)
    if status:
        q = q.filter(Contribution.status == status)
    if project_id:
        q = q.filter(Contribution.project_id == project_id)

    total = q.count()
    rows = q.order_by(Contribution.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
    confirmed_total = (
        db.query(func.coalesce(func.sum(Contribution.amount), 0))
        .filter(Contribution.contributor_id == contributor_id, Contribution.status == ContributionStatus.CONFIRMED)
        .scalar()
    )
    return page_of(
        [ContributionOut.model_validate(r) for r in rows], total, page, limit,
        total_confirmed_amount=Decimal(str(confirmed_total)),
    )


def list_project_contributions(db: Session, project_id: str, page: int = 1, limit: int = 20) -> Dict[str, Any]:
    projects.get_project(db, project_id)
    q = db.query(Contribution).filter(
        Contribution.project_id == project_id, Contribution.status == ContributionStatus.CONFIRMED
    )
    total = q.count()
    rows = q.order_by(Contribution.confirmed_at.desc()).offset((page - 1) * limit).limit(limit).all()

    items = []
    for row in rows:
        out = ContributionOut.model_validate(row)
        if (row.extra or {}).get("anonymous"):
            out = out.model_copy(update={"contributor_id": ANONYMOUS, "contributor_wallet": ANONYMOUS})
        items.append(out)
    return page_of(items, total, page, limit)


def build_contribution_group(
    db: Session, gateway: ChainGateway, project_id: str, from_address: str, amount
) -> Dict[str, Any]:
    """Unsigned payment + app-call group for the contributor's wallet. The service never signs it."""
    project = projects.get_project(db, project_id)
    if project.status != ProjectStatus.ACTIVE:
        raise PolicyError(
            f"Only active projects accept contributions; this project is '{project.status}'",
            current_status=project.status,
        )
    on_chain_id = _require_deployed(project)
    group = gateway.build_contribution_group(on_chain_id, from_address, amount)
    group["network"] = gateway.network_hint()
    group["blockchain_project_id"] = on_chain_id
    return group
