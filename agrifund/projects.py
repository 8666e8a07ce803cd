"""
Project lifecycle.

    submitted --(owner: edit/delete)--> submitted
    submitted|under_review|verified --(reviewer: verify)--> active
    submitted|under_review|verified --(reviewer: reject)--> rejected
    active --(ledger: goal reached, detected on sync)--> funded
    active --(reviewer: complete)--> closed

Verification deploys the escrow app through the Chain Gateway. A failed
deployment never blocks the review decision: the project still becomes
active with blockchain_status="failed" and can be redeployed later with
retry_deployment(). The signed create transaction is stored on the project
before it is sent; when a send times out its outcome is unknown, and
retry_deployment() resolves that transaction (adopting its app if it
landed) before it ever deploys again.

Reviewer actions are department-scoped (any reviewer of the project's
department may act). Verify claims the project by moving blockchain_status
to "pending" with a conditional UPDATE, so two reviewers cannot deploy the
same project twice.
"""
import hashlib
import json
import logging
import re
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from agrifund import config, departments
from agrifund.cache import TTLCache
from agrifund.chain_gateway import ChainGateway, DeployResult, DeploymentDraft
from agrifund.errors import (
    AgrifundError, AuthorizationError, ConflictError, ExternalDependencyError, NotFoundError, PolicyError,
    ValidationError,
)
from agrifund.models import DeploymentStatus, DueDiligenceStatus, Favorite, Project, ProjectStatus, Role, utcnow
from agrifund.notifications import Notifier, notify_safely
from agrifund.schemas import Actor, DueDiligenceUpdate, ProjectCreate, ProjectUpdate
from agrifund.users import get_user

logger = logging.getLogger(__name__)

_TIMELINE_RE = re.compile(r"(\d+)\s*(day|days|week|weeks|month|months|year|years)\b", re.IGNORECASE)
_UNIT_DAYS = {"day": 1, "week": 7, "month": 30, "year": 365}


def parse_timeline_days(timeline) -> int:
    """'5 months' -> 150, '2 weeks' -> 14. Unparseable input falls back to DEFAULT_TIMELINE_DAYS."""
    if isinstance(timeline, int):
        return timeline
    match = _TIMELINE_RE.search(str(timeline or ""))
    if not match:
        return config.DEFAULT_TIMELINE_DAYS
    unit = match.group(2).lower().rstrip("s")
    return int(match.group(1)) * _UNIT_DAYS[unit]


def _slugify(title: str) -> str:
    base = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")[:100] or "project"
    return f"{base}-{uuid.uuid4().hex[:8]}"


def _document_hash(data: Dict[str, Any]) -> str:
    return hashlib.sha256(json.dumps(data, sort_keys=True, default=str).encode()).hexdigest()


# ---------------------------
# Guards
# ---------------------------
def _require_reviewer(project: Project, actor: Actor) -> None:
    if actor.role not in Role.REVIEWERS:
        raise AuthorizationError("Only government reviewers can review projects")
    if actor.role == Role.ADMIN:
        return
    if project.department and actor.department != project.department:
        raise AuthorizationError(
            f"Reviewer in department {actor.department} cannot act on a project "
            f"assigned to department {project.department}"
        )


def _require_owner(project: Project, actor: Actor) -> None:
    if actor.id != project.owner_id:
        raise AuthorizationError("Only the project owner can modify this project")


def _require_submitted(project: Project, action: str) -> None:
    if project.status != ProjectStatus.SUBMITTED:
        raise PolicyError(
            f"Cannot {action} project with status '{project.status}'; only submitted projects can be changed",
            current_status=project.status,
        )


def _check_goal(goal: Decimal) -> None:
    if goal < config.MIN_FUNDING_GOAL:
        raise ValidationError(
            f"Minimum funding goal is {config.MIN_FUNDING_GOAL} ALGO",
            details={"funding_goal": str(goal), "minimum": str(config.MIN_FUNDING_GOAL)},
        )


# ---------------------------
# Reads
# ---------------------------
def get_project(db: Session, project_id: str) -> Project:
    project = db.get(Project, project_id)
    if not project:
        raise NotFoundError("Project", project_id)
    return project


def find_by_owner(db: Session, owner_id: str, status: Optional[str] = None) -> List[Project]:
    q = db.query(Project).filter(Project.owner_id == owner_id)
    if status:
        q = q.filter(Project.status == status)
    return q.order_by(Project.created_at.desc()).all()


def find_pending(db: Session) -> List[Project]:
    return (
        db.query(Project)
        .filter(Project.status.in_([ProjectStatus.SUBMITTED, ProjectStatus.UNDER_REVIEW]))
        .order_by(Project.created_at.asc())
        .all()
    )


def find_by_department(db: Session, department: str) -> List[Project]:
    return (
        db.query(Project)
        .filter(Project.department == department)
        .order_by(Project.created_at.desc())
        .all()
    )


def find_assigned(db: Session, reviewer_id: str) -> List[Project]:
    """A reviewer's queue: projects whose due diligence they hold, still in review or live."""
    return (
        db.query(Project)
        .filter(
            Project.dd_assigned_to == reviewer_id,
            Project.status.in_([ProjectStatus.UNDER_REVIEW, ProjectStatus.ACTIVE]),
        )
        .order_by(Project.dd_started_at.desc())
        .all()
    )


def find_active(db: Session, category: Optional[str] = None, location: Optional[str] = None) -> List[Project]:
    q = db.query(Project).filter(Project.status == ProjectStatus.ACTIVE)
    if category:
        q = q.filter(Project.category == category)
    if location:
        q = q.filter(Project.location.ilike(f"%{location}%"))
    return q.order_by(Project.created_at.desc()).all()


# ---------------------------
# Owner operations
# ---------------------------
def create_project(
    db: Session,
    payload: ProjectCreate,
    owner_id: str,
    user_cache: Optional[TTLCache] = None,
    notifier: Optional[Notifier] = None,
) -> Project:
    owner = get_user(db, owner_id, user_cache)
    if not (owner.wallet_address or "").strip():
        raise ValidationError(
            "You must connect your wallet before creating a project; a payout address is required"
        )
    _check_goal(payload.funding_goal)

    project = Project(
        slug=_slugify(payload.title),
        owner_id=owner.id,
        payout_address=owner.wallet_address,
        title=payload.title,
        description=payload.description,
        category=payload.category.value,
        location=payload.location,
        timeline=payload.timeline,
        images=list(payload.images),
        documents=[d.model_dump() for d in payload.documents],
        status=ProjectStatus.SUBMITTED,
        funding_goal=payload.funding_goal,
        current_funding=Decimal("0"),
        contributors_count=0,
        blockchain_status=DeploymentStatus.NOT_CREATED,
        dd_status=DueDiligenceStatus.PENDING,
        dd_notes="",
        dd_documents=[],
        verification_notes="",
    )
    db.add(project)
    db.commit()
    db.refresh(project)
    logger.info("Project %s created by %s (goal %s ALGO)", project.id, owner.id, project.funding_goal)

    # Categorization failure must not block submission
    result = departments.auto_categorize(db, project.id, project.category)
    if not result["success"]:
        logger.warning("Project %s left uncategorized: %s", project.id, result["error"])
    db.refresh(project)

    notify_safely(notifier, "project_submitted", owner.id, project_id=project.id, title=project.title)
    return project


def update_project(db: Session, project_id: str, actor: Actor, payload: ProjectUpdate) -> Project:
    project = get_project(db, project_id)
    _require_owner(project, actor)
    _require_submitted(project, "edit")

    changes = {k: v for k, v in payload.model_dump(exclude_unset=True).items() if v is not None}
    if "funding_goal" in changes:
        _check_goal(changes["funding_goal"])
    for field, value in changes.items():
        setattr(project, field, value)

    db.commit()
    db.refresh(project)
    logger.info("Project %s updated by owner (%s)", project.id, ", ".join(sorted(changes)) or "no changes")
    return project


def remove_project(db: Session, project_id: str, actor: Actor) -> Dict[str, str]:
    project = get_project(db, project_id)
    _require_owner(project, actor)
    _require_submitted(project, "delete")
    db.query(Favorite).filter(Favorite.project_id == project.id).delete(synchronize_session=False)
    db.delete(project)
    db.commit()
    logger.info("Project %s deleted by owner", project_id)
    return {"message": "Project deleted successfully"}


# ---------------------------
# Review operations
# ---------------------------
def assign_due_diligence(db: Session, project_id: str, actor: Actor) -> Project:
    project = get_project(db, project_id)
    _require_reviewer(project, actor)
    if project.status not in (ProjectStatus.SUBMITTED, ProjectStatus.UNDER_REVIEW):
        raise PolicyError(
            f"Cannot start due diligence on project with status '{project.status}'",
            current_status=project.status,
        )

    if project.dd_assigned_to != actor.id:
        departments.decrement_workload(db, project.dd_assigned_to)
        departments.increment_workload(db, actor.id)
    project.status = ProjectStatus.UNDER_REVIEW
    project.dd_assigned_to = actor.id
    project.dd_status = DueDiligenceStatus.IN_PROGRESS
    project.dd_started_at = utcnow()
    db.commit()
    db.refresh(project)
    logger.info("Due diligence on %s started by %s", project.id, actor.id)
    return project


def update_due_diligence(db: Session, project_id: str, actor: Actor, payload: DueDiligenceUpdate) -> Project:
    project = get_project(db, project_id)
    _require_reviewer(project, actor)
    if project.status in ProjectStatus.TERMINAL:
        raise PolicyError(
            f"Cannot update due diligence on project with status '{project.status}'",
            current_status=project.status,
        )

    if payload.notes is not None:
        project.dd_notes = payload.notes
    if payload.status:
        project.dd_status = payload.status
        if payload.status == DueDiligenceStatus.COMPLETED:
            project.dd_completed_at = utcnow()
    if payload.documents:
        uploaded_at = utcnow().isoformat()
        project.dd_documents = list(project.dd_documents or []) + [
            {**d.model_dump(), "uploaded_at": uploaded_at} for d in payload.documents
        ]
    db.commit()
    db.refresh(project)
    return project


def _claim_for_review(db: Session, project: Project) -> None:
    """Compare-and-set: only one reviewer action can hold the project at a time."""
    result = db.execute(
        update(Project)
        .where(
            Project.id == project.id,
            Project.status.in_(ProjectStatus.REVIEWABLE),
            Project.blockchain_status != DeploymentStatus.PENDING,
        )
        .values(blockchain_status=DeploymentStatus.PENDING)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount == 0:
        db.refresh(project)
        if project.status not in ProjectStatus.REVIEWABLE:
            raise PolicyError(
                f"Cannot verify project with status '{project.status}'", current_status=project.status
            )
        raise ConflictError(
            "Project", "blockchain_status", project.blockchain_status,
            message=f"Project {project.id} is already being verified by another reviewer",
        )
    db.refresh(project)


def _deploy(db: Session, gateway: ChainGateway, project: Project) -> DeployResult:
    """
    Sign, persist, then send. The signed create txn and its txid are committed
    before the send, so a send whose outcome is unknown (a timeout that may
    still land) can be resolved by retry_deployment() instead of repeated.
    """
    draft = gateway.prepare_deployment(
        owner=project.payout_address,
        title=project.title,
        description=project.description,
        goal=project.funding_goal,
        category=project.category,
        location=project.location,
        timeline_days=parse_timeline_days(project.timeline),
    )
    project.blockchain_tx_ref = draft.tx_ref
    project.deployment_draft = draft.model_dump()
    db.commit()
    return gateway.submit_deployment(draft)


def _deployment_error(project: Project, error: AgrifundError) -> str:
    if project.deployment_draft:
        return f"{error} (create transaction {project.blockchain_tx_ref} is unresolved; retry reconciles it first)"
    return str(error)


def _record_deployment(project: Project, result: DeployResult) -> None:
    project.blockchain_project_id = result.on_chain_id
    project.blockchain_tx_ref = result.tx_ref
    project.blockchain_status = DeploymentStatus.CREATED
    project.blockchain_error = None
    project.deployment_draft = None


def verify_project(
    db: Session,
    gateway: ChainGateway,
    project_id: str,
    actor: Actor,
    notes: Optional[str] = None,
    notifier: Optional[Notifier] = None,
) -> Project:
    project = get_project(db, project_id)
    _require_reviewer(project, actor)
    if project.status not in ProjectStatus.REVIEWABLE:
        raise PolicyError(
            f"Cannot verify project with status '{project.status}'", current_status=project.status
        )
    _claim_for_review(db, project)

    verified_at = utcnow()
    try:
        logger.info("Deploying verified project %s to the ledger", project.id)
        result = _deploy(db, gateway, project)
        _record_deployment(project, result)
        logger.info("Project %s deployed as app %s (tx %s)", project.id, result.on_chain_id, result.tx_ref)
    except (ExternalDependencyError, ValidationError) as e:
        # The review decision stands; the deployment is recorded for retry
        project.blockchain_project_id = None
        project.blockchain_status = DeploymentStatus.FAILED
        project.blockchain_error = _deployment_error(project, e)
        logger.error("Ledger deployment failed for project %s: %s", project.id, e)
    deployment = project.blockchain_status

    project.status = ProjectStatus.ACTIVE
    project.verified_by = actor.id
    project.verified_at = verified_at
    project.verification_notes = notes or ""
    project.rejection_reason = None
    project.document_hash = _document_hash({
        "project_id": project.id,
        "documents": project.documents or [],
        "verified_at": verified_at.isoformat(),
    })
    project.dd_status = DueDiligenceStatus.COMPLETED
    project.dd_completed_at = verified_at
    departments.decrement_workload(db, project.dd_assigned_to)
    db.commit()
    db.refresh(project)

    logger.info("Project %s verified by %s (deployment %s)", project.id, actor.id, deployment)
    notify_safely(notifier, "project_verified", project.owner_id, project_id=project.id, deployment=deployment)
    return project


def reject_project(
    db: Session,
    project_id: str,
    actor: Actor,
    reason: str,
    notifier: Optional[Notifier] = None,
) -> Project:
    project = get_project(db, project_id)
    _require_reviewer(project, actor)
    if not (reason or "").strip():
        raise ValidationError("A rejection reason is required")
    if project.status not in ProjectStatus.REVIEWABLE:
        raise PolicyError(
            f"Cannot reject project with status '{project.status}'", current_status=project.status
        )

    result = db.execute(
        update(Project)
        .where(
            Project.id == project.id,
            Project.status.in_(ProjectStatus.REVIEWABLE),
            Project.blockchain_status != DeploymentStatus.PENDING,
        )
        .values(
            status=ProjectStatus.REJECTED,
            verified_by=actor.id,
            verified_at=utcnow(),
            rejection_reason=reason.strip(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.rollback()
        raise ConflictError(
            "Project", "status", project.status,
            message=f"Project {project.id} changed while it was being rejected",
        )
    departments.decrement_workload(db, project.dd_assigned_to)
    db.commit()
    db.refresh(project)

    logger.info("Project %s rejected by %s", project.id, actor.id)
    notify_safely(notifier, "project_rejected", project.owner_id, project_id=project.id, reason=reason)
    return project


def complete_project(
    db: Session,
    gateway: ChainGateway,
    project_id: str,
    actor: Actor,
    notifier: Optional[Notifier] = None,
) -> Project:
    project = get_project(db, project_id)
    _require_reviewer(project, actor)
    if project.status != ProjectStatus.ACTIVE:
        raise PolicyError(
            f"Cannot complete project with status '{project.status}'; only active projects can be closed",
            current_status=project.status,
        )

    # Stop the ledger from accepting funds before the local record says closed
    if project.blockchain_project_id is not None:
        gateway.set_project_active(project.blockchain_project_id, False)

    project.status = ProjectStatus.CLOSED
    project.completed_at = utcnow()
    db.commit()
    db.refresh(project)
    logger.info("Project %s closed by %s", project.id, actor.id)
    notify_safely(notifier, "project_completed", project.owner_id, project_id=project.id)
    return project


def _claim_for_redeploy(db: Session, project: Project) -> None:
    result = db.execute(
        update(Project)
        .where(
            Project.id == project.id,
            Project.status == ProjectStatus.ACTIVE,
            Project.blockchain_status == DeploymentStatus.FAILED,
        )
        .values(blockchain_status=DeploymentStatus.PENDING)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(project)
    if result.rowcount == 0:
        raise ConflictError(
            "Project", "blockchain_status", project.blockchain_status,
            message=f"Project {project.id} is already being redeployed",
        )


def retry_deployment(db: Session, gateway: ChainGateway, project_id: str, actor: Actor) -> Project:
    """
    Redeploy an active project whose deployment failed.

    A stored draft means an earlier create transaction may have reached the
    ledger; it is resolved first and its app adopted, so a project never ends
    up with two escrow apps. A fresh deployment is made only when the earlier
    transaction can no longer be confirmed.
    """
    project = get_project(db, project_id)
    _require_reviewer(project, actor)
    if project.status != ProjectStatus.ACTIVE or project.blockchain_status != DeploymentStatus.FAILED:
        raise PolicyError(
            f"Only active projects with a failed deployment can be redeployed "
            f"(status '{project.status}', deployment '{project.blockchain_status}')",
            current_status=project.status,
        )
    _claim_for_redeploy(db, project)

    try:
        result = None
        if project.deployment_draft:
            result = gateway.resolve_deployment(DeploymentDraft(**project.deployment_draft))
            if result is None:
                logger.info("Create transaction %s for project %s never landed", project.blockchain_tx_ref, project.id)
                project.deployment_draft = None
                project.blockchain_tx_ref = None
            else:
                logger.info("Project %s adopted app %s from tx %s", project.id, result.on_chain_id, result.tx_ref)
        if result is None:
            result = _deploy(db, gateway, project)
    except (ExternalDependencyError, ValidationError) as e:
        project.blockchain_status = DeploymentStatus.FAILED
        project.blockchain_error = _deployment_error(project, e)
        db.commit()
        raise

    _record_deployment(project, result)
    db.commit()
    db.refresh(project)
    logger.info("Project %s redeployed as app %s", project.id, result.on_chain_id)
    return project


# ---------------------------
# Cached funding figures
# ---------------------------
def record_funding(db: Session, project_id: str, amount: Decimal, new_contributor: bool) -> None:
    """Atomic increment of the cached totals. Caller owns the transaction."""
    result = db.execute(
        update(Project)
        .where(Project.id == project_id)
        .values(
            current_funding=Project.current_funding + amount,
            contributors_count=Project.contributors_count + (1 if new_contributor else 0),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotFoundError("Project", project_id)


def refresh_cached_totals(db: Session, project_id: str, current_funding: Decimal, contributors_count: int) -> None:
    db.execute(
        update(Project)
        .where(Project.id == project_id)
        .values(current_funding=current_funding, contributors_count=contributors_count)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def sync_chain_state(
    db: Session,
    gateway: ChainGateway,
    project_id: str,
    notifier: Optional[Notifier] = None,
) -> Dict[str, Any]:
    """
    Pull the ledger's view into the local record and detect goal completion.

    Read path: an unreachable ledger is reported, not raised.
    """
    project = get_project(db, project_id)
    if project.blockchain_project_id is None:
        return {"synced": False, "status": project.status, "error": "Project is not deployed on chain"}

    try:
        state = gateway.read_project_state(project.blockchain_project_id)
    except ExternalDependencyError as e:
        logger.warning("Ledger sync skipped for project %s: %s", project.id, e)
        return {"synced": False, "status": project.status, "error": str(e)}

    project.current_funding = state.total_funding
    project.contributors_count = state.contributors_count
    became_funded = project.status == ProjectStatus.ACTIVE and (state.is_completed or state.funds_released)
    if became_funded:
        project.status = ProjectStatus.FUNDED
        project.completed_at = utcnow()
    db.commit()
    db.refresh(project)

    if became_funded:
        logger.info("Project %s reached its goal on chain; marked funded", project.id)
        notify_safely(notifier, "project_funded", project.owner_id, project_id=project.id)
    return {
        "synced": True,
        "status": project.status,
        "current_funding": project.current_funding,
        "contributors_count": project.contributors_count,
        "error": None,
    }


# ---------------------------
# Favorites
# ---------------------------
def add_favorite(db: Session, user_id: str, project_id: str) -> Dict[str, str]:
    project = get_project(db, project_id)
    if is_favorite(db, user_id, project.id):
        return {"message": "Already in favorites"}
    try:
        db.add(Favorite(user_id=user_id, project_id=project.id))
        db.commit()
    except IntegrityError:
        # a concurrent request added it first
        db.rollback()
        return {"message": "Already in favorites"}
    return {"message": "Added to favorites"}


def remove_favorite(db: Session, user_id: str, project_id: str) -> Dict[str, str]:
    db.query(Favorite).filter(Favorite.user_id == user_id, Favorite.project_id == project_id).delete(
        synchronize_session=False
    )
    db.commit()
    return {"message": "Removed from favorites"}


def list_favorites(db: Session, user_id: str) -> List[Project]:
    return (
        db.query(Project)
        .join(Favorite, Favorite.project_id == Project.id)
        .filter(Favorite.user_id == user_id)
        .order_by(Favorite.created_at.desc())
        .all()
    )


def is_favorite(db: Session, user_id: str, project_id: str) -> bool:
    return (
        db.query(Favorite.id).filter(Favorite.user_id == user_id, Favorite.project_id == project_id).first()
        is not None
    )
