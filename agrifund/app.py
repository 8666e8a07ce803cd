from decimal import Decimal
from typing import List, Optional

from fastapi import FastAPI, Depends, Header, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

# Absolute imports to avoid package resolution issues
from agrifund import config, contributions, departments, projects, stats, users, withdrawals
from agrifund.cache import TTLCache
from agrifund.chain_gateway import ChainGateway, get_gateway
from agrifund.database import get_db, init_db
from agrifund.errors import (
    AgrifundError, AuthorizationError, ConflictError, ExternalDependencyError, NotFoundError, PolicyError,
    ValidationError,
)
from agrifund.models import Role
from agrifund.notifications import LogNotifier, Notifier
from agrifund.schemas import (
    Actor, ContributionConfirm, ContributionCreate, ContributionFail, ContributionGroupRequest, ContributionIntent,
    ContributionOut, DueDiligenceUpdate, FundingView, ProjectCreate, ProjectOut, ProjectUpdate, RejectProject,
    UserProfile, VerifyProject, WalletUpdate, WithdrawalOut, WithdrawalProcess, WithdrawalRequest,
)

config.configure_logging()

app = FastAPI(title="AgriFund")
app.state.user_cache = TTLCache(config.USER_CACHE_TTL_SECONDS)
app.state.notifier = LogNotifier()

# Create DB tables
init_db()

ERROR_STATUS = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (AuthorizationError, 403),
    (PolicyError, 409),
    (ExternalDependencyError, 503),
)


@app.exception_handler(AgrifundError)
def handle_agrifund_error(request: Request, exc: AgrifundError):
    status = next((code for kind, code in ERROR_STATUS if isinstance(exc, kind)), 400)
    return JSONResponse({"error": exc.kind, "message": exc.message}, status_code=status)


# ---------------------------
# Dependencies
# ---------------------------
def get_chain() -> ChainGateway:
    return get_gateway()


def get_user_cache(request: Request) -> TTLCache:
    return request.app.state.user_cache


def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier


def get_actor(
    x_actor_id: str = Header(...),
    x_actor_role: str = Header(...),
    x_actor_department: Optional[str] = Header(None),
) -> Actor:
    """Identity is established upstream; these headers are trusted as-is."""
    return Actor(id=x_actor_id, role=x_actor_role.upper(), department=x_actor_department or None)


def _department(value: str) -> departments.Department:
    try:
        return departments.Department(value.upper())
    except ValueError:
        raise ValidationError(f"Unknown department: {value!r}")


# ---------------------------
# Projects
# ---------------------------
@app.post("/api/projects", response_model=ProjectOut, status_code=201)
def create_project(
    payload: ProjectCreate,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
    cache: TTLCache = Depends(get_user_cache),
    notifier: Notifier = Depends(get_notifier),
):
    if actor.role != Role.FARMER:
        raise AuthorizationError("Only farmers can create projects")
    return projects.create_project(db, payload, actor.id, user_cache=cache, notifier=notifier)


@app.get("/api/projects", response_model=List[ProjectOut])
def list_active_projects(
    category: Optional[str] = Query(None),
    location: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    return projects.find_active(db, category=category, location=location)


@app.get("/api/projects/mine", response_model=List[ProjectOut])
def my_projects(
    status: Optional[str] = Query(None),
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    return projects.find_by_owner(db, actor.id, status=status)


@app.get("/api/projects/pending", response_model=List[ProjectOut])
def pending_projects(actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    if actor.role not in Role.REVIEWERS:
        raise AuthorizationError("Only government reviewers can list pending projects")
    return projects.find_pending(db)


@app.get("/api/projects/assigned", response_model=List[ProjectOut])
def assigned_projects(actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    if actor.role not in Role.REVIEWERS:
        raise AuthorizationError("Only government reviewers have a review queue")
    return projects.find_assigned(db, actor.id)


@app.get("/api/projects/favorites", response_model=List[ProjectOut])
def favorite_projects(actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    return projects.list_favorites(db, actor.id)


@app.get("/api/projects/department/{department}", response_model=List[ProjectOut])
def department_projects(department: str, db: Session = Depends(get_db)):
    return projects.find_by_department(db, _department(department).value)


@app.get("/api/projects/{project_id}", response_model=ProjectOut)
def get_project(project_id: str, db: Session = Depends(get_db)):
    return projects.get_project(db, project_id)


@app.patch("/api/projects/{project_id}", response_model=ProjectOut)
def update_project(
    project_id: str,
    payload: ProjectUpdate,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    return projects.update_project(db, project_id, actor, payload)


@app.delete("/api/projects/{project_id}")
def delete_project(project_id: str, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    return projects.remove_project(db, project_id, actor)


@app.post("/api/projects/{project_id}/due-diligence/assign", response_model=ProjectOut)
def assign_due_diligence(project_id: str, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    return projects.assign_due_diligence(db, project_id, actor)


@app.patch("/api/projects/{project_id}/due-diligence", response_model=ProjectOut)
def update_due_diligence(
    project_id: str,
    payload: DueDiligenceUpdate,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    return projects.update_due_diligence(db, project_id, actor, payload)


@app.post("/api/projects/{project_id}/verify", response_model=ProjectOut)
def verify_project(
    project_id: str,
    payload: VerifyProject,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
    gateway: ChainGateway = Depends(get_chain),
    notifier: Notifier = Depends(get_notifier),
):
    return projects.verify_project(db, gateway, project_id, actor, notes=payload.notes, notifier=notifier)


@app.post("/api/projects/{project_id}/reject", response_model=ProjectOut)
def reject_project(
    project_id: str,
    payload: RejectProject,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    return projects.reject_project(db, project_id, actor, payload.reason, notifier=notifier)


@app.post("/api/projects/{project_id}/complete", response_model=ProjectOut)
def complete_project(
    project_id: str,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
    gateway: ChainGateway = Depends(get_chain),
    notifier: Notifier = Depends(get_notifier),
):
    return projects.complete_project(db, gateway, project_id, actor, notifier=notifier)


@app.post("/api/projects/{project_id}/sync")
def sync_project(
    project_id: str,
    db: Session = Depends(get_db),
    gateway: ChainGateway = Depends(get_chain),
    notifier: Notifier = Depends(get_notifier),
):
    return projects.sync_chain_state(db, gateway, project_id, notifier=notifier)


@app.post("/api/projects/{project_id}/deploy/retry", response_model=ProjectOut)
def retry_deployment(
    project_id: str,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
    gateway: ChainGateway = Depends(get_chain),
):
    return projects.retry_deployment(db, gateway, project_id, actor)


@app.get("/api/projects/{project_id}/funding", response_model=FundingView)
def funding_view(project_id: str, db: Session = Depends(get_db), gateway: ChainGateway = Depends(get_chain)):
    return contributions.get_funding_view(db, gateway, project_id)


@app.get("/api/projects/{project_id}/stats")
def project_stats(project_id: str, db: Session = Depends(get_db), gateway: ChainGateway = Depends(get_chain)):
    return stats.project_stats(db, project_id, gateway=gateway)


@app.get("/api/projects/{project_id}/contributions")
def project_contributions(
    project_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    return contributions.list_project_contributions(db, project_id, page=page, limit=limit)


@app.post("/api/projects/{project_id}/contribution-txn")
def contribution_txn(
    project_id: str,
    payload: ContributionGroupRequest,
    db: Session = Depends(get_db),
    gateway: ChainGateway = Depends(get_chain),
):
    """Unsigned [payment, app call] group; the contributor's wallet signs and sends it."""
    return contributions.build_contribution_group(db, gateway, project_id, payload.from_address, payload.amount)


@app.post("/api/projects/{project_id}/favorite")
def add_favorite(project_id: str, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    return projects.add_favorite(db, actor.id, project_id)


@app.delete("/api/projects/{project_id}/favorite")
def remove_favorite(project_id: str, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    return projects.remove_favorite(db, actor.id, project_id)


@app.get("/api/projects/{project_id}/is-favorite")
def is_favorite(project_id: str, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    return {"is_favorite": projects.is_favorite(db, actor.id, project_id)}


# ---------------------------
# Departments
# ---------------------------
@app.get("/api/departments/workload")
def department_workload(db: Session = Depends(get_db)):
    return departments.workload_stats(db)


@app.get("/api/departments/recommendation")
def department_recommendation(category: str = Query(...), db: Session = Depends(get_db)):
    return departments.department_recommendation(db, category)


@app.get("/api/departments/{department}/reviewers")
def department_reviewers(
    department: str,
    available_only: bool = Query(False),
    db: Session = Depends(get_db),
):
    dept = _department(department)
    rows = departments.find_available_reviewers(db, dept) if available_only else departments.list_reviewers(db, dept)
    return [
        {
            "id": r.id,
            "name": f"{r.first_name} {r.last_name}".strip(),
            "current_workload": r.current_workload,
            "max_workload": r.max_workload,
        }
        for r in rows
    ]


# ---------------------------
# Contributions
# ---------------------------
@app.post("/api/contributions", response_model=ContributionOut, status_code=201)
def create_contribution(
    payload: ContributionCreate,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
    gateway: ChainGateway = Depends(get_chain),
    notifier: Notifier = Depends(get_notifier),
):
    return contributions.create_contribution(db, gateway, actor.id, payload, notifier=notifier)


@app.post("/api/contributions/intents", response_model=ContributionOut, status_code=201)
def create_contribution_intent(
    payload: ContributionIntent,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    return contributions.create_contribution_intent(db, actor.id, payload)


@app.get("/api/contributions/mine")
def my_contributions(
    status: Optional[str] = Query(None),
    project_id: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    return contributions.list_contributor_contributions(
        db, actor.id, status=status, project_id=project_id, page=page, limit=limit
    )


@app.get("/api/contributions/{contribution_id}", response_model=ContributionOut)
def get_contribution(contribution_id: str, db: Session = Depends(get_db)):
    return contributions.get_contribution(db, contribution_id)


@app.post("/api/contributions/{contribution_id}/confirm", response_model=ContributionOut)
def confirm_contribution(
    contribution_id: str,
    payload: ContributionConfirm,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    return contributions.confirm_contribution(
        db, contribution_id, payload.tx_ref, actor_id=actor.id, notifier=notifier
    )


@app.post("/api/contributions/{contribution_id}/fail", response_model=ContributionOut)
def fail_contribution(
    contribution_id: str,
    payload: ContributionFail,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    return contributions.mark_contribution_failed(db, contribution_id, payload.reason, actor_id=actor.id)


@app.get("/api/currency/convert")
def convert_currency(amount: Decimal = Query(..., gt=0)):
    return contributions.convert_to_local_currency(amount)


# ---------------------------
# Withdrawals
# ---------------------------
@app.post("/api/withdrawals", response_model=WithdrawalOut, status_code=201)
def request_withdrawal(
    payload: WithdrawalRequest,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
    gateway: ChainGateway = Depends(get_chain),
    notifier: Notifier = Depends(get_notifier),
):
    return withdrawals.request_withdrawal(db, gateway, actor, payload, notifier=notifier)


@app.get("/api/withdrawals/mine", response_model=List[WithdrawalOut])
def my_withdrawals(actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    return withdrawals.list_farmer_withdrawals(db, actor.id)


@app.get("/api/withdrawals/pending", response_model=List[WithdrawalOut])
def pending_withdrawals(actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    if actor.role not in Role.REVIEWERS:
        raise AuthorizationError("Only government reviewers can list pending withdrawals")
    return withdrawals.list_pending_withdrawals(db)


@app.post("/api/withdrawals/{withdrawal_id}/process", response_model=WithdrawalOut)
def process_withdrawal(
    withdrawal_id: str,
    payload: WithdrawalProcess,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    return withdrawals.process_withdrawal(db, withdrawal_id, actor, payload, notifier=notifier)


# ---------------------------
# Statistics / users
# ---------------------------
@app.get("/api/stats/me")
def my_stats(actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    return stats.contributor_stats(db, actor.id)


@app.get("/api/stats/platform")
def platform_stats(db: Session = Depends(get_db)):
    return stats.platform_stats(db)


@app.get("/api/users/me", response_model=UserProfile)
def me(actor: Actor = Depends(get_actor), db: Session = Depends(get_db), cache: TTLCache = Depends(get_user_cache)):
    return users.get_user(db, actor.id, cache)


@app.put("/api/users/me/wallet", response_model=UserProfile)
def update_wallet(
    payload: WalletUpdate,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
    cache: TTLCache = Depends(get_user_cache),
):
    return users.update_wallet_address(db, actor.id, payload.wallet_address, cache)


@app.get("/api/network")
def network(gateway: ChainGateway = Depends(get_chain)):
    return {"network": gateway.network_hint()}
