"""Read-only rollups over the local contribution store. Empty data yields zeroed results."""
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from agrifund import projects
from agrifund.chain_gateway import ChainGateway
from agrifund.errors import ExternalDependencyError
from agrifund.models import (
    Contribution, ContributionStatus, Project, ProjectStatus, Withdrawal, WithdrawalStatus,
)

logger = logging.getLogger(__name__)


def _dec(value) -> Decimal:
    return Decimal(str(value or 0))


def contributor_stats(db: Session, contributor_id: str) -> Dict[str, Any]:
    by_status = dict(
        db.query(Contribution.status, func.count(Contribution.id))
        .filter(Contribution.contributor_id == contributor_id)
        .group_by(Contribution.status)
        .all()
    )
    total_amount, projects_supported = (
        db.query(
            func.coalesce(func.sum(Contribution.amount), 0),
            func.count(func.distinct(Contribution.project_id)),
        )
        .filter(Contribution.contributor_id == contributor_id, Contribution.status == ContributionStatus.CONFIRMED)
        .one()
    )
    confirmed = by_status.get(ContributionStatus.CONFIRMED, 0)
    total_amount = _dec(total_amount)
    return {
        "total_contributions": sum(by_status.values()),
        "confirmed_contributions": confirmed,
        "pending_contributions": by_status.get(ContributionStatus.PENDING, 0),
        "failed_contributions": by_status.get(ContributionStatus.FAILED, 0),
        "projects_supported": projects_supported,
        "total_amount": total_amount,
        "average_contribution": (total_amount / confirmed).quantize(Decimal("0.000001")) if confirmed else Decimal("0"),
    }


def project_stats(db: Session, project_id: str, gateway: Optional[ChainGateway] = None) -> Dict[str, Any]:
    project = projects.get_project(db, project_id)
    count, total_amount, contributors = (
        db.query(
            func.count(Contribution.id),
            func.coalesce(func.sum(Contribution.amount), 0),
            func.count(func.distinct(Contribution.contributor_id)),
        )
        .filter(Contribution.project_id == project.id, Contribution.status == ContributionStatus.CONFIRMED)
        .one()
    )

    goal = _dec(project.funding_goal)
    current = _dec(project.current_funding)
    chain_available = False
    if gateway is not None and project.blockchain_project_id is not None:
        try:
            state = gateway.read_project_state(project.blockchain_project_id)
            goal, current, chain_available = state.goal, state.total_funding, True
        except ExternalDependencyError as e:
            logger.info("Project stats for %s use cached figures: %s", project.id, e)

    return {
        "project_id": project.id,
        "total_contributions": count,
        "total_amount": _dec(total_amount),
        "unique_contributors": contributors,
        "funding_goal": goal,
        "current_funding": current,
        "progress_percent": round(float(current / goal * 100), 2) if goal else 0.0,
        "chain_available": chain_available,
    }


def platform_stats(db: Session) -> Dict[str, Any]:
    count, total_amount, total_local, contributors, funded_projects = (
        db.query(
            func.count(Contribution.id),
            func.coalesce(func.sum(Contribution.amount), 0),
            func.coalesce(func.sum(Contribution.amount_local), 0),
            func.count(func.distinct(Contribution.contributor_id)),
            func.count(func.distinct(Contribution.project_id)),
        )
        .filter(Contribution.status == ContributionStatus.CONFIRMED)
        .one()
    )
    by_status = dict(db.query(Project.status, func.count(Project.id)).group_by(Project.status).all())
    total_funding = (
        db.query(func.coalesce(func.sum(Project.current_funding), 0))
        .filter(Project.status.in_([ProjectStatus.ACTIVE, ProjectStatus.CLOSED]))
        .scalar()
    )
    withdrawals, withdrawn = (
        db.query(func.count(Withdrawal.id), func.coalesce(func.sum(Withdrawal.net_amount_local), 0))
        .filter(Withdrawal.status == WithdrawalStatus.COMPLETED)
        .one()
    )
    return {
        "total_contributions": count,
        "total_amount": _dec(total_amount),
        "total_amount_local": _dec(total_local).quantize(Decimal("0.01")),
        "unique_contributors": contributors,
        "projects_with_contributions": funded_projects,
        "total_withdrawals": withdrawals,
        "total_withdrawn_local": _dec(withdrawn).quantize(Decimal("0.01")),
        "projects": {
            "total": sum(by_status.values()),
            "active": by_status.get(ProjectStatus.ACTIVE, 0),
            "funded": by_status.get(ProjectStatus.FUNDED, 0),
            "closed": by_status.get(ProjectStatus.CLOSED, 0),
            # cached figures of live and closed projects
            "total_funding": _dec(total_funding),
        },
    }
