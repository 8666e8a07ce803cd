"""
Department routing.

Maps a project's category to the government department that reviews it and
exposes reviewer/workload reads for that department. Routing is informational
only: any active reviewer in the department may act on any of its projects,
workload counters never lock or assign anything.
"""
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from agrifund.models import Project, Role, User

logger = logging.getLogger(__name__)


class ProjectCategory(str, Enum):
    POULTRY_FARMING = "POULTRY_FARMING"
    CROP_PRODUCTION = "CROP_PRODUCTION"
    LIVESTOCK_FARMING = "LIVESTOCK_FARMING"
    FISH_FARMING = "FISH_FARMING"
    VEGETABLE_FARMING = "VEGETABLE_FARMING"
    FRUIT_FARMING = "FRUIT_FARMING"
    AGRO_PROCESSING = "AGRO_PROCESSING"
    SUSTAINABLE_AGRICULTURE = "SUSTAINABLE_AGRICULTURE"
    ORGANIC_FARMING = "ORGANIC_FARMING"
    GENERAL_AGRICULTURE = "GENERAL_AGRICULTURE"


class Department(str, Enum):
    POULTRY = "POULTRY"
    CROPS = "CROPS"
    LIVESTOCK = "LIVESTOCK"
    FISHERIES = "FISHERIES"
    HORTICULTURE = "HORTICULTURE"
    AGRIBUSINESS = "AGRIBUSINESS"
    SUSTAINABILITY = "SUSTAINABILITY"
    GENERAL = "GENERAL"


CATEGORY_DEPARTMENTS: Dict[ProjectCategory, Department] = {
    ProjectCategory.POULTRY_FARMING: Department.POULTRY,
    ProjectCategory.CROP_PRODUCTION: Department.CROPS,
    ProjectCategory.LIVESTOCK_FARMING: Department.LIVESTOCK,
    ProjectCategory.FISH_FARMING: Department.FISHERIES,
    ProjectCategory.VEGETABLE_FARMING: Department.HORTICULTURE,
    ProjectCategory.FRUIT_FARMING: Department.HORTICULTURE,
    ProjectCategory.AGRO_PROCESSING: Department.AGRIBUSINESS,
    ProjectCategory.SUSTAINABLE_AGRICULTURE: Department.SUSTAINABILITY,
    ProjectCategory.ORGANIC_FARMING: Department.SUSTAINABILITY,
    ProjectCategory.GENERAL_AGRICULTURE: Department.GENERAL,
}


def categorize(category: Union[ProjectCategory, str, None]) -> Department:
    """Total mapping: unknown or missing categories route to GENERAL."""
    try:
        key = ProjectCategory(category)
    except ValueError:
        return Department.GENERAL
    return CATEGORY_DEPARTMENTS.get(key, Department.GENERAL)


def auto_categorize(db: Session, project_id: str, category) -> Dict[str, Any]:
    """
    Persist the department for a freshly submitted project.

    Never raises: a failure here must not block submission, so the caller gets
    {"success": False, "department": GENERAL, "error": ...} instead.
    """
    department = categorize(category)
    try:
        result = db.execute(
            update(Project).where(Project.id == project_id).values(department=department.value)
        )
        if result.rowcount == 0:
            raise LookupError(f"project {project_id} does not exist")
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error("Auto-categorization failed for %s: %s", project_id, e)
        return {
            "success": False,
            "department": Department.GENERAL.value,
            "error": str(e),
            "message": "Auto-categorization failed - using GENERAL department",
        }

    logger.info("Project %s categorized to %s", project_id, department.value)
    return {
        "success": True,
        "department": department.value,
        "error": None,
        "message": "Project categorized by department successfully",
    }


# ---------------------------
# Reviewer reads
# ---------------------------
def _reviewers_query(db: Session, department: str):
    return db.query(User).filter(
        User.department == department,
        User.role == Role.GOVERNMENT_OFFICIAL,
        User.is_active.is_(True),
    )


def list_reviewers(db: Session, department: Union[Department, str]) -> List[User]:
    return _reviewers_query(db, Department(department).value).order_by(User.last_name).all()


def find_available_reviewers(db: Session, department: Union[Department, str]) -> List[User]:
    """Reviewers with spare capacity, least busy first."""
    return (
        _reviewers_query(db, Department(department).value)
        .filter(User.current_workload < User.max_workload)
        .order_by(User.current_workload.asc())
        .all()
    )


def department_recommendation(db: Session, category) -> Dict[str, Any]:
    department = categorize(category)
    reviewers = list_reviewers(db, department)
    return {
        "recommended_department": department.value,
        "project_category": getattr(category, "value", category),
        "message": f"This project belongs to {department.value} department",
        "reviewers": [
            {
                "id": r.id,
                "name": f"{r.first_name} {r.last_name}".strip(),
                "current_workload": r.current_workload,
                "max_workload": r.max_workload,
            }
            for r in reviewers
        ],
    }


def increment_workload(db: Session, user_id: Optional[str]) -> None:
    if not user_id:
        return
    db.execute(
        update(User).where(User.id == user_id).values(current_workload=User.current_workload + 1)
    )


def decrement_workload(db: Session, user_id: Optional[str]) -> None:
    if not user_id:
        return
    db.execute(
        update(User)
        .where(User.id == user_id, User.current_workload > 0)
        .values(current_workload=User.current_workload - 1)
    )


def workload_stats(db: Session) -> Dict[str, Any]:
    rows = (
        db.query(
            User.department,
            func.count(User.id),
            func.coalesce(func.sum(User.max_workload), 0),
            func.coalesce(func.sum(User.current_workload), 0),
        )
        .filter(User.role == Role.GOVERNMENT_OFFICIAL, User.is_active.is_(True))
        .group_by(User.department)
        .all()
    )

    departments = []
    for department, reviewers, capacity, load in rows:
        capacity = int(capacity)
        load = int(load)
        departments.append({
            "department": department,
            "total_reviewers": reviewers,
            "total_capacity": capacity,
            "current_workload": load,
            "utilization_rate": round(load / max(capacity, 1) * 100, 1),
            "avg_workload": round(load / reviewers, 1) if reviewers else 0.0,
        })

    overall = 0
    if departments:
        overall = round(sum(d["utilization_rate"] for d in departments) / len(departments))
    return {"departments": departments, "overall_utilization": overall}
