"""
Redeploy escrow apps for active projects whose deployment failed during verification.

    python -m contracts.deploy              # every failed deployment
    python -m contracts.deploy <project_id> # a single project

Signs with OPERATOR_MNEMONIC from .env.
"""
import argparse
import logging

from agrifund import config, projects
from agrifund.chain_gateway import ChainGateway
from agrifund.database import SessionLocal, init_db
from agrifund.errors import AgrifundError
from agrifund.models import DeploymentStatus, Project, ProjectStatus, Role
from agrifund.schemas import Actor

logger = logging.getLogger("contracts.deploy")

OPERATOR = Actor(id="operator", role=Role.ADMIN)


def failed_deployments(db):
    return (
        db.query(Project.id)
        .filter(Project.status == ProjectStatus.ACTIVE, Project.blockchain_status == DeploymentStatus.FAILED)
        .order_by(Project.verified_at.asc())
        .all()
    )


def redeploy(db, gateway, project_ids):
    ok = 0
    for project_id in project_ids:
        try:
            project = projects.retry_deployment(db, gateway, project_id, OPERATOR)
        except AgrifundError as e:
            logger.error("Project %s: %s", project_id, e)
            continue
        print("Deployed project", project.id, "app:", project.blockchain_project_id, "tx:", project.blockchain_tx_ref)
        ok += 1
    return ok


def main(argv=None):
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("project_ids", nargs="*", help="projects to redeploy (default: all failed)")
    args = parser.parse_args(argv)

    config.configure_logging()
    init_db()
    gateway = ChainGateway()
    db = SessionLocal()
    try:
        ids = args.project_ids or [row.id for row in failed_deployments(db)]
        if not ids:
            print("No failed deployments.")
            return 0
        ok = redeploy(db, gateway, ids)
        print(f"Done. {ok}/{len(ids)} redeployed.")
        return 0 if ok == len(ids) else 1
    finally:
        db.close()
        gateway.close()


if __name__ == "__main__":
    raise SystemExit(main())
