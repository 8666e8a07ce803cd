"""Tests for the statistics rollups."""
from decimal import Decimal

import pytest

from agrifund import projects, stats
from agrifund.errors import NotFoundError
from agrifund.models import ProjectStatus
from agrifund.schemas import ContributionIntent
from agrifund import contributions

from conftest import actor_for, new_address, project_payload
from test_contributions import contribute


class TestEmpty:
    def test_contributor_stats_zeroed(self, db, investor):
        assert stats.contributor_stats(db, investor.id) == {
            "total_contributions": 0,
            "confirmed_contributions": 0,
            "pending_contributions": 0,
            "failed_contributions": 0,
            "projects_supported": 0,
            "total_amount": Decimal("0"),
            "average_contribution": Decimal("0"),
        }

    def test_platform_stats_zeroed(self, db):
        result = stats.platform_stats(db)
        assert result["total_contributions"] == 0
        assert result["total_amount"] == 0
        assert result["unique_contributors"] == 0
        assert result["total_withdrawals"] == 0
        assert result["total_withdrawn_local"] == Decimal("0")
        assert result["projects"] == {"total": 0, "active": 0, "funded": 0, "closed": 0, "total_funding": 0}

    def test_project_without_contributions(self, db, submitted_project):
        result = stats.project_stats(db, submitted_project.id)
        assert result["total_contributions"] == 0
        assert result["total_amount"] == 0
        assert result["funding_goal"] == Decimal("100")
        assert result["progress_percent"] == 0.0
        assert result["chain_available"] is False

    def test_unknown_project(self, db):
        with pytest.raises(NotFoundError):
            stats.project_stats(db, "missing")


class TestRollups:
    def test_contributor_stats(self, db, gateway, active_project, investor):
        contribute(db, gateway, active_project, investor.id, amount="10", tx_ref="T1")
        contribute(db, gateway, active_project, investor.id, amount="5", tx_ref="T2")
        contributions.create_contribution_intent(db, investor.id, ContributionIntent(
            project_id=active_project.id, amount=Decimal("1"), contributor_wallet=new_address(),
        ))

        result = stats.contributor_stats(db, investor.id)
        assert result["total_contributions"] == 3
        assert result["confirmed_contributions"] == 2
        assert result["pending_contributions"] == 1
        assert result["projects_supported"] == 1
        assert result["total_amount"] == Decimal("15")
        assert result["average_contribution"] == Decimal("7.5")

    def test_project_stats_prefers_ledger_figures(self, db, gateway, active_project, investor, make_user):
        contribute(db, gateway, active_project, investor.id, amount="10", tx_ref="T1")
        contribute(db, gateway, active_project, make_user().id, amount="20", tx_ref="T2")
        gateway.set_state(active_project.blockchain_project_id, total_funding=Decimal("40"))

        result = stats.project_stats(db, active_project.id, gateway=gateway)
        assert result["total_contributions"] == 2
        assert result["total_amount"] == Decimal("30")
        assert result["unique_contributors"] == 2
        assert result["current_funding"] == Decimal("40")
        assert result["progress_percent"] == 40.0
        assert result["chain_available"] is True

    def test_project_stats_fall_back_to_cache(self, db, gateway, active_project, investor):
        contribute(db, gateway, active_project, investor.id, amount="10", tx_ref="T1")
        gateway.read_error = "timed out after 10s"
        result = stats.project_stats(db, active_project.id, gateway=gateway)
        assert result["chain_available"] is False
        assert result["current_funding"] == Decimal("10")

    def test_platform_stats(self, db, gateway, active_project, investor, submitted_project):
        contribute(db, gateway, active_project, investor.id, amount="10", tx_ref="T1")
        result = stats.platform_stats(db)
        assert result["total_contributions"] == 1
        assert result["total_amount"] == Decimal("10")
        assert result["unique_contributors"] == 1
        assert result["projects_with_contributions"] == 1
        assert result["projects"]["total"] == 1
        assert result["projects"]["active"] == 1
        assert result["total_amount_local"] == Decimal("2500.00")

    def test_total_funding_counts_active_and_closed_projects(self, db, gateway, farmer, reviewer, investor):
        live = projects.verify_project(
            db, gateway, projects.create_project(db, project_payload(title="Live"), farmer.id).id, actor_for(reviewer)
        )
        closed = projects.verify_project(
            db, gateway, projects.create_project(db, project_payload(title="Closed"), farmer.id).id, actor_for(reviewer)
        )
        funded = projects.verify_project(
            db, gateway, projects.create_project(db, project_payload(title="Funded"), farmer.id).id, actor_for(reviewer)
        )
        contribute(db, gateway, live, investor.id, amount="10", tx_ref="T1")
        contribute(db, gateway, closed, investor.id, amount="7.5", tx_ref="T2")
        contribute(db, gateway, funded, investor.id, amount="100", tx_ref="T3")
        projects.complete_project(db, gateway, closed.id, actor_for(reviewer))
        funded.status = ProjectStatus.FUNDED
        db.commit()

        result = stats.platform_stats(db)
        assert result["projects"]["total_funding"] == Decimal("17.5")
        assert result["projects"]["closed"] == 1
        assert result["projects"]["funded"] == 1
