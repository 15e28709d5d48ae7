"""MCP tool tests against an in-memory database."""
from __future__ import annotations

import json

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import organism.db as db_mod
from organism import mcp_server
from organism.models import Base, CloudApproval
from organism.opportunity import create_opportunity


@pytest.fixture()
def factory(monkeypatch):
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    monkeypatch.setattr(db_mod, "_SessionLocal", TestSession)
    return TestSession


@pytest.fixture()
def opp_id(factory):
    with factory() as session:
        opp, _ = create_opportunity(session, title="Dentist no-show texter", source="reddit", viability_score=62)
        session.commit()
        return opp.id


class TestTools:
    def test_overview_lists_lifecycle(self):
        overview = json.loads(mcp_server.organism_overview())
        assert overview["lifecycle"]["new"] == ["reviewing"]

    def test_stats(self, opp_id):
        stats = mcp_server.get_stats()
        assert stats["total"] == 1
        assert stats["by_status"] == {"new": 1}

    def test_list_and_get(self, opp_id):
        [item] = mcp_server.list_opportunities(status="new")
        assert item["id"] == opp_id
        detail = mcp_server.get_opportunity(opp_id)
        assert detail["history"][0]["new_status"] == "new"
        assert "error" in mcp_server.get_opportunity(999)

    def test_rate(self, opp_id):
        assert mcp_server.rate_opportunity(opp_id, "bad")["rating"] == "bad"
        assert "error" in mcp_server.rate_opportunity(opp_id, "awful")
        assert "error" in mcp_server.rate_opportunity(999, "good")

    def test_payment_needs_live_validation(self, opp_id):
        assert "error" in mcp_server.record_payment_tool(opp_id)

    def test_approvals(self, factory):
        with factory() as session:
            session.add(CloudApproval(reason="over budget"))
            session.commit()
        [pending] = mcp_server.list_approvals()
        assert mcp_server.reject_cloud_request(pending["id"]) == {"ok": True}
        assert "error" in mcp_server.approve_cloud_request(pending["id"])

    def test_jobs_and_cycles_empty(self, factory):
        assert mcp_server.list_jobs_tool() == []
        assert "error" in mcp_server.requeue_job_tool(1)
        assert mcp_server.list_cycles() == []
        assert mcp_server.list_proposals() == []
        assert "error" in mcp_server.resolve_proposal_tool(1, True)
