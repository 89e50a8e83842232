"""Integration fixtures: an in-process fake market served through ASGITransport."""

from __future__ import annotations

import itertools
from typing import TYPE_CHECKING, Any

import httpx
import pytest
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from market_autopilot.autopilot import Autopilot
from market_autopilot.client import MarketClient
from market_autopilot.models import ArtifactPayload

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

    from market_autopilot.config import AutopilotConfig
    from market_autopilot.models import MarketAssignment, MarketJob, TrackedBid
    from market_autopilot.state.file_store import FileStateStore
    from market_autopilot.telemetry.bus import TelemetryBus

AGENT_ID = "agent-self"


class FakeMarket:
    """Minimal stateful job market that records every write it receives."""

    def __init__(self) -> None:
        self.jobs: dict[str, dict[str, Any]] = {}
        self.bids: dict[str, dict[str, Any]] = {}
        self.placed_bids: list[dict[str, Any]] = []
        self.submissions: list[dict[str, Any]] = []
        self.entries: list[dict[str, Any]] = []
        self.withdrawals: list[str] = []
        self.fail_all = False
        self._ids = itertools.count(1)
        self.app = self._create_app()

    def add_job(self, job_id: str, **fields: Any) -> None:
        self.jobs[job_id] = {"job_id": job_id, "title": job_id, **fields}

    def add_bid(self, bid_id: str, job_id: str, **fields: Any) -> None:
        self.bids[bid_id] = {"bid_id": bid_id, "job_id": job_id, **fields}

    def _create_app(self) -> FastAPI:
        app = FastAPI()

        @app.middleware("http")
        async def maybe_fail(request: Request, call_next: Callable[[Request], Awaitable[Any]]) -> Any:
            if self.fail_all:
                return JSONResponse(status_code=500, content={"error": "market unavailable"})
            return await call_next(request)

        @app.get("/v1/jobs")
        async def list_jobs(request: Request) -> list[dict[str, Any]]:
            params = request.query_params
            rows = list(self.jobs.values())
            if "status" in params:
                rows = [row for row in rows if row.get("status") == params["status"]]
            if "worker_agent_id" in params:
                rows = [row for row in rows if row.get("worker_agent_id") == params["worker_agent_id"]]
            return rows

        @app.get("/v1/jobs/{job_id}")
        async def get_job(job_id: str) -> Any:
            if job_id not in self.jobs:
                return JSONResponse(status_code=404, content={"error": "job not found"})
            return self.jobs[job_id]

        @app.get("/v1/jobs/{job_id}/bids")
        async def list_job_bids(job_id: str) -> list[dict[str, Any]]:
            return [bid for bid in self.bids.values() if bid["job_id"] == job_id]

        @app.post("/v1/jobs/{job_id}/bids", status_code=201)
        async def place_bid(job_id: str, request: Request) -> dict[str, Any]:
            body = await request.json()
            bid_id = f"bid-new-{next(self._ids)}"
            self.placed_bids.append({"job_id": job_id, **body})
            self.add_bid(bid_id, job_id, status="pending", amount=body["amount"], bidder_agent_id=AGENT_ID)
            return self.bids[bid_id]

        @app.get("/v1/agents/me/bids")
        async def list_my_bids() -> list[dict[str, Any]]:
            return [bid for bid in self.bids.values() if bid.get("bidder_agent_id") == AGENT_ID]

        @app.post("/v1/jobs/{job_id}/submit")
        async def submit_work(job_id: str, request: Request) -> dict[str, Any]:
            self.submissions.append({"job_id": job_id, **await request.json()})
            return {"ok": True}

        @app.post("/v1/jobs/{job_id}/entries")
        async def submit_entry(job_id: str, request: Request) -> dict[str, Any]:
            self.entries.append({"job_id": job_id, **await request.json()})
            return {"ok": True}

        @app.post("/v1/bids/{bid_id}/withdraw")
        async def withdraw_bid(bid_id: str) -> Any:
            if bid_id not in self.bids:
                return JSONResponse(status_code=404, content={"error": "bid not found"})
            self.withdrawals.append(bid_id)
            self.bids[bid_id]["status"] = "withdrawn"
            return self.bids[bid_id]

        return app


async def static_artifact(job: MarketJob, bid: TrackedBid, assignment: MarketAssignment) -> ArtifactPayload:
    return ArtifactPayload(
        deliverable_url=f"https://files.test/{job.job_id}/{assignment.assignment_id}.zip",
        artifact_hash=f"sha-{job.job_id}",
    )


@pytest.fixture()
def market() -> FakeMarket:
    return FakeMarket()


@pytest.fixture()
async def autopilot(
    market: FakeMarket,
    make_config: Callable[..., AutopilotConfig],
    file_store: FileStateStore,
    bus: TelemetryBus,
) -> AsyncIterator[Autopilot]:
    config = make_config()
    client = MarketClient(config.market, transport=httpx.ASGITransport(app=market.app))
    pilot = Autopilot(
        config,
        artifact_provider=static_artifact,
        client=client,
        state=file_store,
        telemetry=bus,
    )
    yield pilot
    await client.close()
