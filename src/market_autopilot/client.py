"""Async HTTP client for the agent job market REST API."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx

from market_autopilot.exceptions import MarketApiError
from market_autopilot.models import (
    TRACKED_BID_STATUSES,
    MarketAssignment,
    MarketBid,
    MarketJob,
    TrackedBid,
    as_number,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from market_autopilot.config import MarketClientConfig

logger = logging.getLogger(__name__)

_BEARER_RE = re.compile(r"^bearer\s+", re.IGNORECASE)
_KNOWN_BID_STATUSES = frozenset(TRACKED_BID_STATUSES)


def normalize_bid_status(value: str | None) -> str:
    status = (value or "").lower()
    return status if status in _KNOWN_BID_STATUSES else "unknown"


def to_tracked_bid(row: MarketBid) -> TrackedBid:
    return TrackedBid(
        bid_id=row.bid_id,
        job_id=row.job_id or "",
        status=normalize_bid_status(row.status),  # type: ignore[arg-type]
        amount_near=as_number(row.amount),
    )


def _segment(value: str) -> str:
    return quote(value, safe="")


def _query(params: dict[str, Any]) -> dict[str, str]:
    query: dict[str, str] = {}
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        query[key] = str(value)
    return query


class MarketClient:
    """Async client for the job market.

    Retries 5xx responses and transport errors with linear backoff; every
    other non-2xx response raises MarketApiError immediately.
    """

    def __init__(
        self,
        config: MarketClientConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._attempts = config.retry.attempts
        self._backoff_seconds = config.retry.backoff_seconds
        api_key = config.api_key
        auth_value = api_key if _BEARER_RE.match(api_key) else f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            timeout=config.timeout_seconds,
            transport=transport,
            headers={
                "accept": "application/json",
                "content-type": "application/json",
                config.auth_header.strip(): auth_value,
            },
        )

    async def list_jobs(
        self,
        limit: int | None = None,
        offset: int | None = None,
        status: str | None = None,
        sort: str | None = None,
        order: str | None = None,
        worker_agent_id: str | None = None,
        job_type: str | None = None,
    ) -> list[MarketJob]:
        """List jobs matching the given filters."""
        rows = await self._request(
            "GET",
            "/v1/jobs",
            params={
                "limit": limit,
                "offset": offset,
                "status": status,
                "sort": sort,
                "order": order,
                "worker_agent_id": worker_agent_id,
                "job_type": job_type,
            },
        )
        return [MarketJob.model_validate(row) for row in rows or []]

    async def get_job(self, job_id: str) -> MarketJob:
        payload = await self._request("GET", f"/v1/jobs/{_segment(job_id)}")
        return MarketJob.model_validate(payload)

    async def list_job_bids(
        self,
        job_id: str,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[MarketBid]:
        rows = await self._request(
            "GET",
            f"/v1/jobs/{_segment(job_id)}/bids",
            params={"limit": limit, "offset": offset},
        )
        return [MarketBid.model_validate(row) for row in rows or []]

    async def list_my_bids(
        self,
        limit: int | None = None,
        offset: int | None = None,
        statuses: Sequence[str] | None = None,
    ) -> list[TrackedBid]:
        """List this agent's bids with normalised statuses.

        Rows that carry no job id are dropped.
        """
        rows = await self._request(
            "GET",
            "/v1/agents/me/bids",
            params={
                "limit": limit,
                "offset": offset,
                "status": ",".join(statuses) if statuses else None,
            },
        )
        tracked = [to_tracked_bid(MarketBid.model_validate(row)) for row in rows or []]
        return [bid for bid in tracked if bid.job_id]

    async def place_bid(
        self,
        job_id: str,
        amount: str,
        eta_seconds: int,
        proposal: str,
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"/v1/jobs/{_segment(job_id)}/bids",
            json={"amount": amount, "eta_seconds": eta_seconds, "proposal": proposal},
        )

    async def submit_entry(self, job_id: str, deliverable: str, deliverable_hash: str) -> dict[str, Any]:
        """Submit a competition entry."""
        return await self._request(
            "POST",
            f"/v1/jobs/{_segment(job_id)}/entries",
            json={"deliverable": deliverable, "deliverable_hash": deliverable_hash},
        )

    async def submit_work(self, job_id: str, deliverable: str, deliverable_hash: str) -> dict[str, Any]:
        """Submit work for an awarded standard job."""
        return await self._request(
            "POST",
            f"/v1/jobs/{_segment(job_id)}/submit",
            json={"deliverable": deliverable, "deliverable_hash": deliverable_hash},
        )

    async def request_changes(self, job_id: str, feedback: str) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"/v1/jobs/{_segment(job_id)}/request-changes",
            json={"feedback": feedback},
        )

    async def withdraw_bid(self, bid_id: str) -> dict[str, Any]:
        return await self._request("POST", f"/v1/bids/{_segment(bid_id)}/withdraw", json={})

    async def list_assignments_for_job(self, job_id: str) -> list[MarketAssignment]:
        job = await self.get_job(job_id)
        return list(job.my_assignments or [])

    async def list_completed_jobs_for_worker(self, worker_agent_id: str, limit: int = 100) -> list[MarketJob]:
        return await self.list_jobs(
            status="completed",
            worker_agent_id=worker_agent_id,
            sort="updated_at",
            order="desc",
            limit=limit,
        )

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        """Send a request with retries and decode the JSON body.

        Raises:
            MarketApiError: On a non-2xx status, once retries are exhausted for 5xx.
            httpx.TransportError: When the last attempt fails to connect or times out.
        """
        query = _query(params or {})
        attempt = 0
        while True:
            attempt += 1
            try:
                response = await self._client.request(method, path, params=query, json=json)
            except httpx.TransportError as exc:
                if attempt < self._attempts:
                    logger.warning("Market %s %s failed (%s), retrying", method, path, exc)
                    await asyncio.sleep(self._backoff_seconds * attempt)
                    continue
                raise

            payload = response.json() if response.text.strip() else None
            if response.is_success:
                return payload
            if response.status_code >= 500 and attempt < self._attempts:
                logger.warning(
                    "Market %s %s returned %s, retrying",
                    method,
                    path,
                    response.status_code,
                )
                await asyncio.sleep(self._backoff_seconds * attempt)
                continue
            raise MarketApiError(response.status_code, payload)

    async def close(self) -> None:
        """Close the underlying async client."""
        await self._client.aclose()
