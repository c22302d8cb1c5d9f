"""API Endpoint Wrappers - Type-safe API calls"""

from typing import Any

from ..utils.config_manager import config
from .base import APIClient, TaskLedgerError

__all__ = ["TaskLedgerClient", "TaskLedgerError"]


class TaskLedgerClient:
    """High-level client with typed endpoint methods"""

    def __init__(
        self,
        base_url: str | None = None,
        headers: dict[str, str] | None = None,
    ):
        # Use config values if not provided
        api_config = config.load_config().get("api", {})
        final_base_url = base_url or api_config.get("base_url", "http://localhost:8000")
        final_headers = headers or api_config.get("headers", {})

        self.api = APIClient(
            base_url=final_base_url,
            timeout=int(api_config.get("timeout", 30)),
            headers=final_headers,
        )

    def __enter__(self):
        self.api.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.api.__exit__(exc_type, exc_val, exc_tb)

    # Health Check
    def health_check(self) -> dict[str, Any]:
        """Check API health status"""
        return self.api.get("/healthz")

    # Job Endpoints
    def enqueue_job(
        self,
        type: str,
        payload: dict[str, Any] | None = None,
        priority: str = "normal",
        max_retries: int | None = None,
        timeout_seconds: int | None = None,
        scheduled_for: str | None = None,
    ) -> dict[str, Any]:
        """Enqueue a new job"""
        body: dict[str, Any] = {
            "type": type,
            "payload": payload or {},
            "priority": priority,
        }
        if max_retries is not None:
            body["max_retries"] = max_retries
        if timeout_seconds is not None:
            body["timeout_seconds"] = timeout_seconds
        if scheduled_for:
            body["scheduled_for"] = scheduled_for
        return self.api.post("/jobs", body)

    def get_job(self, job_id: str) -> dict[str, Any]:
        """Get specific job by ID"""
        return self.api.get(f"/jobs/{job_id}")

    def list_jobs(
        self,
        status: list[str] | None = None,
        type: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> dict[str, Any]:
        """List jobs with filters"""
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if status:
            params["status"] = status
        if type:
            params["type"] = type
        return self.api.get("/jobs", params)

    def cancel_job(self, job_id: str) -> dict[str, Any]:
        """Cancel a pending job"""
        return self.api.post(f"/jobs/{job_id}/cancel")

    def get_job_stats(self, type: str | None = None) -> dict[str, Any]:
        """Get job counts per status"""
        params = {"type": type} if type else None
        return self.api.get("/jobs/stats/overview", params)

    # Ledger Endpoints
    def get_ledger_record(self, event_id: str) -> dict[str, Any]:
        """Get the ledger record for an event"""
        return self.api.get(f"/ledger/{event_id}")

    # Maintenance Endpoints
    def run_sweep(
        self,
        jobs_older_than: str | None = None,
        ledger_older_than: str | None = None,
    ) -> dict[str, Any]:
        """Run a maintenance sweep"""
        body = {
            "jobs_older_than": jobs_older_than,
            "ledger_older_than": ledger_older_than,
        }
        return self.api.post("/maintenance/sweep", body)

    def reclaim_timed_out(self, limit: int = 100) -> dict[str, Any]:
        """Run a watchdog pass"""
        return self.api.post("/maintenance/reclaim", params={"limit": limit})
