"""API Endpoint Wrappers - Type-safe API calls"""

from typing import Any

from .base import APIClient
from ..utils.config_manager import config

MAINTENANCE_OPERATIONS = ("retry", "expire", "stuck", "purge", "cache", "run-all")


class StreamVibeClient:
    """High-level client with typed endpoint methods"""

    def __init__(
        self,
        base_url: str | None = None,
        headers: dict[str, str] | None = None,
    ):
        # Use config values if not provided
        api_config = config.load_config().get("api", {})
        final_base_url = base_url or api_config.get("base_url", "http://localhost:8000")
        final_headers = dict(headers or api_config.get("headers") or {})

        service_token = api_config.get("service_token")
        if service_token and "Authorization" not in final_headers:
            final_headers["Authorization"] = f"Bearer {service_token}"

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
    def submit_job(
        self,
        job_type: str,
        params: dict[str, Any] | None = None,
        priority: int | None = None,
        dedupe: bool = True,
        dedupe_window_s: int | None = None,
    ) -> dict[str, Any]:
        """Submit a job (reusing an identical active one when dedupe is on)"""
        data: dict[str, Any] = {
            "job_type": job_type,
            "params": params or {},
            "dedupe": dedupe,
        }
        if priority is not None:
            data["priority"] = priority
        if dedupe_window_s is not None:
            data["dedupe_window_s"] = dedupe_window_s
        return self.api.post("/jobs", data)

    def list_jobs(
        self,
        status: str | None = None,
        job_type: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> dict[str, Any]:
        """List jobs with filters"""
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if status:
            params["status"] = status
        if job_type:
            params["job_type"] = job_type
        return self.api.get("/jobs", params)

    def get_job(self, job_id: str) -> dict[str, Any]:
        """Get specific job by ID"""
        return self.api.get(f"/jobs/{job_id}")

    def get_job_logs(
        self, job_id: str, level: str | None = None, limit: int = 50, offset: int = 0
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if level:
            params["level"] = level
        return self.api.get(f"/jobs/{job_id}/logs", params)

    def cancel_job(self, job_id: str) -> dict[str, Any]:
        return self.api.post(f"/jobs/{job_id}/cancel")

    def get_job_stats(self, all_owners: bool = False) -> dict[str, Any]:
        return self.api.get("/jobs/stats/overview", {"all_owners": all_owners})

    def list_job_types(self) -> list[dict[str, Any]]:
        """Submittable job types with display names"""
        return self.api.get("/jobs/types").get("job_types", [])

    # Maintenance Endpoints
    def run_maintenance(self, operation: str) -> dict[str, Any]:
        """Trigger one maintenance sweep"""
        if operation not in MAINTENANCE_OPERATIONS:
            raise ValueError(f"Unknown maintenance operation: {operation}")
        return self.api.post(f"/admin/maintenance/{operation}")

    # Webhook Ledger Endpoints
    def retry_webhooks(self, max_retries: int | None = None) -> dict[str, Any]:
        params = {"max_retries": max_retries} if max_retries is not None else None
        return self.api.post("/admin/webhooks/retry", params=params)

    def purge_webhooks(self, days: int | None = None) -> dict[str, Any]:
        params = {"days": days} if days is not None else None
        return self.api.post("/admin/webhooks/purge", params=params)
