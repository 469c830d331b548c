"""API Endpoint Wrappers - one method per admin endpoint"""

from typing import Any

from ..utils.config_manager import config
from .base import APIClient, RackyAPIError

__all__ = ["RackyClient", "RackyAPIError"]


class RackyClient:
    """High-level client with typed endpoint methods"""

    def __init__(
        self,
        base_url: str | None = None,
        headers: dict[str, str] | None = None
    ):
        api_config = config.load_config().get("api", {})
        final_base_url = base_url or api_config.get("base_url", "http://localhost:8000")

        self.api = APIClient(
            base_url=final_base_url,
            timeout=int(api_config.get("timeout", 30)),
            headers=headers or api_config.get("headers", {}),
        )

    def __enter__(self):
        self.api.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.api.__exit__(exc_type, exc_val, exc_tb)

    # Health
    def health_check(self) -> dict[str, Any]:
        return self.api.get("/healthz")

    def list_processors(self) -> dict[str, Any]:
        return self.api.get("/processors")

    # Jobs
    def get_job(self, job_id: str) -> dict[str, Any]:
        return self.api.get(f"/jobs/{job_id}")

    def get_job_history(self, job_id: str) -> dict[str, Any]:
        return self.api.get(f"/jobs/{job_id}/history")

    def submit_job(
        self,
        queue_alias: str,
        job_type: str,
        payload: dict[str, Any],
        priority: str = "NORMAL",
        delay: int | None = None,
        max_attempts: int | None = None,
    ) -> dict[str, Any]:
        options: dict[str, Any] = {"priority": priority}
        if delay is not None:
            options["delay"] = delay
        if max_attempts is not None:
            options["max_attempts"] = max_attempts
        return self.api.post(
            f"/queues/{queue_alias}/jobs",
            {"job_type": job_type, "payload": payload, "options": options},
        )

    # Queues
    def get_queue_stats(self, queue_alias: str) -> dict[str, Any]:
        return self.api.get(f"/queues/{queue_alias}/stats")

    def get_queue_health(self, queue_alias: str, record: bool = False) -> dict[str, Any]:
        return self.api.get(f"/queues/{queue_alias}/health", {"record": record})

    def get_queue_errors(self, queue_alias: str, limit: int = 10) -> dict[str, Any]:
        return self.api.get(f"/queues/{queue_alias}/errors", {"limit": limit})

    def pause_queue(self, queue_alias: str) -> dict[str, Any]:
        return self.api.post(f"/queues/{queue_alias}/pause")

    def resume_queue(self, queue_alias: str) -> dict[str, Any]:
        return self.api.post(f"/queues/{queue_alias}/resume")
