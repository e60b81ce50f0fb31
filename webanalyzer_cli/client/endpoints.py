"""API Endpoint Wrappers"""

import time
from typing import Any

import httpx

from ..utils.config_manager import config
from .base import APIClient

TERMINAL_STATUSES = ("COMPLETED", "FAILED")


class AnalyzerClient:
    """High-level client with one method per API endpoint"""

    def __init__(self, base_url: str | None = None, transport: httpx.BaseTransport | None = None):
        api_config = config.load_config().get("api", {})

        self.api = APIClient(
            base_url=base_url or api_config.get("base_url", "http://localhost:3000"),
            timeout=float(api_config.get("timeout", 30)),
            transport=transport,
        )

    def __enter__(self):
        self.api.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.api.__exit__(exc_type, exc_val, exc_tb)

    def health_check(self) -> dict[str, Any]:
        """Readiness of the API and its storage"""
        return self.api.get("/health/ready")

    def analyse(self, url: str) -> dict[str, Any]:
        """Submit a URL for analysis"""
        return self.api.post("/api/analyse", json={"url": url})

    def get_results(self, job_id: str) -> dict[str, Any]:
        """Current status and results of a job"""
        return self.api.get(f"/api/results/{job_id}")

    def wait_for_results(
        self,
        job_id: str,
        interval_s: float = 2,
        timeout_s: float = 120,
        sleep=time.sleep,
    ) -> dict[str, Any]:
        """Poll until the job finishes or ``timeout_s`` passes; returns the last response."""
        deadline = time.monotonic() + timeout_s
        while True:
            job = self.get_results(job_id)
            if job.get("status") in TERMINAL_STATUSES or time.monotonic() >= deadline:
                return job
            sleep(interval_s)
