"""Base HTTP Client for the Web Page Analyzer API"""

from typing import Any

import httpx


class WebAnalyzerError(Exception):
    """Raised when the API cannot be reached or rejects a request"""

    def __init__(self, message: str, status_code: int | None = None, details: str | None = None):
        self.status_code = status_code
        self.details = details
        super().__init__(message)


class APIClient:
    """HTTP client for the Web Page Analyzer API"""

    def __init__(
        self,
        base_url: str = "http://localhost:3000",
        timeout: float = 30,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.Client(base_url=self.base_url, timeout=timeout, transport=transport)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.client.close()

    def _handle_response(self, response: httpx.Response) -> dict[str, Any]:
        """Handle API response and extract data"""
        try:
            data = response.json()
        except ValueError:
            raise WebAnalyzerError(
                f"Invalid JSON response: {response.status_code}", response.status_code
            ) from None

        if response.status_code >= 400:
            message = data.get("error") or "Unknown error"
            details = data.get("details")
            raise WebAnalyzerError(
                f"API Error {response.status_code}: {message}",
                response.status_code,
                details,
            )

        return data

    def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        try:
            response = self.client.request(method, path, **kwargs)
        except httpx.RequestError as e:
            raise WebAnalyzerError(f"Connection failed: {e}") from None
        return self._handle_response(response)

    def get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Make GET request"""
        return self._request("GET", path, params=params)

    def post(self, path: str, json: dict[str, Any] | None = None) -> dict[str, Any]:
        """Make POST request"""
        return self._request("POST", path, json=json)
