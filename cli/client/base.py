"""Base HTTP Client for the ERP Job Gateway API"""

from typing import Any

import httpx
from rich.console import Console
from rich.panel import Panel

console = Console()


class GatewayAPIError(Exception):
    """Base exception for gateway API errors"""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class GatewayClient:
    """HTTP client for the gateway's /v1 API"""

    def __init__(
        self,
        base_url: str = "http://localhost:8080",
        api_key: str | None = None,
        timeout: float = 30,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        headers = {"X-API-Key": api_key} if api_key else {}
        self.client = httpx.Client(
            base_url=self.base_url, timeout=timeout, headers=headers, transport=transport
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.client.close()

    def _handle_response(self, response: httpx.Response) -> dict[str, Any]:
        """Handle API response and unwrap the envelope"""
        try:
            data = response.json()
        except ValueError:
            raise GatewayAPIError(
                f"Invalid JSON response: {response.status_code}", response.status_code
            ) from None

        if response.status_code >= 400 or not data.get("ok", False):
            error = data.get("error") or {}
            error_msg = error.get("message", "Unknown error")
            console.print(
                Panel(
                    f"[red]{error_msg}[/red]\n[dim]{error.get('category', '')}[/dim]",
                    title=f"API Error {response.status_code}",
                )
            )
            raise GatewayAPIError(
                f"API Error {response.status_code}: {error_msg}", response.status_code
            )

        return data.get("data", {})

    def get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Make GET request"""
        try:
            response = self.client.get(f"/v1{path}", params=params)
        except httpx.RequestError as e:
            raise GatewayAPIError(f"Connection failed: {e}") from None
        return self._handle_response(response)

    def health_check(self) -> dict[str, Any]:
        return self.get("/healthz")

    def get_job(self, job_id: str) -> dict[str, Any]:
        return self.get(f"/jobs/{job_id}")
