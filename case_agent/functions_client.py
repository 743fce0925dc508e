"""Client for the platform's other serverless functions (POA PDF generation, OCR)."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from .config import get_settings

logger = logging.getLogger("case-agent")

GENERATE_POA = "generate-poa"
OCR_DOCUMENT = "ocr-document"


class FunctionInvokeError(RuntimeError):
    """Raised when a function call cannot be made or returns a non-success status."""


class FunctionsClient:
    def __init__(self, base_url: Optional[str], api_key: Optional[str] = None, timeout: float = 60.0) -> None:
        self.base_url = base_url.rstrip("/") if base_url else None
        self.api_key = api_key
        self.timeout = timeout

    async def invoke(self, name: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """POST `body` to the named function; return its JSON reply (empty dict when it has none)."""
        if not self.base_url:
            raise FunctionInvokeError(f"Function '{name}' is not configured (FUNCTIONS_BASE_URL unset)")

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        url = f"{self.base_url}/{name}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(url, headers=headers, json=body)
        except httpx.HTTPError as exc:
            raise FunctionInvokeError(f"{name} unreachable: {exc}") from exc

        if resp.status_code >= 400:
            logger.warning("function %s failed status=%s", name, resp.status_code)
            raise FunctionInvokeError(f"{name} returned {resp.status_code}: {resp.text[:200]}")

        if not resp.content:
            return {}
        try:
            data = resp.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {"data": data}


def build_functions_client() -> FunctionsClient:
    settings = get_settings()
    return FunctionsClient(
        base_url=settings.functions_base_url,
        api_key=settings.functions_api_key,
        timeout=settings.ai_timeout_seconds,
    )
