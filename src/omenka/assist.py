"""Client for the text-generation assist service.

The service is a plain request/response HTTP endpoint. It never touches
project state; the sync engine inserts whatever text comes back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from omenka.config import AssistConfig

logger = logging.getLogger(__name__)

DISABLED_TEXT = "AI is disabled in this environment."


class AssistError(Exception):
    """Base class for assist failures."""


class AssistConfigError(AssistError, ValueError):
    """Missing request fields or service configuration. Raised before any network call."""


class AssistServiceError(AssistError):
    """The service rejected the request or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass
class AssistRequest:
    module_id: str
    system_instruction: str
    module_instruction: str
    payload: str

    def missing_fields(self) -> list[str]:
        return [
            name
            for name in ("module_id", "system_instruction", "module_instruction", "payload")
            if not getattr(self, name)
        ]

    def to_dict(self) -> dict:
        return {
            "moduleId": self.module_id,
            "systemInstruction": self.system_instruction,
            "moduleInstruction": self.module_instruction,
            "payload": self.payload,
        }


@dataclass
class AssistResult:
    text: str = ""
    disabled: bool = False


class AssistClient:
    """Feature-flagged client. With the flag off no network call is ever made."""

    def __init__(self, config: AssistConfig, http_client: httpx.AsyncClient | None = None) -> None:
        self.config = config
        self._client = http_client
        self.requests_sent = 0

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    async def generate(self, request: AssistRequest) -> AssistResult:
        if not self.config.enabled:
            return AssistResult(text=DISABLED_TEXT, disabled=True)

        missing = request.missing_fields()
        if missing:
            raise AssistConfigError(f"Missing fields: {', '.join(missing)}")
        if not self.config.endpoint:
            raise AssistConfigError("Assist endpoint is not configured (OMENKA_AI_ENDPOINT)")

        if self._client is not None:
            return await self._post(self._client, request)
        async with httpx.AsyncClient(timeout=self.config.timeout) as client:
            return await self._post(client, request)

    async def _post(self, client: httpx.AsyncClient, request: AssistRequest) -> AssistResult:
        self.requests_sent += 1
        try:
            response = await client.post(self.config.endpoint, json=request.to_dict())
        except httpx.HTTPError as e:
            logger.error("Assist request for %s failed: %s", request.module_id, e)
            raise AssistServiceError(f"Assist service unreachable: {e}") from e

        if not response.is_success:
            body = response.text
            logger.error("Assist service returned HTTP %d", response.status_code)
            raise AssistServiceError(body or f"HTTP {response.status_code}", response.status_code)

        try:
            data = response.json()
        except ValueError as e:
            raise AssistServiceError("Assist service returned invalid JSON", response.status_code) from e
        text = data.get("text", "") if isinstance(data, dict) else ""
        return AssistResult(text=str(text))
