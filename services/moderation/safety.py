"""Safety-analysis client.

- `SafetyAnalyzer`: protocol the moderation worker depends on.
- `ContentSafetyClient`: aiohttp client for a Content-Safety style REST API
  (``text:analyze`` / ``image:analyze``) returning per-category severities.
- `text_is_safe` / `image_is_safe`: verdict rules over those severities.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import aiohttp

from core.config.config import ContentSafetyCfg
from core.errors import SafetyServiceError

log = logging.getLogger("postwatch.services.moderation.safety")


@dataclass(frozen=True)
class CategorySeverity:
    category: str
    severity: int


Analysis = List[CategorySeverity]


def text_is_safe(analysis: Analysis) -> bool:
    """Text passes only when every category reports severity 0."""
    return all(c.severity == 0 for c in analysis)


def image_is_safe(analysis: Analysis, threshold: int = 2) -> bool:
    """Images tolerate low severities: every category must stay below `threshold`."""
    return all(c.severity < threshold for c in analysis)


def parse_analysis(payload: Dict[str, Any]) -> Analysis:
    """Extract ``categoriesAnalysis`` from an analyze response."""
    return [
        CategorySeverity(category=str(item.get("category", "")), severity=int(item.get("severity") or 0))
        for item in payload.get("categoriesAnalysis") or []
    ]


class SafetyAnalyzer(Protocol):
    """Anything that can score text and image bytes."""

    async def analyze_text(self, text: str) -> Analysis: ...

    async def analyze_image(self, data: bytes) -> Analysis: ...


class ContentSafetyClient:
    """
    Async REST client for text and image analysis.

    Non-2xx responses raise `SafetyServiceError` (a transient error), so the
    worker abandons the message and it is retried on redelivery.
    """

    def __init__(
        self,
        endpoint: str,
        key: str,
        api_version: str = "2023-10-01",
        timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        """Initialize the client; a session is created lazily when not supplied."""
        self.endpoint = endpoint.rstrip("/")
        self.api_version = api_version
        self._headers = {"Ocp-Apim-Subscription-Key": key, "Content-Type": "application/json"}
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    @classmethod
    def from_config(cls, cfg: ContentSafetyCfg) -> "ContentSafetyClient":
        return cls(cfg.endpoint, cfg.key, cfg.api_version, cfg.timeout)

    async def __aenter__(self) -> "ContentSafetyClient":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    def _url(self, op: str) -> str:
        return f"{self.endpoint}/contentsafety/{op}?api-version={self.api_version}"

    async def _analyze(self, op: str, body: Dict[str, Any]) -> Analysis:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        async with self._session.post(self._url(op), json=body, headers=self._headers) as resp:
            if resp.status >= 400:
                raise SafetyServiceError(resp.status, await resp.text())
            data = await resp.json()
        analysis = parse_analysis(data)
        log.debug("%s -> %s", op, [(c.category, c.severity) for c in analysis])
        return analysis

    async def analyze_text(self, text: str) -> Analysis:
        """Score a comment text."""
        return await self._analyze("text:analyze", {"text": text})

    async def analyze_image(self, data: bytes) -> Analysis:
        """Score raw image bytes (sent base64-encoded)."""
        return await self._analyze("image:analyze", {"image": {"content": base64.b64encode(data).decode("ascii")}})
