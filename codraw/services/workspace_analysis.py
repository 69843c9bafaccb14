"""
Workspace analysis over OpenRouter chat completions.

Given a full-canvas raster (data URL) and an optional focus, returns a
plain-language description of what the user is working on.
"""

from __future__ import annotations

import logging
import time

import httpx

from codraw.core.exceptions import ConfigurationError, WorkspaceAnalysisError
from codraw.core.settings import settings
from codraw.prompts.loader import get_prompt, render_prompt

logger = logging.getLogger(__name__)


class WorkspaceAnalyzer:
    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        site_url: str | None = None,
        timeout_seconds: float | None = None,
    ):
        self.api_key = api_key if api_key is not None else settings.openrouter_api_key
        self.base_url = (base_url or settings.openrouter_base_url).rstrip("/")
        self.model = model or settings.openrouter_model
        self.site_url = site_url or settings.site_url
        self.timeout_seconds = timeout_seconds or settings.analysis_timeout_seconds

    def analyze(self, image_data_url: str, focus: str | None = None) -> str:
        """Blocking; raises WorkspaceAnalysisError on any upstream failure."""
        if not self.api_key:
            raise ConfigurationError("OPENROUTER_API_KEY not configured")

        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": get_prompt("workspace_context_manager")},
                {
                    "role": "user",
                    "content": [
                        {"type": "image_url", "image_url": {"url": image_data_url}},
                        {"type": "text", "text": render_prompt("workspace_user_prompt", focus=focus or "")},
                    ],
                },
            ],
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "HTTP-Referer": self.site_url,
            "X-Title": "codraw workspace analysis",
        }

        started = time.monotonic()
        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                resp = client.post(f"{self.base_url}/chat/completions", json=payload, headers=headers)
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "workspace_analysis.upstream_error",
                extra={"status_code": exc.response.status_code, "body": exc.response.text[:500]},
            )
            raise WorkspaceAnalysisError("Workspace analysis failed", detail=str(exc)) from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("workspace_analysis.request_failed", extra={"error": str(exc)})
            raise WorkspaceAnalysisError("Workspace analysis failed", detail=str(exc)) from exc

        message = ((data.get("choices") or [{}])[0] or {}).get("message") or {}
        analysis = message.get("content") or message.get("text") or ""
        logger.info(
            "workspace_analysis.completed",
            extra={
                "duration_ms": int((time.monotonic() - started) * 1000),
                "text_length": len(analysis),
                "tokens_used": (data.get("usage") or {}).get("total_tokens"),
            },
        )
        return analysis
