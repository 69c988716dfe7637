"""Research generator backed by an HTTP JSON endpoint."""

from __future__ import annotations

import logging
import time

import httpx

from content_pipeline.research.cache import ResearchGeneration

logger = logging.getLogger(__name__)


class HttpResearchGenerator:
    """POSTs ``{"task", "prompt"}`` and reads a ``{"data", "model", ...}`` reply.

    The endpoint is an operator-configured internal service, so requests are
    not routed through the outbound fetch guard.
    """

    def __init__(
        self,
        *,
        url: str,
        timeout_seconds: float = 60.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.url = url
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def generate_json(self, task: str, prompt: str) -> ResearchGeneration:
        started = time.monotonic()
        response = self._client.post(self.url, json={"task": task, "prompt": prompt})
        response.raise_for_status()
        body = response.json()
        if not isinstance(body, dict) or "data" not in body:
            raise ValueError(
                f"Research endpoint returned no data field (HTTP {response.status_code})",
            )

        usage = body.get("usage") if isinstance(body.get("usage"), dict) else {}
        model = str(body.get("model") or "unknown")
        logger.debug("Research endpoint answered %s with model %s", task, model)
        return ResearchGeneration(
            data=body["data"],
            model=model,
            resolved_model=body.get("resolvedModel") or model,
            model_key=task,
            prompt_version=str(body.get("promptVersion") or ""),
            routing_version=str(body.get("routingVersion") or ""),
            fallback_used=bool(body.get("fallbackUsed", False)),
            input_tokens=int(usage.get("inputTokens", 0)),
            output_tokens=int(usage.get("outputTokens", 0)),
            cost=float(body.get("cost", 0.0)),
            duration_ms=(time.monotonic() - started) * 1000,
        )
