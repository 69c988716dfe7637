"""Built-in queue job handlers."""

from __future__ import annotations

import logging
from typing import Any

from content_pipeline.config import FetchSettings
from content_pipeline.http.guard import safe_fetch
from content_pipeline.queue.models import InvalidJobPayload, QueueJobView

logger = logging.getLogger(__name__)

LINK_HEALTH_JOB_TYPE = "link_health_check"


class LinkHealthHandler:
    """Checks that a content link answers, going through the outbound fetch guard."""

    def __init__(self, settings: FetchSettings, **fetch_options: Any) -> None:
        self.settings = settings
        self.fetch_options = fetch_options

    def __call__(self, job: QueueJobView) -> dict[str, Any]:
        url = job.payload.get("url")
        if not isinstance(url, str) or not url.strip():
            raise InvalidJobPayload(f"{LINK_HEALTH_JOB_TYPE} requires a url")

        result = safe_fetch(
            url.strip(),
            method="HEAD",
            timeout_seconds=self.settings.timeout_seconds,
            max_redirects=self.settings.max_redirects,
            **self.fetch_options,
        )
        status_code = result.response.status_code
        logger.info("Link %s answered HTTP %d", result.final_url, status_code)
        result.response.raise_for_status()
        return {
            "url": url,
            "finalUrl": result.final_url,
            "statusCode": status_code,
            "redirects": result.redirects,
        }
