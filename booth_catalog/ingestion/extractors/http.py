"""
HTTP Agent Extractor Module
===========================

Client for a remote AI extraction service. The service receives page
content and source metadata as JSON and answers with a list of booths:

    {"booths": [{"name": ..., "address": ..., ...}], "diagnostics": {...}}

Prompting and model selection live entirely on the service side.
"""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING, Any

import httpx
from pydantic import ValidationError

from booth_catalog.core.schema import CandidateRecord
from booth_catalog.ingestion.extractors.base import (
    AgentExtractor,
    ExtractionResult,
    PageContent,
)

if TYPE_CHECKING:
    from booth_catalog.core.schema import CrawlSource

logger = logging.getLogger(__name__)


class HttpAgentExtractor(AgentExtractor):
    """
    Extractor that delegates to an HTTP extraction endpoint.

    Configuration keys (``custom_config`` in sources.yaml):
    - endpoint: overrides AGENT_EXTRACTOR_URL
    - timeout: request timeout in seconds (default 120)
    """

    EXTRACTOR_NAME = "http"
    EXTRACTOR_VERSION = "1.0.0"

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        super().__init__(config)
        self.endpoint = self.config.get("endpoint") or os.environ.get("AGENT_EXTRACTOR_URL", "")
        self.token = os.environ.get("AGENT_EXTRACTOR_TOKEN")
        self.timeout = float(self.config.get("timeout", 120))
        self._client = client

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout)
        return self._client

    def _build_payload(self, page: PageContent, source: CrawlSource) -> dict[str, Any]:
        return {
            "url": page.url,
            "markdown": page.text_rendering,
            "html": page.html,
            "source": {
                "name": source.name,
                "domain": source.domain,
                "source_type": source.source_type.value,
            },
        }

    def extract(self, page: PageContent, source: CrawlSource) -> ExtractionResult:
        """Send the page to the extraction service and parse its booths."""
        result = ExtractionResult()

        if not self.endpoint:
            result.errors.append("AGENT_EXTRACTOR_URL is not configured")
            return result

        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        try:
            response = self.client.post(
                self.endpoint, json=self._build_payload(page, source), headers=headers
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            logger.warning(f"Agent extraction failed for {page.url}: {e}")
            result.errors.append(f"Agent request failed: {e}")
            return result
        except ValueError:
            result.errors.append("Agent returned invalid JSON")
            return result

        if not isinstance(data, dict):
            result.errors.append("Agent returned an unexpected payload")
            return result

        result.diagnostics = data.get("diagnostics") or {}

        for index, raw in enumerate(data.get("booths") or []):
            if not isinstance(raw, dict):
                result.errors.append(f"Booth {index}: not an object")
                continue
            raw = {"source_name": source.name, "source_url": page.url, **raw}
            try:
                result.records.append(CandidateRecord.model_validate(raw))
            except ValidationError as e:
                result.errors.append(f"Booth {index}: {e.error_count()} invalid fields")

        logger.info(
            f"Agent extracted {len(result.records)} booths from {page.url}"
            + (f" ({len(result.errors)} errors)" if result.errors else "")
        )
        return result
