"""
Extractor Base Module
=====================

Defines the abstract base class for AI extraction backends.
Extractors are responsible for:
1. Discovering URLs to crawl from a source
2. Turning a page into candidate booth records

The pipeline treats an extractor as a black box: it hands over page
content plus source metadata and consumes the records and diagnostics
that come back.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from bs4 import BeautifulSoup

from booth_catalog.core.schema import CandidateRecord

if TYPE_CHECKING:
    from booth_catalog.core.schema import CrawlSource


@dataclass
class PageContent:
    """
    Raw content of one crawl unit.

    ``html`` is the structured markup; ``text`` is an optional simplified
    rendering (markdown or plain text). When no rendering was supplied
    one is derived from the markup.
    """

    url: str
    html: str
    text: str = ""

    @property
    def text_rendering(self) -> str:
        """Simplified text for extractors that do not want markup."""
        if self.text:
            return self.text
        if not self.html:
            return ""
        return BeautifulSoup(self.html, "html.parser").get_text("\n", strip=True)


@dataclass
class ExtractionResult:
    """Records an extractor produced from one page, with diagnostics."""

    records: list[CandidateRecord] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    diagnostics: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        """An extraction succeeds when it yields at least one record."""
        return len(self.records) > 0


class AgentExtractor(ABC):
    """
    Abstract base class for AI extraction backends.

    Subclasses must implement:
    - extract: Turn page content into candidate records
    """

    # Extractor identification (override in subclasses)
    EXTRACTOR_NAME: str = "base"
    EXTRACTOR_VERSION: str = "1.0.0"

    def __init__(self, config: dict[str, Any] | None = None) -> None:
        """
        Initialize the extractor.

        Args:
            config: Optional custom configuration from sources.yaml
        """
        self.config = config or {}

    def discover_urls(self, seed_urls: list[str] | None = None) -> list[str]:
        """
        Discover URLs to crawl for this source.

        The default is to crawl the configured seed URLs as-is.

        Args:
            seed_urls: Optional starting URLs for discovery

        Returns:
            List of URLs to crawl
        """
        return list(seed_urls or [])

    @abstractmethod
    def extract(self, page: PageContent, source: CrawlSource) -> ExtractionResult:
        """
        Extract booth records from page content.

        Implementations report problems through ``ExtractionResult.errors``
        rather than raising.

        Args:
            page: Page markup and text rendering
            source: Configuration of the source the page belongs to

        Returns:
            ExtractionResult with records and diagnostics
        """

    def get_info(self) -> dict[str, str]:
        """Get extractor information."""
        return {
            "name": self.EXTRACTOR_NAME,
            "version": self.EXTRACTOR_VERSION,
            "class": self.__class__.__name__,
        }
