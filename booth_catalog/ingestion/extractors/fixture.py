"""
Fixture Extractor Module
========================

Stand-in extractor for pipeline validation without network access.
Serves synthetic booth directory pages and "extracts" the booths it
rendered into them, so pattern learning and direct scraping can run
against realistic markup.
"""

from __future__ import annotations

import html
from typing import TYPE_CHECKING, Any

from booth_catalog.core.schema import CandidateRecord
from booth_catalog.ingestion.extractors.base import (
    AgentExtractor,
    ExtractionResult,
    PageContent,
)

if TYPE_CHECKING:
    from booth_catalog.core.schema import CrawlSource


# Synthetic booth data covering various scenarios
TEST_BOOTHS: list[dict[str, Any]] = [
    {
        "name": "Photoautomat Kastanienallee",
        "address": "Kastanienallee 94",
        "city": "Berlin",
        "country": "Germany",
        "machine_model": "Photo-Me Model 9",
        "cost": "€2",
        "hours": "24 hours",
        "description": "Classic black and white chemical booth outside a bar.",
    },
    {
        "name": "Photoautomat Warschauer Strasse",
        "address": "Warschauer Strasse 57",
        "city": "Berlin",
        "country": "Germany",
        "machine_model": "Photo-Me Model 9",
        "cost": "€2",
        "hours": "24 hours",
        "description": "Near the U-Bahn entrance.",
    },
    {
        "name": "Ace Hotel Photobooth",
        "address": "20 W 29th St",
        "city": "New York",
        "state": "NY",
        "country": "USA",
        "machine_model": "Auto-Photo Model 11",
        "cost": "$5",
        "hours": "10am - 2am",
        "description": "Vintage booth in the lobby.",
    },
    {
        "name": "Joe's Bar & Grill",
        "address": "123 Main St",
        "city": "Springfield",
        "state": "IL",
        "country": "USA",
        "cost": "$4",
        "description": "Booth by the pool tables.",
    },
    {
        "name": "Joes Bar and Grill",
        "address": "123 Main Street",
        "city": "Springfield",
        "state": "IL",
        "country": "USA",
        "cost": "$4",
        "hours": "4pm - 2am",
    },
    {
        "name": "Cafe Lomo",
        "address": "Rua Augusta 210",
        "city": "Lisbon",
        "country": "Portugal",
        "cost": "€4",
        "description": "Restored booth at the back of the cafe.",
    },
]


def render_booth(booth: dict[str, Any]) -> str:
    """Render one booth as the article block used by fixture pages."""
    parts = [f"<h2>{html.escape(booth['name'])}</h2>"]
    parts.append(f"<address>{html.escape(booth['address'])}</address>")
    for field_name in ("city", "state", "country", "cost", "hours"):
        if booth.get(field_name):
            parts.append(
                f'<span class="{field_name}">{html.escape(booth[field_name])}</span>'
            )
    if booth.get("machine_model"):
        parts.append(f'<span class="model">{html.escape(booth["machine_model"])}</span>')
    if booth.get("description"):
        parts.append(f"<p>{html.escape(booth['description'])}</p>")
    return '<article class="booth-listing">' + "".join(parts) + "</article>"


class FixtureAgentExtractor(AgentExtractor):
    """
    Extractor that returns synthetic booth data.

    Useful for:
    - Testing the full pipeline without network access
    - Seeding learned patterns for the direct scraper
    - Demonstrating deduplication on known near-duplicates
    """

    EXTRACTOR_NAME = "fixture"
    EXTRACTOR_VERSION = "1.0.0"

    BASE_URL = "https://fixture.booth-catalog.local/booths"

    def __init__(self, config: dict[str, Any] | None = None) -> None:
        super().__init__(config)
        self._booths = list(TEST_BOOTHS)
        self.page_size = int(self.config.get("page_size", 3))

        # Allow custom test data via config
        if config and "test_booths" in config:
            self._booths = config["test_booths"]

    @property
    def page_count(self) -> int:
        return (len(self._booths) + self.page_size - 1) // self.page_size

    def _page_booths(self, index: int) -> list[dict[str, Any]]:
        start = index * self.page_size
        return self._booths[start : start + self.page_size]

    def discover_urls(self, seed_urls: list[str] | None = None) -> list[str]:
        """
        Return one URL per fixture page.

        Each page gets a URL like: https://fixture.booth-catalog.local/booths/0
        """
        return [f"{self.BASE_URL}/{i}" for i in range(self.page_count)]

    def get_fixture_page(self, index: int) -> PageContent:
        """Render the directory page with the given index."""
        articles = "".join(render_booth(b) for b in self._page_booths(index))
        markup = (
            "<html><head><title>Booth Directory</title></head>"
            f"<body><main>{articles}</main></body></html>"
        )
        return PageContent(url=f"{self.BASE_URL}/{index}", html=markup)

    def extract(self, page: PageContent, source: CrawlSource) -> ExtractionResult:
        """Return the booths rendered into a fixture page."""
        result = ExtractionResult(diagnostics={"extractor": self.EXTRACTOR_NAME})
        try:
            index = int(page.url.rstrip("/").split("/")[-1])
        except ValueError:
            result.errors.append(f"Not a fixture URL: {page.url}")
            return result

        for booth in self._page_booths(index):
            result.records.append(
                CandidateRecord(**booth, source_name=source.name, source_url=page.url)
            )
        return result
