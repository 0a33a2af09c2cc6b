"""
Crawl Source Registry
=====================

Reads ``sources.yaml`` into typed settings. Besides the list of booth
directories, operator sites and guides that may be crawled, the file
carries the pipeline-wide sections used by the extraction engine,
the deduplicator and the geocoding cascade.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from booth_catalog.core.enums import ExtractionMode, SourceType

DEFAULT_CONFIG_FILE = Path(__file__).resolve().parents[2] / "config" / "sources.yaml"
CONFIG_PATH_ENV = "SOURCES_CONFIG_PATH"


@dataclass
class RateLimitConfig:
    """Token-bucket pacing for one host."""

    requests_per_second: float = 1.0
    burst_limit: int = 5

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> RateLimitConfig:
        values = data or {}
        return cls(
            requests_per_second=float(values.get("requests_per_second", cls.requests_per_second)),
            burst_limit=int(values.get("burst_limit", cls.burst_limit)),
        )


@dataclass
class SourceConfig:
    """One crawlable site and how its pages should be read."""

    name: str
    domain: str
    extractor: str = "http"
    source_type: SourceType = SourceType.DIRECTORY
    extraction_mode: ExtractionMode = ExtractionMode.HYBRID
    enabled: bool = True
    description: str = ""
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    allowlist: list[str] = field(default_factory=list)
    denylist: list[str] = field(default_factory=list)
    seed_urls: list[str] = field(default_factory=list)
    custom_config: dict[str, Any] = field(default_factory=dict)

    _allow: list[re.Pattern[str]] = field(init=False, repr=False, compare=False)
    _deny: list[re.Pattern[str]] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._allow = [re.compile(p) for p in self.allowlist]
        self._deny = [re.compile(p) for p in self.denylist]

    @classmethod
    def from_dict(
        cls, data: dict[str, Any], default_rate_limit: RateLimitConfig | None = None
    ) -> SourceConfig:
        """
        Build a source from one entry of the ``sources`` list.

        A source without its own ``rate_limit`` block shares the global
        default. Unknown ``source_type`` or ``extraction_mode`` values
        raise ValueError.
        """
        if data.get("rate_limit"):
            pacing = RateLimitConfig.from_dict(data["rate_limit"])
        else:
            pacing = default_rate_limit or RateLimitConfig()

        return cls(
            name=data["name"],
            domain=data["domain"],
            extractor=data.get("extractor", "http"),
            source_type=SourceType(data.get("source_type", SourceType.DIRECTORY)),
            extraction_mode=ExtractionMode(data.get("extraction_mode", ExtractionMode.HYBRID)),
            enabled=bool(data.get("enabled", True)),
            description=data.get("description") or "",
            rate_limit=pacing,
            allowlist=list(data.get("allowlist") or []),
            denylist=list(data.get("denylist") or []),
            seed_urls=list(data.get("seed_urls") or []),
            custom_config=dict(data.get("custom_config") or {}),
        )

    def is_url_allowed(self, url: str) -> bool:
        """
        Whether the crawler may fetch ``url``.

        A denylist hit always wins. With no allowlist every other URL
        passes; otherwise one allowlist pattern has to match.
        """
        if any(p.match(url) for p in self._deny):
            return False
        return not self._allow or any(p.match(url) for p in self._allow)


@dataclass
class ExtractionConfig:
    """Thresholds used by the extraction-mode decision engine."""

    min_pattern_confidence: float = 0.5
    max_pattern_age_days: int = 90
    fallback_min_confidence: float = 0.4
    fallback_min_records: int = 2
    expected_records_per_page: int = 5
    pattern_active_floor: float = 0.3

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ExtractionConfig:
        values = data or {}
        base = cls()
        return cls(
            min_pattern_confidence=float(values.get("min_pattern_confidence", base.min_pattern_confidence)),
            max_pattern_age_days=int(values.get("max_pattern_age_days", base.max_pattern_age_days)),
            fallback_min_confidence=float(values.get("fallback_min_confidence", base.fallback_min_confidence)),
            fallback_min_records=int(values.get("fallback_min_records", base.fallback_min_records)),
            expected_records_per_page=int(
                values.get("expected_records_per_page", base.expected_records_per_page)
            ),
            pattern_active_floor=float(values.get("pattern_active_floor", base.pattern_active_floor)),
        )


@dataclass
class DeduplicationConfig:
    """Match thresholds and per-source trust overrides."""

    exact_threshold: float = 95.0
    high_confidence_threshold: float = 80.0
    probable_threshold: float = 60.0
    manual_review_threshold: float = 40.0
    quick_name_threshold: float = 30.0
    quick_name_prefix: int = 20
    source_priority: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> DeduplicationConfig:
        values = data or {}
        bands = values.get("thresholds") or {}
        base = cls()
        return cls(
            exact_threshold=float(bands.get("exact", base.exact_threshold)),
            high_confidence_threshold=float(bands.get("high_confidence", base.high_confidence_threshold)),
            probable_threshold=float(bands.get("probable", base.probable_threshold)),
            manual_review_threshold=float(bands.get("manual_review", base.manual_review_threshold)),
            quick_name_threshold=float(values.get("quick_name_threshold", base.quick_name_threshold)),
            quick_name_prefix=int(values.get("quick_name_prefix", base.quick_name_prefix)),
            source_priority={
                str(name): int(rank) for name, rank in (values.get("source_priority") or {}).items()
            },
        )


@dataclass
class GeocodingConfig:
    """Which geocoding tiers run and how they are paced."""

    enable_nominatim: bool = True
    enable_mapbox: bool = True
    enable_google: bool = True
    nominatim_min_interval: float = 1.1
    request_timeout: float = 10.0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> GeocodingConfig:
        values = data or {}
        base = cls()
        return cls(
            enable_nominatim=bool(values.get("enable_nominatim", base.enable_nominatim)),
            enable_mapbox=bool(values.get("enable_mapbox", base.enable_mapbox)),
            enable_google=bool(values.get("enable_google", base.enable_google)),
            nominatim_min_interval=float(values.get("nominatim_min_interval", base.nominatim_min_interval)),
            request_timeout=float(values.get("request_timeout", base.request_timeout)),
        )


@dataclass
class GlobalConfig:
    """HTTP identity and retry policy shared by every source."""

    default_rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    user_agent: str = "BoothCatalog/0.1"
    request_timeout: int = 30
    max_retries: int = 3

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> GlobalConfig:
        values = data or {}
        base = cls()
        return cls(
            default_rate_limit=RateLimitConfig.from_dict(values.get("default_rate_limit")),
            user_agent=str(values.get("user_agent", base.user_agent)),
            request_timeout=int(values.get("request_timeout", base.request_timeout)),
            max_retries=int(values.get("max_retries", base.max_retries)),
        )


class SourceRegistry:
    """
    In-memory view of ``sources.yaml``.

    An empty registry holds default settings and no sources until
    :meth:`load_config` is called. Reloading replaces everything.
    """

    def __init__(self) -> None:
        self._sources: dict[str, SourceConfig] = {}
        self._global = GlobalConfig()
        self._extraction = ExtractionConfig()
        self._deduplication = DeduplicationConfig()
        self._geocoding = GeocodingConfig()
        self._path: Path | None = None

    @property
    def global_config(self) -> GlobalConfig:
        return self._global

    @property
    def extraction(self) -> ExtractionConfig:
        return self._extraction

    @property
    def deduplication(self) -> DeduplicationConfig:
        return self._deduplication

    @property
    def geocoding(self) -> GeocodingConfig:
        return self._geocoding

    @property
    def config_path(self) -> Path | None:
        """Resolved location of the last file loaded."""
        return self._path

    def load_config(self, config_path: Path | str) -> None:
        """
        Replace the registry contents with the given YAML file.

        Raises:
            FileNotFoundError: The path does not point at a file
            ValueError: A source names an unknown type or mode
        """
        path = Path(config_path).expanduser().resolve()
        if not path.is_file():
            raise FileNotFoundError(f"Sources file does not exist: {path}")

        document = yaml.safe_load(path.read_text()) or {}

        self._global = GlobalConfig.from_dict(document.get("global"))
        self._extraction = ExtractionConfig.from_dict(document.get("extraction"))
        self._deduplication = DeduplicationConfig.from_dict(document.get("deduplication"))
        self._geocoding = GeocodingConfig.from_dict(document.get("geocoding"))

        fallback_pacing = self._global.default_rate_limit
        parsed = [SourceConfig.from_dict(entry, fallback_pacing) for entry in document.get("sources") or []]
        self._sources = {source.name: source for source in parsed}
        self._path = path

    def get_source(self, name: str) -> SourceConfig | None:
        return self._sources.get(name)

    def get_source_by_domain(self, domain: str) -> SourceConfig | None:
        return next((s for s in self._sources.values() if s.domain == domain), None)

    def list_sources(self) -> list[SourceConfig]:
        return list(self._sources.values())

    def list_enabled_sources(self) -> list[SourceConfig]:
        return [source for source in self._sources.values() if source.enabled]

    def _set_enabled(self, name: str, enabled: bool) -> bool:
        source = self._sources.get(name)
        if source is None:
            return False
        source.enabled = enabled
        return True

    def enable_source(self, name: str) -> bool:
        """Switch a source on. Returns False for an unknown name."""
        return self._set_enabled(name, True)

    def disable_source(self, name: str) -> bool:
        """Switch a source off. Returns False for an unknown name."""
        return self._set_enabled(name, False)


_registry: SourceRegistry | None = None


def get_default_registry() -> SourceRegistry:
    """
    Process-wide registry, loaded on first use.

    ``SOURCES_CONFIG_PATH`` overrides the bundled ``config/sources.yaml``.
    A missing file leaves the registry empty.
    """
    global _registry

    if _registry is None:
        registry = SourceRegistry()
        override = os.environ.get(CONFIG_PATH_ENV)
        path = Path(override) if override else DEFAULT_CONFIG_FILE
        if path.exists():
            registry.load_config(path)
        _registry = registry

    return _registry


def reset_default_registry() -> None:
    """Forget the process-wide registry so the next call reloads it."""
    global _registry
    _registry = None
