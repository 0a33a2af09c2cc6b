"""Tests for the source registry module."""

from pathlib import Path

import pytest

from booth_catalog.core.enums import ExtractionMode, SourceType
from booth_catalog.ingestion.registry import (
    DeduplicationConfig,
    ExtractionConfig,
    GeocodingConfig,
    RateLimitConfig,
    SourceConfig,
    SourceRegistry,
    get_default_registry,
    reset_default_registry,
)

SAMPLE_CONFIG = """
global:
  default_rate_limit:
    requests_per_second: 2.0
    burst_limit: 10
  user_agent: "BoothTest/2.0"

extraction:
  min_pattern_confidence: 0.6
  fallback_min_records: 3

deduplication:
  thresholds:
    exact: 97
    manual_review: 45
  source_priority:
    booth-forum: 20

geocoding:
  enable_google: false
  nominatim_min_interval: 0

sources:
  - name: booth-directory
    domain: booths.example.com
    extractor: fixture
    source_type: operator
    extraction_mode: direct
    description: "Test directory"

  - name: booth-forum
    domain: forum.example.com
    source_type: community
    enabled: false
"""


@pytest.fixture
def config_path(tmp_path: Path) -> str:
    """Sample sources file on disk."""
    path = tmp_path / "sources.yaml"
    path.write_text(SAMPLE_CONFIG)
    return str(path)


@pytest.fixture
def registry(config_path: str) -> SourceRegistry:
    registry = SourceRegistry()
    registry.load_config(config_path)
    return registry


class TestRateLimitConfig:
    """Per-source pacing settings."""

    def test_explicit_values(self) -> None:
        """Explicit pacing values are read."""
        config = RateLimitConfig.from_dict({"requests_per_second": 0.5, "burst_limit": 2})
        assert config.requests_per_second == 0.5
        assert config.burst_limit == 2

    def test_defaults_without_section(self) -> None:
        """Missing section falls back to one request per second."""
        config = RateLimitConfig.from_dict(None)
        assert config.requests_per_second == 1.0
        assert config.burst_limit == 5


class TestSourceConfig:
    """Parsing and URL filtering of one source entry."""

    def test_minimal_entry_defaults(self) -> None:
        """Test defaults for a minimal source."""
        config = SourceConfig.from_dict({"name": "test", "domain": "test.com"})
        assert config.extractor == "http"
        assert config.source_type == SourceType.DIRECTORY
        assert config.extraction_mode == ExtractionMode.HYBRID
        assert config.enabled is True

    def test_every_field_parsed(self) -> None:
        """Test parsing every field."""
        config = SourceConfig.from_dict(
            {
                "name": "photoautomat.de",
                "domain": "photoautomat.de",
                "extractor": "fixture",
                "source_type": "operator",
                "extraction_mode": "agent",
                "enabled": False,
                "rate_limit": {"requests_per_second": 0.2, "burst_limit": 1},
                "seed_urls": ["https://www.photoautomat.de/standorte.html"],
                "custom_config": {"page_size": 2},
            }
        )
        assert config.source_type == SourceType.OPERATOR
        assert config.extraction_mode == ExtractionMode.AGENT
        assert config.enabled is False
        assert config.rate_limit.requests_per_second == 0.2
        assert config.custom_config == {"page_size": 2}

    def test_default_rate_limit_applied(self) -> None:
        """Test that the global default is used when a source sets none."""
        default = RateLimitConfig(requests_per_second=3.0, burst_limit=7)
        config = SourceConfig.from_dict({"name": "t", "domain": "t.com"}, default)
        assert config.rate_limit is default

    def test_unknown_mode_raises(self) -> None:
        """Test that an unknown extraction mode is rejected."""
        with pytest.raises(ValueError):
            SourceConfig.from_dict(
                {"name": "t", "domain": "t.com", "extraction_mode": "magic"}
            )

    def test_unknown_source_type_raises(self) -> None:
        """Test that an unknown source type is rejected."""
        with pytest.raises(ValueError):
            SourceConfig.from_dict({"name": "t", "domain": "t.com", "source_type": "wiki"})

    def test_denylist_wins(self) -> None:
        """A denylist hit beats an allowlist match."""
        config = SourceConfig(
            name="test",
            domain="test.com",
            allowlist=["^https://booths\\.test/.*"],
            denylist=["^https://booths\\.test/admin/.*"],
        )
        assert config.is_url_allowed("https://booths.test/locations/berlin") is True
        assert config.is_url_allowed("https://booths.test/admin/123") is False
        assert config.is_url_allowed("https://other.com/locations") is False

    def test_url_filtering_empty_allowlist(self) -> None:
        """Test that an empty allowlist allows everything not denied."""
        config = SourceConfig(name="test", domain="test.com")
        assert config.is_url_allowed("https://anything.example/") is True


class TestSectionConfigs:
    """Tests for the pipeline configuration sections."""

    def test_extraction_defaults(self) -> None:
        """Test extraction thresholds without a section."""
        config = ExtractionConfig.from_dict(None)
        assert config.min_pattern_confidence == 0.5
        assert config.max_pattern_age_days == 90
        assert config.fallback_min_confidence == 0.4
        assert config.pattern_active_floor == 0.3

    def test_deduplication_defaults(self) -> None:
        """Test deduplication thresholds without a section."""
        config = DeduplicationConfig.from_dict(None)
        assert config.exact_threshold == 95.0
        assert config.high_confidence_threshold == 80.0
        assert config.probable_threshold == 60.0
        assert config.manual_review_threshold == 40.0
        assert config.source_priority == {}

    def test_geocoding_defaults(self) -> None:
        """Test geocoding tier switches without a section."""
        config = GeocodingConfig.from_dict(None)
        assert config.enable_nominatim is True
        assert config.nominatim_min_interval == 1.1


class TestSourceRegistry:
    """Loading and querying a sources file."""

    def test_load_config(self, registry: SourceRegistry, config_path: str) -> None:
        """Test loading every section from YAML."""
        assert registry.config_path == Path(config_path).resolve()
        assert registry.global_config.user_agent == "BoothTest/2.0"
        assert registry.global_config.default_rate_limit.requests_per_second == 2.0

        assert registry.extraction.min_pattern_confidence == 0.6
        assert registry.extraction.fallback_min_records == 3
        assert registry.extraction.fallback_min_confidence == 0.4

        assert registry.deduplication.exact_threshold == 97.0
        assert registry.deduplication.manual_review_threshold == 45.0
        assert registry.deduplication.high_confidence_threshold == 80.0
        assert registry.deduplication.source_priority == {"booth-forum": 20}

        assert registry.geocoding.enable_google is False
        assert registry.geocoding.nominatim_min_interval == 0.0

        directory = registry.get_source("booth-directory")
        assert directory is not None
        assert directory.extractor == "fixture"
        assert directory.extraction_mode == ExtractionMode.DIRECT
        assert directory.rate_limit.burst_limit == 10

    def test_list_enabled_sources(self, registry: SourceRegistry) -> None:
        """Disabled sources are left out of the enabled list."""
        assert len(registry.list_sources()) == 2
        enabled = registry.list_enabled_sources()
        assert [s.name for s in enabled] == ["booth-directory"]

    def test_enable_disable_source(self, registry: SourceRegistry) -> None:
        """Sources can be switched on and off at runtime."""
        assert registry.disable_source("booth-directory") is True
        assert registry.get_source("booth-directory").enabled is False

        assert registry.enable_source("booth-forum") is True
        assert registry.get_source("booth-forum").enabled is True

        assert registry.enable_source("non-existent") is False

    def test_get_source_by_domain(self, registry: SourceRegistry) -> None:
        """Sources can be looked up by host."""
        source = registry.get_source_by_domain("forum.example.com")
        assert source is not None
        assert source.name == "booth-forum"
        assert registry.get_source_by_domain("unknown.com") is None

    def test_missing_file_raises(self) -> None:
        """A missing sources file is an error, not an empty registry."""
        registry = SourceRegistry()
        with pytest.raises(FileNotFoundError):
            registry.load_config("/nowhere/booth-sources.yaml")


class TestDefaultRegistry:
    """Tests for the process-wide registry."""

    def test_env_path_used(self, config_path: str, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that SOURCES_CONFIG_PATH selects the file."""
        monkeypatch.setenv("SOURCES_CONFIG_PATH", config_path)
        reset_default_registry()
        try:
            registry = get_default_registry()
            assert registry.get_source("booth-directory") is not None
            assert get_default_registry() is registry
        finally:
            reset_default_registry()

    def test_reset_creates_new_instance(self) -> None:
        """Reset forces a fresh registry."""
        first = get_default_registry()
        reset_default_registry()
        second = get_default_registry()
        assert first is not second
        reset_default_registry()
