"""Enums for booth extraction, deduplication and geocoding fields."""

from enum import Enum


class ExtractionMode(str, Enum):
    """How a source's pages are turned into candidate records."""

    AGENT = "agent"
    DIRECT = "direct"
    HYBRID = "hybrid"


class PatternLearningStatus(str, Enum):
    """Progress of pattern learning for a source."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class SourceType(str, Enum):
    """Kind of site a source represents."""

    OPERATOR = "operator"
    DIRECTORY = "directory"
    CITY_GUIDE = "city_guide"
    BLOG = "blog"
    COMMUNITY = "community"


class PatternType(str, Enum):
    """Kind of selector stored in a learned pattern."""

    CSS_SELECTOR = "css_selector"
    XPATH = "xpath"
    JSON_PATH = "json_path"
    REGEX = "regex"
    COMPOUND = "compound"


class ExtractionMethod(str, Enum):
    """What to read from a matched element."""

    TEXT = "text"
    ATTRIBUTE = "attribute"
    MARKUP = "markup"


class MatchType(str, Enum):
    """Classification of a duplicate match by confidence band."""

    EXACT = "exact"
    HIGH_CONFIDENCE = "high_confidence"
    PROBABLE = "probable"
    MANUAL_REVIEW = "manual_review"


class RecommendedAction(str, Enum):
    """What to do with a duplicate match."""

    MERGE = "merge"
    KEEP_BOTH = "keep_both"
    MANUAL_REVIEW = "manual_review"


class MergeStrategy(str, Enum):
    """How two duplicate records are combined."""

    KEEP_PRIMARY = "keep_primary"
    KEEP_DUPLICATE = "keep_duplicate"
    MERGE_FIELDS = "merge_fields"


class GeocodeConfidence(str, Enum):
    """Confidence levels produced by geocode validation."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    REJECT = "reject"


class GeocodeProvider(str, Enum):
    """Geocoding tiers, cheapest first."""

    NOMINATIM = "nominatim"
    MAPBOX = "mapbox"
    GOOGLE = "google"


class BoothStatus(str, Enum):
    """Lifecycle status of a booth record."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    UNVERIFIED = "unverified"
