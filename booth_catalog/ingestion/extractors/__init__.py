"""
Extractor Registry Module
=========================

Central registry for AI extraction backends.
Provides factory functions for creating extractors by name.
"""

from __future__ import annotations

from typing import Any, Type

from booth_catalog.ingestion.extractors.base import (
    AgentExtractor,
    ExtractionResult,
    PageContent,
)
from booth_catalog.ingestion.extractors.fixture import FixtureAgentExtractor
from booth_catalog.ingestion.extractors.http import HttpAgentExtractor


# Registry mapping extractor names to their classes
EXTRACTOR_REGISTRY: dict[str, Type[AgentExtractor]] = {
    "http": HttpAgentExtractor,
    "fixture": FixtureAgentExtractor,
}


def get_agent_extractor(
    extractor_type: str,
    config: dict[str, Any] | None = None,
) -> AgentExtractor | None:
    """
    Get an extractor instance by type name.

    Args:
        extractor_type: Name of the extractor (e.g., "http", "fixture")
        config: Optional custom configuration

    Returns:
        Extractor instance, or None if type not found
    """
    extractor_class = EXTRACTOR_REGISTRY.get(extractor_type)
    if extractor_class is None:
        return None
    return extractor_class(config)


def register_extractor(name: str, extractor_class: Type[AgentExtractor]) -> None:
    """
    Register a new extractor type.

    Args:
        name: Name to register the extractor under
        extractor_class: Extractor class (must inherit from AgentExtractor)
    """
    if not issubclass(extractor_class, AgentExtractor):
        raise TypeError(f"{extractor_class} must inherit from AgentExtractor")
    EXTRACTOR_REGISTRY[name] = extractor_class


def list_extractors() -> list[str]:
    """List all registered extractor names."""
    return list(EXTRACTOR_REGISTRY.keys())


__all__ = [
    # Registry functions
    "get_agent_extractor",
    "register_extractor",
    "list_extractors",
    "EXTRACTOR_REGISTRY",
    # Base classes
    "AgentExtractor",
    "ExtractionResult",
    "PageContent",
    # Concrete extractors
    "FixtureAgentExtractor",
    "HttpAgentExtractor",
]
