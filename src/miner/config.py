"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class GroupingConfig:
    """Thresholds for the rule-based sequence grouper."""

    text_window_seconds: int = 60
    rule_confidence: float = 0.9
    # Upper bound on records sent to the enrichment service in grouping mode.
    max_grouping_messages: int = 80


@dataclass(frozen=True)
class BatchConfig:
    """Paging settings for the batch offset walk."""

    page_size: int = 50
    lookback_hours: int = 24
    extension_gap_seconds: int = 300


@dataclass(frozen=True)
class CoordinatorConfig:
    """Run coordination settings."""

    stuck_timeout_seconds: int = 3600


@dataclass(frozen=True)
class AssemblyConfig:
    """Settings for the product assembly stages."""

    image_concurrency: int = 3
    default_category_id: Optional[str] = None


@dataclass(frozen=True)
class RetryConfig:
    """Retry policy for calls that cross the network boundary."""

    max_retries: int = 3
    base_delay_seconds: float = 2.0
    max_delay_seconds: float = 30.0
    timeout_seconds: float = 120.0
