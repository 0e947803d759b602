from __future__ import annotations

import random
import re
from datetime import datetime, timedelta
from urllib.parse import urlsplit

from ..config import DiscoveryConfig
from ..models import Source

_RISK_KEYWORDS: list[tuple[str, str, tuple[str, ...]]] = [
    ("CRITICAL", "daily", ("news", "announcement", "press", "notice", "vijest", "obavijest")),
    ("HIGH", "weekly", ("law", "act", "regulation", "ordinance", "decree", "zakon", "pravilnik", "uredba")),
    ("MEDIUM", "monthly", ("guide", "guidance", "faq", "instruction", "manual", "uputa")),
]
_TIER_FREQUENCY = {"CRITICAL": "daily", "HIGH": "weekly", "MEDIUM": "monthly", "LOW": "yearly"}


def classify_url(url: str, source: Source) -> tuple[str, str]:
    """Return ``(freshness_risk, change_frequency)`` for a discovered URL."""
    path = urlsplit(url).path.lower()
    tokens = [token for token in re.split(r"[^a-z0-9]+", path) if token]
    for risk, frequency, keywords in _RISK_KEYWORDS:
        if any(token.startswith(keyword) for token in tokens for keyword in keywords):
            return risk, frequency
    if path.endswith(".pdf") or "archive" in path or "arhiva" in path:
        return "LOW", "yearly"
    tier = source.priority_tier if source.priority_tier in _TIER_FREQUENCY else "MEDIUM"
    return tier, _TIER_FREQUENCY[tier]


def is_source_due(
    source: Source, config: DiscoveryConfig, now: datetime, next_scan: str | None = None
) -> bool:
    if next_scan:
        return now >= datetime.fromisoformat(next_scan)
    if not source.last_discovered_at:
        return True
    last = datetime.fromisoformat(source.last_discovered_at)
    cadence = config.cadence_minutes.get(source.priority_tier, config.cadence_minutes["MEDIUM"])
    return now - last >= timedelta(minutes=cadence)


def next_scan_at(
    source: Source,
    config: DiscoveryConfig,
    now: datetime,
    rng: random.Random | None = None,
) -> datetime:
    cadence = config.cadence_minutes.get(source.priority_tier, config.cadence_minutes["MEDIUM"])
    jitter = cadence * config.jitter_ratio
    offset = cadence + (rng or random).uniform(-jitter, jitter)
    return now + timedelta(minutes=max(1.0, offset))


def tier_priority(source: Source, config: DiscoveryConfig) -> int:
    return config.tier_priority.get(source.priority_tier, config.tier_priority["MEDIUM"])
