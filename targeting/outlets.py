"""
Outlet reputation lookup: source name / URL host -> tier -> visibility.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional
from urllib.parse import urlparse

from targeting.config_loader import load_outlets_config
from targeting.models import Tier

logger = logging.getLogger(__name__)

DEFAULT_VISIBILITY: Dict[Tier, float] = {
    Tier.A: 1.0,
    Tier.B: 0.7,
    Tier.C: 0.4,
    Tier.UNRATED: 0.2,
}


class OutletDirectory:
    """
    Maps sources to reputation tiers. Unknown sources resolve to UNRATED, which
    still carries a small non-zero visibility.
    """

    def __init__(
        self,
        tiers: Optional[Mapping[str, Tier]] = None,
        visibility: Optional[Mapping[Tier, float]] = None,
    ) -> None:
        self._tiers: Dict[str, Tier] = {_normalize(name): tier for name, tier in (tiers or {}).items()}
        self._visibility: Dict[Tier, float] = dict(DEFAULT_VISIBILITY)
        if visibility:
            self._visibility.update(visibility)
        ordered = sorted(self._visibility.items(), key=lambda kv: kv[0].rank)
        for (_, lower), (tier, higher) in zip(ordered, ordered[1:]):
            if higher < lower:
                raise ValueError(f"visibility for tier {tier.value} must not be lower than the tier below it")

    @classmethod
    def from_config(cls, config_path: Path) -> "OutletDirectory":
        config = load_outlets_config(config_path)
        tiers: Dict[str, Tier] = {}
        for tier_name, sources in (config.get("tiers") or {}).items():
            tier = _parse_tier(tier_name)
            if tier is None:
                logger.warning("Unknown tier '%s' in outlets config; skipping.", tier_name)
                continue
            for source in _as_list(sources):
                tiers[str(source)] = tier
        visibility: Dict[Tier, float] = {}
        for tier_name, value in (config.get("visibility") or {}).items():
            tier = _parse_tier(tier_name)
            if tier is None:
                continue
            try:
                visibility[tier] = max(0.0, min(1.0, float(value)))
            except (TypeError, ValueError):
                logger.warning("Invalid visibility %r for tier %s; using default", value, tier_name)
        return cls(tiers=tiers, visibility=visibility)

    def tier_for(self, source: str, url: str = "") -> Tier:
        if source:
            tier = self._tiers.get(_normalize(source))
            if tier is not None:
                return tier
        host = _host(url)
        if host:
            tier = self._tiers.get(host)
            if tier is not None:
                return tier
        return Tier.UNRATED

    def visibility_for(self, tier: Tier) -> float:
        return self._visibility.get(tier, self._visibility[Tier.UNRATED])

    def __len__(self) -> int:
        return len(self._tiers)


def _normalize(name: str) -> str:
    return " ".join(str(name).lower().split())


def _host(url: str) -> str:
    if not url:
        return ""
    host = (urlparse(url).hostname or "").lower()
    return host[4:] if host.startswith("www.") else host


def _parse_tier(value: object) -> Optional[Tier]:
    try:
        return Tier(str(value).upper())
    except ValueError:
        return None


def _as_list(value: object) -> Iterable[object]:
    if isinstance(value, (list, tuple, set)):
        return value
    if value:
        return [value]
    return []
