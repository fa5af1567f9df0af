"""Resolve the top 0.1% rating cutoff from a Raider.IO season-cutoffs payload.

Known payload layouts each get an adapter. ``resolve_cutoff`` tries them in
order and only falls back to a generic search for ``quantile_0_1.score``
when none of them matches; results from that search are flagged.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from .api_client import ApiClient

SEASON_CUTOFFS_PATH = "/mythic-plus/season-cutoffs"


@dataclass(frozen=True)
class CutoffResolution:
    score: Optional[float]
    schema: Optional[str]
    fallback: bool = False

    @property
    def resolved(self) -> bool:
        return self.score is not None


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _dig(payload: Any, *path: str) -> Any:
    node = payload
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


def p999_v2(payload: Dict[str, Any], region: str) -> Optional[float]:
    """``cutoffs.p999.all.quantileMinValue``; otherwise the higher faction value."""
    p999 = _dig(payload, "cutoffs", "p999")
    if not isinstance(p999, dict):
        return None
    combined = _number(_dig(p999, "all", "quantileMinValue"))
    if combined is not None:
        return combined
    factions = [_number(_dig(p999, faction, "quantileMinValue")) for faction in ("horde", "alliance")]
    factions = [v for v in factions if v is not None]
    return max(factions) if factions else None


def region_quantile_v1(payload: Dict[str, Any], region: str) -> Optional[float]:
    """Older layout keyed by region with ``overall.all.quantile_0_1.score``."""
    upper, lower = region.upper(), region.lower()
    tail = ("overall", "all", "quantile_0_1", "score")
    candidates = [
        _dig(payload, "cutoffs", "region", upper, *tail),
        _dig(payload, "cutoffs", "region", lower, *tail),
        _dig(payload, "cutoffs", upper, *tail),
        _dig(payload, "cutoffs", lower, *tail),
        _dig(payload, *tail),
    ]
    for value in candidates:
        if _number(value) is not None:
            return _number(value)
    regions = payload.get("regions") or _dig(payload, "cutoffs", "regions") or []
    if isinstance(regions, list):
        for entry in regions:
            if not isinstance(entry, dict):
                continue
            tag = str(entry.get("name") or entry.get("tag") or "").upper()
            if tag == upper:
                return _number(_dig(entry, *tail))
    return None


SCHEMA_ADAPTERS: List[Tuple[str, Callable[[Dict[str, Any], str], Optional[float]]]] = [
    ("p999-v2", p999_v2),
    ("region-quantile-v1", region_quantile_v1),
]


def search_quantile_score(payload: Any, region: str) -> Optional[float]:
    """Last resort: any ``quantile_0_1.score``, preferring ones under a region key."""
    preferred = region.lower()
    best: Tuple[int, Optional[float]] = (-1, None)
    stack: List[Tuple[Any, Tuple[str, ...]]] = [(payload, ())]
    while stack:
        node, path = stack.pop()
        if isinstance(node, dict):
            score = _number(_dig(node, "quantile_0_1", "score"))
            if score is not None:
                weight = 2 if any(preferred in p.lower() for p in path) else 0
                if weight > best[0]:
                    best = (weight, score)
            for key, child in reversed(list(node.items())):
                stack.append((child, path + (str(key),)))
        elif isinstance(node, list):
            for i, child in reversed(list(enumerate(node))):
                stack.append((child, path + (str(i),)))
    return best[1]


def resolve_cutoff(payload: Dict[str, Any], region: str) -> CutoffResolution:
    for schema, adapter in SCHEMA_ADAPTERS:
        score = adapter(payload, region)
        if score is not None:
            return CutoffResolution(score, schema)
    score = search_quantile_score(payload, region)
    if score is not None:
        return CutoffResolution(score, "generic-search", fallback=True)
    return CutoffResolution(None, None)


async def fetch_season_cutoffs(
    api: ApiClient,
    base_url: str,
    season: str,
    region: str,
    access_key: Optional[str] = None,
) -> Dict[str, Any]:
    params = {"season": season, "region": region}
    if access_key:
        params["access_key"] = access_key
    return await api.get_json(base_url.rstrip("/") + SEASON_CUTOFFS_PATH, params=params)
