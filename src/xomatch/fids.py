"""Player identifier parsing.

Farcaster users are identified by a numeric FID. Players signing in with only a
wallet get a *virtual* FID: a number derived from their address, sent over the
wire as ``"V<digits>"`` (older clients sent it as a negative number). Every
index and cache key uses the canonical number returned by
:func:`to_canonical_fid`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Union


@dataclass(frozen=True)
class NumericFid:
    value: int


@dataclass(frozen=True)
class VirtualFid:
    raw: str
    value: int


PlayerId = Union[NumericFid, VirtualFid]


def parse_player_id(raw: Any) -> Optional[PlayerId]:
    """Parse a wire value into a :data:`PlayerId`, or ``None`` if unusable."""

    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (NumericFid, VirtualFid)):
        return raw
    if isinstance(raw, str):
        text = raw.strip()
        if len(text) > 1 and text[0] in ("V", "v"):
            digits = text[1:]
            if not digits.lstrip("-").isdigit():
                return None
            return VirtualFid(raw=text, value=int(digits))
        try:
            value = int(text)
        except ValueError:
            return None
    elif isinstance(raw, float):
        if not raw.is_integer():
            return None
        value = int(raw)
    elif isinstance(raw, int):
        value = raw
    else:
        return None

    if value < 0:
        # legacy virtual FID
        return VirtualFid(raw=str(value), value=value)
    return NumericFid(value=value)


def to_canonical_fid(raw: Any) -> Optional[int]:
    player = parse_player_id(raw)
    return player.value if player is not None else None


def fid_cache_keys(raw: Any) -> List[str]:
    """Every spelling of ``raw`` that may have been used as a key."""

    if raw is None:
        return []
    keys: List[str] = []
    canonical = to_canonical_fid(raw)
    if canonical is not None:
        keys.append(str(canonical))
    raw_key = raw.raw if isinstance(raw, VirtualFid) else str(raw).strip()
    if raw_key and raw_key not in keys:
        keys.append(raw_key)
    return keys


def normalize_match_id(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, Mapping):
        for key in ("matchId", "id"):
            if value.get(key) is not None:
                return normalize_match_id(value[key])
        return None
    text = str(value).strip()
    return text or None
