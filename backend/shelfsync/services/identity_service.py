# Overview: Service-layer helpers for device identity; MAC canonicalization and local/cloud matching.

"""
Identity Service - MAC address canonicalization and matching

WHY: Local rows and cloud listings carry the same hardware MAC in different
shapes ("AA:BB:CC:11:22:33", "aa-bb-cc-11-22-33", "aabbcc112233"). Every
lookup and every write must go through one canonical form or devices silently
fail to match.

TWO CANONICAL FORMS (both kept, never unified):
- Gateway rows: UPPER-case hex, no separators
- DeviceStatus rows and every MAC sent to cloud tag/binding endpoints:
  lower-case hex, no separators

MATCHING RULES:
- Exact match on canonical form wins
- Otherwise match on the last N hex characters, only if exactly one
  candidate qualifies. Ambiguity is "no match", never a guess.
- Matching never raises; unmatched is a normal outcome
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from ..errors import ValidationError


_SEPARATORS = re.compile(r"[\s:\-.]")
_HEX12 = re.compile(r"^[0-9a-f]{12}$")

DEFAULT_SUFFIX_LEN = 6


def normalize_mac(raw: str | None, *, upper: bool = False) -> str:
    """Strip separators/whitespace and fold case. None -> ""."""
    if raw is None:
        return ""
    s = _SEPARATORS.sub("", str(raw))
    return s.upper() if upper else s.lower()


def gateway_mac(raw: str | None) -> str:
    """Canonical form for Gateway.mac_address (UPPER)."""
    return normalize_mac(raw, upper=True)


def device_mac(raw: str | None) -> str:
    """Canonical form for DeviceStatus.device_id and cloud tag calls (lower)."""
    return normalize_mac(raw)


def validate_mac(raw: str | None, *, upper: bool = False) -> str:
    """
    Normalize and validate a MAC address.

    Raises ValidationError (carrying the offending input) unless the
    normalized value is exactly 12 hex characters.
    """
    normalized = normalize_mac(raw)
    if not _HEX12.match(normalized):
        raise ValidationError(f"Invalid MAC address: {raw!r}", value=raw)
    return normalized.upper() if upper else normalized


def macs_equal(a: str | None, b: str | None) -> bool:
    return normalize_mac(a) == normalize_mac(b)


def fuzzy_mac_match(
    local: str | None,
    candidates: Iterable[Any],
    suffix_len: int = DEFAULT_SUFFIX_LEN,
    key: Optional[Callable[[Any], str]] = None,
) -> Any | None:
    """
    Find the candidate that refers to the same device as `local`.

    `key` extracts the MAC from a candidate (defaults to the candidate itself,
    for plain strings). Returns None when nothing matches or when two or more
    candidates share the suffix.
    """
    match, _ = _match_one(local, list(candidates), suffix_len, key)
    return match


def _match_one(local, candidates, suffix_len, key):
    target = normalize_mac(local)
    if not target:
        return None, None

    get_mac = key or (lambda c: c)
    normalized = [(c, normalize_mac(get_mac(c))) for c in candidates]

    for candidate, mac in normalized:
        if mac and mac == target:
            return candidate, "exact"

    if suffix_len <= 0 or len(target) < suffix_len:
        return None, None

    suffix = target[-suffix_len:]
    hits = [c for c, mac in normalized if mac and mac.endswith(suffix)]
    if len(hits) == 1:
        return hits[0], "suffix"
    return None, None


@dataclass
class DeviceMatch:
    local: Any
    remote: Any | None
    matched_by: str | None  # "exact", "suffix" or None

    @property
    def matched(self) -> bool:
        return self.remote is not None


def match_devices(
    locals_: Iterable[Any],
    remotes: Iterable[Any],
    *,
    local_key: Callable[[Any], str],
    remote_key: Callable[[Any], str],
    suffix_len: int = DEFAULT_SUFFIX_LEN,
) -> list[DeviceMatch]:
    """
    Pair each local record with at most one remote record.

    A remote already claimed by an exact match is not offered to another
    local record's suffix search.
    """
    locals_list = list(locals_)
    remote_list = list(remotes)
    results: dict[int, DeviceMatch] = {}
    claimed: set[int] = set()

    # Exact pass first so a suffix match can never steal an exact pairing
    by_mac = {}
    for remote in remote_list:
        mac = normalize_mac(remote_key(remote))
        if mac:
            by_mac.setdefault(mac, remote)

    for idx, local in enumerate(locals_list):
        remote = by_mac.get(normalize_mac(local_key(local)))
        if remote is not None and id(remote) not in claimed:
            claimed.add(id(remote))
            results[idx] = DeviceMatch(local=local, remote=remote, matched_by="exact")

    for idx, local in enumerate(locals_list):
        if idx in results:
            continue
        available = [r for r in remote_list if id(r) not in claimed]
        remote, how = _match_one(local_key(local), available, suffix_len, remote_key)
        if remote is not None:
            claimed.add(id(remote))
        results[idx] = DeviceMatch(local=local, remote=remote, matched_by=how)

    return [results[idx] for idx in range(len(locals_list))]
