"""Cast URL/hash parsing and cast-file ingestion utilities."""

from __future__ import annotations

import re
from pathlib import Path
from urllib.parse import urlparse

_ALLOWED_HOSTS = {"warpcast.com", "www.warpcast.com", "farcaster.xyz", "www.farcaster.xyz", "supercast.xyz"}
_HASH_RE = re.compile(r"^0x[a-fA-F0-9]{8,64}$")


def parse_cast_hash(value: str) -> str:
    """Extract a cast hash from a Farcaster client URL or a bare ``0x`` hash."""

    candidate = value.strip()
    if _HASH_RE.match(candidate):
        return candidate.lower()

    parsed = urlparse(candidate)
    if parsed.scheme not in {"http", "https"}:
        raise ValueError(f"Expected a cast URL or 0x hash, got '{value}'")
    if parsed.netloc.lower() not in _ALLOWED_HOSTS:
        raise ValueError(f"Unsupported host in '{value}'. Expected warpcast.com, farcaster.xyz or supercast.xyz")

    parts = [part for part in parsed.path.split("/") if part]
    if len(parts) >= 2 and _HASH_RE.match(parts[1]):
        return parts[1].lower()

    raise ValueError(f"Could not find '/<user>/0x<hash>' in '{value}'")


def load_cast_file(path: Path) -> list[str]:
    """Load and validate cast inputs from a text file (one per line)."""

    if not path.exists() or not path.is_file():
        raise ValueError(f"Cast file not found: {path}")

    seen: set[str] = set()
    items: list[str] = []

    for line_number, raw_line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue

        try:
            cast_hash = parse_cast_hash(line)
        except ValueError as exc:
            raise ValueError(f"Invalid cast at line {line_number}: {exc}") from exc

        if cast_hash in seen:
            continue

        seen.add(cast_hash)
        items.append(cast_hash)

    if not items:
        raise ValueError("No valid casts found in cast file")

    return items
