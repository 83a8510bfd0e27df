"""Deterministic naming.

Derived names must be identical across runs and tool versions: renaming a
resource because the hash changed would make the engine delete and recreate
it. The algorithm is therefore versioned and the version is persisted in the
state file (see state.py); a mismatch stops the run before any mutation.

SEED COMPOSITION (v1):
    utf-8 encoded seed parts joined with the ASCII unit separator (0x1f)
"""

from __future__ import annotations

import base64
import hashlib
import uuid

HASH_VERSION = "v1"
UNIQUE_STRING_LENGTH = 13
SEED_SEPARATOR = "\x1f"

# Fixed namespace for guid(); never change once released
GUID_NAMESPACE = uuid.UUID("6f1c2f7e-2d7b-5b6a-9a43-3c8f0d3e9b11")


def _seed_bytes(seeds: tuple[str, ...] | list[str]) -> bytes:
    if not seeds:
        raise ValueError("At least one seed value is required")
    try:
        return SEED_SEPARATOR.join(str(seed) for seed in seeds).encode("utf-8")
    except UnicodeEncodeError as e:
        raise ValueError(f"Seed value is not valid unicode text: {e.reason}") from e


def unique_string(*seeds: str) -> str:
    """Return a stable 13-character lowercase base32 hash of the seeds."""
    digest = hashlib.sha256(_seed_bytes(seeds)).digest()
    encoded = base64.b32encode(digest[:8]).decode("ascii").rstrip("=").lower()
    return encoded[:UNIQUE_STRING_LENGTH]


def deterministic_guid(*seeds: str) -> str:
    """Return a stable UUID string for the seeds (UUIDv5)."""
    return str(uuid.uuid5(GUID_NAMESPACE, _seed_bytes(seeds).decode("utf-8")))


def truncate_then_suffix(base: str, suffix: str, max_length: int) -> str:
    """Fit base + suffix into max_length by truncating the base only.

    The suffix is what makes the name unique, so it is never cut.

    Raises:
        ValueError: If the suffix alone exceeds max_length.
    """
    if max_length < len(suffix):
        raise ValueError(
            f"Maximum length {max_length} cannot hold suffix of length {len(suffix)}"
        )
    return base[: max_length - len(suffix)] + suffix


def unique_name(base: str, max_length: int, *seeds: str) -> str:
    """Build "<truncated base><unique_string(seeds)>" within max_length."""
    return truncate_then_suffix(base, unique_string(*seeds), max_length)
