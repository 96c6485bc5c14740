"""Merge-based updates for flat ``key=value`` config files and small JSON blobs.

Every update re-reads the file from disk, validates the whole batch against
the key whitelist and value policy, and only then rewrites the file. Keys the
API is not allowed to touch (RPC credentials, peers, ...) are carried over
untouched, including repeated keys such as ``addnode``. Lines that are not
plain pairs (comments, blank lines, ``[section]`` headers and whatever follows
them) are written back exactly as they were read.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from nodebox.errors import ConfigValidationError
from nodebox.validators import DOMAIN_BITCOIN, check_value, coerce_value

logger = logging.getLogger(__name__)

# Undecodable bytes survive a read/write cycle as lone surrogates.
FILE_ERRORS = "surrogateescape"


@dataclass(frozen=True)
class ConfigEntry:
    """One retained line of a config file.

    ``key`` is ``None`` for lines kept verbatim. ``line`` holds the original
    text of a pair that has not been rewritten.
    """

    key: Optional[str]
    value: str
    line: Optional[str] = field(default=None, compare=False)

    @property
    def is_comment(self) -> bool:
        return self.key is None

    @property
    def is_section(self) -> bool:
        return self.key is None and self.value.strip().startswith("[")

    def render(self) -> str:
        if self.key is None:
            return self.value
        if self.line is not None:
            return self.line
        return f"{self.key}={self.value}"


def parse_config(text: str) -> List[ConfigEntry]:
    entries: List[ConfigEntry] = []
    in_section = False
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            entries.append(ConfigEntry(None, raw_line))
            continue
        if line.startswith("["):
            in_section = True
        key, sep, value = line.partition("=")
        key = key.strip()
        if in_section or not sep or not key:
            # section-scoped settings are never read or merged as global keys
            entries.append(ConfigEntry(None, raw_line))
            continue
        entries.append(ConfigEntry(key, value.strip(), raw_line))
    return entries


def render_config(entries: Iterable[ConfigEntry]) -> str:
    lines = [entry.render() for entry in entries]
    return "\n".join(lines) + "\n" if lines else ""


def entries_to_dict(entries: Iterable[ConfigEntry]) -> Dict[str, str]:
    mapping: Dict[str, str] = {}
    for entry in entries:
        if entry.key is not None:
            mapping[entry.key] = entry.value
    return mapping


def read_config(path: Path, strict: bool = False) -> List[ConfigEntry]:
    """Load ``path``; a missing file yields no entries.

    Other read failures also yield no entries unless ``strict`` is set, in
    which case the ``OSError`` propagates. Writers use ``strict`` so that a
    file they cannot read is never replaced by the update alone.
    """

    try:
        text = path.read_text(encoding="utf-8", errors=FILE_ERRORS)
    except FileNotFoundError:
        return []
    except OSError as exc:
        if strict:
            raise
        logger.warning("Could not read %s, treating it as empty: %s", path, exc)
        return []
    return parse_config(text)


def write_private_text(path: Path, text: str) -> None:
    """Atomically replace ``path`` with ``text``, readable by the owner only."""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8", errors=FILE_ERRORS) as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_name, 0o600)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def merge_entries(entries: Sequence[ConfigEntry], updates: Mapping[str, str]) -> List[ConfigEntry]:
    """Overlay ``updates`` onto ``entries``; an empty value removes the key.

    New keys go before the first ``[section]`` header so they stay global.
    """

    merged: List[ConfigEntry] = []
    seen: set[str] = set()
    for entry in entries:
        if entry.key is None or entry.key not in updates:
            merged.append(entry)
            continue
        if entry.key in seen or updates[entry.key] == "":
            continue
        seen.add(entry.key)
        merged.append(ConfigEntry(entry.key, updates[entry.key]))
    added = [ConfigEntry(key, updates[key]) for key in sorted(updates) if key not in seen and updates[key] != ""]
    insert_at = next((index for index, entry in enumerate(merged) if entry.is_section), len(merged))
    merged[insert_at:insert_at] = added
    return merged


class ConfigStore:
    def __init__(self, path: Path, allowed_keys: Sequence[str], domain: str = DOMAIN_BITCOIN) -> None:
        self.path = Path(path)
        self.allowed_keys = tuple(allowed_keys)
        self.domain = domain

    def load(self) -> Dict[str, str]:
        return entries_to_dict(read_config(self.path))

    def allowed_values(self) -> Dict[str, str]:
        """Current values of the whitelisted keys only."""

        current = self.load()
        return {key: current[key] for key in self.allowed_keys if key in current}

    def validate_batch(self, updates: Mapping[str, Any]) -> Dict[str, str]:
        """Check every key and value before anything is mutated."""

        validated: Dict[str, str] = {}
        for key, value in updates.items():
            if key not in self.allowed_keys:
                raise ConfigValidationError(str(key), "not allowed")
            reason = check_value(self.domain, key, value)
            if reason is not None:
                raise ConfigValidationError(key, reason)
            validated[key] = coerce_value(self.domain, value)  # type: ignore[assignment]
        return validated

    def audit(self) -> List[Dict[str, str]]:
        """Re-check the whitelisted keys already present on disk."""

        issues: List[Dict[str, str]] = []
        for key, value in self.allowed_values().items():
            reason = check_value(self.domain, key, value)
            if reason is not None:
                issues.append({"key": key, "reason": reason})
        return issues

    def apply_update(self, updates: Mapping[str, Any]) -> Dict[str, str]:
        validated = self.validate_batch(updates)
        entries = read_config(self.path, strict=True)
        merged = merge_entries(entries, validated)
        write_private_text(self.path, render_config(merged))
        logger.info("Updated %s keys in %s", ", ".join(sorted(validated)) or "no", self.path)
        return entries_to_dict(merged)


def read_json(path: Path, default: Any) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return default
    except (OSError, ValueError) as exc:
        logger.warning("Could not load %s, using defaults: %s", path, exc)
        return default


def write_json(path: Path, payload: Any) -> None:
    write_private_text(path, json.dumps(payload, indent=2) + "\n")
