"""attendance_etl.headers

Header normalization for attendance uploads.

Responsibilities:
  - Load and validate the header alias table (header_aliases.yaml)
  - Map each raw column label onto one canonical field name
  - Fail the whole import when a mandatory canonical field is absent

Usage:
    from attendance_etl.headers import default_header_aliases, map_headers

    aliases = default_header_aliases()
    mapping = map_headers(["Customer ID", "client_name", ...], aliases)
    mapping.columns["person_id"]   # -> ("Customer ID",)
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Sequence

import yaml

from attendance_etl.normalize import normalize_header_label
from attendance_etl.shared import MissingHeadersError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CANONICAL_FIELDS = (
    "person_id",
    "person_name",
    "initial_note",
    "event_id",
    "event_date",
    "trainer_name",
    "event_type",
    "venue_name",
    "event_notes",
    "person_note_during",
    "completion_status",
)

DEFAULT_ALIASES_PATH = Path(__file__).parent / "header_aliases.yaml"

REQUIRED_YAML_KEYS = frozenset({"version", "mandatory", "aliases"})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class HeaderAliasError(ValueError):
    """Raised when the alias YAML fails schema validation."""


# ---------------------------------------------------------------------------
# HeaderAliases
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class HeaderAliases:
    """Immutable alias table: folded label -> canonical field."""

    version: str
    yaml_hash: str
    mandatory: tuple[str, ...]
    table: Mapping[str, str] = field(repr=False)

    def canonical(self, raw_label: str | None) -> str:
        """Return the canonical name for a raw label.

        Labels without an alias pass through in folded form.
        """
        folded = normalize_header_label(raw_label)
        return self.table.get(folded, folded)


def validate_alias_data(data: Any) -> None:
    """Raise HeaderAliasError if data does not match the alias schema."""
    if not isinstance(data, dict):
        raise HeaderAliasError("alias file must be a mapping")
    missing = REQUIRED_YAML_KEYS - set(data)
    if missing:
        raise HeaderAliasError(f"alias file missing keys: {sorted(missing)}")

    mandatory = data["mandatory"]
    if not isinstance(mandatory, list) or not mandatory:
        raise HeaderAliasError("'mandatory' must be a non-empty list")
    unknown = [m for m in mandatory if m not in CANONICAL_FIELDS]
    if unknown:
        raise HeaderAliasError(f"unknown mandatory fields: {unknown}")

    aliases = data["aliases"]
    if not isinstance(aliases, dict):
        raise HeaderAliasError("'aliases' must be a mapping")
    seen: dict[str, str] = {}
    for canonical, labels in aliases.items():
        if canonical not in CANONICAL_FIELDS:
            raise HeaderAliasError(f"unknown canonical field: {canonical!r}")
        if not isinstance(labels, list):
            raise HeaderAliasError(f"aliases for {canonical!r} must be a list")
        for label in labels:
            folded = normalize_header_label(str(label))
            if not folded:
                raise HeaderAliasError(f"blank alias under {canonical!r}")
            prior = seen.get(folded)
            if prior is not None and prior != canonical:
                raise HeaderAliasError(
                    f"alias {folded!r} maps to both {prior!r} and {canonical!r}"
                )
            if folded in CANONICAL_FIELDS and folded != canonical:
                raise HeaderAliasError(
                    f"alias {folded!r} shadows canonical field {folded!r}"
                )
            seen[folded] = canonical


def load_header_aliases(yaml_path: Path) -> HeaderAliases:
    """Load, validate, and return a HeaderAliases table from a YAML file.

    Raises:
        HeaderAliasError: If the file content is invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = yaml_path.read_text(encoding="utf-8")
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise HeaderAliasError(f"alias file is not valid YAML: {exc}") from exc
    validate_alias_data(data)

    table: dict[str, str] = {name: name for name in CANONICAL_FIELDS}
    for canonical, labels in data["aliases"].items():
        for label in labels:
            table[normalize_header_label(str(label))] = canonical

    return HeaderAliases(
        version=str(data["version"]),
        yaml_hash=hashlib.sha256(raw.encode("utf-8")).hexdigest(),
        mandatory=tuple(data["mandatory"]),
        table=MappingProxyType(table),
    )


@lru_cache(maxsize=1)
def default_header_aliases() -> HeaderAliases:
    """Process-wide alias table shipped with the package."""
    return load_header_aliases(DEFAULT_ALIASES_PATH)


# ---------------------------------------------------------------------------
# Header mapping
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class HeaderMapping:
    """canonical field -> raw labels carrying it, in column order."""

    columns: Mapping[str, tuple[str, ...]]

    @property
    def found(self) -> list[str]:
        return sorted(self.columns)

    def value(self, row: Mapping[str, str], canonical: str) -> str:
        """First non-blank trimmed cell among the labels for `canonical`."""
        for label in self.columns.get(canonical, ()):
            v = (row.get(label) or "").strip()
            if v:
                return v
        return ""


def map_headers(
    raw_headers: Sequence[str],
    aliases: HeaderAliases,
    source_labels: Sequence[str] | None = None,
) -> HeaderMapping:
    """Map a raw header row onto canonical fields.

    raw_headers are the row keys.  When the decoder renamed repeated
    labels, source_labels carries the labels as written (same order) and
    is what the alias table is matched against.

    Raises MissingHeadersError, before any row is read, when a mandatory
    field has no column.
    """
    labels = raw_headers if source_labels is None else source_labels
    columns: dict[str, list[str]] = {}
    for key, label in zip(raw_headers, labels):
        canonical = aliases.canonical(label)
        if not canonical:
            continue
        columns.setdefault(canonical, []).append(key)

    missing = [m for m in aliases.mandatory if m not in columns]
    if missing:
        raise MissingHeadersError(missing=missing, found=sorted(columns))

    return HeaderMapping(
        columns=MappingProxyType({k: tuple(v) for k, v in columns.items()})
    )
