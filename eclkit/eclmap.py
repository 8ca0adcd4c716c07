"""Mnemonic and signature maps loaded from eclmap files."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Iterable, TextIO

logger = logging.getLogger(__name__)

MAGIC = "!eclmap"

_KEYWORDS = frozenset({
    "anim", "ecli", "sub", "timeline",
    "var", "int", "float", "void",
    "inline", "return", "goto", "unless",
    "if", "else", "do", "while",
    "times", "switch", "case", "default",
    "break", "async", "global", "sin",
    "cos", "sqrt", "rad", "false", "true",
})

_IDENT_RE = re.compile(r"[A-Za-z_][0-9A-Za-z_]*\Z")


class EclMapError(ValueError):
    """Raised for malformed map files and rejected map entries."""


class Section(Enum):
    """Sections of an eclmap file, named as in its control lines."""

    INS_NAMES = "ins_names"
    INS_SIGNATURES = "ins_signatures"
    GVAR_NAMES = "gvar_names"
    GVAR_TYPES = "gvar_types"
    TIMELINE_INS_NAMES = "timeline_ins_names"
    TIMELINE_INS_SIGNATURES = "timeline_ins_signatures"

    @property
    def holds_identifiers(self) -> bool:
        return self in (Section.INS_NAMES, Section.GVAR_NAMES, Section.TIMELINE_INS_NAMES)


def _validate_ident(value: str) -> None:
    if not _IDENT_RE.match(value):
        raise EclMapError(f"'{value}' isn't valid identifier")
    if value.startswith("ins_"):
        raise EclMapError("mnemonic can't start with 'ins_'")
    if value in _KEYWORDS:
        raise EclMapError(f"'{value}' is a keyword, ignoring")


def _validate_type(value: str) -> None:
    if value not in ("$", "%"):
        raise EclMapError(f"unknown type '{value}'")


@dataclass
class EclMap:
    """Names and signatures for instructions and global variables, keyed by id."""

    ins_names: Dict[int, str] = field(default_factory=dict)
    ins_signatures: Dict[int, str] = field(default_factory=dict)
    gvar_names: Dict[int, str] = field(default_factory=dict)
    gvar_types: Dict[int, str] = field(default_factory=dict)
    timeline_ins_names: Dict[int, str] = field(default_factory=dict)
    timeline_ins_signatures: Dict[int, str] = field(default_factory=dict)
    _mnemonics: FrozenSet[str] = field(default=frozenset(), repr=False, compare=False)

    def section(self, section: Section) -> Dict[int, str]:
        """Return the mapping that stores the given section."""
        return getattr(self, section.value)

    def set_entry(self, section: Section, key: int, value: str) -> None:
        """Validate and store one entry; raise EclMapError if it is rejected."""
        if section.holds_identifiers:
            _validate_ident(value)
        elif section is Section.GVAR_TYPES:
            _validate_type(value)
        self.section(section)[key] = value

    def load(self, stream: Iterable[str], filename: str = "(map)") -> None:
        """Read entries from an eclmap text stream.

        Entries that fail validation are logged and skipped; unknown control
        lines and lines that are not ``<id> <value>`` raise EclMapError.
        """
        section = Section.INS_NAMES
        seen_content = False
        for linenum, raw in enumerate(stream, start=1):
            line = raw.split("#", 1)[0].strip()
            if not line:
                continue
            first = not seen_content
            seen_content = True
            if line.startswith("!"):
                if first and line == MAGIC:
                    continue
                try:
                    section = Section(line[1:])
                except ValueError:
                    raise EclMapError(
                        f"{filename}:{linenum}: unknown control line '{line}'"
                    ) from None
                continue
            parts = line.split(None, 1)
            if len(parts) != 2:
                raise EclMapError(f"{filename}:{linenum}: expected '<id> <value>'")
            try:
                key = int(parts[0])
            except ValueError:
                raise EclMapError(
                    f"{filename}:{linenum}: '{parts[0]}' is not a number"
                ) from None
            try:
                self.set_entry(section, key, parts[1].strip())
            except EclMapError as exc:
                logger.warning("%s:%d: %s", filename, linenum, exc)

    def rebuild(self) -> None:
        """Recompute the mnemonic set after instruction names have changed."""
        self._mnemonics = frozenset(self.ins_names.values()) | frozenset(
            self.timeline_ins_names.values()
        )

    def is_mnemonic(self, mnem: str) -> bool:
        """Return whether the name is a known instruction mnemonic (as of the last rebuild)."""
        return mnem in self._mnemonics