"""In-memory model of an ECL script: subs, instructions, parameters and labels."""

from __future__ import annotations

import dataclasses
import struct
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Tuple

RANK_EASY = 1 << 0
RANK_NORMAL = 1 << 1
RANK_HARD = 1 << 2
RANK_LUNATIC = 1 << 3
RANK_EXTRA = 1 << 4
RANK_OVERDRIVE = 1 << 5

RANK_ID_0 = 1 << 0
RANK_ID_1 = 1 << 1
RANK_ID_2 = 1 << 2
RANK_ID_3 = 1 << 3
RANK_ID_4 = 1 << 4
RANK_ID_5 = 1 << 5
RANK_ID_6 = 1 << 6
RANK_ID_7 = 1 << 7

TH10_INS_RET_BIG = 1
TH10_INS_RET_NORMAL = 10
TH10_INS_CALL = 11
TH10_INS_CALL_ASYNC = 15
TH10_INS_CALL_ASYNC_ID = 16
TH10_INS_STACK_ALLOC = 40
TH10_INS_SETI = 43
TH10_INS_SETF = 45

TH10_VAR_I3 = -9982
TH10_VAR_F3 = -9978.0

_FIXED_FORMATS = {
    "S": "<i",
    "s": "<h",
    "U": "<I",
    "u": "<H",
    "f": "<f",
}

_SUB_PARAM = struct.Struct("<ccH4s")


class EclError(Exception):
    """Raised for malformed ECL data and failed lookups."""


class InstrType(Enum):
    INSTR = 0
    TIME = 1
    RANK = 2
    LABEL = 3


def encode_value(value_type: str, value: Any) -> bytes:
    """Encode a value of the given type code as little-endian bytes."""
    fmt = _FIXED_FORMATS.get(value_type)
    if fmt is not None:
        try:
            return struct.pack(fmt, value)
        except struct.error as exc:
            raise EclError(f"cannot encode {value!r} as '{value_type}': {exc}") from None
    if value_type == "m":
        return bytes(value)
    if value_type == "z":
        return value.encode("utf-8", "surrogateescape") + b"\0"
    raise EclError(f"unknown value type '{value_type}'")


def decode_value(data: bytes, value_type: str) -> Tuple[Any, int]:
    """Decode one value from the start of data; return it and the bytes consumed."""
    fmt = _FIXED_FORMATS.get(value_type)
    if fmt is not None:
        size = struct.calcsize(fmt)
        if len(data) < size:
            raise EclError(f"not enough data for '{value_type}' value")
        return struct.unpack_from(fmt, data)[0], size
    if value_type == "m":
        return bytes(data), len(data)
    if value_type == "z":
        text = bytes(data).split(b"\0", 1)[0]
        return text.decode("utf-8", "surrogateescape"), len(data)
    raise EclError(f"unknown value type '{value_type}'")


@dataclass(frozen=True)
class SubParam:
    """A sub call argument: source type, target type and a raw 32-bit value."""

    from_type: str
    to_type: str
    raw: bytes

    @classmethod
    def from_value(cls, from_type: str, to_type: str, value: Any) -> "SubParam":
        code = "f" if from_type == "f" else "S"
        return cls(from_type, to_type, encode_value(code, value))

    @property
    def int_value(self) -> int:
        return struct.unpack("<i", self.raw)[0]

    @property
    def float_value(self) -> float:
        return struct.unpack("<f", self.raw)[0]

    def pack(self) -> bytes:
        return _SUB_PARAM.pack(
            self.from_type.encode("ascii"), self.to_type.encode("ascii"), 0, self.raw
        )

    @staticmethod
    def unpack(data: bytes) -> "SubParam":
        if len(data) < _SUB_PARAM.size:
            raise EclError("'D' param is too short")
        from_b, to_b, zero, raw = _SUB_PARAM.unpack_from(data)
        if zero != 0:
            raise EclError("bad ECL file - 'D' param padding is nonzero")
        return SubParam(from_b.decode("latin-1"), to_b.decode("latin-1"), raw)


@dataclass
class Param:
    """An instruction parameter; value_type may differ from the declared type."""

    type: str
    value: Any = None
    value_type: str = ""
    stack: bool = False
    is_expression_param: bool = False

    def __post_init__(self) -> None:
        if not self.value_type:
            self.value_type = self.type

    def copy(self) -> "Param":
        return dataclasses.replace(self)


@dataclass
class Instr:
    type: InstrType = InstrType.INSTR
    string: str = ""
    id: int = 0
    param_count: int = 0
    params: List[Param] = field(default_factory=list)
    op_type: Optional[str] = None
    size: int = 0
    time: int = 0
    rank: int = 0
    offset: int = 0
    flags: int = 0
    address: int = 0


def instr_time(time: int) -> Instr:
    return Instr(type=InstrType.TIME, time=time)


def instr_rank(rank: int) -> Instr:
    return Instr(type=InstrType.RANK, rank=rank)


def instr_label(offset: int) -> Instr:
    return Instr(type=InstrType.LABEL, offset=offset)


@dataclass
class Label:
    name: str
    offset: int = 0
    time: int = 0


@dataclass
class Variable:
    name: str
    type: str = "?"
    stack: int = 0
    scope: int = 0
    is_written: bool = False
    is_unused: bool = False


@dataclass
class Sub:
    name: str
    ret_type: Optional[str] = None
    forward_declaration: bool = False
    is_inline: bool = False
    arity: Optional[int] = None
    format: Optional[str] = None
    stack: int = 0
    vars: List[Variable] = field(default_factory=list)
    instrs: List[Instr] = field(default_factory=list)
    labels: List[Label] = field(default_factory=list)
    time: int = 0
    offset: int = 0

    def _label(self, name: str) -> Label:
        for label in self.labels:
            if label.name == name:
                return label
        raise EclError(f"label not found: {name}")

    def label_offset(self, name: str) -> int:
        return self._label(name).offset

    def label_time(self, name: str) -> int:
        return self._label(name).time


@dataclass
class Ecl:
    version: int = 0
    anim_names: List[str] = field(default_factory=list)
    ecli_names: List[str] = field(default_factory=list)
    subs: List[Sub] = field(default_factory=list)
    no_warn: bool = False

    @property
    def sub_count(self) -> int:
        """Number of subs that are written to the compiled file."""
        return sum(1 for s in self.subs if not s.forward_declaration and not s.is_inline)

    def find_sub(self, name: str) -> Optional[Sub]:
        for sub in self.subs:
            if sub.name == name:
                return sub
        return None