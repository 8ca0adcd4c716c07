"""Reading compiled TH10-style ECL files into the in-memory model."""

from __future__ import annotations

import logging
import struct
from typing import List, Optional, Tuple

from .ecl import (
    TH10_INS_CALL,
    TH10_INS_CALL_ASYNC,
    TH10_INS_CALL_ASYNC_ID,
    TH10_INS_STACK_ALLOC,
    Ecl,
    EclError,
    Instr,
    InstrType,
    Param,
    Sub,
    SubParam,
    decode_value,
    instr_label,
    instr_rank,
    instr_time,
)
from .eclmap import EclMap
from .th10_formats import find_format

logger = logging.getLogger(__name__)

_HEADER = struct.Struct("<4sHHIII16s")
_LIST = struct.Struct("<4sI")
_SUB = struct.Struct("<4sI8s")
_INSTR = struct.Struct("<IHHHBBI")
_U32 = struct.Struct("<I")
_SUB_PARAM_SIZE = 8

_FALLBACK_FORMAT = "*S"


def _unpack(st: struct.Struct, data: bytes, pos: int, what: str) -> tuple:
    if pos < 0 or pos + st.size > len(data):
        raise EclError(f"truncated file while reading {what}")
    return st.unpack_from(data, pos)


def _align4(pos: int) -> int:
    return (pos + 3) & ~3


def _read_cstring(data: bytes, pos: int) -> Tuple[str, int]:
    end = data.find(b"\0", pos)
    if end < 0:
        raise EclError("unterminated string")
    return data[pos:end].decode("utf-8", "surrogateescape"), end + 1


def _read_name_list(data: bytes, pos: int, magic: bytes) -> Tuple[List[str], int]:
    found, count = _unpack(_LIST, data, pos, magic.decode("ascii") + " list")
    if found != magic:
        raise EclError(f"{magic.decode('ascii')} signature missing")
    pos += _LIST.size
    names = []
    for _ in range(count):
        name, pos = _read_cstring(data, pos)
        names.append(name)
    return names, _align4(pos)


def _xor(buf: bytearray, key: int, step: int, step2: int) -> None:
    for i in range(len(buf)):
        buf[i] ^= (key + i * step + (i * i + i) // 2 * step2) & 0xFF


def _decode_param(data: bytes, code: str) -> Tuple[object, str, int]:
    """Decode one parameter; return its value, value type and size."""
    if code == "D":
        return SubParam.unpack(data[:_SUB_PARAM_SIZE]), "D", _SUB_PARAM_SIZE
    if code in ("o", "t"):
        value, used = decode_value(data, "S")
        return value, "S", used
    if code in ("m", "x"):
        if len(data) < _U32.size:
            raise EclError("not enough data for string length")
        (length,) = _U32.unpack_from(data)
        end = _U32.size + length
        if len(data) < end:
            raise EclError("string runs past the end of the instruction")
        raw = bytearray(data[_U32.size:end])
        if code == "x":
            _xor(raw, 0x77, 7, 16)
        text, _ = decode_value(bytes(raw), "z")
        return text, "z", end
    value, used = decode_value(data, code)
    return value, code, used


def _decode_params(data: bytes, fmt: str) -> Tuple[List[Tuple[str, object, str]], str]:
    """Decode parameters by format; return them and the unused rest of the format."""
    values = []
    p = 0
    pos = 0
    while pos < len(data):
        if p >= len(fmt):
            raise EclError("instruction has more data than its format describes")
        star = fmt[p] == "*"
        if star and p + 1 >= len(fmt):
            raise EclError(f"bad format '{fmt}'")
        code = fmt[p + 1] if star else fmt[p]
        value, value_type, used = _decode_param(data[pos:], code)
        values.append((code, value, value_type))
        pos += used
        if not star:
            p += 1
    return values, fmt[p:]


def _read_instr_params(
    instr: Instr, raw_id: int, payload: bytes, param_mask: int,
    version: int, eclmap: Optional[EclMap],
) -> None:
    fmt = find_format(version, raw_id, eclmap)
    if fmt is None:
        logger.warning("(total parameter size is %d)", len(payload))
        fmt = _FALLBACK_FORMAT

    mismatch = False
    if payload:
        try:
            values, rest = _decode_params(payload, fmt)
        except EclError as exc:
            name = eclmap.ins_names.get(raw_id) if eclmap is not None else None
            label = f"{raw_id} ({name})" if name else str(raw_id)
            raise EclError(f"error when dumping opcode {label}: {exc}") from None
        for code, value, value_type in values:
            instr.params.append(
                Param(type=code, value=value, value_type=value_type,
                      stack=bool(param_mask & 1))
            )
            param_mask >>= 1
        mismatch = bool(rest) and rest[0] != "*"
    elif fmt:
        mismatch = True

    if mismatch:
        logger.warning(
            "error when dumping opcode %d: format specifies more parameters "
            "than the instruction has, recompiling will fail!", raw_id,
        )


def _read_sub(
    data: bytes, sub: Sub, start: int, end: int,
    version: int, eclmap: Optional[EclMap],
) -> None:
    magic, _, _ = _unpack(_SUB, data, start, "sub header")
    if magic != b"ECLH":
        raise EclError("ECLH signature missing")

    time = 0
    rank = 0xFF
    pos = start + _SUB.size
    while pos != end and pos < len(data):
        (raw_time, raw_id, size, param_mask, rank_mask,
         param_count, _) = _unpack(_INSTR, data, pos, "instruction")
        if size < _INSTR.size or pos + size > len(data):
            raise EclError(f"bad instruction size {size} at offset {pos:#x}")
        offset = pos - start

        if raw_time != time:
            marker = instr_time(raw_time)
            marker.offset = offset
            sub.instrs.append(marker)
            time = raw_time
        if rank_mask != rank:
            marker = instr_rank(rank_mask)
            marker.offset = offset
            sub.instrs.append(marker)
            rank = rank_mask

        instr = Instr(id=raw_id, param_count=param_count, offset=offset,
                      address=pos, time=raw_time, rank=rank_mask, size=size)
        sub.instrs.append(instr)
        payload = data[pos + _INSTR.size:pos + size]
        _read_instr_params(instr, raw_id, payload, param_mask, version, eclmap)
        pos += size


def open_ecl(data: bytes, version: int, eclmap: Optional[EclMap] = None) -> Ecl:
    """Parse a compiled TH10-style ECL file; raise EclError if it is malformed."""
    data = bytes(data)
    magic, _, _, include_offset, _, sub_count, _ = _unpack(_HEADER, data, 0, "header")
    if magic != b"SCPT":
        raise EclError("SCPT signature missing")

    ecl = Ecl(version=version)
    ecl.anim_names, pos = _read_name_list(data, include_offset, b"ANIM")
    ecl.ecli_names, pos = _read_name_list(data, pos, b"ECLI")

    if pos + sub_count * _U32.size > len(data):
        raise EclError("truncated file while reading sub offsets")
    offsets = [_U32.unpack_from(data, pos + i * _U32.size)[0] for i in range(sub_count)]
    pos += sub_count * _U32.size

    for i, offset in enumerate(offsets):
        name, pos = _read_cstring(data, pos)
        sub = Sub(name=name, offset=offset)
        ecl.subs.append(sub)
        end = offsets[i + 1] if i + 1 < len(offsets) else len(data)
        _read_sub(data, sub, offset, end, version, eclmap)

    insert_labels(ecl)
    return ecl


def insert_labels(ecl: Ecl) -> None:
    """Insert a label before every jump target that does not already have one."""
    for sub in ecl.subs:
        for instr in list(sub.instrs):
            for param in instr.params:
                if param.type != "o":
                    continue
                target = instr.offset + param.value
                for index, found in enumerate(sub.instrs):
                    if found.offset == target:
                        if found.type is not InstrType.LABEL:
                            sub.instrs.insert(index, instr_label(found.offset))
                        break


def _set_arity(sub: Sub, arity: int) -> None:
    if sub.arity is not None and sub.arity != arity:
        logger.warning("arity mismatch %d %d for %s", sub.arity, arity, sub.name)
    else:
        sub.arity = arity


def translate(ecl: Ecl, raw_output: bool = False) -> None:
    """Derive stack sizes and sub arities from the instructions.

    Calls to subs that are not in the file get forward declarations,
    placed at the front of the sub list.
    """
    if raw_output:
        return
    for sub in list(ecl.subs):
        for instr in sub.instrs:
            if instr.type is not InstrType.INSTR:
                continue
            if instr.id == TH10_INS_STACK_ALLOC:
                if not instr.params:
                    raise EclError(f"in sub {sub.name}: stack allocation without size")
                sub.stack = instr.params[0].value
            elif instr.id in (TH10_INS_CALL, TH10_INS_CALL_ASYNC, TH10_INS_CALL_ASYNC_ID):
                if not instr.params:
                    raise EclError(f"in sub {sub.name}: call without sub name")
                name = instr.params[0].value
                required = 2 if instr.id == TH10_INS_CALL_ASYNC_ID else 1
                arity = instr.param_count - required
                found = ecl.find_sub(name)
                if found is not None:
                    _set_arity(found, arity)
                else:
                    ecl.subs.insert(
                        0, Sub(name=name, forward_declaration=True, arity=arity)
                    )