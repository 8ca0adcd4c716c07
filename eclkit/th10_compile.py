"""Writing the in-memory model as a compiled TH10-style ECL file."""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from typing import BinaryIO, Iterable, List, Optional, TextIO

from .ecl import (
    TH10_INS_CALL,
    TH10_INS_CALL_ASYNC,
    TH10_INS_CALL_ASYNC_ID,
    Ecl,
    EclError,
    Instr,
    InstrType,
    Param,
    Sub,
    SubParam,
    encode_value,
)
from .eclmap import EclMap
from .th10_formats import find_format
from .versions import is_post_th13

logger = logging.getLogger(__name__)

_HEADER = struct.Struct("<4sHHIII16s")
_LIST = struct.Struct("<4sI")
_SUB = struct.Struct("<4sI8s")
_INSTR = struct.Struct("<IHHHBBI")
_U32 = struct.Struct("<I")

_CALLS = frozenset({TH10_INS_CALL, TH10_INS_CALL_ASYNC, TH10_INS_CALL_ASYNC_ID})
_MAX_OPCODE = {14: 1003}


@dataclass
class CompileOptions:
    """Settings that change how a script is compiled."""

    simple_create: bool = False
    encode_cp932: bool = False
    eclmap: Optional[EclMap] = None


def _xor(buf: bytearray, key: int, step: int, step2: int) -> None:
    for i in range(len(buf)):
        buf[i] ^= (key + i * step + (i * i + i) // 2 * step2) & 0xFF


def _text_bytes(text: object, encode_cp932: bool) -> bytes:
    if isinstance(text, (bytes, bytearray)):
        data = bytes(text)
    elif not isinstance(text, str):
        raise EclError(f"expected a string parameter, got {text!r}")
    elif encode_cp932:
        try:
            data = text.encode("cp932")
        except UnicodeEncodeError as exc:
            raise EclError(f"cannot encode {text!r} as Shift-JIS: {exc}") from None
    else:
        data = text.encode("utf-8", "surrogateescape")
    return data.split(b"\0", 1)[0]


def _padded_string(text: object, encode_cp932: bool) -> bytes:
    """Return the string bytes padded with at least one zero to a multiple of four."""
    data = _text_bytes(text, encode_cp932)
    return data.ljust(len(data) + 4 - len(data) % 4, b"\0")


def _value_bytes(param: Param) -> bytes:
    if param.value_type == "D" or isinstance(param.value, SubParam):
        if not isinstance(param.value, SubParam):
            raise EclError("'D' param without sub call data")
        return param.value.pack()
    return encode_value(param.value_type, param.value)


def instr_size(instr: Instr, encode_cp932: bool = False) -> int:
    """Return the compiled size of an instruction in bytes."""
    size = _INSTR.size
    for param in instr.params:
        if param.type in ("m", "x"):
            size += _U32.size + len(_padded_string(param.value, encode_cp932))
        elif param.type in ("o", "t"):
            size += _U32.size
        else:
            size += len(_value_bytes(param))
    return size


def _describe(ins_id: int, eclmap: Optional[EclMap]) -> str:
    name = eclmap.ins_names.get(ins_id) if eclmap is not None else None
    return f"{ins_id} ({name})" if name else str(ins_id)


def _check_arguments(instr: Instr, sub: Sub, version: int, options: CompileOptions) -> None:
    label = _describe(instr.id, options.eclmap)
    fmt = find_format(version, instr.id, options.eclmap)
    if fmt is None:
        logger.warning(
            "in sub %s: instruction with id %s is not known to exist in version %d",
            sub.name, label, version,
        )
        return
    rest = fmt
    for _ in instr.params:
        if not rest:
            logger.warning("in sub %s: too many arguments for opcode %s", sub.name, label)
            break
        if rest[0] != "*":
            rest = rest[1:]
    if rest and rest[0] != "*":
        logger.warning("in sub %s: too few arguments for opcode %s", sub.name, label)


def _find_sub_format(name: str, subs: Iterable[Sub]) -> Optional[str]:
    for candidate in subs:
        if not candidate.is_inline and candidate.name == name:
            return candidate.format
    return None


def _check_call(instr: Instr, sub: Sub, subs: List[Sub], no_warn: bool) -> None:
    if not instr.params:
        raise EclError(f"in sub {sub.name}: call without sub name")
    name = instr.params[0].value
    fmt = _find_sub_format(name, subs)
    if fmt is None:
        if not no_warn:
            logger.warning(
                'in sub %s: unknown sub call "%s" (use the #nowarn "true" '
                "directive to disable this warning)", sub.name, name,
            )
        return
    args = instr.params[2:] if instr.id == TH10_INS_CALL_ASYNC_ID else instr.params[1:]
    v = 0
    for param in args:
        if v >= len(fmt):
            logger.warning(
                'in sub %s: too many parameters when calling sub "%s"', sub.name, name
            )
            break
        arg = param.value
        if (
            fmt[v] != "?"
            and isinstance(arg, SubParam)
            and ((arg.to_type == "i" and fmt[v] == "f") or (arg.to_type == "f" and fmt[v] == "S"))
        ):
            logger.warning(
                'in sub %s: wrong type for parameter %d when calling sub "%s", expected type: %s',
                sub.name, v + 1, name, fmt[v],
            )
        v += 1
    if v < len(fmt):
        logger.warning(
            "in sub %s: not enough parameters when calling sub %s", sub.name, name
        )


def _is_stack_ref(param: Param, target: int) -> bool:
    """Return whether the parameter refers to the given negative stack slot."""
    value = param.value
    if param.type == "f":
        return isinstance(value, (int, float)) and value == float(target)
    if param.type == "S":
        return isinstance(value, int) and value == target
    if param.type == "D" and isinstance(value, SubParam):
        if value.from_type == "f":
            return value.float_value == float(target)
        if value.from_type == "i":
            return value.int_value == target
    return False


def _serialize(
    instr: Instr, sub: Sub, version: int, subs: List[Sub], no_warn: bool,
    options: CompileOptions,
) -> bytes:
    _check_arguments(instr, sub, version, options)
    if not options.simple_create and instr.id in _CALLS:
        _check_call(instr, sub, subs, no_warn)

    mask = 0
    stack_refs = 0
    payload = bytearray()
    for index, param in enumerate(instr.params):
        if param.stack:
            mask |= 1 << index
        if param.type == "o":
            if isinstance(param.value, str):
                relative = sub.label_offset(param.value) - instr.offset
            else:
                relative = int(param.value)
            payload += _U32.pack(relative & 0xFFFFFFFF)
        elif param.type == "t":
            if isinstance(param.value, str):
                time = sub.label_time(param.value)
            else:
                time = int(param.value)
            payload += _U32.pack(time & 0xFFFFFFFF)
        elif param.type in ("m", "x"):
            data = bytearray(_padded_string(param.value, options.encode_cp932))
            if param.type == "x":
                _xor(data, 0x77, 7, 16)
            payload += _U32.pack(len(data)) + data
        else:
            payload += _value_bytes(param)

        if param.stack and is_post_th13(version) and _is_stack_ref(param, -(stack_refs + 1)):
            stack_refs += 1

    size = _INSTR.size + len(payload)
    instr.size = size
    param_count = instr.param_count or len(instr.params)
    header = _INSTR.pack(
        instr.time & 0xFFFFFFFF,
        instr.id & 0xFFFF,
        size & 0xFFFF,
        mask & 0xFFFF,
        instr.rank & 0xFF,
        param_count & 0xFF,
        (stack_refs << 3) & 0xFFFFFFFF,
    )
    return header + bytes(payload)


def _cstring(text: str) -> bytes:
    return text.encode("utf-8", "surrogateescape") + b"\0"


def _pad(buf: bytearray) -> None:
    buf += bytes(-len(buf) % 4)


def compile_ecl(ecl: Ecl, out: BinaryIO, options: Optional[CompileOptions] = None) -> None:
    """Write the script as a compiled ECL file to a binary stream.

    Forward declarations and inline subs are left out. Every written sub
    gets its file ``offset`` and every instruction its ``size`` updated.
    """
    options = options or CompileOptions()
    buf = bytearray(_HEADER.size)

    include_offset = len(buf)
    buf += _LIST.pack(b"ANIM", len(ecl.anim_names))
    for name in ecl.anim_names:
        buf += _cstring(name)
    _pad(buf)
    buf += _LIST.pack(b"ECLI", len(ecl.ecli_names))
    for name in ecl.ecli_names:
        buf += _cstring(name)
    _pad(buf)
    include_length = len(buf) - include_offset

    subs = [s for s in ecl.subs if not s.forward_declaration and not s.is_inline]
    table_pos = len(buf)
    buf += bytes(_U32.size * len(subs))
    for sub in subs:
        buf += _cstring(sub.name)
    _pad(buf)

    max_opcode = _MAX_OPCODE.get(ecl.version, 0xFFFF)
    for sub in subs:
        sub.offset = len(buf)
        buf += _SUB.pack(b"ECLH", _SUB.size, bytes(8))
        for instr in sub.instrs:
            if instr.type is not InstrType.INSTR:
                continue
            if instr.id > max_opcode:
                logger.warning(
                    "warning: opcode: id %d was higher than the maximum %d",
                    instr.id, max_opcode,
                )
            buf += _serialize(instr, sub, ecl.version, ecl.subs, ecl.no_warn, options)

    _HEADER.pack_into(
        buf, 0, b"SCPT", 1, include_length & 0xFFFF, include_offset, 0, len(subs), bytes(16)
    )
    for index, sub in enumerate(subs):
        _U32.pack_into(buf, table_pos + index * _U32.size, sub.offset)

    out.write(bytes(buf))


def create_header(ecl: Ecl, out: TextIO) -> None:
    """Write declarations of the script's subs, suitable for including elsewhere."""
    for sub in ecl.subs:
        if sub.forward_declaration or sub.is_inline:
            continue
        arity = sub.arity if sub.arity is not None and sub.arity > 0 else 0
        if len(sub.vars) < arity:
            raise EclError(f"sub {sub.name} has fewer variables than its arity")
        params = []
        for var in sub.vars[:arity]:
            if var.type == "S":
                kind = "int"
            elif var.type == "f":
                kind = "float"
            else:
                kind = "var"
            params.append(f"{kind} {var.name}")
        out.write(f"\nvoid {sub.name}({', '.join(params)});\n")