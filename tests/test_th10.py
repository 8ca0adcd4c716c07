import logging
import struct

import pytest

from eclkit.ecl import EclError, InstrType, SubParam
from eclkit.eclmap import EclMap, Section
from eclkit.th10 import insert_labels, open_ecl, translate

HEADER_SIZE = 36
SUB_HEADER_SIZE = 16
INSTR_HEADER_SIZE = 16


def ins(ins_id, params=b"", time=0, rank=0xFF, mask=0, count=0):
    return struct.pack(
        "<IHHHBBI", time, ins_id, INSTR_HEADER_SIZE + len(params), mask, rank, count, 0
    ) + params


def s32(v):
    return struct.pack("<i", v)


def f32(v):
    return struct.pack("<f", v)


def mstr(text):
    raw = text.encode()
    padded = len(raw) + (4 - len(raw) % 4)
    return struct.pack("<I", padded) + raw.ljust(padded, b"\0")


def dparam(frm, to, value):
    return SubParam.from_value(frm, to, value).pack()


def _pad(buf):
    while len(buf) % 4:
        buf.append(0)


def build(subs, anims=(), eclis=(), magic=b"SCPT", anim_magic=b"ANIM"):
    body = bytearray(HEADER_SIZE)
    body += anim_magic + struct.pack("<I", len(anims))
    for a in anims:
        body += a.encode() + b"\0"
    _pad(body)
    body += b"ECLI" + struct.pack("<I", len(eclis))
    for e in eclis:
        body += e.encode() + b"\0"
    _pad(body)
    offsets_pos = len(body)
    body += bytes(4 * len(subs))
    for name, _ in subs:
        body += name.encode() + b"\0"
    _pad(body)
    offsets = []
    for _, instrs in subs:
        offsets.append(len(body))
        body += b"ECLH" + struct.pack("<III", SUB_HEADER_SIZE, 0, 0) + b"".join(instrs)
    struct.pack_into("<%dI" % len(subs), body, offsets_pos, *offsets)
    struct.pack_into(
        "<4sHHIII16s", body, 0, magic, 1, 0, HEADER_SIZE, 0, len(subs), bytes(16)
    )
    return bytes(body), offsets


def test_reads_names_and_sub_offsets():
    data, offsets = build(
        [("Main", [ins(10)]), ("Other", [ins(10)])], anims=("a.anm",), eclis=("b.ecl",)
    )
    ecl = open_ecl(data, 10)
    assert ecl.anim_names == ["a.anm"]
    assert ecl.ecli_names == ["b.ecl"]
    assert [s.name for s in ecl.subs] == ["Main", "Other"]
    assert [s.offset for s in ecl.subs] == offsets
    assert all(s.arity is None for s in ecl.subs)


def test_simple_instruction_params():
    data, offsets = build([("Main", [ins(43, s32(5), mask=1, count=1), ins(44, f32(1.5), count=1)])])
    sub = open_ecl(data, 10).subs[0]
    first, second = sub.instrs
    assert first.id == 43
    assert first.offset == SUB_HEADER_SIZE
    assert first.address == offsets[0] + SUB_HEADER_SIZE
    assert [(p.type, p.value, p.stack) for p in first.params] == [("S", 5, True)]
    assert [(p.type, p.value, p.stack) for p in second.params] == [("f", 1.5, False)]


def test_time_and_rank_markers():
    data, _ = build([("Main", [ins(10), ins(10, time=5, rank=0xF1)])])
    instrs = open_ecl(data, 10).subs[0].instrs
    assert [i.type for i in instrs] == [
        InstrType.INSTR, InstrType.TIME, InstrType.RANK, InstrType.INSTR
    ]
    assert instrs[1].time == 5
    assert instrs[2].rank == 0xF1
    assert instrs[1].offset == instrs[3].offset


def test_backward_jump_gets_label():
    jump = ins(12, s32(-INSTR_HEADER_SIZE) + s32(0), count=2)
    data, _ = build([("Main", [ins(10), jump])])
    instrs = open_ecl(data, 10).subs[0].instrs
    assert instrs[0].type is InstrType.LABEL
    assert instrs[0].offset == SUB_HEADER_SIZE
    assert instrs[2].params[0].type == "o"
    assert instrs[2].params[0].value_type == "S"


def test_forward_jump_label_precedes_time_marker():
    jump_size = INSTR_HEADER_SIZE + 8
    jump = ins(12, s32(jump_size) + s32(5), count=2)
    data, _ = build([("Main", [jump, ins(10, time=5)])])
    instrs = open_ecl(data, 10).subs[0].instrs
    assert [i.type for i in instrs] == [
        InstrType.INSTR, InstrType.LABEL, InstrType.TIME, InstrType.INSTR
    ]
    assert instrs[1].offset == instrs[3].offset


def test_insert_labels_is_idempotent():
    jump = ins(12, s32(-INSTR_HEADER_SIZE) + s32(0), count=2)
    jump2 = ins(12, s32(-INSTR_HEADER_SIZE - 24) + s32(0), count=2)
    data, _ = build([("Main", [ins(10), jump, jump2])])
    ecl = open_ecl(data, 10)
    labels = [i for i in ecl.subs[0].instrs if i.type is InstrType.LABEL]
    assert len(labels) == 1
    insert_labels(ecl)
    assert sum(i.type is InstrType.LABEL for i in ecl.subs[0].instrs) == 1


def test_call_params_decoded():
    call = ins(11, mstr("Foo") + dparam("i", "i", 1) + dparam("f", "f", 2.0), count=3)
    data, _ = build([("Main", [call])])
    params = open_ecl(data, 10).subs[0].instrs[0].params
    assert params[0].value == "Foo"
    assert params[0].value_type == "z"
    assert params[1].value == SubParam.from_value("i", "i", 1)
    assert params[2].value.float_value == 2.0


def test_eclmap_signature_overrides_tables():
    emap = EclMap()
    emap.set_entry(Section.INS_SIGNATURES, 500, "ff")
    data, _ = build([("Main", [ins(500, f32(1.5) + f32(2.5), count=2)])])
    params = open_ecl(data, 10, emap).subs[0].instrs[0].params
    assert [(p.type, p.value) for p in params] == [("f", 1.5), ("f", 2.5)]


def test_unknown_instruction_dumped_as_ints():
    data, _ = build([("Main", [ins(500, s32(7) + s32(9), count=2)])])
    params = open_ecl(data, 10).subs[0].instrs[0].params
    assert [(p.type, p.value) for p in params] == [("S", 7), ("S", 9)]


def test_missing_params_warns(caplog):
    data, _ = build([("Main", [ins(43)])])
    with caplog.at_level(logging.WARNING):
        ecl = open_ecl(data, 10)
    assert ecl.subs[0].instrs[0].params == []
    assert "recompiling will fail" in caplog.text


def test_extra_data_raises():
    data, _ = build([("Main", [ins(10, s32(1))])])
    with pytest.raises(EclError):
        open_ecl(data, 10)


def test_bad_scpt_magic():
    data, _ = build([("Main", [ins(10)])], magic=b"XXXX")
    with pytest.raises(EclError, match="SCPT"):
        open_ecl(data, 10)


def test_bad_anim_magic():
    data, _ = build([("Main", [ins(10)])], anim_magic=b"XXXX")
    with pytest.raises(EclError, match="ANIM"):
        open_ecl(data, 10)


def test_truncated_header():
    with pytest.raises(EclError):
        open_ecl(b"SCPT", 10)


def _call_file(*calls, extra=()):
    return build([("Main", list(calls)), *extra])[0]


def test_translate_sets_arity_and_stack():
    call = ins(11, mstr("Foo") + dparam("i", "i", 1) + dparam("f", "f", 2.0), count=3)
    data = _call_file(ins(40, s32(8), count=1), call, extra=[("Foo", [ins(10)])])
    ecl = open_ecl(data, 10)
    translate(ecl)
    assert ecl.subs[0].stack == 8
    assert ecl.find_sub("Foo").arity == 2
    assert not ecl.find_sub("Foo").forward_declaration


def test_translate_creates_forward_declaration():
    call = ins(15, mstr("Bar") + dparam("i", "i", 1), count=2)
    ecl = open_ecl(_call_file(call), 10)
    translate(ecl)
    assert ecl.subs[0].name == "Bar"
    assert ecl.subs[0].forward_declaration
    assert ecl.subs[0].arity == 1
    assert ecl.sub_count == 1


def test_translate_async_id_skips_slot():
    call = ins(16, mstr("Foo") + s32(0) + dparam("i", "i", 1), count=3)
    ecl = open_ecl(_call_file(call, extra=[("Foo", [ins(10)])]), 10)
    translate(ecl)
    assert ecl.find_sub("Foo").arity == 1


def test_translate_arity_mismatch_keeps_first(caplog):
    first = ins(11, mstr("Foo") + dparam("i", "i", 1), count=2)
    second = ins(11, mstr("Foo"), count=1)
    ecl = open_ecl(_call_file(first, second, extra=[("Foo", [ins(10)])]), 10)
    with caplog.at_level(logging.WARNING):
        translate(ecl)
    assert ecl.find_sub("Foo").arity == 1
    assert "arity mismatch" in caplog.text


def test_translate_raw_output_changes_nothing():
    call = ins(11, mstr("Bar"), count=1)
    ecl = open_ecl(_call_file(ins(40, s32(8), count=1), call), 10)
    translate(ecl, raw_output=True)
    assert [s.name for s in ecl.subs] == ["Main"]
    assert ecl.subs[0].stack == 0