# eclkit

eclkit is a library for compiled ECL enemy scripts in the th10 binary
format family (versions 10, 103, 11, 12, 125, 128, 13, 14, 143, 15, 16,
165, 17, 18, 185 and 19). It reads a compiled script into an in-memory
model of subs, instructions and parameters, derives sub arities from the
calls it finds, and writes the model back out as a compiled file or as
a header of sub declarations.

No third-party libraries are needed at run time.

```
pip install .
```

## Modules

- `eclkit.ecl`: the model. `Ecl` holds `anim_names`, `ecli_names` and
  `subs`; a `Sub` holds `instrs` and `labels`; an `Instr` is an
  instruction or a time, rank or label marker (`InstrType`); a `Param`
  carries a type code, a value and whether it refers to the stack.
  `SubParam` is the packed argument of a sub call. `encode_value` and
  `decode_value` convert single values to and from little-endian bytes.
  Failures raise `EclError`.
- `eclkit.th10`: `open_ecl(data, version, eclmap)` parses the bytes of a
  compiled file, `insert_labels(ecl)` adds label markers before jump
  targets, and `translate(ecl, raw_output)` fills in stack sizes and sub
  arities and adds forward declarations for subs that are called but not
  present.
- `eclkit.th10_compile`: `compile_ecl(ecl, out, options)` writes a
  compiled file to a binary stream; `create_header(ecl, out)` writes
  `void name(int a, float b);` declarations; `instr_size(instr,
  encode_cp932)` gives an instruction's compiled size. `CompileOptions`
  selects simple creation (no sub call checks), Shift-JIS string
  encoding and the map to use. Problems that do not stop compilation,
  such as wrong argument counts, are reported through `logging`.
- `eclkit.th10_formats`: `find_format(version, ins_id, eclmap)` returns
  the parameter format string of an instruction, taking a signature from
  the map first; `UnsupportedVersionError` is raised for versions outside
  the family.
- `eclkit.eclmap`: `EclMap` holds instruction and global variable names
  and signatures. `load(stream, filename)` reads a map file,
  `set_entry(section, key, value)` adds one entry, and `rebuild()`
  followed by `is_mnemonic(name)` answers whether a name is a known
  instruction.
- `eclkit.versions`: `is_post_th10`, `is_post_th13`,
  `is_numeric_difficulty_version` and `get_default_none_rank`.

## Example

```python
import io

from eclkit.eclmap import EclMap
from eclkit.th10 import open_ecl, translate
from eclkit.th10_compile import CompileOptions, compile_ecl, create_header

eclmap = EclMap()
with open("th13.eclm", encoding="utf-8") as f:
    eclmap.load(f, "th13.eclm")
eclmap.rebuild()

with open("st01.ecl", "rb") as f:
    ecl = open_ecl(f.read(), 13, eclmap)
translate(ecl)

for sub in ecl.subs:
    print(sub.name, sub.arity, len(sub.instrs))

out = io.BytesIO()
compile_ecl(ecl, out, CompileOptions(eclmap=eclmap))
```

## Map files

A map file holds `ID VALUE` lines grouped into sections introduced by
control lines; text after `#` is ignored and an `!eclmap` first line is
accepted:

```
!eclmap
!ins_names
83 setChapter
!gvar_names
-9985 I0
!gvar_types
-9985 $
```

The sections are `!ins_names`, `!ins_signatures`, `!gvar_names`,
`!gvar_types`, `!timeline_ins_names` and `!timeline_ins_signatures`
(entries before any control line go to `!ins_names`). Names must be
valid identifiers, may not be keywords and may not begin with `ins_`;
`!gvar_types` values must be `$` or `%`. Rejected entries are logged and
skipped; an unknown control line or a malformed line raises
`EclMapError`.

## What it does not do

- There is no command-line program; everything is used from Python.
- It does not turn a script into readable source text, and it has no
  tables for rebuilding expressions from stack instructions.
- It does not parse script source text; a model to compile must come
  from `open_ecl` or be built in Python.
- The older format family (versions 6 to 9 and 95) is not supported.