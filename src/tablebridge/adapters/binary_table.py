import asyncio
import base64
import os
import struct
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from tablebridge.adapters.base import read_tables, write_tables
from tablebridge.adapters.cipher import scramble
from tablebridge.canonical.column import ColumnDefinition, SemanticType
from tablebridge.canonical.schema import TableSchema
from tablebridge.canonical.table import Row, TableEntry
from tablebridge.io.atomic import DEFAULT_CHUNK_SIZE
from tablebridge.pipeline.schema_validator import validate
from tablebridge.utils.exceptions import FormatError, SchemaError, ValidationError

SIGNATURE = b"SHTB"
FORMAT_VERSION = 1
FLAG_SCRAMBLED = 0x0001

# signature, version, flags, header_tag, column_count, row_count, row_stride, pool_size
HEADER = struct.Struct("<4sHHIIIII")
# name, type_code, width
DESCRIPTOR = struct.Struct("<48sII")
NAME_FIELD_WIDTH = 48

# Format-fixed; recorded in metadata on read, never inferred
ENCODING = "cp949"
ENDIANNESS = "little"

BINARY_METADATA_KEYS = (
    "encoding",           # string encoding of names and string cells
    "endianness",         # always "little"
    "version",            # header version
    "header_flags",       # raw header flags word
    "header_tag",         # opaque u32 carried through unchanged
    "scrambled",          # payload passes through the rolling XOR cipher
    "string_pool",        # {"size", "entries": [[offset, text]], "offsets": [...]}
    "raw_column_names",   # column name -> base64 of the original 48-byte name field
)

# type code -> (semantic type, struct format)
NUMERIC_CODES: Dict[int, Tuple[SemanticType, str]] = {
    1: (SemanticType.UINT, "B"),
    12: (SemanticType.UINT, "B"),
    16: (SemanticType.UINT, "B"),
    2: (SemanticType.UINT, "H"),
    3: (SemanticType.UINT, "I"),
    11: (SemanticType.UINT, "I"),
    18: (SemanticType.UINT, "I"),
    27: (SemanticType.UINT, "I"),
    29: (SemanticType.UINT, "Q"),
    20: (SemanticType.INT, "b"),
    13: (SemanticType.INT, "h"),
    21: (SemanticType.INT, "h"),
    22: (SemanticType.INT, "i"),
    30: (SemanticType.INT, "q"),
    5: (SemanticType.FLOAT, "f"),
    6: (SemanticType.FLOAT, "d"),
}
INLINE_STRING_CODES = {9, 10, 24}
POOLED_STRING_CODE = 26
INLINE_BYTES_CODE = 31
POOL_OFFSET = struct.Struct("<I")

# Codes used for columns that carry no binary type code of their own
DEFAULT_CODES: Dict[Tuple[SemanticType, int], int] = {
    (SemanticType.UINT, 1): 1,
    (SemanticType.UINT, 2): 2,
    (SemanticType.UINT, 4): 3,
    (SemanticType.UINT, 8): 29,
    (SemanticType.INT, 1): 20,
    (SemanticType.INT, 2): 13,
    (SemanticType.INT, 4): 22,
    (SemanticType.INT, 8): 30,
    (SemanticType.FLOAT, 4): 5,
    (SemanticType.FLOAT, 8): 6,
}


@dataclass(frozen=True)
class _FieldLayout:
    """
    How one column is laid out inside a row.
    """
    code: int
    width: int            # bytes on disk
    kind: str             # numeric | inline_string | inline_bytes | pooled_string
    fmt: Optional[str] = None


def _layout_for_code(code: int, width: int) -> _FieldLayout:
    if code in NUMERIC_CODES:
        fmt = NUMERIC_CODES[code][1]
        return _FieldLayout(code, struct.calcsize("<" + fmt), "numeric", fmt)
    if code in INLINE_STRING_CODES:
        return _FieldLayout(code, width, "inline_string")
    if code == INLINE_BYTES_CODE:
        return _FieldLayout(code, width, "inline_bytes")
    if code == POOLED_STRING_CODE:
        return _FieldLayout(code, POOL_OFFSET.size, "pooled_string")
    raise KeyError(code)


class BinaryTableProvider:
    """
    Reads and writes the fixed-layout binary table format (.shn).

    Layout: header, one descriptor per column, fixed-stride row region,
    trailing pool of NUL-terminated strings addressed by offset. Everything
    after the header may be scrambled with the rolling XOR cipher.

    Responsibilities:
    - Parse native bytes into one TableEntry
    - Record every fact the writer needs to reproduce the file exactly
    - Re-emit bytes from a TableEntry, reusing the recorded pool layout
    DOES NOT:
    - Touch the file system outside read()/write()
    - Keep state between calls
    """

    format_id = "shn"
    supported_extensions = (".shn",)

    # ==================================================
    # ASYNC ENTRYPOINTS
    # ==================================================

    async def read(self, path: str, cancel: Optional[asyncio.Event] = None) -> List[TableEntry]:
        return await read_tables(self, path, cancel)

    async def write(
        self,
        path: str,
        tables: Sequence[TableEntry],
        cancel: Optional[asyncio.Event] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        await write_tables(self, path, tables, cancel=cancel, chunk_size=chunk_size)

    # ==================================================
    # DECODE
    # ==================================================

    def decode(self, data: bytes, source_name: str) -> List[TableEntry]:
        if len(data) < len(SIGNATURE) or data[:len(SIGNATURE)] != SIGNATURE:
            raise FormatError(f"{source_name}: missing binary table signature {SIGNATURE!r}")
        if len(data) < HEADER.size:
            raise SchemaError(f"{source_name}: truncated header ({len(data)} bytes)")

        (_, version, flags, header_tag, column_count,
         row_count, row_stride, pool_size) = HEADER.unpack_from(data, 0)

        if version != FORMAT_VERSION:
            raise FormatError(f"{source_name}: unsupported binary table version {version}")

        scrambled = bool(flags & FLAG_SCRAMBLED)
        payload = data[HEADER.size:]
        if scrambled:
            payload = scramble(payload)

        descriptors_size = column_count * DESCRIPTOR.size
        rows_size = row_count * row_stride
        expected = descriptors_size + rows_size + pool_size
        if len(payload) != expected:
            raise SchemaError(
                f"{source_name}: payload is {len(payload)} bytes, header implies {expected}"
            )

        columns, layouts, raw_names = self._read_descriptors(payload, column_count, source_name)

        computed_stride = sum(layout.width for layout in layouts)
        if computed_stride != row_stride:
            raise SchemaError(
                f"{source_name}: column widths sum to {computed_stride}, "
                f"row stride is {row_stride}"
            )

        pool = payload[descriptors_size + rows_size:]
        entries = self._parse_pool(pool, source_name)

        rows, offsets = self._read_rows(
            payload[descriptors_size:descriptors_size + rows_size],
            layouts,
            row_count,
            row_stride,
            {offset: text for offset, text in entries},
            source_name,
        )

        metadata = {
            "encoding": ENCODING,
            "endianness": ENDIANNESS,
            "version": version,
            "header_flags": flags,
            "header_tag": header_tag,
            "scrambled": scrambled,
        }
        if pool_size or any(layout.kind == "pooled_string" for layout in layouts):
            metadata["string_pool"] = {
                "size": pool_size,
                "entries": [[offset, text] for offset, text in entries],
                "offsets": offsets,
            }
        if raw_names:
            metadata["raw_column_names"] = raw_names

        name = os.path.splitext(os.path.basename(source_name))[0]
        schema = TableSchema(source_format=self.format_id, columns=columns, metadata=metadata)
        return [TableEntry(name=name, schema=schema, rows=rows)]

    def _read_descriptors(self, payload: bytes, count: int, source_name: str):
        columns: List[ColumnDefinition] = []
        layouts: List[_FieldLayout] = []
        raw_names: Dict[str, str] = {}
        seen = set()
        undefined_count = 0

        for i in range(count):
            raw_name, code, width = DESCRIPTOR.unpack_from(payload, i * DESCRIPTOR.size)

            try:
                layout = _layout_for_code(code, width)
            except KeyError:
                raise SchemaError(f"{source_name}: unknown type code {code} for column {i}") from None

            if layout.width != width:
                raise SchemaError(
                    f"{source_name}: column {i} (type code {code}) declares width {width}, "
                    f"expected {layout.width}"
                )

            name_bytes = raw_name.split(b"\0", 1)[0]
            name = name_bytes.decode(ENCODING, "surrogateescape")

            if len(name.strip()) < 2:
                name = f"Undefined{undefined_count}"
                undefined_count += 1

            if name in seen:
                raise SchemaError(f"{source_name}: duplicate column name '{name}'")
            seen.add(name)

            if raw_name != name.encode(ENCODING, "surrogateescape").ljust(NAME_FIELD_WIDTH, b"\0"):
                raw_names[name] = base64.b64encode(raw_name).decode("ascii")

            if layout.kind == "numeric":
                semantic = NUMERIC_CODES[code][0]
                column_width: Optional[int] = layout.width
            elif layout.kind == "inline_bytes":
                semantic = SemanticType.BYTES
                column_width = width
            elif layout.kind == "inline_string":
                semantic = SemanticType.STRING
                column_width = width
            else:
                semantic = SemanticType.STRING
                column_width = None

            columns.append(
                ColumnDefinition(
                    name=name,
                    type=semantic,
                    native_type_code=code,
                    width=column_width,
                    nullable=False,
                )
            )
            layouts.append(layout)

        return columns, layouts, raw_names

    def _parse_pool(self, pool: bytes, source_name: str) -> List[Tuple[int, str]]:
        entries: List[Tuple[int, str]] = []
        if not pool:
            return entries

        if not pool.endswith(b"\0"):
            raise SchemaError(f"{source_name}: string pool is not NUL-terminated")

        pos = 0
        while pos < len(pool):
            end = pool.index(b"\0", pos)
            entries.append((pos, pool[pos:end].decode(ENCODING, "surrogateescape")))
            pos = end + 1
        return entries

    def _read_rows(
        self,
        region: bytes,
        layouts: List[_FieldLayout],
        row_count: int,
        row_stride: int,
        pool_index: Dict[int, str],
        source_name: str,
    ) -> Tuple[List[Row], List[int]]:
        rows: List[Row] = []
        offsets: List[int] = []

        for r in range(row_count):
            pos = r * row_stride
            row: Row = []
            for layout in layouts:
                if layout.kind == "numeric":
                    value = struct.unpack_from("<" + layout.fmt, region, pos)[0]
                elif layout.kind == "inline_string":
                    raw = region[pos:pos + layout.width]
                    value = raw.split(b"\0", 1)[0].decode(ENCODING, "surrogateescape")
                elif layout.kind == "inline_bytes":
                    value = bytes(region[pos:pos + layout.width])
                else:
                    offset = POOL_OFFSET.unpack_from(region, pos)[0]
                    if offset not in pool_index:
                        raise SchemaError(
                            f"{source_name}: row {r} references string pool offset {offset}, "
                            "which does not start a pool entry"
                        )
                    value = pool_index[offset]
                    offsets.append(offset)
                row.append(value)
                pos += layout.width
            rows.append(row)

        return rows, offsets

    # ==================================================
    # ENCODE
    # ==================================================

    def encode(self, tables: Sequence[TableEntry]) -> bytes:
        if len(tables) != 1:
            raise ValidationError(
                f"A binary table file holds exactly one table, got {len(tables)}"
            )
        entry = tables[0]
        schema = entry.schema
        metadata = schema.metadata

        validate(schema, entry.rows)
        self._validate_native(entry)

        layouts = [self._layout_for_column(c) for c in schema.columns]
        row_stride = sum(layout.width for layout in layouts)

        pooled = [
            row[idx]
            for row in entry.rows
            for idx, layout in enumerate(layouts)
            if layout.kind == "pooled_string"
        ]
        pool, offsets = self._build_pool(pooled, metadata.get("string_pool"))

        flags = int(metadata.get("header_flags", 0)) & ~FLAG_SCRAMBLED
        scrambled = bool(metadata.get("scrambled", False))
        if scrambled:
            flags |= FLAG_SCRAMBLED

        header = HEADER.pack(
            SIGNATURE,
            FORMAT_VERSION,
            flags,
            int(metadata.get("header_tag", 0)),
            len(schema.columns),
            len(entry.rows),
            row_stride,
            len(pool),
        )

        payload = bytearray()
        raw_names = metadata.get("raw_column_names", {})
        for column, layout in zip(schema.columns, layouts):
            payload += DESCRIPTOR.pack(
                self._name_field(column.name, raw_names), layout.code, layout.width
            )

        offset_iter = iter(offsets)
        for row in entry.rows:
            for value, layout in zip(row, layouts):
                payload += self._pack_field(value, layout, offset_iter)

        payload += pool

        if scrambled:
            payload = scramble(bytes(payload))

        return header + bytes(payload)

    def _validate_native(self, entry: TableEntry):
        metadata = entry.schema.metadata
        if metadata.get("endianness", ENDIANNESS) != ENDIANNESS:
            raise ValidationError(
                f"Binary tables are {ENDIANNESS}-endian, metadata says {metadata['endianness']!r}"
            )
        if metadata.get("encoding", ENCODING).lower() != ENCODING:
            raise ValidationError(
                f"Binary tables use {ENCODING}, metadata says {metadata['encoding']!r}"
            )
        for idx, column in enumerate(entry.schema.columns):
            if column.nullable and any(row[idx] is None for row in entry.rows):
                raise ValidationError(
                    f"Column '{column.name}' holds nulls; the binary format has no null representation"
                )

    def _layout_for_column(self, column: ColumnDefinition) -> _FieldLayout:
        code = column.native_type_code

        if isinstance(code, int) and not isinstance(code, bool):
            try:
                layout = _layout_for_code(code, column.width or 0)
            except KeyError:
                raise ValidationError(
                    f"Column '{column.name}' has unknown binary type code {code}"
                ) from None
            self._check_code_matches(column, layout)
            return layout

        # Column from another format: pick the canonical code
        if column.type == SemanticType.STRING:
            if column.width is None:
                return _layout_for_code(POOLED_STRING_CODE, 0)
            return _layout_for_code(min(INLINE_STRING_CODES), column.width)

        if column.type == SemanticType.BYTES:
            if column.width is None:
                raise ValidationError(
                    f"Bytes column '{column.name}' needs a fixed width in the binary format"
                )
            return _layout_for_code(INLINE_BYTES_CODE, column.width)

        width = column.width if column.width is not None else (
            8 if column.type == SemanticType.FLOAT else 4
        )
        default = DEFAULT_CODES.get((column.type, width))
        if default is None:
            raise ValidationError(
                f"Column '{column.name}': no binary type code for {column.type.value} of width {width}"
            )
        return _layout_for_code(default, width)

    def _check_code_matches(self, column: ColumnDefinition, layout: _FieldLayout):
        if layout.kind == "numeric":
            expected = NUMERIC_CODES[layout.code][0]
            if column.type != expected:
                raise ValidationError(
                    f"Column '{column.name}' is {column.type.value}, "
                    f"type code {layout.code} encodes {expected.value}"
                )
            if column.width is not None and column.width != layout.width:
                raise ValidationError(
                    f"Column '{column.name}' declares width {column.width}, "
                    f"type code {layout.code} is {layout.width} bytes"
                )
            return

        if layout.kind == "pooled_string":
            if column.type != SemanticType.STRING or column.width is not None:
                raise ValidationError(
                    f"Column '{column.name}' with type code {layout.code} must be a "
                    "variable-length string"
                )
            return

        expected = SemanticType.BYTES if layout.kind == "inline_bytes" else SemanticType.STRING
        if column.type != expected or column.width is None:
            raise ValidationError(
                f"Column '{column.name}' with type code {layout.code} must be a "
                f"fixed-width {expected.value}"
            )

    def _name_field(self, name: str, raw_names: Dict[str, str]) -> bytes:
        if name in raw_names:
            raw = base64.b64decode(raw_names[name])
            if len(raw) == NAME_FIELD_WIDTH:
                return raw

        encoded = name.encode(ENCODING, "surrogateescape")
        if len(encoded) > NAME_FIELD_WIDTH:
            raise ValidationError(
                f"Column name '{name}' is {len(encoded)} bytes, limit is {NAME_FIELD_WIDTH}"
            )
        return encoded.ljust(NAME_FIELD_WIDTH, b"\0")

    def _pack_field(self, value, layout: _FieldLayout, offsets) -> bytes:
        if layout.kind == "numeric":
            if layout.fmt in ("f", "d"):
                value = float(value)
            return struct.pack("<" + layout.fmt, value)

        if layout.kind == "inline_string":
            return value.encode(ENCODING, "surrogateescape").ljust(layout.width, b"\0")

        if layout.kind == "inline_bytes":
            return bytes(value).ljust(layout.width, b"\0")

        return POOL_OFFSET.pack(next(offsets))

    def _build_pool(self, values: List[str], recorded: Optional[Dict]) -> Tuple[bytes, List[int]]:
        """
        Reuse the recorded pool while every string is already in it, unused
        entries included, otherwise rebuild it in first-seen order.
        """
        if recorded:
            entries = [(int(offset), text) for offset, text in recorded.get("entries", [])]
            if set(values) <= {text for _, text in entries}:
                reused = self._reuse_pool(values, entries, recorded)
                if reused is not None:
                    return reused

        pool = bytearray()
        first_offset: Dict[str, int] = {}
        for value in values:
            if value not in first_offset:
                first_offset[value] = len(pool)
                pool += value.encode(ENCODING, "surrogateescape") + b"\0"
        return bytes(pool), [first_offset[v] for v in values]

    def _reuse_pool(self, values: List[str], entries: List[Tuple[int, str]], recorded: Dict):
        size = int(recorded.get("size", 0))
        pool = bytearray(size)
        by_offset: Dict[int, str] = {}
        first_offset: Dict[str, int] = {}

        for offset, text in entries:
            encoded = text.encode(ENCODING, "surrogateescape") + b"\0"
            if offset < 0 or offset + len(encoded) > size:
                # Recorded layout does not fit its own size; fall back to a rebuild
                return None
            pool[offset:offset + len(encoded)] = encoded
            by_offset[offset] = text
            first_offset.setdefault(text, offset)

        recorded_offsets = recorded.get("offsets", [])
        offsets: List[int] = []
        for i, value in enumerate(values):
            offset = recorded_offsets[i] if i < len(recorded_offsets) else None
            if offset is None or by_offset.get(offset) != value:
                offset = first_offset[value]
            offsets.append(offset)

        return bytes(pool), offsets
