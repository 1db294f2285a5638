import asyncio
import re
from typing import Dict, List, Optional, Sequence, Tuple

from tablebridge.adapters.base import read_tables, write_tables
from tablebridge.canonical.column import ColumnDefinition, SemanticType
from tablebridge.canonical.schema import TableSchema
from tablebridge.canonical.table import CellValue, Row, TableEntry
from tablebridge.io.atomic import DEFAULT_CHUNK_SIZE
from tablebridge.observability.logger import log_event
from tablebridge.pipeline.schema_validator import validate
from tablebridge.utils.exceptions import SchemaError, ValidationError

ENCODING = "cp949"
DEFAULT_LINE_ENDING = "\r\n"
DELIMITER = "\t"
COMMENT_PREFIX = ";"
NULL_TOKEN = "\\N"

TABLE_MARKER = "#table"
COLUMN_TYPE_MARKER = "#columntype"
COLUMN_NAME_MARKER = "#columnname"
RECORD_MARKER = "#record"
END_MARKER = "#end"

STRUCTURAL_MARKERS = {TABLE_MARKER, COLUMN_TYPE_MARKER, COLUMN_NAME_MARKER, RECORD_MARKER, END_MARKER}

TEXT_METADATA_KEYS = (
    "encoding",           # file encoding
    "line_ending",        # "\r\n" | "\n"
    "final_newline",      # file ends with a line ending
    "section_index",      # position of the table's section in the file
    "has_column_types",   # section carries a #columntype line
    "preserved_lines",    # [[index relative to the #table line, text]]: comments, blanks, directives
    "trailing_lines",     # comments and blanks after the section's last structural line
    "literal_tokens",     # [[row, column, token]] spelled differently from the canonical form
    "preamble",           # lines before the first #table (first table only)
    "trailer",            # #end and everything after it (last table only)
    "text_normalized",    # output may differ from the source in whitespace / line endings
)

# type token -> (semantic type, width)
TYPE_TOKENS: Dict[str, Tuple[SemanticType, Optional[int]]] = {
    "BYTE": (SemanticType.UINT, 1),
    "WORD": (SemanticType.UINT, 2),
    "DWRD": (SemanticType.UINT, 4),
    "DWORD": (SemanticType.UINT, 4),
    "QWRD": (SemanticType.UINT, 8),
    "SBYTE": (SemanticType.INT, 1),
    "SHORT": (SemanticType.INT, 2),
    "INT": (SemanticType.INT, 4),
    "LONG": (SemanticType.INT, 8),
    "FLOAT": (SemanticType.FLOAT, 4),
    "DOUBLE": (SemanticType.FLOAT, 8),
    "INDEX": (SemanticType.STRING, 32),
    "STRING": (SemanticType.STRING, None),
}
SIZED_STRING_TOKEN = re.compile(r"^STRING\[(\d+)\]$", re.IGNORECASE)

CANONICAL_TOKENS: Dict[Tuple[SemanticType, Optional[int]], str] = {
    (SemanticType.UINT, 1): "BYTE",
    (SemanticType.UINT, 2): "WORD",
    (SemanticType.UINT, 4): "DWRD",
    (SemanticType.UINT, 8): "QWRD",
    (SemanticType.INT, 1): "SBYTE",
    (SemanticType.INT, 2): "SHORT",
    (SemanticType.INT, 4): "INT",
    (SemanticType.INT, 8): "LONG",
    (SemanticType.FLOAT, 4): "FLOAT",
    (SemanticType.FLOAT, 8): "DOUBLE",
    (SemanticType.STRING, None): "STRING",
}

_ESCAPES = {"\\": "\\\\", "\t": "\\t", "\n": "\\n", "\r": "\\r"}
_UNESCAPES = {"\\": "\\", "t": "\t", "n": "\n", "r": "\r"}


# ------------------------------------------------------------------
# Field escaping
# ------------------------------------------------------------------
def escape_field(value: str) -> str:
    return "".join(_ESCAPES.get(ch, ch) for ch in value)


def unescape_field(token: str) -> str:
    out = []
    i = 0
    while i < len(token):
        ch = token[i]
        if ch == "\\" and i + 1 < len(token) and token[i + 1] in _UNESCAPES:
            out.append(_UNESCAPES[token[i + 1]])
            i += 2
            continue
        # Unknown escapes stay literal
        out.append(ch)
        i += 1
    return "".join(out)


def parse_type_token(token: str) -> Tuple[SemanticType, Optional[int]]:
    sized = SIZED_STRING_TOKEN.match(token.strip())
    if sized:
        return SemanticType.STRING, int(sized.group(1))
    key = token.strip().upper()
    if key not in TYPE_TOKENS:
        raise KeyError(token)
    return TYPE_TOKENS[key]


def _split_lines(text: str) -> Tuple[List[str], str, bool, bool]:
    """
    Returns (lines, line_ending, final_newline, mixed_endings).
    """
    crlf = text.count("\r\n")
    lf = text.count("\n") - crlf
    line_ending = "\r\n" if crlf > lf else ("\n" if lf else DEFAULT_LINE_ENDING)
    mixed = bool(crlf and lf)

    normalized = text.replace("\r\n", "\n")
    lines = normalized.split("\n")
    final_newline = normalized.endswith("\n")
    if final_newline:
        lines.pop()
    if lines == [""] and not final_newline:
        lines = []
    return lines, line_ending, final_newline, mixed


class _Section:
    """
    Parse state of one #table section.
    """

    def __init__(self, name: str, start: int, index: int, normalized: bool):
        self.name = name
        self.start = start
        self.index = index
        self.normalized = normalized
        self.type_tokens: Optional[List[str]] = None
        self.names: Optional[List[str]] = None
        self.semantics: List[Tuple[SemanticType, Optional[int]]] = []
        self.rows: List[Row] = []
        self.preserved: List[List] = []
        self.literals: List[List] = []
        # index of the last #table/#columntype/#columnname/#record line
        self.last = 0

    def where(self, line_no: int) -> str:
        return f"table '{self.name}', line {line_no + 1}"


class TextTableProvider:
    """
    Reads and writes the multi-table text format (.txt).

    A file is a sequence of sections:
        #table<TAB>Name
        #columntype<TAB>BYTE<TAB>STRING[32]     (optional)
        #columnname<TAB>ID<TAB>Label
        #record<TAB>1<TAB>Sword
    Comment lines (';'), blank lines and other '#' directives are kept
    with their position so the file is re-emitted verbatim.
    """

    format_id = "shinetable"
    supported_extensions = (".txt",)

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
        text = data.decode(ENCODING, "surrogateescape")
        lines, line_ending, final_newline, mixed = _split_lines(text)

        preamble: List[str] = []
        trailer: List[str] = []
        sections: List[_Section] = []
        current: Optional[_Section] = None

        for i, line in enumerate(lines):
            keyword, fields = self._classify(line)

            if keyword == END_MARKER:
                trailer = lines[i:]
                break

            if keyword == TABLE_MARKER:
                name = unescape_field(fields[0]) if fields else ""
                if not name:
                    raise SchemaError(f"{source_name}: #table without a name at line {i + 1}")
                canonical = TABLE_MARKER + DELIMITER + escape_field(name)
                current = _Section(name, i, len(sections), normalized=(line != canonical))
                sections.append(current)
                continue

            if keyword is None:
                if current is None:
                    preamble.append(line)
                else:
                    current.preserved.append([i - current.start, line])
                continue

            if current is None:
                raise SchemaError(
                    f"{source_name}: {keyword} before the first #table at line {i + 1}"
                )

            if keyword == COLUMN_TYPE_MARKER:
                self._parse_types(current, line, fields, i, source_name)
            elif keyword == COLUMN_NAME_MARKER:
                self._parse_names(current, line, fields, i, source_name)
            else:
                self._parse_record(current, line, fields, i, source_name)
            current.last = i - current.start

        names = [s.name for s in sections]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise SchemaError(f"{source_name}: duplicate table names {duplicates}")

        if not sections:
            if preamble:
                # Nothing could carry these lines back out on write
                raise SchemaError(
                    f"{source_name}: no #table section; {len(preamble)} lines of other content"
                )
            log_event("READ_WARNING", {"path": source_name, "message": "No tables found"})

        entries = []
        for section in sections:
            entries.append(
                self._build_entry(section, line_ending, final_newline, mixed, source_name)
            )

        if entries:
            if preamble:
                entries[0].schema.metadata["preamble"] = preamble
            if trailer:
                entries[-1].schema.metadata["trailer"] = trailer
        return entries

    def _classify(self, line: str) -> Tuple[Optional[str], List[str]]:
        """
        Returns (structural keyword or None, fields after the keyword).
        """
        stripped = line.strip()
        if not stripped or stripped.startswith(COMMENT_PREFIX) or not stripped.startswith("#"):
            return None, []

        head, sep, rest = line.partition(DELIMITER)
        keyword = head.strip().lower()
        if keyword not in STRUCTURAL_MARKERS:
            return None, []
        return keyword, (rest.split(DELIMITER) if sep else [])

    def _parse_types(self, section: _Section, line: str, fields: List[str], i: int, source_name: str):
        if section.type_tokens is not None or section.names is not None:
            raise SchemaError(
                f"{source_name}: unexpected #columntype in {section.where(i)}"
            )
        semantics = []
        for token in fields:
            try:
                semantics.append(parse_type_token(token))
            except KeyError:
                raise SchemaError(
                    f"{source_name}: unknown column type '{token}' in {section.where(i)}"
                ) from None
        section.type_tokens = fields
        section.semantics = semantics
        if line != COLUMN_TYPE_MARKER + DELIMITER + DELIMITER.join(fields):
            section.normalized = True

    def _parse_names(self, section: _Section, line: str, fields: List[str], i: int, source_name: str):
        if section.names is not None:
            raise SchemaError(f"{source_name}: second #columnname in {section.where(i)}")

        names = [unescape_field(f) for f in fields]
        if not names or any(not n for n in names):
            raise SchemaError(f"{source_name}: empty column name in {section.where(i)}")
        if len(set(names)) != len(names):
            raise SchemaError(f"{source_name}: duplicate column names in {section.where(i)}")

        if section.type_tokens is None:
            section.semantics = [(SemanticType.STRING, None)] * len(names)
        elif len(section.type_tokens) != len(names):
            raise SchemaError(
                f"{source_name}: {len(section.type_tokens)} column types but "
                f"{len(names)} column names in {section.where(i)}"
            )
        section.names = names

        canonical = COLUMN_NAME_MARKER + DELIMITER + DELIMITER.join(escape_field(n) for n in names)
        if line != canonical:
            section.normalized = True

    def _parse_record(self, section: _Section, line: str, fields: List[str], i: int, source_name: str):
        if section.names is None:
            raise SchemaError(f"{source_name}: #record before #columnname in {section.where(i)}")
        if len(fields) != len(section.names):
            raise SchemaError(
                f"{source_name}: record has {len(fields)} fields, expected "
                f"{len(section.names)} in {section.where(i)}"
            )
        if not line.startswith(RECORD_MARKER + DELIMITER):
            section.normalized = True

        row_index = len(section.rows)
        row: Row = []
        for col, (token, (semantic, _)) in enumerate(zip(fields, section.semantics)):
            try:
                value = self._parse_cell(token, semantic)
            except ValueError:
                raise SchemaError(
                    f"{source_name}: cannot read '{token}' as {semantic.value} "
                    f"(column '{section.names[col]}') in {section.where(i)}"
                ) from None
            if self._format_cell(value, semantic) != token:
                section.literals.append([row_index, col, token])
            row.append(value)
        section.rows.append(row)

    def _build_entry(
        self, section: _Section, line_ending: str, final_newline: bool, mixed: bool, source_name: str
    ) -> TableEntry:
        if section.names is None:
            raise SchemaError(f"{source_name}: table '{section.name}' has no #columnname line")

        columns = []
        for col, (name, (semantic, width)) in enumerate(zip(section.names, section.semantics)):
            token = section.type_tokens[col] if section.type_tokens is not None else None
            columns.append(
                ColumnDefinition(
                    name=name,
                    type=semantic,
                    native_type_code=token,
                    width=width,
                    nullable=any(row[col] is None for row in section.rows),
                )
            )

        metadata = {
            "encoding": ENCODING,
            "line_ending": line_ending,
            "final_newline": final_newline,
            "section_index": section.index,
            "has_column_types": section.type_tokens is not None,
            "preserved_lines": [p for p in section.preserved if p[0] < section.last],
            "trailing_lines": [text for idx, text in section.preserved if idx > section.last],
            "literal_tokens": section.literals,
            "text_normalized": section.normalized or mixed,
        }
        schema = TableSchema(source_format=self.format_id, columns=columns, metadata=metadata)
        return TableEntry(name=section.name, schema=schema, rows=section.rows)

    # ------------------------------------------------------------------
    # Cells
    # ------------------------------------------------------------------

    def _parse_cell(self, token: str, semantic: SemanticType) -> CellValue:
        if token == NULL_TOKEN:
            return None
        if semantic in (SemanticType.INT, SemanticType.UINT):
            return int(token)
        if semantic == SemanticType.FLOAT:
            return float(token)
        return unescape_field(token)

    def _format_cell(self, value: CellValue, semantic: SemanticType) -> str:
        if value is None:
            return NULL_TOKEN
        if semantic == SemanticType.FLOAT:
            return repr(float(value))
        if semantic in (SemanticType.INT, SemanticType.UINT):
            return str(value)
        return escape_field(value)

    # ==================================================
    # ENCODE
    # ==================================================

    def encode(self, tables: Sequence[TableEntry]) -> bytes:
        if not tables:
            return b""

        ordered = sorted(
            enumerate(tables),
            key=lambda item: (item[1].schema.metadata.get("section_index", len(tables) + item[0]), item[0]),
        )
        ordered = [entry for _, entry in ordered]

        names = [t.name for t in ordered]
        if len(set(names)) != len(names):
            raise ValidationError(f"Duplicate table names in one text file: {names}")

        first = ordered[0].schema.metadata
        encoding = first.get("encoding", ENCODING)
        line_ending = first.get("line_ending", DEFAULT_LINE_ENDING)
        final_newline = first.get("final_newline", True)

        preamble = next((t.schema.metadata["preamble"] for t in ordered if t.schema.metadata.get("preamble")), [])
        trailer = next(
            (t.schema.metadata["trailer"] for t in reversed(ordered) if t.schema.metadata.get("trailer")),
            [],
        )

        lines: List[str] = list(preamble)
        for entry in ordered:
            validate(entry.schema, entry.rows)
            lines.extend(self._section_lines(entry))
        lines.extend(trailer)

        text = line_ending.join(lines)
        if final_newline and lines:
            text += line_ending

        try:
            return text.encode(encoding, "surrogateescape")
        except UnicodeEncodeError as e:
            raise ValidationError(f"Text cannot be encoded as {encoding}: {e}") from e

    def _type_token(self, column: ColumnDefinition) -> str:
        if column.type == SemanticType.BYTES:
            raise ValidationError(
                f"Column '{column.name}': bytes columns have no text representation"
            )

        token = column.native_type_code
        if isinstance(token, str):
            try:
                if parse_type_token(token) == (column.type, column.width):
                    return token
            except KeyError:
                pass

        if column.type == SemanticType.STRING and column.width is not None:
            return f"STRING[{column.width}]"

        width = column.width
        if width is None and column.type != SemanticType.STRING:
            width = 8
        key = (column.type, width)
        if key not in CANONICAL_TOKENS:
            raise ValidationError(
                f"Column '{column.name}': no text type for {column.type.value} of width {column.width}"
            )
        return CANONICAL_TOKENS[key]

    def _section_lines(self, entry: TableEntry) -> List[str]:
        schema = entry.schema
        metadata = schema.metadata
        columns = schema.columns

        tokens = [self._type_token(c) for c in columns]
        plain = all(c.type == SemanticType.STRING and c.width is None for c in columns)
        has_types = metadata.get("has_column_types", True) or not plain

        lines = [TABLE_MARKER + DELIMITER + escape_field(entry.name)]
        if has_types:
            lines.append(COLUMN_TYPE_MARKER + DELIMITER + DELIMITER.join(tokens))
        lines.append(COLUMN_NAME_MARKER + DELIMITER + DELIMITER.join(escape_field(c.name) for c in columns))

        literals = {(int(r), int(c)): token for r, c, token in metadata.get("literal_tokens", [])}

        for r, row in enumerate(entry.rows):
            fields = []
            for c, (column, value) in enumerate(zip(columns, row)):
                token = literals.get((r, c))
                if token is not None and self._literal_matches(token, value, column.type):
                    fields.append(token)
                else:
                    fields.append(self._format_cell(value, column.type))
            lines.append(RECORD_MARKER + DELIMITER + DELIMITER.join(fields))

        for index, text in sorted(metadata.get("preserved_lines", []), key=lambda p: p[0]):
            if index <= len(lines):
                lines.insert(index, text)
            else:
                lines.append(text)

        lines.extend(metadata.get("trailing_lines", []))
        return lines

    def _literal_matches(self, token: str, value: CellValue, semantic: SemanticType) -> bool:
        try:
            parsed = self._parse_cell(token, semantic)
        except ValueError:
            return False
        if parsed is None or value is None:
            return parsed is value
        if type(parsed) is not type(value) and not (
            isinstance(parsed, (int, float)) and isinstance(value, (int, float))
        ):
            return False
        return parsed == value
