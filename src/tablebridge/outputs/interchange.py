import base64
import json
from typing import Any, Dict, List

import yaml

from tablebridge.canonical.column import ColumnDefinition, SemanticType
from tablebridge.canonical.schema import TableSchema
from tablebridge.canonical.table import TableEntry
from tablebridge.utils.exceptions import FormatError

INTERCHANGE_FORMATS = ("json", "yaml")


def _encode_cell(value, column: ColumnDefinition):
    if value is not None and column.type == SemanticType.BYTES:
        return base64.b64encode(bytes(value)).decode("ascii")
    return value


def _decode_cell(value, column: ColumnDefinition):
    if value is not None and column.type == SemanticType.BYTES:
        try:
            return base64.b64decode(value, validate=True)
        except (TypeError, ValueError) as e:
            raise FormatError(f"Column '{column.name}': invalid base64 cell {value!r}") from e
    return value


def to_document(entry: TableEntry) -> Dict[str, Any]:
    """
    Build the interchange document editing tools work on.
    """
    columns = entry.schema.columns
    return {
        "name": entry.name,
        "schema": {
            "sourceFormat": entry.schema.source_format,
            "columns": [
                {
                    "name": c.name,
                    "type": c.type.value,
                    "nativeTypeCode": c.native_type_code,
                    "width": c.width,
                    "nullable": c.nullable,
                }
                for c in columns
            ],
            "metadata": entry.schema.metadata,
        },
        "rows": [
            [_encode_cell(value, column) for value, column in zip(row, columns)]
            for row in entry.rows
        ],
    }


def _column_from_document(raw: Any, idx: int) -> ColumnDefinition:
    if not isinstance(raw, dict) or "name" not in raw or "type" not in raw:
        raise FormatError(f"Column {idx} must be an object with 'name' and 'type'")

    try:
        semantic = SemanticType(raw["type"])
    except ValueError:
        raise FormatError(
            f"Column '{raw['name']}' has unknown type '{raw['type']}'. "
            f"Allowed: {[t.value for t in SemanticType]}"
        ) from None

    width = raw.get("width")
    if width is not None and (isinstance(width, bool) or not isinstance(width, int)):
        raise FormatError(f"Column '{raw['name']}' width must be an integer or null")

    return ColumnDefinition(
        name=str(raw["name"]),
        type=semantic,
        native_type_code=raw.get("nativeTypeCode"),
        width=width,
        nullable=bool(raw.get("nullable", False)),
    )


def from_document(document: Dict[str, Any]) -> TableEntry:
    """
    Rebuild a TableEntry from an interchange document.
    """
    if not isinstance(document, dict):
        raise FormatError("Interchange document must be an object")

    for key in ("name", "schema", "rows"):
        if key not in document:
            raise FormatError(f"Interchange document is missing '{key}'")

    schema_doc = document["schema"]
    if not isinstance(schema_doc, dict) or "sourceFormat" not in schema_doc:
        raise FormatError("Interchange document schema must carry 'sourceFormat'")

    raw_columns = schema_doc.get("columns")
    if not isinstance(raw_columns, list):
        raise FormatError("Interchange document schema.columns must be a list")

    metadata = schema_doc.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise FormatError("Interchange document schema.metadata must be an object")

    columns = [_column_from_document(raw, idx) for idx, raw in enumerate(raw_columns)]

    rows_doc = document["rows"]
    if not isinstance(rows_doc, list) or not all(isinstance(r, list) for r in rows_doc):
        raise FormatError("Interchange document rows must be a list of lists")

    rows: List[list] = []
    for row in rows_doc:
        if len(row) != len(columns):
            # Left to validation at write time; keep the row as given
            rows.append(list(row))
            continue
        rows.append([_decode_cell(value, column) for value, column in zip(row, columns)])

    schema = TableSchema(
        source_format=str(schema_doc["sourceFormat"]),
        columns=columns,
        metadata=dict(metadata),
    )
    return TableEntry(name=str(document["name"]), schema=schema, rows=rows)


def dump_json(entry: TableEntry, indent: int = 2) -> str:
    return json.dumps(to_document(entry), indent=indent)


def dump_yaml(entry: TableEntry) -> str:
    return yaml.safe_dump(
        to_document(entry),
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=True,
    )


def load_document(text: str) -> TableEntry:
    """
    Parse a JSON or YAML interchange document.
    """
    try:
        document = json.loads(text)
    except json.JSONDecodeError:
        try:
            document = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise FormatError(f"Interchange document is neither JSON nor YAML: {e}") from e
    return from_document(document)


class InterchangeExporter:
    """
    Exports tables as interchange documents in JSON or YAML.
    """

    def __init__(self, entry: TableEntry, output_format: str = "json", indent: int = 2):
        output_format = output_format.lower()
        if output_format not in INTERCHANGE_FORMATS:
            raise ValueError(
                f"Unsupported interchange format: {output_format}. "
                f"Allowed: {list(INTERCHANGE_FORMATS)}"
            )
        self.entry = entry
        self.output_format = output_format
        self.indent = indent

    @property
    def extension(self) -> str:
        return ".json" if self.output_format == "json" else ".yaml"

    def export(self) -> Dict[str, Any]:
        return to_document(self.entry)

    def export_to_string(self) -> str:
        if self.output_format == "yaml":
            return dump_yaml(self.entry)
        return dump_json(self.entry, indent=self.indent)

    def export_to_file(self, file_path: str):
        with open(file_path, "w", encoding="utf-8") as f:
            f.write(self.export_to_string())
