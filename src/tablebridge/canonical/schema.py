from dataclasses import dataclass, field
from typing import Any, Dict, List

from tablebridge.canonical.column import ColumnDefinition
from tablebridge.utils.exceptions import ValidationError

DEFAULT_ENCODING = "cp949"


@dataclass
class TableSchema:
    """
    Column layout of one table plus the format-specific facts a provider
    needs to reproduce the native file exactly.

    Column order is on-disk field order. Recognized metadata keys are
    documented per provider (BINARY_METADATA_KEYS, TEXT_METADATA_KEYS);
    other keys are carried along untouched.
    """

    # Provider format identifier, e.g. "shn" | "shinetable"
    source_format: str

    columns: List[ColumnDefinition]

    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]

    @property
    def encoding(self) -> str:
        return self.metadata.get("encoding", DEFAULT_ENCODING)

    def index_of(self, name: str) -> int:
        for idx, column in enumerate(self.columns):
            if column.name == name:
                return idx
        raise KeyError(f"Unknown column: {name}")

    def redeclare(self, columns: List[ColumnDefinition]) -> "TableSchema":
        """
        Return a schema with a re-declared column layout.

        Names and order are the table's identity once loaded, so only
        type, type code, width and nullability may differ.
        """
        if [c.name for c in columns] != self.column_names:
            raise ValidationError(
                "Re-declared schema must keep the loaded column names and order: "
                f"{self.column_names}"
            )
        return TableSchema(
            source_format=self.source_format,
            columns=list(columns),
            metadata=dict(self.metadata),
        )
