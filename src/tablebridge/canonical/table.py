import os
from dataclasses import dataclass, field
from typing import List, Optional, Union

from tablebridge.canonical.schema import TableSchema

CellValue = Union[int, float, str, bytes, None]
Row = List[CellValue]


@dataclass
class TableEntry:
    """
    One logical table: schema plus rows in insertion order.

    A native file yields one or many entries. Providers build them on read
    and only consume them on write.
    """
    name: str
    schema: TableSchema
    rows: List[Row] = field(default_factory=list)

    @property
    def source_format(self) -> str:
        return self.schema.source_format

    def column_values(self, name: str) -> List[CellValue]:
        idx = self.schema.index_of(name)
        return [row[idx] for row in self.rows]


@dataclass(frozen=True)
class TableRef:
    """
    Logical table reference: a native file plus an optional in-file table name.

    table_name=None addresses the only table of a single-table file.
    """
    path: str
    table_name: Optional[str] = None

    @property
    def key(self) -> str:
        return os.path.abspath(self.path)

    def __str__(self):
        if self.table_name is None:
            return self.path
        return f"{self.path}#{self.table_name}"
