import math
from typing import Sequence

from tablebridge.canonical.column import ColumnDefinition, SemanticType
from tablebridge.canonical.schema import TableSchema
from tablebridge.canonical.table import CellValue, Row
from tablebridge.utils.exceptions import ValidationError

FLOAT32_MAX = 3.4028234663852886e38


class TableSchemaValidator:
    """
    Checks rows against the schema they will be written with.

    This class:
    - NEVER mutates schema or rows
    - Is called by every provider immediately before encoding
    - Raises ValidationError on the first violation found
    """

    # Integer widths the providers know how to encode
    INTEGER_WIDTHS = {1, 2, 4, 8}

    def __init__(self, schema: TableSchema):
        self.schema = schema
        self.encoding = schema.encoding

    # ------------------------------------------------------------------
    # Schema-level validations
    # ------------------------------------------------------------------

    def validate_columns(self):
        if not self.schema.columns:
            raise ValidationError("Table must contain at least one column")

        seen = set()
        for column in self.schema.columns:
            if not column.name:
                raise ValidationError("Column name must not be empty")
            if column.name in seen:
                raise ValidationError(f"Duplicate column name: '{column.name}'")
            seen.add(column.name)

            if column.width is not None and column.width < 0:
                raise ValidationError(
                    f"Column '{column.name}' has negative width {column.width}"
                )

    # ------------------------------------------------------------------
    # Cell-level validations
    # ------------------------------------------------------------------

    def _integer_range(self, column: ColumnDefinition):
        width = column.width if column.width in self.INTEGER_WIDTHS else 8
        bits = width * 8
        if column.type == SemanticType.UINT:
            return 0, (1 << bits) - 1
        return -(1 << (bits - 1)), (1 << (bits - 1)) - 1

    def validate_cell(self, row_num: int, column: ColumnDefinition, value: CellValue):
        where = f"row {row_num}, column '{column.name}'"

        if value is None:
            if not column.nullable:
                raise ValidationError(f"Null value in non-nullable {where}")
            return

        kind = column.type

        if kind in (SemanticType.INT, SemanticType.UINT):
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValidationError(
                    f"Expected integer at {where}, got {type(value).__name__}"
                )
            low, high = self._integer_range(column)
            if not low <= value <= high:
                raise ValidationError(
                    f"Integer {value} out of range [{low}, {high}] at {where}"
                )
            return

        if kind == SemanticType.FLOAT:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValidationError(
                    f"Expected float at {where}, got {type(value).__name__}"
                )
            if column.width == 4 and math.isfinite(value) and abs(value) > FLOAT32_MAX:
                raise ValidationError(
                    f"Float {value} does not fit a 4-byte float at {where}"
                )
            return

        if kind == SemanticType.STRING:
            if not isinstance(value, str):
                raise ValidationError(
                    f"Expected string at {where}, got {type(value).__name__}"
                )
            if column.width is not None:
                try:
                    size = len(value.encode(self.encoding, "surrogateescape"))
                except UnicodeEncodeError as e:
                    raise ValidationError(
                        f"String at {where} cannot be encoded as {self.encoding}: {e}"
                    ) from e
                if size > column.width:
                    raise ValidationError(
                        f"String at {where} is {size} bytes, "
                        f"exceeds declared width {column.width}"
                    )
            return

        if kind == SemanticType.BYTES:
            if not isinstance(value, (bytes, bytearray)):
                raise ValidationError(
                    f"Expected bytes at {where}, got {type(value).__name__}"
                )
            if column.width is not None and len(value) > column.width:
                raise ValidationError(
                    f"Bytes at {where} are {len(value)} long, "
                    f"exceeds declared width {column.width}"
                )
            return

        raise ValidationError(f"Unsupported semantic type {kind!r} at {where}")

    def validate_rows(self, rows: Sequence[Row]):
        columns = self.schema.columns
        for row_num, row in enumerate(rows):
            if len(row) != len(columns):
                raise ValidationError(
                    f"Row {row_num} has {len(row)} cells; "
                    f"schema declares {len(columns)} columns"
                )
            for column, value in zip(columns, row):
                self.validate_cell(row_num, column, value)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def validate(self, rows: Sequence[Row]) -> bool:
        self.validate_columns()
        self.validate_rows(rows)
        return True


def validate_schema(schema: TableSchema) -> None:
    TableSchemaValidator(schema).validate_columns()


def validate(schema: TableSchema, rows: Sequence[Row]) -> None:
    """
    Raise ValidationError unless every row supplies exactly one
    type-compatible value per column.
    """
    TableSchemaValidator(schema).validate(rows)
