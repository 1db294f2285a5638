from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Union


class SemanticType(str, Enum):
    """
    Format-agnostic cell type of a column.
    """
    INT = "int"
    UINT = "uint"
    FLOAT = "float"
    STRING = "string"
    BYTES = "bytes"


NativeTypeCode = Union[int, str, None]


@dataclass(frozen=True)
class ColumnDefinition:
    """
    Canonical representation of a column.

    native_type_code is the format-specific tag needed to reproduce the
    original encoding: the binary type code (int) or the text type token (str).
    width is the fixed byte width, None for variable-length fields.
    """
    name: str
    type: SemanticType
    native_type_code: NativeTypeCode = None
    width: Optional[int] = None
    nullable: bool = False

    def with_layout(
        self,
        type: Optional[SemanticType] = None,
        native_type_code: NativeTypeCode = None,
        width: Optional[int] = None,
        nullable: Optional[bool] = None,
    ) -> "ColumnDefinition":
        """
        Copy with a re-declared layout. The name never changes.
        """
        return replace(
            self,
            type=self.type if type is None else SemanticType(type),
            native_type_code=self.native_type_code if native_type_code is None else native_type_code,
            width=self.width if width is None else width,
            nullable=self.nullable if nullable is None else nullable,
        )
