from typing import Optional

from tablebridge.canonical.table import CellValue, TableEntry


def _values_equal(a: CellValue, b: CellValue) -> bool:
    if a is None or b is None:
        return a is b
    if isinstance(a, bytes) or isinstance(b, bytes):
        return a == b
    # Compare numbers by value so 1 and 1.0 match
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return float(a) == float(b)
    return a == b


def find_difference(a: TableEntry, b: TableEntry) -> Optional[str]:
    """
    Returns None if the tables hold the same data, or a description of the
    first difference found. Provider metadata is ignored.
    """
    cols_a = a.schema.columns
    cols_b = b.schema.columns

    if len(cols_a) != len(cols_b):
        return f"Column count differs: {len(cols_a)} vs {len(cols_b)}"

    for idx, (ca, cb) in enumerate(zip(cols_a, cols_b)):
        if ca.name != cb.name:
            return f"Column {idx} name differs: '{ca.name}' vs '{cb.name}'"
        if ca.type != cb.type:
            return f"Column '{ca.name}' type differs: {ca.type.value} vs {cb.type.value}"
        if ca.width != cb.width:
            return f"Column '{ca.name}' width differs: {ca.width} vs {cb.width}"

    if len(a.rows) != len(b.rows):
        return f"Row count differs: {len(a.rows)} vs {len(b.rows)}"

    for r, (row_a, row_b) in enumerate(zip(a.rows, b.rows)):
        for column, va, vb in zip(cols_a, row_a, row_b):
            if not _values_equal(va, vb):
                return f"Row {r}, column '{column.name}': {va!r} vs {vb!r}"

    return None
