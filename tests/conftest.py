import struct

import pytest

from tablebridge.adapters.cipher import scramble

HEADER = struct.Struct("<4sHHIIIII")
DESCRIPTOR = struct.Struct("<48sII")

# (name, type code, width)
ITEM_COLUMNS = [
    ("ID", 3, 4),
    ("Name", 9, 16),
    ("Level", 13, 2),
    ("Rate", 5, 4),
    ("Desc", 26, 4),
]
ITEM_ROW = struct.Struct("<I16shfI")

ITEM_POOL = b"sharp\0" + "무기".encode("cp949") + b"\0"


def build_shn(columns, rows, pool=b"", flags=0, header_tag=0, version=1,
              signature=b"SHTB", row_stride=None):
    """
    Assemble a binary table file by hand. rows are pre-packed byte strings.
    """
    stride = sum(width for _, _, width in columns) if row_stride is None else row_stride
    payload = b""
    for name, code, width in columns:
        raw = name.encode("cp949") if isinstance(name, str) else name
        payload += DESCRIPTOR.pack(raw, code, width)
    payload += b"".join(rows) + pool
    if flags & 1:
        payload = scramble(payload)
    header = HEADER.pack(signature, version, flags, header_tag,
                         len(columns), len(rows), stride, len(pool))
    return header + payload


def item_rows():
    return [
        ITEM_ROW.pack(1, b"Sword", -5, 0.5, 0),
        ITEM_ROW.pack(2, b"Shield", 7, 1.25, 0),
        ITEM_ROW.pack(3, "검".encode("cp949"), 100, 2.0, 6),
    ]


@pytest.fixture
def items_shn():
    return build_shn(ITEM_COLUMNS, item_rows(), ITEM_POOL, header_tag=0x1234)


@pytest.fixture
def scrambled_shn():
    return build_shn(ITEM_COLUMNS, item_rows(), ITEM_POOL, flags=1, header_tag=0xDEADBEEF)


TEXT_LINES = [
    "; game tables",
    "#table\tItems",
    "#columntype\tBYTE\tSTRING[32]\tFLOAT",
    "#columnname\tID\tName\tWeight",
    "#record\t1\tSword\t1.5",
    "; comment within",
    "#record\t2\tTab\\there\t2.0",
    "",
    "#table\tDrops",
    "#columntype\tDWRD\tINDEX",
    "#columnname\tMobID\tItemIndex",
    "#record\t100\tSword",
    "",
    "#table\tShops",
    "#columnname\tShop\tItem",
    "#record\t마을\t\\N",
    "#end",
    "trailing notes",
]


@pytest.fixture
def tables_txt():
    return ("\r\n".join(TEXT_LINES) + "\r\n").encode("cp949")


@pytest.fixture
def write_file(tmp_path):
    def _write(name, data):
        path = tmp_path / name
        path.write_bytes(data)
        return str(path)

    return _write
