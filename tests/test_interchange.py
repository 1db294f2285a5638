import json

import pytest
import yaml

from tablebridge.adapters.binary_table import BinaryTableProvider
from tablebridge.adapters.text_table import TextTableProvider
from tablebridge.canonical.compare import find_difference
from tablebridge.outputs.interchange import (
    InterchangeExporter,
    from_document,
    load_document,
    to_document,
)
from tablebridge.utils.exceptions import FormatError

from conftest import build_shn

binary = BinaryTableProvider()
text = TextTableProvider()


def test_document_shape(items_shn):
    entry = binary.decode(items_shn, "ItemInfo.shn")[0]

    document = to_document(entry)

    assert document["name"] == "ItemInfo"
    assert document["schema"]["sourceFormat"] == "shn"
    assert document["schema"]["columns"][0] == {
        "name": "ID",
        "type": "uint",
        "nativeTypeCode": 3,
        "width": 4,
        "nullable": False,
    }
    assert document["schema"]["metadata"]["header_tag"] == 0x1234
    assert document["rows"][2] == [3, "검", 100, 2.0, "무기"]


def test_json_document_rebuilds_the_same_native_bytes(items_shn):
    entry = binary.decode(items_shn, "ItemInfo.shn")[0]

    rebuilt = load_document(InterchangeExporter(entry, "json").export_to_string())

    assert find_difference(entry, rebuilt) is None
    assert binary.encode([rebuilt]) == items_shn


def test_yaml_document_rebuilds_the_same_native_bytes(tables_txt):
    tables = text.decode(tables_txt, "Tables.txt")

    rebuilt = [load_document(InterchangeExporter(t, "yaml").export_to_string()) for t in tables]

    assert text.encode(rebuilt) == tables_txt


def test_bytes_cells_are_base64():
    data = build_shn([("Blob", 31, 3)], [b"\x00\xff\x10"])
    entry = binary.decode(data, "Blobs.shn")[0]

    document = json.loads(InterchangeExporter(entry).export_to_string())

    assert document["rows"] == [["AP8Q"]]
    assert from_document(document).rows == [[b"\x00\xff\x10"]]


def test_export_to_file(tmp_path, items_shn):
    entry = binary.decode(items_shn, "ItemInfo.shn")[0]
    exporter = InterchangeExporter(entry, "YAML")
    target = tmp_path / ("ItemInfo" + exporter.extension)

    exporter.export_to_file(str(target))

    assert target.name == "ItemInfo.yaml"
    assert yaml.safe_load(target.read_text(encoding="utf-8"))["name"] == "ItemInfo"


def test_unknown_export_format():
    with pytest.raises(ValueError):
        InterchangeExporter(None, "xml")


@pytest.mark.parametrize(
    "document",
    [
        [],
        {"name": "T", "schema": {"sourceFormat": "shn", "columns": []}},
        {"name": "T", "schema": {"columns": []}, "rows": []},
        {"name": "T", "schema": {"sourceFormat": "shn", "columns": [{"name": "A"}]}, "rows": []},
        {"name": "T", "schema": {"sourceFormat": "shn", "columns": [{"name": "A", "type": "decimal"}]}, "rows": []},
        {"name": "T", "schema": {"sourceFormat": "shn", "columns": [{"name": "A", "type": "uint", "width": "4"}]}, "rows": []},
        {"name": "T", "schema": {"sourceFormat": "shn", "columns": []}, "rows": [1, 2]},
        {"name": "T", "schema": {"sourceFormat": "shn", "columns": [{"name": "B", "type": "bytes"}]}, "rows": [["***"]]},
    ],
)
def test_malformed_documents_are_format_errors(document):
    with pytest.raises(FormatError):
        from_document(document)


def test_unparseable_text_is_format_error():
    with pytest.raises(FormatError):
        load_document("{not: [valid")
