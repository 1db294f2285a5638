import asyncio
import os

import pytest

from tablebridge.adapters.binary_table import BinaryTableProvider
from tablebridge.adapters.text_table import TextTableProvider
from tablebridge.canonical.table import TableRef
from tablebridge.execution.orchestrator import ConversionOrchestrator
from tablebridge.governance.adapter_registry import FormatRegistry
from tablebridge.utils.exceptions import (
    FormatError,
    OperationCancelled,
    TableIOError,
    TableNotFoundError,
    ValidationError,
)


class CountingBinaryProvider(BinaryTableProvider):
    def __init__(self):
        self.reads = 0

    async def read(self, path, cancel=None):
        self.reads += 1
        return await super().read(path, cancel)


# ------------------------------------------------------------------
# Loading
# ------------------------------------------------------------------
def test_load_is_cached(write_file, items_shn):
    path = write_file("ItemInfo.shn", items_shn)
    orchestrator = ConversionOrchestrator()

    async def run():
        first = await orchestrator.load(TableRef(path))
        second = await orchestrator.load(TableRef(path))
        return first, second

    first, second = asyncio.run(run())

    assert first is second
    assert orchestrator.is_loaded(path)
    assert orchestrator.get_cached(TableRef(path)) is first


def test_concurrent_loads_read_the_file_once(write_file, items_shn):
    path = write_file("ItemInfo.shn", items_shn)
    binary = CountingBinaryProvider()
    orchestrator = ConversionOrchestrator(FormatRegistry((binary, TextTableProvider())))

    async def run():
        return await asyncio.gather(*(orchestrator.load_file(path) for _ in range(5)))

    results = asyncio.run(run())

    assert binary.reads == 1
    assert all(r[0] is results[0][0] for r in results)


def test_unknown_extension_fails_before_io(tmp_path):
    orchestrator = ConversionOrchestrator()
    with pytest.raises(FormatError):
        asyncio.run(orchestrator.load_file(str(tmp_path / "missing.xyz")))


def test_missing_file_is_io_error_and_not_cached(tmp_path):
    orchestrator = ConversionOrchestrator()
    path = str(tmp_path / "missing.shn")

    with pytest.raises(TableIOError):
        asyncio.run(orchestrator.load_file(path))
    assert not orchestrator.is_loaded(path)


def test_table_lookup_errors(write_file, tables_txt):
    path = write_file("Tables.txt", tables_txt)
    orchestrator = ConversionOrchestrator()

    with pytest.raises(TableNotFoundError):
        orchestrator.get_cached(TableRef(path, "Items"))

    asyncio.run(orchestrator.load_file(path))

    assert orchestrator.get_cached(TableRef(path, "Drops")).rows == [[100, "Sword"]]
    with pytest.raises(TableNotFoundError, match="holds 3 tables"):
        orchestrator.get_cached(TableRef(path))
    with pytest.raises(TableNotFoundError):
        orchestrator.get_cached(TableRef(path, "Monsters"))


# ------------------------------------------------------------------
# Dirty tracking and saving
# ------------------------------------------------------------------
def test_saving_one_table_keeps_its_siblings(write_file, tables_txt):
    path = write_file("Tables.txt", tables_txt)
    orchestrator = ConversionOrchestrator()
    drops = TableRef(path, "Drops")

    async def run():
        await orchestrator.load_file(path)
        await orchestrator.set_cell(drops, 0, "MobID", 300)
        assert orchestrator.is_dirty(drops)
        assert not orchestrator.is_dirty(TableRef(path, "Items"))
        assert orchestrator.dirty_tables() == [drops]
        return await orchestrator.save()

    written = asyncio.run(run())

    assert written == [path]
    with open(path, "rb") as f:
        assert f.read() == tables_txt.replace(b"#record\t100\t", b"#record\t300\t")
    assert orchestrator.dirty_tables() == []


def test_row_edits_round_trip_through_disk(write_file, items_shn):
    path = write_file("ItemInfo.shn", items_shn)
    orchestrator = ConversionOrchestrator()
    ref = TableRef(path)

    async def run():
        await orchestrator.load(ref)
        index = await orchestrator.append_row(ref, [4, "Bow", 1, 0.75, "ranged"])
        await orchestrator.insert_row(ref, 0, [0, "Stick", 0, 0.0, "sharp"])
        removed = await orchestrator.delete_row(ref, 2)
        await orchestrator.save()
        return index, removed

    index, removed = asyncio.run(run())

    assert index == 3
    assert removed == [2, "Shield", 7, 1.25, "sharp"]

    reread = asyncio.run(ConversionOrchestrator().load(ref))
    assert reread.rows == [
        [0, "Stick", 0, 0.0, "sharp"],
        [1, "Sword", -5, 0.5, "sharp"],
        [3, "검", 100, 2.0, "무기"],
        [4, "Bow", 1, 0.75, "ranged"],
    ]


def test_invalid_edit_leaves_file_untouched(write_file, tables_txt):
    path = write_file("Tables.txt", tables_txt)
    orchestrator = ConversionOrchestrator()
    items = TableRef(path, "Items")

    async def run():
        await orchestrator.load_file(path)
        await orchestrator.set_cell(items, 0, "ID", 300)
        await orchestrator.save()

    with pytest.raises(ValidationError):
        asyncio.run(run())

    with open(path, "rb") as f:
        assert f.read() == tables_txt
    assert orchestrator.is_dirty(items)


def test_all_dirty_tables_are_validated_before_any_write(write_file, items_shn, tables_txt):
    shn = write_file("ItemInfo.shn", items_shn)
    txt = write_file("Tables.txt", tables_txt)
    orchestrator = ConversionOrchestrator()

    async def run():
        await orchestrator.load_file(shn)
        await orchestrator.load_file(txt)
        await orchestrator.set_cell(TableRef(shn), 0, "ID", 10)
        await orchestrator.set_cell(TableRef(txt, "Items"), 0, "ID", -1)
        await orchestrator.save()

    with pytest.raises(ValidationError):
        asyncio.run(run())

    with open(shn, "rb") as f:
        assert f.read() == items_shn


def test_unknown_column_is_rejected_without_marking_dirty(write_file, items_shn):
    path = write_file("ItemInfo.shn", items_shn)
    orchestrator = ConversionOrchestrator()
    ref = TableRef(path)

    async def run():
        await orchestrator.load(ref)
        await orchestrator.set_cell(ref, 0, "Colour", "red")

    with pytest.raises(ValidationError):
        asyncio.run(run())
    assert not orchestrator.is_dirty(ref)


def test_alternate_path_keeps_original_and_dirty_flag(write_file, items_shn, tmp_path):
    path = write_file("ItemInfo.shn", items_shn)
    copy = str(tmp_path / "ItemInfo.copy.shn")
    orchestrator = ConversionOrchestrator()
    ref = TableRef(path)

    async def run():
        await orchestrator.load(ref)
        await orchestrator.set_cell(ref, 0, "Name", "Blade")
        return await orchestrator.save(alternate_paths={path: copy})

    assert asyncio.run(run()) == [copy]

    with open(path, "rb") as f:
        assert f.read() == items_shn
    assert asyncio.run(ConversionOrchestrator().load(TableRef(copy))).rows[0][1] == "Blade"
    assert orchestrator.is_dirty(ref)


def test_cancelled_save_keeps_original(write_file, items_shn, tmp_path):
    path = write_file("ItemInfo.shn", items_shn)
    orchestrator = ConversionOrchestrator()
    ref = TableRef(path)

    async def run():
        await orchestrator.load(ref)
        await orchestrator.set_cell(ref, 0, "Level", 9)
        cancel = asyncio.Event()
        cancel.set()
        await orchestrator.save_file(path, cancel=cancel)

    with pytest.raises(OperationCancelled):
        asyncio.run(run())

    with open(path, "rb") as f:
        assert f.read() == items_shn
    assert os.listdir(tmp_path) == ["ItemInfo.shn"]
    assert orchestrator.is_dirty(ref)


def test_redeclared_width_is_written(write_file, items_shn):
    path = write_file("ItemInfo.shn", items_shn)
    orchestrator = ConversionOrchestrator()
    ref = TableRef(path)

    async def run():
        entry = await orchestrator.load(ref)
        columns = list(entry.schema.columns)
        columns[1] = columns[1].with_layout(width=32)
        await orchestrator.redeclare_schema(ref, columns)
        await orchestrator.set_cell(ref, 0, "Name", "A" * 30)
        await orchestrator.save()

    asyncio.run(run())

    reread = asyncio.run(ConversionOrchestrator().load(ref))
    assert reread.schema.columns[1].width == 32
    assert reread.rows[0][1] == "A" * 30


def test_redeclare_cannot_rename(write_file, items_shn):
    path = write_file("ItemInfo.shn", items_shn)
    orchestrator = ConversionOrchestrator()
    ref = TableRef(path)

    async def run():
        entry = await orchestrator.load(ref)
        columns = list(entry.schema.columns)
        columns[0] = type(columns[0])("Key", columns[0].type, 3, 4)
        await orchestrator.redeclare_schema(ref, columns)

    with pytest.raises(ValidationError):
        asyncio.run(run())


def test_evict_requires_saved_state(write_file, items_shn):
    path = write_file("ItemInfo.shn", items_shn)
    orchestrator = ConversionOrchestrator()
    ref = TableRef(path)

    async def run():
        await orchestrator.load(ref)
        await orchestrator.mark_dirty(ref)

    asyncio.run(run())

    with pytest.raises(ValidationError):
        orchestrator.evict(path)

    asyncio.run(orchestrator.save())
    orchestrator.evict(path)
    assert not orchestrator.is_loaded(path)


def test_replace_rows_swaps_the_whole_row_set(write_file, tables_txt):
    path = write_file("Tables.txt", tables_txt)
    orchestrator = ConversionOrchestrator()
    shops = TableRef(path, "Shops")

    async def run():
        await orchestrator.load_file(path)
        await orchestrator.replace_rows(shops, [["Port", "Rope"], ["Keep", None]])
        await orchestrator.save()

    asyncio.run(run())

    with open(path, "rb") as f:
        text = f.read().decode("cp949")
    assert "#record\tPort\tRope\r\n#record\tKeep\t\\N\r\n#end" in text
    assert "마을" not in text


def test_binary_encode_failure_leaves_every_file_untouched(write_file, items_shn, tables_txt):
    shn = write_file("ItemInfo.shn", items_shn)
    txt = write_file("Tables.txt", tables_txt)
    orchestrator = ConversionOrchestrator()
    ref = TableRef(shn)

    async def run():
        await orchestrator.load_file(txt)
        entry = await orchestrator.load(ref)
        await orchestrator.set_cell(TableRef(txt, "Drops"), 0, "MobID", 300)
        # Nullable passes generic validation; only the binary encoder refuses the null
        columns = list(entry.schema.columns)
        columns[2] = columns[2].with_layout(nullable=True)
        await orchestrator.redeclare_schema(ref, columns)
        await orchestrator.set_cell(ref, 0, "Level", None)
        await orchestrator.save()

    with pytest.raises(ValidationError, match="null"):
        asyncio.run(run())

    with open(txt, "rb") as f:
        assert f.read() == tables_txt
    with open(shn, "rb") as f:
        assert f.read() == items_shn
    assert orchestrator.is_dirty(TableRef(txt, "Drops"))
    assert orchestrator.is_dirty(ref)


# ------------------------------------------------------------------
# Row indexes
# ------------------------------------------------------------------
@pytest.mark.parametrize(
    "edit",
    [
        lambda o, ref: o.set_cell(ref, 3, "Level", 1),
        lambda o, ref: o.set_cell(ref, -1, "Level", 1),
        lambda o, ref: o.insert_row(ref, 4, [4, "Bow", 1, 0.75, "ranged"]),
        lambda o, ref: o.delete_row(ref, 3),
        lambda o, ref: o.delete_row(ref, -1),
    ],
)
def test_out_of_range_row_index_is_rejected(write_file, items_shn, edit):
    path = write_file("ItemInfo.shn", items_shn)
    orchestrator = ConversionOrchestrator()
    ref = TableRef(path)

    async def run():
        await orchestrator.load(ref)
        await edit(orchestrator, ref)

    with pytest.raises(ValidationError, match="out of range"):
        asyncio.run(run())
    assert not orchestrator.is_dirty(ref)
    assert len(orchestrator.get_cached(ref).rows) == 3


def test_insert_at_end_appends(write_file, items_shn):
    path = write_file("ItemInfo.shn", items_shn)
    orchestrator = ConversionOrchestrator()
    ref = TableRef(path)

    async def run():
        await orchestrator.load(ref)
        await orchestrator.insert_row(ref, 3, [4, "Bow", 1, 0.75, "ranged"])

    asyncio.run(run())
    assert orchestrator.get_cached(ref).rows[3][1] == "Bow"
