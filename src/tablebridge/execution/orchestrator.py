import asyncio
import contextlib
import logging
import os
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, TypeVar

from tablebridge.adapters.base import TableProvider, encode_tables, write_encoded
from tablebridge.canonical.column import ColumnDefinition
from tablebridge.canonical.table import CellValue, Row, TableEntry, TableRef
from tablebridge.config.settings import Settings
from tablebridge.governance.adapter_registry import REGISTRY, FormatRegistry
from tablebridge.io.atomic import check_cancelled
from tablebridge.observability.audit_logger import AuditLogger
from tablebridge.observability.logger import RequestTimer, generate_request_id, log_event
from tablebridge.pipeline.schema_validator import validate
from tablebridge.utils.exceptions import TableBridgeError, TableNotFoundError, ValidationError

T = TypeVar("T")


@dataclass
class _FileState:
    """
    Everything cached for one native file.
    """
    path: str
    provider: TableProvider
    entries: List[TableEntry]
    dirty: Set[str] = field(default_factory=set)


class ConversionOrchestrator:
    """
    Loads tables on demand, tracks edits and persists them.

    Lifecycle:
    load → mutate (marks dirty) → save (validate all, write whole files)

    Load, mutation and save of one file are serialized by a per-file lock.
    get_cached() reads without locking.
    """

    def __init__(
        self,
        registry: FormatRegistry = REGISTRY,
        settings: Optional[Settings] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self.registry = registry
        self.settings = settings or Settings()
        self.audit_logger = audit_logger or AuditLogger()
        self._files: Dict[str, _FileState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load_file(self, path: str, cancel: Optional[asyncio.Event] = None) -> List[TableEntry]:
        key = os.path.abspath(path)
        state = self._files.get(key)
        if state is not None:
            return list(state.entries)

        # Unknown extensions fail before any I/O
        provider = self.registry.resolve_by_extension(path)

        async with self._lock_for(key):
            state = self._files.get(key)
            if state is None:
                entries = await provider.read(path, cancel)
                state = _FileState(path=path, provider=provider, entries=entries)
                self._files[key] = state

        return list(state.entries)

    async def load(self, ref: TableRef, cancel: Optional[asyncio.Event] = None) -> TableEntry:
        await self.load_file(ref.path, cancel)
        return self.get_cached(ref)

    def get_cached(self, ref: TableRef) -> TableEntry:
        return self._find(self._require(ref), ref)

    def is_loaded(self, path: str) -> bool:
        return os.path.abspath(path) in self._files

    def tables(self, path: str) -> List[TableEntry]:
        return list(self._require(TableRef(path)).entries)

    def _require(self, ref: TableRef) -> _FileState:
        state = self._files.get(ref.key)
        if state is None:
            raise TableNotFoundError(f"File not loaded: {ref.path}")
        return state

    def _find(self, state: _FileState, ref: TableRef) -> TableEntry:
        if ref.table_name is None:
            if len(state.entries) == 1:
                return state.entries[0]
            raise TableNotFoundError(
                f"{ref.path} holds {len(state.entries)} tables; "
                f"name one of {[e.name for e in state.entries]}"
            )
        for entry in state.entries:
            if entry.name == ref.table_name:
                return entry
        raise TableNotFoundError(f"No table '{ref.table_name}' in {ref.path}")

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def _mutate(self, ref: TableRef, apply: Callable[[TableEntry], T]) -> T:
        state = self._require(ref)
        async with self._lock_for(ref.key):
            entry = self._find(state, ref)
            result = apply(entry)
            state.dirty.add(entry.name)
        return result

    @staticmethod
    def _check_row_index(entry: TableEntry, index: int, allow_end: bool = False) -> None:
        limit = len(entry.rows) + (1 if allow_end else 0)
        if isinstance(index, bool) or not isinstance(index, int) or not 0 <= index < limit:
            raise ValidationError(
                f"Row index {index!r} out of range for table '{entry.name}' "
                f"with {len(entry.rows)} rows"
            )

    async def set_cell(self, ref: TableRef, row_index: int, column: str, value: CellValue) -> None:
        def apply(entry: TableEntry):
            try:
                idx = entry.schema.index_of(column)
            except KeyError:
                raise ValidationError(f"Unknown column '{column}' in table '{entry.name}'") from None
            self._check_row_index(entry, row_index)
            entry.rows[row_index][idx] = value

        await self._mutate(ref, apply)

    async def append_row(self, ref: TableRef, row: Row) -> int:
        def apply(entry: TableEntry) -> int:
            entry.rows.append(list(row))
            return len(entry.rows) - 1

        return await self._mutate(ref, apply)

    async def insert_row(self, ref: TableRef, index: int, row: Row) -> None:
        def apply(entry: TableEntry):
            self._check_row_index(entry, index, allow_end=True)
            entry.rows.insert(index, list(row))

        await self._mutate(ref, apply)

    async def delete_row(self, ref: TableRef, index: int) -> Row:
        def apply(entry: TableEntry) -> Row:
            self._check_row_index(entry, index)
            return entry.rows.pop(index)

        return await self._mutate(ref, apply)

    async def replace_rows(self, ref: TableRef, rows: List[Row]) -> None:
        def apply(entry: TableEntry):
            entry.rows = [list(r) for r in rows]

        await self._mutate(ref, apply)

    async def redeclare_schema(self, ref: TableRef, columns: List[ColumnDefinition]) -> None:
        def apply(entry: TableEntry):
            entry.schema = entry.schema.redeclare(columns)

        await self._mutate(ref, apply)

    async def replace_entry(self, ref: TableRef, replacement: TableEntry) -> None:
        """
        Swap a cached table for an edited copy, e.g. one rebuilt from an
        interchange document. The table name must not change.
        """
        def apply(entry: TableEntry):
            if replacement.name != entry.name:
                raise ValidationError(
                    f"Replacement table is named '{replacement.name}', expected '{entry.name}'"
                )
            entries = self._require(ref).entries
            position = next(i for i, e in enumerate(entries) if e is entry)
            entries[position] = replacement

        await self._mutate(ref, apply)

    async def mark_dirty(self, ref: TableRef) -> None:
        await self._mutate(ref, lambda entry: None)

    def is_dirty(self, ref: TableRef) -> bool:
        state = self._require(ref)
        return self._find(state, ref).name in state.dirty

    def dirty_tables(self) -> List[TableRef]:
        refs = []
        for state in self._files.values():
            for entry in state.entries:
                if entry.name in state.dirty:
                    refs.append(TableRef(state.path, entry.name))
        return refs

    def evict(self, path: str) -> None:
        key = os.path.abspath(path)
        state = self._files.get(key)
        if state is None:
            return
        if state.dirty:
            raise ValidationError(
                f"{path} has unsaved tables {sorted(state.dirty)}; save before evicting"
            )
        del self._files[key]
        self._locks.pop(key, None)

    # ------------------------------------------------------------------
    # Saving
    # ------------------------------------------------------------------

    def _validate_dirty(self, state: _FileState) -> None:
        for entry in state.entries:
            if entry.name in state.dirty:
                validate(entry.schema, entry.rows)

    async def save(
        self,
        alternate_paths: Optional[Dict[str, str]] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> List[str]:
        """
        Persist every file holding a dirty table.

        Every dirty file is validated and encoded before any file is written.
        alternate_paths maps an original path to the path to write instead.
        Returns the paths written.
        """
        alternates = {os.path.abspath(k): v for k, v in (alternate_paths or {}).items()}
        keys = [key for key, state in self._files.items() if state.dirty]
        return await self._save_files(keys, alternates, cancel)

    async def save_file(
        self,
        path: str,
        alternate_path: Optional[str] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> str:
        self._require(TableRef(path))
        key = os.path.abspath(path)
        alternates = {key: alternate_path} if alternate_path else {}
        written = await self._save_files([key], alternates, cancel)
        return written[0]

    async def _save_files(
        self,
        keys: List[str],
        alternates: Dict[str, str],
        cancel: Optional[asyncio.Event],
    ) -> List[str]:
        check_cancelled(cancel, "Save")
        async with contextlib.AsyncExitStack() as stack:
            # Locks are always taken in sorted path order
            for key in sorted(keys):
                await stack.enter_async_context(self._lock_for(key))

            for key in keys:
                self._validate_dirty(self._files[key])

            encoded = {}
            for key in keys:
                state = self._files[key]
                try:
                    encoded[key] = await encode_tables(state.provider, state.entries)
                except TableBridgeError as e:
                    self._log_save_failed(alternates.get(key) or state.path, e)
                    raise

            results = await asyncio.gather(
                *(
                    self._write_file(key, encoded[key], alternates.get(key), cancel)
                    for key in keys
                ),
                return_exceptions=True,
            )

        for result in results:
            if isinstance(result, BaseException):
                raise result
        return list(results)

    async def _write_file(
        self,
        key: str,
        data: bytes,
        alternate_path: Optional[str],
        cancel: Optional[asyncio.Event],
    ) -> str:
        """
        Write one already-encoded file. The caller holds the file's lock.
        """
        state = self._files[key]
        target = alternate_path or state.path
        request_id = generate_request_id()
        timer = RequestTimer()
        dirty = sorted(state.dirty)

        try:
            # The whole table set goes out so sibling tables are never dropped
            await write_encoded(
                state.provider,
                target,
                data,
                state.entries,
                cancel=cancel,
                chunk_size=self.settings.write_chunk_size,
            )
        except (TableBridgeError, asyncio.CancelledError) as e:
            self._log_save_failed(target, e, request_id)
            raise

        if alternate_path is None or os.path.abspath(alternate_path) == key:
            state.dirty.clear()

        record = self.audit_logger.build_record(
            request_id=request_id,
            action="SAVE",
            source_path=state.path,
            target_path=target,
            source_format=state.provider.format_id,
            tables=[e.name for e in state.entries],
            dirty_tables=dirty,
            decision="WRITTEN",
            duration=timer.duration(),
        )
        self.audit_logger.persist(record)
        return target

    @staticmethod
    def _log_save_failed(
        target: str, error: BaseException, request_id: Optional[str] = None
    ) -> None:
        log_event(
            "SAVE_FAILED",
            {
                "request_id": request_id or generate_request_id(),
                "path": target,
                "error_type": type(error).__name__,
                "message": str(error),
            },
            level=logging.ERROR,
        )
