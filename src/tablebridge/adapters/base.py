import asyncio
import logging
from typing import List, Optional, Protocol, Sequence, Tuple

from tablebridge.canonical.table import TableEntry
from tablebridge.io.atomic import DEFAULT_CHUNK_SIZE, check_cancelled, read_bytes, write_atomic
from tablebridge.observability.logger import RequestTimer, log_event


class TableProvider(Protocol):
    """
    Capability set every native format provides.

    decode/encode are pure functions of their inputs; read/write add the
    async file I/O around them. Providers keep no per-call state, so one
    instance serves concurrent calls for different files.
    """

    format_id: str
    supported_extensions: Tuple[str, ...]

    def decode(self, data: bytes, source_name: str) -> List[TableEntry]:
        ...

    def encode(self, tables: Sequence[TableEntry]) -> bytes:
        ...

    async def read(
        self, path: str, cancel: Optional[asyncio.Event] = None
    ) -> List[TableEntry]:
        ...

    async def write(
        self,
        path: str,
        tables: Sequence[TableEntry],
        cancel: Optional[asyncio.Event] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        ...


async def read_tables(
    provider: TableProvider, path: str, cancel: Optional[asyncio.Event] = None
) -> List[TableEntry]:
    timer = RequestTimer()
    log_event(
        "READ_STARTED",
        {"path": path, "format": provider.format_id},
        level=logging.DEBUG,
    )

    data = await read_bytes(path, cancel)
    loop = asyncio.get_running_loop()
    tables = await loop.run_in_executor(None, provider.decode, data, path)
    check_cancelled(cancel, f"Read of {path}")

    log_event(
        "READ_COMPLETED",
        {
            "path": path,
            "format": provider.format_id,
            "bytes": len(data),
            "tables": [t.name for t in tables],
            "rows": sum(len(t.rows) for t in tables),
            "duration_seconds": timer.duration(),
        },
    )
    return tables


async def encode_tables(provider: TableProvider, tables: Sequence[TableEntry]) -> bytes:
    """
    Run the provider's encode off the event loop. Encoding validates the
    whole table set, so a failure here means nothing has been written.
    """
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, provider.encode, list(tables))


async def write_encoded(
    provider: TableProvider,
    path: str,
    data: bytes,
    tables: Sequence[TableEntry],
    cancel: Optional[asyncio.Event] = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> None:
    timer = RequestTimer()
    await write_atomic(path, data, cancel=cancel, chunk_size=chunk_size)

    log_event(
        "WRITE_COMPLETED",
        {
            "path": path,
            "format": provider.format_id,
            "bytes": len(data),
            "tables": [t.name for t in tables],
            "duration_seconds": timer.duration(),
        },
    )


async def write_tables(
    provider: TableProvider,
    path: str,
    tables: Sequence[TableEntry],
    cancel: Optional[asyncio.Event] = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> None:
    check_cancelled(cancel, f"Write of {path}")
    data = await encode_tables(provider, tables)
    await write_encoded(provider, path, data, tables, cancel=cancel, chunk_size=chunk_size)
