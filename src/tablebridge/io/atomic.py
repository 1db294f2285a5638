import asyncio
import os
import shutil
import tempfile
from typing import Callable, Optional, TypeVar

from tablebridge.utils.exceptions import OperationCancelled, TableIOError

DEFAULT_CHUNK_SIZE = 64 * 1024

T = TypeVar("T")


def check_cancelled(cancel: Optional[asyncio.Event], what: str):
    if cancel is not None and cancel.is_set():
        raise OperationCancelled(f"{what} cancelled")


async def _run_blocking(
    func: Callable[..., T], *args, discard: Optional[Callable[[T], None]] = None
) -> T:
    """
    Run a blocking call in the default executor.

    If the awaiting task is cancelled, the in-flight call is allowed to
    finish before CancelledError propagates, so callers can clean up files
    the call was still touching. When the call still succeeds, its result
    is handed to discard since the caller never receives it.
    """
    fut = asyncio.get_running_loop().run_in_executor(None, func, *args)
    try:
        return await asyncio.shield(fut)
    except asyncio.CancelledError:
        await asyncio.wait({fut})
        if discard is not None and not fut.cancelled() and fut.exception() is None:
            discard(fut.result())
        raise


def _read_file(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


async def read_bytes(path: str, cancel: Optional[asyncio.Event] = None) -> bytes:
    check_cancelled(cancel, f"Read of {path}")
    try:
        data = await _run_blocking(_read_file, path)
    except FileNotFoundError as e:
        raise TableIOError(f"File not found: {path}") from e
    except IsADirectoryError as e:
        raise TableIOError(f"Path is a directory: {path}") from e
    except OSError as e:
        raise TableIOError(f"Cannot read {path}: {e}") from e
    check_cancelled(cancel, f"Read of {path}")
    return data


def _open_temp(directory: str, name: str):
    fd, tmp_path = tempfile.mkstemp(prefix=f".{name}.", suffix=".tmp", dir=directory)
    return os.fdopen(fd, "wb"), tmp_path


def _finish(handle) -> None:
    handle.flush()
    os.fsync(handle.fileno())
    handle.close()


def _copy_mode(path: str, tmp_path: str) -> None:
    # Keep the permissions of the file being replaced
    if os.path.exists(path):
        shutil.copymode(path, tmp_path)


def _discard(handle, tmp_path: str) -> None:
    if not handle.closed:
        handle.close()
    try:
        os.remove(tmp_path)
    except FileNotFoundError:
        pass


def _discard_opened(opened) -> None:
    _discard(*opened)


async def write_atomic(
    path: str,
    data: bytes,
    cancel: Optional[asyncio.Event] = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> None:
    """
    Write data to path through a temporary file in the same directory.

    The destination is either left untouched or replaced as a whole by
    os.replace; the temporary file is removed on every failure path,
    including OperationCancelled and task cancellation.
    """
    directory = os.path.dirname(os.path.abspath(path))
    name = os.path.basename(path)

    check_cancelled(cancel, f"Write of {path}")

    if not os.path.isdir(directory):
        raise TableIOError(f"Target directory does not exist: {directory}")

    try:
        handle, tmp_path = await _run_blocking(
            _open_temp, directory, name, discard=_discard_opened
        )
    except OSError as e:
        raise TableIOError(f"Cannot create temporary file in {directory}: {e}") from e

    replaced = False
    try:
        view = memoryview(data)
        for start in range(0, len(view), chunk_size):
            check_cancelled(cancel, f"Write of {path}")
            await _run_blocking(handle.write, view[start:start + chunk_size])

        await _run_blocking(_finish, handle)
        await _run_blocking(_copy_mode, path, tmp_path)
        check_cancelled(cancel, f"Write of {path}")
        await _run_blocking(os.replace, tmp_path, path)
        replaced = True
    except OSError as e:
        raise TableIOError(f"Cannot write {path}: {e}") from e
    finally:
        if not replaced:
            _discard(handle, tmp_path)
