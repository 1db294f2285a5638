from typing import Dict, Optional

from fastapi import FastAPI, HTTPException

from tablebridge.canonical.table import TableRef
from tablebridge.config.settings import load_settings
from tablebridge.execution.orchestrator import ConversionOrchestrator
from tablebridge.observability.logger import configure_logging
from tablebridge.outputs.interchange import from_document, to_document
from tablebridge.utils.exceptions import (
    FormatError,
    OperationCancelled,
    SchemaError,
    TableBridgeError,
    TableIOError,
    TableNotFoundError,
    ValidationError,
)

app = FastAPI(
    title="Table Bridge",
    version="1.0.0"
)

settings = load_settings()
configure_logging(settings.log_level, settings.log_color)

orchestrator = ConversionOrchestrator(settings=settings)

_STATUS = (
    (TableNotFoundError, 404),
    (TableIOError, 404),
    (FormatError, 400),
    (SchemaError, 422),
    (ValidationError, 422),
    (OperationCancelled, 409),
)


def _http_error(e: TableBridgeError) -> HTTPException:
    status = next((code for kind, code in _STATUS if isinstance(e, kind)), 500)
    return HTTPException(
        status_code=status,
        detail={
            "status": "ERROR",
            "error_type": type(e).__name__,
            "message": str(e),
        }
    )


@app.get("/tables")
async def list_tables(path: str):
    try:
        entries = await orchestrator.load_file(path)
    except TableBridgeError as e:
        raise _http_error(e)
    return {
        "path": path,
        "tables": [to_document(entry) for entry in entries],
    }


@app.get("/table")
async def get_table(path: str, table: Optional[str] = None):
    try:
        entry = await orchestrator.load(TableRef(path, table))
    except TableBridgeError as e:
        raise _http_error(e)
    return to_document(entry)


@app.put("/table")
async def put_table(payload: Dict):
    """
    Replace a cached table with an edited interchange document.
    The change stays in memory until /save.
    """
    path = payload.get("path")
    document = payload.get("document")
    if not path or document is None:
        raise HTTPException(status_code=400, detail="'path' and 'document' are required")

    try:
        replacement = from_document(document)
        ref = TableRef(path, replacement.name)
        await orchestrator.load(ref)
        await orchestrator.replace_entry(ref, replacement)
    except TableBridgeError as e:
        raise _http_error(e)

    return {
        "status": "OK",
        "dirty": [str(r) for r in orchestrator.dirty_tables()],
    }


@app.post("/save")
async def save(payload: Optional[Dict] = None):
    payload = payload or {}
    path = payload.get("path")
    alternate_path = payload.get("alternate_path")

    try:
        if path:
            written = [await orchestrator.save_file(path, alternate_path)]
        else:
            written = await orchestrator.save()
    except TableBridgeError as e:
        raise _http_error(e)

    return {"status": "OK", "written": written}
