import argparse
import asyncio
import os
import sys
from typing import List, Optional

from tablebridge.canonical.compare import find_difference
from tablebridge.canonical.table import TableEntry
from tablebridge.config.settings import Settings, load_settings
from tablebridge.governance.adapter_registry import REGISTRY
from tablebridge.io.atomic import read_bytes
from tablebridge.observability.logger import configure_logging
from tablebridge.outputs.interchange import InterchangeExporter, load_document
from tablebridge.utils.exceptions import TableBridgeError


class C:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    CYAN = "\033[36m"
    MAGENTA = "\033[35m"


_color = False


def cprint(text: str, color: str = C.RESET, bold: bool = False):
    if not _color:
        print(text)
        return
    prefix = (C.BOLD if bold else "") + color
    print(f"{prefix}{text}{C.RESET}")


async def _read(path: str) -> List[TableEntry]:
    provider = REGISTRY.resolve_by_extension(path)
    return await provider.read(path)


def _select(tables: List[TableEntry], name: Optional[str], path: str) -> List[TableEntry]:
    if name is None:
        return tables
    selected = [t for t in tables if t.name == name]
    if not selected:
        raise TableBridgeError(f"No table '{name}' in {path}; found {[t.name for t in tables]}")
    return selected


# ------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------
def cmd_inspect(args: argparse.Namespace, settings: Settings) -> int:
    tables = asyncio.run(_read(args.file))
    cprint(f"File:    {args.file}", C.BLUE, bold=True)
    cprint(f"Format:  {REGISTRY.resolve_by_extension(args.file).format_id}", C.DIM)

    for entry in _select(tables, args.table, args.file):
        print()
        cprint(f"[TABLE] {entry.name}  rows={len(entry.rows)}  columns={len(entry.schema.columns)}", C.MAGENTA, bold=True)
        print(f"  {'#':<5} {'Name':<34} {'Type':<8} {'Native':<12} {'Width':>5} {'Null':>5}")
        print(f"  {'-' * 5} {'-' * 34} {'-' * 8} {'-' * 12} {'-' * 5} {'-' * 5}")
        for idx, col in enumerate(entry.schema.columns):
            width = "-" if col.width is None else str(col.width)
            native = "-" if col.native_type_code is None else str(col.native_type_code)
            print(
                f"  {idx:<5} {col.name:<34} {col.type.value:<8} {native:<12} "
                f"{width:>5} {'yes' if col.nullable else 'no':>5}"
            )

        for row in entry.rows[: args.rows]:
            print("  " + " | ".join("NULL" if v is None else str(v) for v in row))
    return 0


def cmd_export(args: argparse.Namespace, settings: Settings) -> int:
    tables = asyncio.run(_read(args.file))
    output_format = args.format or settings.interchange_format

    if args.output_dir:
        os.makedirs(args.output_dir, exist_ok=True)

    for entry in _select(tables, args.table, args.file):
        exporter = InterchangeExporter(entry, output_format, indent=settings.interchange_indent)
        if args.output_dir:
            target = os.path.join(args.output_dir, entry.name + exporter.extension)
            exporter.export_to_file(target)
            cprint(f"[DONE] {entry.name} -> {target}", C.GREEN)
        else:
            print(exporter.export_to_string())
    return 0


def cmd_build(args: argparse.Namespace, settings: Settings) -> int:
    entries = []
    for doc_path in args.documents:
        with open(doc_path, "r", encoding="utf-8") as f:
            entries.append(load_document(f.read()))

    if args.format_id:
        provider = REGISTRY.resolve_by_format_id(args.format_id)
    else:
        provider = REGISTRY.resolve_by_extension(args.output)

    asyncio.run(provider.write(args.output, entries, chunk_size=settings.write_chunk_size))
    cprint(f"[DONE] {len(entries)} table(s) written to {args.output}", C.GREEN, bold=True)
    return 0


def cmd_verify(args: argparse.Namespace, settings: Settings) -> int:
    provider = REGISTRY.resolve_by_extension(args.file)
    original = asyncio.run(read_bytes(args.file))
    tables = provider.decode(original, args.file)
    rewritten = provider.encode(tables)

    if rewritten == original:
        cprint(f"[OK] {args.file} round-trips byte-for-byte ({len(original)} bytes)", C.GREEN, bold=True)
        return 0

    normalized = [t.name for t in tables if t.schema.metadata.get("text_normalized")]
    if normalized:
        cprint(
            f"[WARNING] {args.file} differs after round trip; tables flagged "
            f"text-normalized: {normalized}",
            C.YELLOW,
            bold=True,
        )
        return 0

    first = next(
        (i for i, (a, b) in enumerate(zip(original, rewritten)) if a != b),
        min(len(original), len(rewritten)),
    )
    cprint(
        f"[FAILED] {args.file} differs after round trip at byte {first} "
        f"({len(original)} vs {len(rewritten)} bytes)",
        C.RED,
        bold=True,
    )
    return 1


def cmd_diff(args: argparse.Namespace, settings: Settings) -> int:
    left = {t.name: t for t in asyncio.run(_read(args.left))}
    right = {t.name: t for t in asyncio.run(_read(args.right))}

    if len(left) == 1 and len(right) == 1:
        pairs = [(next(iter(left.values())), next(iter(right.values())))]
    else:
        missing = sorted(set(left) ^ set(right))
        if missing:
            cprint(f"[DIFF] Tables present on one side only: {missing}", C.RED, bold=True)
            return 1
        pairs = [(left[name], right[name]) for name in left]

    status = 0
    for a, b in pairs:
        difference = find_difference(a, b)
        if difference is None:
            cprint(f"[SAME] {a.name}", C.GREEN)
        else:
            cprint(f"[DIFF] {a.name}: {difference}", C.RED, bold=True)
            status = 1
    return status


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tablebridge",
        description="Game data table converter",
    )
    parser.add_argument("--config", help="Path to YAML settings file")

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("inspect", help="Print the schema of a native table file")
    p.add_argument("file")
    p.add_argument("--table", help="Only this table")
    p.add_argument("--rows", type=int, default=0, help="Also print the first N rows")
    p.set_defaults(handler=cmd_inspect)

    p = sub.add_parser("export", help="Export native tables as interchange documents")
    p.add_argument("file")
    p.add_argument("--table", help="Only this table")
    p.add_argument("--format", choices=["json", "yaml"], help="Document format")
    p.add_argument("--output-dir", help="Write one document per table here instead of stdout")
    p.set_defaults(handler=cmd_export)

    p = sub.add_parser("build", help="Build a native file from interchange documents")
    p.add_argument("documents", nargs="+")
    p.add_argument("--output", required=True, help="Native file to write")
    p.add_argument("--format-id", help="Provider format id (default: from output extension)")
    p.set_defaults(handler=cmd_build)

    p = sub.add_parser("verify", help="Check that a file round-trips byte-for-byte")
    p.add_argument("file")
    p.set_defaults(handler=cmd_verify)

    p = sub.add_parser("diff", help="Compare the table data of two native files")
    p.add_argument("left")
    p.add_argument("right")
    p.set_defaults(handler=cmd_diff)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    global _color

    parser = build_parser()
    args = parser.parse_args(argv)

    settings = load_settings(args.config)
    configure_logging(settings.log_level, settings.log_color)
    _color = settings.log_color and sys.stdout.isatty()

    try:
        return args.handler(args, settings)
    except TableBridgeError as e:
        cprint(f"[FAILED] {type(e).__name__}: {e}", C.RED, bold=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
