import os
from types import MappingProxyType
from typing import Mapping, Sequence, Tuple

from tablebridge.adapters.base import TableProvider
from tablebridge.adapters.binary_table import BinaryTableProvider
from tablebridge.adapters.text_table import TextTableProvider
from tablebridge.utils.exceptions import FormatError


class FormatRegistry:
    """
    Maps format identifiers and file extensions to provider instances.

    Built once from a fixed provider list and read-only afterwards.
    """

    def __init__(self, providers: Sequence[TableProvider]):
        by_id = {}
        by_extension = {}

        for provider in providers:
            key = provider.format_id.lower()
            if key in by_id:
                raise ValueError(f"Duplicate format identifier: {provider.format_id}")
            by_id[key] = provider

            for ext in provider.supported_extensions:
                ext_key = ext.lower()
                if ext_key in by_extension:
                    raise ValueError(f"Extension {ext} claimed by more than one provider")
                by_extension[ext_key] = provider

        self._providers: Tuple[TableProvider, ...] = tuple(providers)
        self._by_id: Mapping[str, TableProvider] = MappingProxyType(by_id)
        self._by_extension: Mapping[str, TableProvider] = MappingProxyType(by_extension)

    def providers(self) -> Tuple[TableProvider, ...]:
        return self._providers

    def supported_extensions(self) -> Tuple[str, ...]:
        return tuple(sorted(self._by_extension))

    def resolve_by_format_id(self, format_id: str) -> TableProvider:
        if not format_id:
            raise FormatError("Format identifier must not be empty")

        key = format_id.lower()
        if key not in self._by_id:
            raise FormatError(
                f"No provider registered for format: {format_id}. "
                f"Supported formats: {sorted(self._by_id)}"
            )
        return self._by_id[key]

    def resolve_by_extension(self, path: str) -> TableProvider:
        if not path:
            raise FormatError("Input file path is empty")

        _, ext = os.path.splitext(path)
        if not ext:
            raise FormatError(
                f"File has no extension. Unable to detect format: {path}"
            )

        key = ext.lower()
        if key not in self._by_extension:
            raise FormatError(
                f"Unsupported file extension: {ext}. "
                f"Supported extensions: {list(self.supported_extensions())}"
            )
        return self._by_extension[key]


# Closed set of formats, resolved once at import
REGISTRY = FormatRegistry((BinaryTableProvider(), TextTableProvider()))


def resolve_by_extension(path: str) -> TableProvider:
    return REGISTRY.resolve_by_extension(path)


def resolve_by_format_id(format_id: str) -> TableProvider:
    return REGISTRY.resolve_by_format_id(format_id)
