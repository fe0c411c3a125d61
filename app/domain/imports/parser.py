"""
Streaming parser for uploaded import files.

Turns a stored CSV, XLS or XLSX object into a lazy, single-use sequence of
raw rows keyed by canonical field names. Row-level problems (undecodable
bytes, wrong column count) are yielded as ``RowError`` items; file-level
problems raise ``FileParseError`` or ``ChecksumMismatch``.
"""
from __future__ import annotations

import hashlib
import io
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from enum import Enum
from typing import Any, BinaryIO, Dict, Iterator, List, Optional, Union

from app.core.config import settings
from app.domain.imports.errors import ChecksumMismatch, FileParseError, UnsupportedContentType
from app.domain.imports.processors.csv_processor import iter_csv_rows
from app.domain.imports.processors.excel_processor import open_xls_rows, open_xlsx_rows
from app.domain.imports.processors.source_rows import SourceRow
from app.domain.imports.schema_mapper import (
    HeaderMapping,
    SchemaDefinition,
    build_header_mapping,
    extract_preamble_defaults,
    find_header_row,
    map_values,
)

logger = logging.getLogger(__name__)

SPOOL_MAX_MEMORY_BYTES = 8 * 1024 * 1024


class FileFormat(str, Enum):
    CSV = "csv"
    XLSX = "xlsx"
    XLS = "xls"


_EXTENSIONS = {
    ".csv": FileFormat.CSV,
    ".txt": FileFormat.CSV,
    ".xlsx": FileFormat.XLSX,
    ".xlsm": FileFormat.XLSX,
    ".xls": FileFormat.XLS,
}

_CONTENT_TYPES = {
    "text/csv": FileFormat.CSV,
    "application/csv": FileFormat.CSV,
    "text/plain": FileFormat.CSV,
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": FileFormat.XLSX,
    "application/vnd.ms-excel": FileFormat.XLS,
}


def detect_file_format(content_type: Optional[str], file_name: Optional[str] = None) -> FileFormat:
    """
    Resolve the file format from the file extension, then the content type.

    Browsers on Windows report CSV files as ``application/vnd.ms-excel``, so
    a recognised extension takes precedence over the declared MIME type.
    """
    if file_name:
        extension = os.path.splitext(file_name.lower())[1]
        if extension in _EXTENSIONS:
            return _EXTENSIONS[extension]
    if content_type:
        base_type = content_type.split(";")[0].strip().lower()
        if base_type in _CONTENT_TYPES:
            return _CONTENT_TYPES[base_type]
    raise UnsupportedContentType(
        f"Unsupported file type (content type {content_type!r}, name {file_name!r}). "
        "Please use CSV, XLSX, or XLS files."
    )


class HashingReader(io.RawIOBase):
    """Raw stream wrapper that hashes and counts bytes as they are read."""

    def __init__(self, stream: BinaryIO):
        self._stream = stream
        self._digest = hashlib.sha256()
        self.bytes_read = 0

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        chunk = self._stream.read(len(buffer))
        if not chunk:
            return 0
        size = len(chunk)
        buffer[:size] = chunk
        self._digest.update(chunk)
        self.bytes_read += size
        return size

    @property
    def hexdigest(self) -> str:
        return self._digest.hexdigest()


@dataclass
class RawRow:
    index: int
    line_number: int
    values: Dict[str, Optional[str]]
    raw: Dict[str, str]


@dataclass
class RowError:
    index: int
    line_number: int
    raw: Dict[str, str]
    reason: str


ParsedItem = Union[RawRow, RowError]


class ParsedFile:
    """
    Header-resolved view over a source file.

    ``rows()`` may be consumed exactly once. ``rows_total_hint`` is known up front
    for spreadsheets (from the sheet dimension) and only after exhaustion for
    CSV.
    """

    def __init__(
        self,
        schema: SchemaDefinition,
        file_format: FileFormat,
        source_rows: Iterator[SourceRow],
        hasher: Optional[HashingReader],
        expected_sha256: Optional[str],
        expected_size: Optional[int],
        physical_rows: Optional[int] = None,
        defaults: Optional[Dict[str, Any]] = None,
        header_scan_rows: Optional[int] = None,
        cleanup=None,
    ):
        self.schema = schema
        self.file_format = file_format
        self._source = source_rows
        self._hasher = hasher
        self._expected_sha256 = (expected_sha256 or "").lower() or None
        self._expected_size = expected_size
        self._cleanup = cleanup
        self._consumed = False
        self.defaults: Dict[str, Any] = dict(defaults or {})
        self.rows_total_hint: Optional[int] = None

        scan_limit = header_scan_rows or settings.header_scan_rows
        self._buffered: List[SourceRow] = []
        for row in self._source:
            self._buffered.append(row)
            if len(self._buffered) >= scan_limit:
                break

        if not self._buffered:
            self.close()
            raise FileParseError("File is empty: no rows found")

        header_at = find_header_row(schema, [r.cells for r in self._buffered], self.defaults)
        if header_at is None:
            self.close()
            raise FileParseError(
                f"Could not find a header row with the required columns "
                f"{schema.required_fields} for '{schema.schema_type.value}' imports"
            )

        preamble = self._buffered[:header_at]
        for field_name, value in extract_preamble_defaults(schema, [r.cells for r in preamble]).items():
            self.defaults.setdefault(field_name, value)

        header_row = self._buffered[header_at]
        self.header_line = header_row.line_number
        self.mapping: HeaderMapping = build_header_mapping(schema, header_row.cells)
        self._buffered = self._buffered[header_at + 1:]
        self._last_required_position = max(
            (pos for pos, name in self.mapping.columns.items() if name in schema.required_fields),
            default=-1,
        )
        if self.mapping.unmapped:
            logger.info("Ignoring unmapped columns: %s", self.mapping.unmapped)

        if physical_rows is not None:
            self.rows_total_hint = max(physical_rows - header_row.line_number, 0)

    @property
    def headers(self) -> List[str]:
        return self.mapping.headers

    def _raw_mapping(self, cells: List[str]) -> Dict[str, str]:
        raw: Dict[str, str] = {}
        for position, cell in enumerate(cells):
            key = self.headers[position] if position < len(self.headers) and self.headers[position] else f"column_{position + 1}"
            raw[key] = cell
        return raw

    def _check_width(self, row: SourceRow) -> Optional[str]:
        width = len(self.headers)
        if len(row.cells) > width and any(cell.strip() for cell in row.cells[width:]):
            return f"Wrong column count: expected {width} columns, got {len(row.cells)}"
        if len(row.cells) < width:
            # CSV exports drop trailing optional cells; a short row is only
            # broken when it stops before the last required column.
            if self.file_format == FileFormat.CSV and len(row.cells) <= self._last_required_position:
                return f"Wrong column count: expected {width} columns, got {len(row.cells)}"
            row.cells = row.cells + [""] * (width - len(row.cells))
        return None

    def rows(self) -> Iterator[ParsedItem]:
        if self._consumed:
            raise RuntimeError("Parsed rows can only be consumed once")
        self._consumed = True
        return self._iterate()

    def _iterate(self) -> Iterator[ParsedItem]:
        index = 0

        def _all_rows() -> Iterator[SourceRow]:
            yield from self._buffered
            yield from self._source

        try:
            for row in _all_rows():
                index += 1
                reason = row.error or self._check_width(row)
                if reason:
                    yield RowError(index=index, line_number=row.line_number, raw=self._raw_mapping(row.cells), reason=reason)
                    continue
                yield RawRow(
                    index=index,
                    line_number=row.line_number,
                    values=map_values(self.mapping, row.cells),
                    raw=self._raw_mapping(row.cells),
                )
            self._buffered = []

            if index == 0:
                raise FileParseError("File has a header but no data rows")
            self.rows_total_hint = index
            if self.file_format == FileFormat.CSV:
                self._verify_checksum()
        finally:
            self.close()

    def _verify_checksum(self) -> None:
        if self._hasher is None or self._expected_sha256 is None:
            return
        # Drain anything csv.reader did not need (trailing blank lines).
        while self._hasher.read(64 * 1024):
            pass
        verify_checksum(self._hasher, self._expected_sha256, self._expected_size)

    def close(self) -> None:
        if self._cleanup is not None:
            cleanup, self._cleanup = self._cleanup, None
            cleanup()


def verify_checksum(hasher: HashingReader, expected_sha256: Optional[str], expected_size: Optional[int]) -> None:
    if not expected_sha256:
        return
    actual = hasher.hexdigest
    size_ok = expected_size is None or expected_size == hasher.bytes_read
    if actual != expected_sha256.lower() or not size_ok:
        raise ChecksumMismatch(expected_sha256, actual, expected_size, hasher.bytes_read)


def _spool(hasher: HashingReader):
    spooled = tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_MEMORY_BYTES)
    shutil.copyfileobj(hasher, spooled, 1024 * 1024)
    spooled.seek(0)
    return spooled


def iter_rows(
    stream: BinaryIO,
    *,
    schema: SchemaDefinition,
    content_type: Optional[str],
    file_name: Optional[str] = None,
    expected_sha256: Optional[str] = None,
    expected_size: Optional[int] = None,
    defaults: Optional[Dict[str, Any]] = None,
    header_scan_rows: Optional[int] = None,
) -> ParsedFile:
    """
    Open a stored object for row iteration.

    CSV is hashed while streaming and verified after the last row.
    Spreadsheets need random access, so they are spooled to a temporary file
    first and verified before any row is produced.
    """
    try:
        file_format = detect_file_format(content_type, file_name)
    except UnsupportedContentType as e:
        raise FileParseError(e.message)

    hasher = HashingReader(stream)

    if file_format == FileFormat.CSV:
        buffered = io.BufferedReader(hasher, buffer_size=64 * 1024)
        return ParsedFile(
            schema, file_format, iter_csv_rows(buffered), hasher, expected_sha256, expected_size,
            defaults=defaults, header_scan_rows=header_scan_rows,
        )

    spooled = _spool(hasher)
    try:
        verify_checksum(hasher, expected_sha256, expected_size)
        if file_format == FileFormat.XLSX:
            source_rows, physical_rows = open_xlsx_rows(spooled)
        else:
            source_rows, physical_rows = open_xls_rows(spooled)
    except Exception:
        spooled.close()
        raise

    return ParsedFile(
        schema, file_format, source_rows, None, None, None,
        physical_rows=physical_rows, defaults=defaults,
        header_scan_rows=header_scan_rows, cleanup=spooled.close,
    )
