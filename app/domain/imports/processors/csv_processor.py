import csv
import io
import re
import logging
from typing import BinaryIO, Iterator, Optional

from app.domain.imports.errors import FileParseError
from app.domain.imports.processors.source_rows import SourceRow, is_blank

logger = logging.getLogger(__name__)

# csv.reader chokes on very wide cells from broken exports; keep it bounded.
CSV_FIELD_SIZE_LIMIT = 1024 * 1024

_UNDECODABLE = re.compile('[\udc80-\udcff]')


def detect_delimiter(first_line: str) -> str:
    """
    Pick the field delimiter from the header line.

    Regional Excel exports use ';' when ',' is the decimal separator.
    """
    if ';' in first_line and ',' not in first_line:
        return ';'
    if '\t' in first_line and ',' not in first_line and ';' not in first_line:
        return '\t'
    return ','


def _peek_first_line(buffered: io.BufferedReader) -> str:
    head = buffered.peek(64 * 1024)
    text = head.decode('utf-8', errors='replace').lstrip('\ufeff')
    return text.splitlines()[0] if text else ""


def iter_csv_rows(stream: BinaryIO, delimiter: Optional[str] = None) -> Iterator[SourceRow]:
    """
    Stream CSV rows from a binary file object without loading it into memory.

    Bytes that are not valid UTF-8 are kept as surrogate escapes so a single
    bad row can be reported without aborting the file.

    Args:
        stream: Buffered binary stream (read sequentially, once)
        delimiter: Force a delimiter; detected from the first line when None

    Yields:
        SourceRow per non-blank line, with ``error`` set for undecodable rows
    """
    buffered = stream if isinstance(stream, io.BufferedReader) else io.BufferedReader(stream)
    if delimiter is None:
        delimiter = detect_delimiter(_peek_first_line(buffered))

    text_stream = io.TextIOWrapper(buffered, encoding='utf-8-sig', errors='surrogateescape', newline='')
    csv.field_size_limit(CSV_FIELD_SIZE_LIMIT)
    reader = csv.reader(text_stream, delimiter=delimiter)

    try:
        for cells in reader:
            if is_blank(cells):
                continue
            if any(_UNDECODABLE.search(cell) for cell in cells):
                repaired = [
                    cell.encode('utf-8', errors='surrogateescape').decode('utf-8', errors='replace')
                    for cell in cells
                ]
                yield SourceRow(line_number=reader.line_num, cells=repaired, error="Malformed encoding: row is not valid UTF-8")
                continue
            yield SourceRow(line_number=reader.line_num, cells=[cell.strip() for cell in cells])
    except csv.Error as e:
        logger.error("CSV parsing error near line %s: %s", reader.line_num, e)
        raise FileParseError(f"CSV parsing error near line {reader.line_num}: {e}")
    finally:
        text_stream.detach()

