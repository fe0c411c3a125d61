import re
import zipfile
import logging
from datetime import date, datetime, time
from typing import Any, BinaryIO, Iterator, List, Optional, Tuple

import pandas as pd
from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException
from xlrd import XLRDError

from app.domain.imports.errors import FileParseError
from app.domain.imports.processors.source_rows import SourceRow, is_blank

logger = logging.getLogger(__name__)

_FLOAT_INTEGRAL = re.compile(r'^-?\d+\.0+$')


def cell_to_text(value: Any) -> str:
    """
    Render a spreadsheet cell as the string a user would have typed.

    Integral floats lose their ".0", midnight timestamps become plain dates.
    """
    if value is None:
        return ""
    if isinstance(value, datetime):
        if value.time() == time(0):
            return value.date().isoformat()
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float):
        if value != value:  # NaN
            return ""
        if value.is_integer():
            return str(int(value))
        return repr(value)
    text = str(value).strip()
    if _FLOAT_INTEGRAL.match(text):
        return text.split('.')[0]
    return text


def _pick_sheet(workbook):
    """First sheet with more than a header row; falls back to the first sheet."""
    for worksheet in workbook.worksheets:
        if worksheet.max_row is None or worksheet.max_row > 1:
            return worksheet
    return workbook.worksheets[0]


def open_xlsx_rows(file_obj: BinaryIO) -> Tuple[Iterator[SourceRow], Optional[int]]:
    """
    Stream rows of the first non-empty sheet of an XLSX workbook.

    Uses openpyxl read-only mode so rows are produced lazily from the zip
    container instead of building the whole sheet in memory.

    Returns:
        (row iterator, physical row count reported by the sheet dimension)
    """
    try:
        workbook = load_workbook(file_obj, read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as e:
        raise FileParseError(f"Could not read Excel file: {e}")

    if not workbook.worksheets:
        workbook.close()
        raise FileParseError("Excel file contains no worksheets")

    worksheet = _pick_sheet(workbook)
    logger.info("Using sheet '%s' (dimension rows=%s)", worksheet.title, worksheet.max_row)

    def _rows() -> Iterator[SourceRow]:
        try:
            for line_number, values in enumerate(worksheet.iter_rows(values_only=True), start=1):
                if is_blank(values):
                    continue
                yield SourceRow(line_number=line_number, cells=[cell_to_text(v) for v in values])
        except (zipfile.BadZipFile, KeyError, ValueError) as e:
            raise FileParseError(f"Corrupt Excel worksheet: {e}")
        finally:
            workbook.close()

    return _rows(), worksheet.max_row


def open_xls_rows(file_obj: BinaryIO) -> Tuple[Iterator[SourceRow], Optional[int]]:
    """
    Read rows of a legacy XLS workbook.

    The BIFF format has no streaming reader, so the first non-empty sheet is
    loaded through pandas/xlrd and then yielded row by row.
    """
    try:
        sheets = pd.read_excel(file_obj, sheet_name=None, header=None, dtype=str, engine='xlrd')
    except (XLRDError, ValueError, OSError) as e:
        raise FileParseError(f"Could not read Excel file: {e}")

    frame = None
    for name, candidate in sheets.items():
        if len(candidate.index) > 1:
            frame = candidate
            logger.info("Using sheet '%s' (%d rows)", name, len(candidate.index))
            break
    if frame is None:
        frame = next(iter(sheets.values()), pd.DataFrame())

    def _rows() -> Iterator[SourceRow]:
        for line_number, values in enumerate(frame.itertuples(index=False, name=None), start=1):
            cells: List[str] = [cell_to_text(None if pd.isna(v) else v) for v in values]
            if is_blank(cells):
                continue
            yield SourceRow(line_number=line_number, cells=cells)

    return _rows(), len(frame.index)
