"""
Spreadsheet reading with openpyxl.
"""
import io
import zipfile
from pathlib import Path
from typing import Any, List, Union

import openpyxl
from openpyxl.utils.exceptions import InvalidFileException

from pricedesk.exceptions import IngestionError
from pricedesk.observability import get_logger

logger = get_logger(__name__)

Source = Union[str, Path, bytes, io.BytesIO]


def read_rows(source: Source, file_name: str = None) -> List[List[Any]]:
    """
    Read the first worksheet as a 2D list of cell values.

    Args:
        source: Path to an .xlsx file, or its bytes
        file_name: Name used in error messages

    Raises:
        IngestionError: If the file cannot be opened as a workbook
    """
    if isinstance(source, bytes):
        source = io.BytesIO(source)
    name = file_name or (str(source) if isinstance(source, (str, Path)) else "upload")

    try:
        workbook = openpyxl.load_workbook(source, read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, OSError, KeyError, ValueError) as e:
        raise IngestionError("Cannot read spreadsheet", str(e), file_name=name) from e

    try:
        sheet = workbook.worksheets[0]
        rows = [list(row) for row in sheet.iter_rows(values_only=True)]
    finally:
        workbook.close()

    logger.debug("Spreadsheet read", extra={"file_name": name, "rows": len(rows)})
    return rows
