#!/usr/bin/env python3
"""
AccessReplay Report Store

Ordered rows of string cells with symbolic styles, lookup indices and
three on-disk formats:
- tab-delimited text ("-" marks an absent cell)
- CSV (an empty field marks an absent cell)
- .xlsx workbooks, cell types inferred from the string values

Every value is stored as a string. The spreadsheet type is decided only
when writing .xlsx:
- numeric-looking strings shorter than 15 characters become numbers
- "=..." becomes a formula
- "true" / "false" (any case) becomes a boolean
- "{Date}yyyy-mm-dd" and "{DateTime}yyyy-mm-dd HH:MM:SS" become dates
- anything else is text, truncated to the Excel cell limit

Thread-safety: appending rows and building/reading lookup indices share
one lock. Cells of an existing row are written by a single owner thread
without further locking.
"""

from __future__ import annotations

import csv
import logging
import os
import re
import threading
from dataclasses import dataclass
from datetime import date, datetime, time as dt_time
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional, Union

import openpyxl
import polars as pl
from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.styles import Font, PatternFill
from openpyxl.utils import column_index_from_string, get_column_letter
from openpyxl.worksheet.properties import Outline

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

TEXT_DELIMITER = "\t"
TEXT_PLACEHOLDER = "-"
CSV_DELIMITER = ","

DATE_TAG = "{Date}"
DATETIME_TAG = "{DateTime}"
DATE_FORMAT = "%Y-%m-%d"
DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"

NUMBER_RE = re.compile(r"[-+]?[0-9]*\.?[0-9]+")
MAX_NUMBER_LENGTH = 15
MAX_CELL_LENGTH = 32767

MIN_AUTO_WIDTH = 12
MAX_AUTO_WIDTH = 120

_LINE_BREAKS_RE = re.compile(r"[\r\n]")

Column = Union[int, str]
CellValue = Union[str, int, float, bool, date, datetime, None]


# =============================================================================
# STYLES
# =============================================================================

class Style(str, Enum):
    """Symbolic cell/row style. Rendered only in .xlsx output."""
    GOOD = "good"
    BAD = "bad"
    NEUTRAL = "neutral"
    HEADER = "header"
    LIGHT_BLUE = "lightblue"
    DARK_BLUE = "darkblue"
    F2 = "f2"
    F0 = "f0"
    DATE = "date"
    DATETIME = "datetime"
    HYPERLINK = "hyperlink"


@dataclass(frozen=True)
class CellAttributes:
    """Rendering attributes of a style; colors are RGB hex."""
    fill: Optional[str] = None
    font_color: Optional[str] = None
    underline: bool = False
    number_format: Optional[str] = None


XLSX_STYLES: dict[Style, CellAttributes] = {
    Style.GOOD: CellAttributes(fill="C6EFCE", font_color="006100"),
    Style.BAD: CellAttributes(fill="FFC7CE", font_color="9C0006"),
    Style.NEUTRAL: CellAttributes(fill="FFEB9C", font_color="9C6500"),
    Style.HEADER: CellAttributes(fill="4F81BD", font_color="FFFFFF"),
    Style.LIGHT_BLUE: CellAttributes(fill="4BACC6", font_color="FFFFFF"),
    Style.DARK_BLUE: CellAttributes(fill="4F81BD", font_color="FFFFFF"),
    Style.F2: CellAttributes(number_format="0.00"),
    Style.F0: CellAttributes(number_format="0"),
    Style.DATE: CellAttributes(number_format="yyyy-mm-dd"),
    Style.DATETIME: CellAttributes(number_format="yyyy-mm-dd hh:mm:ss"),
    Style.HYPERLINK: CellAttributes(font_color="0000FF", underline=True),
}


def apply_style(cell, style: Style) -> None:
    """Apply the attributes a style defines, leaving the others untouched."""
    attrs = XLSX_STYLES[Style(style)]
    if attrs.fill:
        cell.fill = PatternFill(fill_type="solid", start_color=attrs.fill, end_color=attrs.fill)
    if attrs.font_color or attrs.underline:
        cell.font = Font(color=attrs.font_color, underline="single" if attrs.underline else None)
    if attrs.number_format:
        cell.number_format = attrs.number_format


class ReportFormat(str, Enum):
    TXT = "txt"
    CSV = "csv"
    XLSX = "xlsx"

    @classmethod
    def for_path(cls, path: Union[str, Path]) -> ReportFormat:
        suffix = Path(path).suffix.lower()
        if suffix == ".xlsx":
            return cls.XLSX
        if suffix == ".csv":
            return cls.CSV
        return cls.TXT


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================

def column_index(column: Column) -> int:
    """Accept a 0-based index or a spreadsheet letter ("A", "AB")."""
    if isinstance(column, int):
        return column
    return column_index_from_string(column.upper()) - 1


def encode_value(value: CellValue) -> Optional[str]:
    """Encode a Python value as the string stored in a cell."""
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return DATETIME_TAG + value.strftime(DATETIME_FORMAT)
    if isinstance(value, date):
        return DATE_TAG + value.strftime(DATE_FORMAT)
    return str(value)


def _clean_text(value: str) -> str:
    return _LINE_BREAKS_RE.sub(" ", value.replace(TEXT_DELIMITER, " "))


def _clean_xlsx_text(value: str) -> str:
    return ILLEGAL_CHARACTERS_RE.sub("", value)[:MAX_CELL_LENGTH]


def _to_number(value: str) -> Union[int, float]:
    if "." in value:
        return float(value)
    return int(value)


def write_cell_value(cell, value: str) -> None:
    """Write a stored string into a worksheet cell with its inferred type."""
    if len(value) < MAX_NUMBER_LENGTH and NUMBER_RE.fullmatch(value):
        cell.value = _to_number(value)
    elif value.startswith("="):
        # openpyxl stores strings starting with "=" as formulas
        cell.value = value
    elif value.lower() in ("true", "false"):
        cell.value = value.lower() == "true"
    elif value.startswith(DATE_TAG):
        _write_temporal(cell, value[len(DATE_TAG):], DATE_FORMAT, Style.DATE)
    elif value.startswith(DATETIME_TAG):
        _write_temporal(cell, value[len(DATETIME_TAG):], DATETIME_FORMAT, Style.DATETIME)
    else:
        cell.value = _clean_xlsx_text(value)


def _write_temporal(cell, text: str, fmt: str, style: Style) -> None:
    try:
        parsed = datetime.strptime(text, fmt)
    except ValueError:
        cell.value = _clean_xlsx_text(text)
        return
    cell.value = parsed.date() if style is Style.DATE else parsed
    apply_style(cell, style)


def format_cell(cell) -> str:
    """Format a worksheet cell back to its string representation."""
    value = cell.value
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, datetime):
        if value.time() == dt_time.min and "h" not in (cell.number_format or "").lower():
            return value.strftime(DATE_FORMAT)
        return value.strftime(DATETIME_FORMAT)
    if isinstance(value, date):
        return value.strftime(DATE_FORMAT)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


# =============================================================================
# ROW
# =============================================================================

class Row:
    """One record: sparse column index -> string, plus optional styling."""

    def __init__(self, report: Optional[Report] = None):
        self._report = report
        self._index = -1
        self.values: dict[int, str] = {}
        self.cell_styles: dict[int, Style] = {}
        self.row_style: Optional[Style] = None
        self.row_id: Optional[str] = None
        self._frozen = False

    @property
    def index(self) -> int:
        """Position in the report at creation time; never changes afterwards."""
        return self._index

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> None:
        """Ignore every later write to this row."""
        self._frozen = True

    @property
    def width(self) -> int:
        keys = list(self.values)
        return max(keys) + 1 if keys else 0

    def set_value(self, column: Column, value: CellValue) -> Row:
        if self._frozen:
            return self
        col = column_index(column)
        text = encode_value(value)
        if text is None:
            self.values.pop(col, None)
        else:
            self.values[col] = text
        if self._report is not None:
            self._report._cell_written(self, col, text)
        return self

    def get_value(self, column: Column) -> Optional[str]:
        return self.values.get(column_index(column))

    def set_cell_style(self, column: Column, style: Optional[Union[Style, str]]) -> None:
        if self._frozen:
            return
        col = column_index(column)
        if style is None:
            self.cell_styles.pop(col, None)
        else:
            self.cell_styles[col] = Style(style)

    def get_cell_style(self, column: Column) -> Optional[Style]:
        return self.cell_styles.get(column_index(column))

    def set_row_style(self, style: Optional[Union[Style, str]]) -> None:
        if self._frozen:
            return
        self.row_style = None if style is None else Style(style)

    def __str__(self) -> str:
        return TEXT_DELIMITER.join(
            TEXT_PLACEHOLDER if self.values.get(i) is None else _clean_text(self.values[i])
            for i in range(self.width)
        )

    def __repr__(self) -> str:
        return f"Row(index={self._index}, values={self.values!r})"


# =============================================================================
# REPORT
# =============================================================================

_ID_INDEX = ("id", True)


class Report:
    """Append-only ordered rows, growing column list, lookup indices."""

    def __init__(self, columns: Optional[list[str]] = None):
        self._lock = threading.RLock()
        self._rows: list[Row] = []
        self._columns: list[str] = list(columns or [])
        # (column, case_sensitive) -> value -> first row; None disables caching
        self._indices: Optional[dict[tuple[Any, bool], dict[str, Row]]] = {}
        self.column_widths: dict[int, float] = {}
        self.hidden_columns: set[int] = set()
        self.sheet_name: Optional[str] = None
        self.group_column: Optional[int] = None
        self.freeze_header = False
        self.is_modified = False

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> Report:
        report = cls()
        report.load(path)
        return report

    # -------------------------------------------------------------------------
    # Rows
    # -------------------------------------------------------------------------

    def create_row(self, src: Optional[Row] = None) -> Row:
        row = Row(self)
        if src is not None:
            row.values = dict(src.values)
            row.cell_styles = dict(src.cell_styles)
            row.row_style = src.row_style
        self.add(row)
        return row

    def add(self, row: Row) -> None:
        with self._lock:
            row._index = len(self._rows)
            row._report = self
            self._rows.append(row)
            self.is_modified = True

    def get_row(self, index: int) -> Row:
        with self._lock:
            return self._rows[index]

    def last_row(self) -> Row:
        with self._lock:
            return self._rows[-1]

    def delete_row(self, row: Row) -> bool:
        with self._lock:
            try:
                self._rows.remove(row)
            except ValueError:
                return False
            self.is_modified = True
            return True

    @property
    def rows(self) -> list[Row]:
        with self._lock:
            return list(self._rows)

    def clear(self) -> None:
        with self._lock:
            self._rows.clear()
            if self._indices is not None:
                self._indices.clear()

    def __len__(self) -> int:
        return len(self._rows)

    def __iter__(self) -> Iterator[Row]:
        return iter(self.rows)

    # -------------------------------------------------------------------------
    # Columns
    # -------------------------------------------------------------------------

    @property
    def columns(self) -> list[str]:
        return list(self._columns)

    def set_columns(self, columns: list[str]) -> None:
        self._columns = list(columns)

    def add_column(self, name: str) -> int:
        self._columns.append(name)
        return len(self._columns) - 1

    def column_index_of(self, name: str) -> Optional[int]:
        try:
            return self._columns.index(name)
        except ValueError:
            return None

    def set_column_width(self, column: Column, width: float) -> None:
        """Explicit width in characters; overrides auto-sizing."""
        self.column_widths[column_index(column)] = width

    def hide_columns(self, *columns: Column) -> None:
        self.hidden_columns = {column_index(c) for c in columns}

    def group_rows(self, column: Column) -> None:
        self.group_column = column_index(column)

    def freeze_top_row(self) -> None:
        self.freeze_header = True

    # -------------------------------------------------------------------------
    # Lookup indices
    # -------------------------------------------------------------------------

    def build_index(self, column: Column, case_sensitive: bool = True) -> dict[str, Row]:
        """
        Snapshot value -> first row for a column and cache it.

        The snapshot reflects the rows present right now. Later writes are
        added by insertion only (see _cell_written); rows appended later
        and overwritten values are not reconciled until clear_indices().
        """
        col = column_index(column)
        with self._lock:
            index: dict[str, Row] = {}
            for row in self._rows:
                value = row.values.get(col)
                if value is None:
                    continue
                index.setdefault(value if case_sensitive else value.lower(), row)
            if self._indices is not None:
                self._indices[(col, case_sensitive)] = index
            return index

    def lookup(self, column: Column, key: str, case_sensitive: bool = True) -> Optional[Row]:
        col = column_index(column)
        with self._lock:
            index = None if self._indices is None else self._indices.get((col, case_sensitive))
            if index is None:
                index = self.build_index(col, case_sensitive)
        return index.get(key if case_sensitive else key.lower())

    def get_by_id(self, row_id: str) -> Optional[Row]:
        with self._lock:
            index = None if self._indices is None else self._indices.get(_ID_INDEX)
            if index is None:
                index = {}
                for row in self._rows:
                    if row.row_id is not None:
                        index.setdefault(row.row_id, row)
                if self._indices is not None:
                    self._indices[_ID_INDEX] = index
        return index.get(row_id)

    def match_path(self, column: Column, fragment: str) -> bool:
        col = column_index(column)
        return any(fragment in (row.values.get(col) or "") for row in self.rows)

    def clear_indices(self) -> None:
        with self._lock:
            if self._indices is not None:
                self._indices.clear()

    def disable_indices(self) -> None:
        """Stop caching indices; every lookup scans the rows."""
        with self._lock:
            self._indices = None

    def _cell_written(self, row: Row, col: int, text: Optional[str]) -> None:
        self.is_modified = True
        if text is None or self._indices is None:
            return
        with self._lock:
            for case_sensitive in (True, False):
                index = self._indices.get((col, case_sensitive))
                if index is not None:
                    index.setdefault(text if case_sensitive else text.lower(), row)

    # -------------------------------------------------------------------------
    # Save
    # -------------------------------------------------------------------------

    def save(self, path: Union[str, Path], fmt: Optional[Union[ReportFormat, str]] = None) -> Path:
        path = Path(path)
        report_format = ReportFormat(fmt) if fmt else ReportFormat.for_path(path)

        parent = path.parent
        parent.mkdir(parents=True, exist_ok=True)
        if not os.access(parent, os.W_OK):
            raise PermissionError(f"Cannot write to {parent}. Aborting")

        logger.info("Saving report (%d rows) as %s", len(self), path)
        if report_format is ReportFormat.XLSX:
            self.save_xlsx(path)
        elif report_format is ReportFormat.CSV:
            self._write_delimited(path, CSV_DELIMITER, "", quote_style="necessary", clean=False)
        else:
            self._write_delimited(path, TEXT_DELIMITER, TEXT_PLACEHOLDER, quote_style="never", clean=True)
        self.is_modified = False
        return path

    def _grid(self, clean: bool) -> tuple[list[list[Optional[str]]], int]:
        # snapshots; worker threads may still be writing cells
        rows = [row.values.copy() for row in self.rows]
        width = max([len(self._columns)] + [max(values) + 1 for values in rows if values])
        header = self._columns + [""] * (width - len(self._columns))
        grid = [[_clean_text(name) if clean else name for name in header]]
        for row_values in rows:
            values = [row_values.get(i) for i in range(width)]
            if clean:
                values = [None if v is None else _clean_text(v) for v in values]
            grid.append(values)
        return grid, width

    def _write_delimited(self, path: Path, separator: str, null_value: str,
                         quote_style: str, clean: bool) -> None:
        grid, width = self._grid(clean)
        if width == 0:
            path.write_text("", encoding="utf-8")
            return
        frame = pl.DataFrame(
            grid,
            schema=[(f"column_{i}", pl.Utf8) for i in range(width)],
            orient="row",
        )
        frame.write_csv(
            path,
            include_header=False,
            separator=separator,
            null_value=null_value,
            quote_style=quote_style,
        )

    def save_xlsx(self, path: Union[str, Path]) -> None:
        workbook = openpyxl.Workbook()
        sheet = workbook.active
        if self.sheet_name:
            sheet.title = self.sheet_name
        self.write_sheet(sheet)
        workbook.save(path)

    def write_sheet(self, sheet) -> None:
        """Render the report into an openpyxl worksheet."""
        sheet.sheet_properties.outlinePr = Outline(summaryBelow=False)
        if self.freeze_header:
            sheet.freeze_panes = "A2"

        text_widths: dict[int, int] = {}
        for col, name in enumerate(self._columns):
            cell = sheet.cell(row=1, column=col + 1, value=_clean_xlsx_text(name))
            apply_style(cell, Style.HEADER)
            text_widths[col] = len(name)

        row_number = 1
        last_column = len(self._columns)
        group_row: Optional[int] = None
        for row in self.rows:
            row_number += 1
            row_values = row.values.copy()
            if not row_values:
                continue

            width = max(max(row_values) + 1, len(self._columns))
            for col in range(width):
                cell = sheet.cell(row=row_number, column=col + 1)
                value = row_values.get(col)
                if value is not None:
                    write_cell_value(cell, value)
                    text_widths[col] = max(text_widths.get(col, 0), min(len(value), MAX_AUTO_WIDTH))
                style = row.cell_styles.get(col) or row.row_style
                if style is not None:
                    apply_style(cell, style)
            last_column = max(last_column, width)

            if self.group_column is not None and row_values.get(self.group_column) is not None:
                if group_row is not None and row_number - group_row > 1:
                    sheet.row_dimensions.group(group_row + 1, row_number - 1, outline_level=1)
                group_row = row_number

        if self.group_column is not None and group_row is not None and row_number > group_row:
            sheet.row_dimensions.group(group_row + 1, row_number, outline_level=1)

        self._size_columns(sheet, max(last_column, 1), text_widths)
        sheet.auto_filter.ref = f"A1:{get_column_letter(max(last_column, 1))}{row_number}"

    def _size_columns(self, sheet, last_column: int, text_widths: dict[int, int]) -> None:
        extra = set(self.column_widths) | self.hidden_columns
        for col in range(max([last_column] + [c + 1 for c in extra])):
            dimension = sheet.column_dimensions[get_column_letter(col + 1)]
            if col in self.column_widths:
                dimension.width = self.column_widths[col]
            else:
                width = text_widths.get(col, 0) + 2
                dimension.width = min(max(width, MIN_AUTO_WIDTH), MAX_AUTO_WIDTH)
            if col in self.hidden_columns:
                dimension.hidden = True

    # -------------------------------------------------------------------------
    # Load
    # -------------------------------------------------------------------------

    def load(self, path: Union[str, Path]) -> None:
        report_format = ReportFormat.for_path(path)
        if report_format is ReportFormat.XLSX:
            self.load_xlsx(path)
        elif report_format is ReportFormat.CSV:
            self.load_csv(path)
        else:
            self.load_txt(path)

    def load_txt(self, path: Union[str, Path]) -> None:
        """Tab-delimited text; "-" loads as an absent cell."""
        self._read_delimited(
            Path(path),
            separator=TEXT_DELIMITER,
            quote_char=None,
            null_values=TEXT_PLACEHOLDER,
            empty_string_is_null=False,
        )

    def load_csv(self, path: Union[str, Path]) -> None:
        """CSV; an empty field loads as an absent cell."""
        self._read_delimited(
            Path(path),
            separator=CSV_DELIMITER,
            quote_char='"',
            null_values=None,
            empty_string_is_null=True,
        )

    def _read_delimited(self, path: Path, separator: str, quote_char: Optional[str], **options) -> None:
        self.clear()
        self._columns = []
        width = _record_width(path, separator, quote_char)
        if width == 0:
            return
        # one column per field of the widest record; short records pad with null
        frame = pl.read_csv(
            path,
            has_header=False,
            separator=separator,
            quote_char=quote_char,
            schema={f"column_{i}": pl.Utf8 for i in range(width)},
            **options,
        )
        records = frame.rows()
        if not records:
            return
        self._columns = _header_names(["" if name is None else name for name in records[0]])
        for record in records[1:]:
            row = Row()
            for col, value in enumerate(record):
                if value is not None:
                    row.values[col] = value
            self.add(row)
        self.is_modified = False

    def load_xlsx(self, path: Union[str, Path], sheet_name: Optional[str] = None) -> None:
        workbook = openpyxl.load_workbook(path)
        try:
            if sheet_name is None:
                sheet = workbook.worksheets[0]
            elif sheet_name in workbook.sheetnames:
                sheet = workbook[sheet_name]
            else:
                raise ValueError(f"Invalid sheet name: {sheet_name}")
            self.load_sheet(sheet)
        finally:
            workbook.close()

    def load_sheet(self, sheet) -> None:
        """Header row -> columns, every following row -> one Row."""
        self.clear()
        self._columns = []
        self.sheet_name = sheet.title

        rows = sheet.iter_rows()
        header = next(rows, None)
        if header is not None:
            names = [""] * len(header)
            for cell in header:
                if cell.value is not None:
                    names[cell.column - 1] = format_cell(cell)
            self._columns = _header_names(names)

        for cells in rows:
            row = Row()
            for cell in cells:
                if cell.value is None or cell.data_type == "e":
                    continue
                row.values[cell.column - 1] = format_cell(cell)
            self.add(row)
        self.is_modified = False


def _record_width(path: Path, separator: str, quote_char: Optional[str]) -> int:
    """Field count of the widest record in a delimited file."""
    if quote_char is None:
        dialect = {"quoting": csv.QUOTE_NONE}
    else:
        dialect = {"quotechar": quote_char}
    with open(path, newline="", encoding="utf-8") as f:
        return max((len(record) for record in csv.reader(f, delimiter=separator, **dialect)), default=0)


def _header_names(names: list[str]) -> list[str]:
    while names and names[-1] == "":
        names.pop()
    return names


def load_workbook(path: Union[str, Path]) -> dict[str, Report]:
    """Load every sheet of a workbook into a name-keyed collection of reports."""
    workbook = openpyxl.load_workbook(path)
    try:
        reports: dict[str, Report] = {}
        for sheet in workbook.worksheets:
            report = Report()
            report.load_sheet(sheet)
            reports[sheet.title] = report
        return reports
    finally:
        workbook.close()
