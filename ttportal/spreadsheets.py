"""Reading uploaded CSV and XLSX files into header + row tables.

Every sheet is reduced to plain strings: the first non-blank row becomes the
header and every later non-blank row is padded or truncated to the header
width. Each row remembers the line it came from so that validation errors can
point the operator at the right place in the original file.
"""

import csv
import io
import os
import zipfile
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Dict, List, Optional, Sequence

from openpyxl import Workbook, load_workbook
from openpyxl.utils.exceptions import InvalidFileException

CSV_SHEET_NAME = 'CSV'
DELIMITERS = {
    ',': ',',
    ';': ';',
    '\t': '\t',
    'tab': '\t',
    '\\t': '\t',
}
WORKBOOK_EXTENSIONS = ('.xlsx', '.xlsm')


class ImportFailure(Exception):
    """Base class for every error that aborts an import."""


class SheetNotFound(ImportFailure):
    def __init__(self, sheet_name):
        super().__init__(f"Selected sheet not found: {sheet_name}")
        self.sheet_name = sheet_name


class UnreadableFile(ImportFailure):
    pass


@dataclass
class Upload:
    filename: str
    data: bytes
    content_type: str = ''

    @classmethod
    def from_file_storage(cls, storage):
        """Wrap a werkzeug ``FileStorage``; returns None when nothing was sent."""
        if storage is None or not storage.filename:
            return None
        return cls(
            filename=storage.filename,
            data=storage.read(),
            content_type=storage.mimetype or '',
        )

    @classmethod
    def from_path(cls, path):
        with open(path, 'rb') as fh:
            return cls(filename=os.path.basename(path), data=fh.read())

    @property
    def is_workbook(self):
        return detect_kind(self.filename, self.content_type) == 'xlsx'


@dataclass
class SheetRow:
    line: int
    cells: List[str]


@dataclass
class SheetData:
    headers: List[str]
    rows: List[SheetRow] = field(default_factory=list)

    def column_index(self) -> Dict[str, int]:
        index: Dict[str, int] = {}
        for i, header in enumerate(self.headers):
            if header:
                index.setdefault(header, i)
        return index


@dataclass
class SheetInfo:
    sheet_names: List[str]
    headers_by_sheet: Dict[str, List[str]]

    def headers(self, sheet_name: Optional[str] = None) -> List[str]:
        if not sheet_name and self.sheet_names:
            sheet_name = self.sheet_names[0]
        return self.headers_by_sheet.get(sheet_name or '', [])

    def to_dict(self):
        return {'sheet_names': self.sheet_names, 'headers_by_sheet': self.headers_by_sheet}

    @classmethod
    def from_dict(cls, payload):
        return cls(
            sheet_names=list(payload.get('sheet_names') or []),
            headers_by_sheet=dict(payload.get('headers_by_sheet') or {}),
        )


def detect_kind(filename: str, content_type: str = '') -> str:
    name = (filename or '').lower()
    ctype = (content_type or '').lower()
    if name.endswith(WORKBOOK_EXTENSIONS) or 'spreadsheetml' in ctype:
        return 'xlsx'
    return 'csv'


def resolve_delimiter(value: Optional[str]) -> str:
    if not value:
        return ','
    return DELIMITERS.get(value, DELIMITERS.get(value.strip().lower(), ','))


def cell_text(value) -> str:
    if value is None:
        return ''
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return str(value)
    if isinstance(value, datetime):
        if value.second:
            return value.strftime('%Y-%m-%d %H:%M:%S')
        return value.strftime('%Y-%m-%d %H:%M')
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, time):
        return value.strftime('%H:%M')
    return str(value).strip()


def _is_blank(cells: Sequence[str]) -> bool:
    return all(not c for c in cells)


def _fit(cells: List[str], width: int) -> List[str]:
    if len(cells) < width:
        return cells + [''] * (width - len(cells))
    return cells[:width]


def _table_from_lines(numbered_rows) -> SheetData:
    headers = None
    rows: List[SheetRow] = []
    for line, cells in numbered_rows:
        if _is_blank(cells):
            continue
        if headers is None:
            headers = cells
            continue
        rows.append(SheetRow(line=line, cells=_fit(cells, len(headers))))
    return SheetData(headers=headers or [], rows=rows)


def decode_text(data: bytes) -> str:
    try:
        text = data.decode('utf-8')
    except UnicodeDecodeError:
        # Excel on Turkish Windows exports CSV as cp1254
        text = data.decode('cp1254', errors='replace')
    return text.lstrip('\ufeff')


def parse_csv(text: str, delimiter: str = ',') -> SheetData:
    if text.startswith('\ufeff'):
        text = text[1:]
    reader = csv.reader(
        io.StringIO(text, newline=''),
        delimiter=resolve_delimiter(delimiter),
        skipinitialspace=True,
    )

    def numbered():
        for raw in reader:
            yield reader.line_num, [c.strip() for c in raw]

    return _table_from_lines(numbered())


def _open_workbook(upload: Upload):
    try:
        return load_workbook(io.BytesIO(upload.data), data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, OSError, KeyError, ValueError) as e:
        raise UnreadableFile(f"Could not read workbook {upload.filename}: {e}") from e


def _sheet_table(ws) -> SheetData:
    def numbered():
        for line, values in enumerate(ws.iter_rows(min_row=1, values_only=True), start=1):
            yield line, [cell_text(v) for v in values]

    return _table_from_lines(numbered())


def introspect(upload: Upload, delimiter: str = ',') -> SheetInfo:
    """List the sheets of an upload together with the header row of each."""
    if upload.is_workbook:
        wb = _open_workbook(upload)
        headers_by_sheet = {}
        for name in wb.sheetnames:
            headers_by_sheet[name] = _sheet_table(wb[name]).headers
        return SheetInfo(sheet_names=list(wb.sheetnames), headers_by_sheet=headers_by_sheet)
    table = parse_csv(decode_text(upload.data), delimiter)
    return SheetInfo(sheet_names=[CSV_SHEET_NAME], headers_by_sheet={CSV_SHEET_NAME: table.headers})


def read_sheet(upload: Upload, sheet_name: Optional[str] = None, delimiter: str = ',') -> SheetData:
    """Read one sheet with its rows; an empty ``sheet_name`` picks the first sheet."""
    if upload.is_workbook:
        wb = _open_workbook(upload)
        name = sheet_name or (wb.sheetnames[0] if wb.sheetnames else '')
        if name not in wb.sheetnames:
            raise SheetNotFound(sheet_name)
        return _sheet_table(wb[name])
    return parse_csv(decode_text(upload.data), delimiter)


def build_template(rows: Sequence[Sequence], sheet: str = 'Template') -> bytes:
    """Create an .xlsx workbook holding ``rows`` (header first) and return its bytes."""
    wb = Workbook()
    ws = wb.active
    ws.title = sheet
    for row in rows:
        ws.append(list(row))
    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()
