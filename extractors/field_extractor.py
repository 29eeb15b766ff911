# extractors/field_extractor.py
"""
Supplier field sheet -> FieldRecord list

Template contract (version 1): first row is the header, then one field per
row with positional slots label, type hint, sample value, notes. Columns
past the fourth are kept as attributes keyed by their header text.
"""
import io
import logging
import zipfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import pandas as pd

from mapper.schemas import FieldRecord, Notification
from utils.decorators import log_execution_time
from utils.errors import ExtractionError
from utils.validators import DataValidator

logger = logging.getLogger(__name__)

FIELD_TEMPLATE_VERSION = 1
FIELD_TEMPLATE_COLUMNS = ['Field Name', 'Type Hint', 'Sample Value', 'Notes']
ATTRIBUTE_SLOTS = ['type_hint', 'sample_value', 'notes']
DEFAULT_COLOR = 'default'

SheetInput = Union[str, Path, bytes, io.IOBase, pd.DataFrame]


def _cell_text(value: Any) -> str:
    if value is None:
        return ''
    try:
        if pd.isna(value):
            return ''
    except (TypeError, ValueError):
        pass
    return str(value).strip()


def _is_csv(sheet: Any) -> bool:
    name = str(sheet) if isinstance(sheet, (str, Path)) else getattr(sheet, 'name', '')
    return str(name).lower().endswith(('.csv', '.txt'))


def _read_rows(sheet: SheetInput) -> List[List[str]]:
    """Read the first worksheet as a list of text rows, header included"""
    if isinstance(sheet, pd.DataFrame):
        rows = [list(sheet.columns)] + sheet.values.tolist()
        return [[_cell_text(v) for v in row] for row in rows]

    source = io.BytesIO(sheet) if isinstance(sheet, (bytes, bytearray)) else sheet
    try:
        if _is_csv(sheet):
            frame = pd.read_csv(source, header=None, dtype=str, keep_default_na=False)
        else:
            frame = pd.read_excel(source, sheet_name=0, header=None, dtype=str, keep_default_na=False)
    except pd.errors.EmptyDataError as e:
        raise ExtractionError(f"Field sheet is empty: {e}") from e
    except (ValueError, OSError, KeyError, zipfile.BadZipFile, pd.errors.ParserError) as e:
        raise ExtractionError(f"Field sheet could not be read: {e}") from e

    return [[_cell_text(v) for v in row] for row in frame.values.tolist()]


@log_execution_time
def extract(sheet: SheetInput) -> List[FieldRecord]:
    """
    Parse an uploaded field sheet into FieldRecords

    Args:
        sheet: Path, raw bytes, binary file object or DataFrame (columns = header)

    Returns:
        One FieldRecord per non-empty data row, in sheet order

    Raises:
        ExtractionError: unreadable file, or no data rows at all
    """
    rows = _read_rows(sheet)
    if not rows:
        raise ExtractionError("Field sheet has no header row")

    header = rows[0]
    extra_columns = {
        idx: (header[idx] if idx < len(header) and header[idx] else f"column_{idx + 1}")
        for idx in range(len(FIELD_TEMPLATE_COLUMNS), max(len(r) for r in rows))
    }

    fields: List[FieldRecord] = []
    for row_idx, row in enumerate(rows[1:], start=2):
        if not any(row):
            continue

        cells = row + [''] * (len(FIELD_TEMPLATE_COLUMNS) - len(row))
        number = len(fields) + 1
        attributes: Dict[str, Any] = {slot: cells[pos + 1] for pos, slot in enumerate(ATTRIBUTE_SLOTS)}
        attributes['color'] = DEFAULT_COLOR
        for idx, name in extra_columns.items():
            if idx < len(row) and row[idx]:
                attributes[name] = row[idx]

        label = cells[0]
        if not label:
            label = f"Field_{number}"
            logger.warning(f"Row {row_idx} has no field name; using {label}")

        fields.append(FieldRecord(
            field_id=f"field-{number}",
            label=label,
            attributes=attributes,
            source=row_idx,
        ))

    if not fields:
        raise ExtractionError("Field sheet contains no field rows")

    logger.info(f"✅ Extracted {len(fields)} fields from {len(rows) - 1} data rows")
    return fields


def write_field_template(target: Optional[Union[str, Path]] = None) -> bytes:
    """Blank field template (header row only) plus a small metadata sheet"""
    buffer = io.BytesIO()
    with pd.ExcelWriter(buffer, engine='openpyxl') as writer:
        pd.DataFrame(columns=FIELD_TEMPLATE_COLUMNS).to_excel(writer, sheet_name='fields', index=False)
        metadata = pd.DataFrame({
            'Property': ['Template', 'Template Version'],
            'Value': ['Supplier field definitions', str(FIELD_TEMPLATE_VERSION)]
        })
        metadata.to_excel(writer, sheet_name='Metadata', index=False)

    data = buffer.getvalue()
    if target is not None:
        Path(target).parent.mkdir(parents=True, exist_ok=True)
        Path(target).write_bytes(data)
        logger.info(f"📁 Wrote field template to {target}")
    return data


class FieldCatalog:
    """Current supplier field collection; replaced wholesale on every upload"""

    def __init__(self):
        self._fields: Dict[str, FieldRecord] = {}

    def __len__(self):
        return len(self._fields)

    def load_sheet(self, sheet: SheetInput) -> Notification:
        """Replace the collection from an uploaded sheet; failures leave it empty"""
        self._fields = {}
        try:
            fields = extract(sheet)
        except ExtractionError as e:
            logger.error(f"Field extraction failed: {e}")
            return Notification(severity='error', message=f"Field sheet is empty or unreadable: {e}")

        self._fields = {f.field_id: f for f in fields}
        issues = DataValidator.validate_field_records(fields)
        warnings = [i for i in issues if i['severity'] == 'warn']
        message = f"{len(fields)} fields extracted"
        if warnings:
            message += "; " + "; ".join(i['message'] for i in warnings)
            return Notification(severity='warn', message=message)
        return Notification(severity='ok', message=message)

    def fields(self) -> List[FieldRecord]:
        return list(self._fields.values())

    def get(self, field_id: str) -> Optional[FieldRecord]:
        return self._fields.get(field_id)

    def update(self, field_id: str, label: Optional[str] = None, **attributes) -> FieldRecord:
        """Edit a field in place (label and/or attributes such as color or notes)"""
        current = self._fields.get(field_id)
        if current is None:
            raise KeyError(field_id)

        changes: Dict[str, Any] = {'attributes': {**current.attributes, **attributes}}
        if label is not None:
            changes['label'] = label
        updated = current.model_copy(update=changes)
        self._fields[field_id] = updated
        return updated

    def remove(self, field_id: str) -> bool:
        return self._fields.pop(field_id, None) is not None

    def clear(self):
        self._fields = {}
