# loaders/workbook_codec.py
"""
Mapping-exchange workbook: MappingRecords <-> .xlsx

Layout:
    mapping  - one row per mapping; columns are found by header name, not position
    __meta   - hidden Property/Value sheet with the schema key and format version
"""
import io
import json
import logging
import re
import zipfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import pandas as pd
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter
from openpyxl.utils.exceptions import IllegalCharacterError
from pydantic import BaseModel, Field, ValidationError

from extractors.schema_normalizer import ROOT_ID, id_segment, node_name
from mapper.mapping_store import new_mapping_id
from mapper.schemas import FieldSnapshot, MappingRecord, OutputDescriptor, utc_now
from utils.decorators import log_execution_time
from utils.errors import CodecError
from utils.validators import DataValidator

logger = logging.getLogger(__name__)

DATA_SHEET = 'mapping'
META_SHEET = '__meta'
FORMAT_VERSION = 1
SCHEMA_KEY_PROPERTY = 'schemaKey'
VERSION_PROPERTY = 'formatVersion'

WRAPPED_PREFIX = '~text:'

HEADER_FILL = '2A6BFF'
HEADER_FONT = 'FFFFFF'

# column key -> header written on export
EXPORT_HEADERS = {
    'target_path': 'Target Path',
    'target_name': 'Target Name',
    'target_type': 'Target Type',
    'field_label': 'Field Label',
    'field_id': 'Field ID',
    'field_attributes': 'Field Attributes',
    'mapping_details': 'Mapping Details',
    'outputs': 'Outputs',
    'timestamp': 'Timestamp',
    'mapping_id': 'Mapping ID',
}

# extra header spellings accepted on import
COLUMN_ALIASES = {
    'target_path': ('target', 'path', 'target node', 'target node id'),
    'target_name': ('target field',),
    'target_type': ('type',),
    'field_label': ('field', 'field name', 'supplier field'),
    'field_id': (),
    'field_attributes': ('attributes',),
    'mapping_details': ('details', 'parser details'),
    'outputs': ('output transforms',),
    'timestamp': ('updated', 'last edit'),
    'mapping_id': ('id',),
}
REQUIRED_COLUMNS = ('target_path',)

SourceInput = Union[str, Path, bytes, io.IOBase]


class ImportedMappings(BaseModel):
    schema_key: str
    mappings: List[MappingRecord] = Field(default_factory=list)
    format_version: int = FORMAT_VERSION


def _canonical(header: Any) -> str:
    return re.sub(r'[\s_]+', ' ', str(header).strip().lower())


def _column_lookup(headers: List[str]) -> Dict[str, str]:
    """Map column keys to the actual header text present in the sheet"""
    present = {_canonical(h): h for h in headers}
    lookup = {}
    for key, header in EXPORT_HEADERS.items():
        for candidate in (header, key) + COLUMN_ALIASES.get(key, ()):
            if _canonical(candidate) in present:
                lookup[key] = present[_canonical(candidate)]
                break
    return lookup


# --- export ---

def encode_cell_text(text: str) -> str:
    """
    Text as stored in a data cell

    The sheet XML turns CR/CRLF into LF and the reader drops every 'x005F_', so
    text containing either (or starting with the wrapper prefix) is written as
    WRAPPED_PREFIX + a JSON string with '_' escaped. Everything else is stored as-is.
    """
    if '\r' not in text and 'x005F_' not in text and not text.startswith(WRAPPED_PREFIX):
        return text
    return WRAPPED_PREFIX + json.dumps(text, ensure_ascii=False).replace('_', '\\u005f')


def decode_cell_text(text: str) -> str:
    if not text.startswith(WRAPPED_PREFIX):
        return text
    try:
        decoded = json.loads(text[len(WRAPPED_PREFIX):])
    except ValueError:
        return text
    return decoded if isinstance(decoded, str) else text


def _record_row(record: MappingRecord) -> Dict[str, str]:
    try:
        attributes = json.dumps(record.field.attributes, ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise CodecError(f"Mapping {record.mapping_id}: field attributes are not serializable ({e})") from e

    row = {
        EXPORT_HEADERS['target_path']: record.target_node_id,
        EXPORT_HEADERS['target_name']: record.target_name,
        EXPORT_HEADERS['target_type']: record.target_type,
        EXPORT_HEADERS['field_label']: record.field.label,
        EXPORT_HEADERS['field_id']: record.field.field_id,
        EXPORT_HEADERS['field_attributes']: attributes,
        EXPORT_HEADERS['mapping_details']: record.mapping_details,
        EXPORT_HEADERS['outputs']: json.dumps([o.model_dump() for o in record.outputs], ensure_ascii=False),
        EXPORT_HEADERS['timestamp']: record.timestamp.isoformat(),
        EXPORT_HEADERS['mapping_id']: record.mapping_id,
    }
    return {header: encode_cell_text(value) for header, value in row.items()}


def _keep_literal_text(worksheet):
    """Text starting with '=' must stay text, not become a formula"""
    for row in worksheet.iter_rows():
        for cell in row:
            if cell.data_type == 'f':
                cell.data_type = 's'


def _style_data_sheet(worksheet):
    for cell in worksheet[1]:
        cell.font = Font(bold=True, color=HEADER_FONT)
        cell.fill = PatternFill(fill_type='solid', fgColor=HEADER_FILL)
        cell.alignment = Alignment(horizontal='center', vertical='center', wrap_text=True)
    for idx, header in enumerate(EXPORT_HEADERS.values(), start=1):
        width = 45 if header in ('Target Path', 'Field Attributes', 'Outputs') else max(18, len(header) + 4)
        worksheet.column_dimensions[get_column_letter(idx)].width = width
    worksheet.freeze_panes = 'A2'


@log_execution_time
def export_workbook(schema_key: str, mappings: List[MappingRecord],
                    target: Optional[Union[str, Path]] = None,
                    sheet_name: str = DATA_SHEET) -> bytes:
    """
    Serialize a mapping set together with the schema it belongs to

    Args:
        schema_key: Registry key of the schema that was active
        mappings: Records to write (may be empty: header row only)
        target: Optional path; written only after the whole workbook is built
        sheet_name: Name of the data sheet

    Returns:
        The .xlsx file content

    Raises:
        CodecError: missing schema key or a mapping set that breaks its invariants
    """
    if not schema_key or not str(schema_key).strip():
        raise CodecError("A schema key is required to export mappings")
    if sheet_name == META_SHEET:
        raise CodecError(f"'{META_SHEET}' is reserved for workbook metadata")

    errors = DataValidator.errors_only(DataValidator.validate_mapping_records(mappings))
    if errors:
        raise CodecError("Refusing to export: " + "; ".join(issue['message'] for issue in errors))

    data_df = pd.DataFrame([_record_row(m) for m in mappings], columns=list(EXPORT_HEADERS.values()))
    meta_df = pd.DataFrame({
        'Property': [SCHEMA_KEY_PROPERTY, VERSION_PROPERTY],
        'Value': [str(schema_key), str(FORMAT_VERSION)]
    })

    buffer = io.BytesIO()
    try:
        with pd.ExcelWriter(buffer, engine='openpyxl') as writer:
            data_df.to_excel(writer, sheet_name=sheet_name, index=False)
            meta_df.to_excel(writer, sheet_name=META_SHEET, index=False)

            data_ws = writer.sheets[sheet_name]
            meta_ws = writer.sheets[META_SHEET]
            _keep_literal_text(data_ws)
            _keep_literal_text(meta_ws)
            _style_data_sheet(data_ws)
            meta_ws.sheet_state = 'hidden'
    except IllegalCharacterError as e:
        raise CodecError(f"Mapping text contains characters Excel cannot store: {e}") from e

    content = buffer.getvalue()
    if target is not None:
        Path(target).parent.mkdir(parents=True, exist_ok=True)
        Path(target).write_bytes(content)
        logger.info(f"📁 Saved {len(mappings)} mappings to {target}")

    logger.info(f"✅ Exported {len(mappings)} mappings for schema '{schema_key}'")
    return content


# --- import ---

def _read_meta(meta_df: pd.DataFrame) -> Dict[str, str]:
    headers = [str(c).strip() for c in meta_df.columns]
    if 'Property' in headers and 'Value' in headers:
        return {
            str(prop).strip(): str(value).strip()
            for prop, value in zip(meta_df['Property'], meta_df['Value'])
            if str(prop).strip()
        }
    # bare two-cell layout: A1 = schemaKey, B1 = value
    if len(headers) >= 2 and headers[0] == SCHEMA_KEY_PROPERTY:
        return {SCHEMA_KEY_PROPERTY: headers[1]}
    raise CodecError(f"'{META_SHEET}' sheet has an unknown layout")


def _parse_version(raw: str) -> int:
    if not raw:
        return 1
    try:
        version = int(float(raw))
    except ValueError as e:
        raise CodecError(f"Invalid {VERSION_PROPERTY} '{raw}'") from e
    if version > FORMAT_VERSION:
        raise CodecError(f"Workbook format {version} is newer than supported format {FORMAT_VERSION}")
    return version


def _parse_outputs(raw: str, row_number: int) -> List[OutputDescriptor]:
    if not raw.strip():
        return []
    try:
        items = json.loads(raw)
        if not isinstance(items, list):
            raise ValueError("expected a JSON list")
        return [OutputDescriptor.model_validate(item) for item in items]
    except (ValueError, ValidationError) as e:
        raise CodecError(f"Row {row_number}: unparseable Outputs value ({e})") from e


def _parse_attributes(raw: str, row_number: int) -> Dict[str, Any]:
    if not raw.strip():
        return {}
    try:
        attributes = json.loads(raw)
    except ValueError as e:
        raise CodecError(f"Row {row_number}: unparseable Field Attributes value ({e})") from e
    if not isinstance(attributes, dict):
        raise CodecError(f"Row {row_number}: Field Attributes must be a JSON object")
    return attributes


def _parse_timestamp(raw: str, row_number: int) -> datetime:
    if not raw.strip():
        return utc_now()
    try:
        return datetime.fromisoformat(raw.strip())
    except ValueError:
        pass
    try:
        return pd.Timestamp(raw.strip()).to_pydatetime()
    except (ValueError, TypeError) as e:
        raise CodecError(f"Row {row_number}: unparseable Timestamp '{raw}'") from e


def _parse_target_path(raw: str) -> str:
    path = raw.strip()
    if '->' in path:
        # hierarchy label typed by hand: "address -> city"
        parts = [p.strip() for p in path.split('->') if p.strip()]
        if parts and parts[0] != ROOT_ID:
            parts.insert(0, ROOT_ID)
        path = '.'.join(id_segment(part) for part in parts)
    return path


def _row_to_record(row: Dict[str, Any], columns: Dict[str, str], row_number: int) -> MappingRecord:
    def cell(key: str) -> str:
        header = columns.get(key)
        if header is None:
            return ''
        value = row.get(header, '')
        return '' if value is None else decode_cell_text(str(value))

    target_path = _parse_target_path(cell('target_path'))
    if not target_path:
        raise CodecError(f"Row {row_number}: empty Target Path")

    try:
        return MappingRecord(
            mapping_id=cell('mapping_id').strip() or new_mapping_id(),
            target_node_id=target_path,
            target_name=cell('target_name') if 'target_name' in columns else node_name(target_path),
            target_type=cell('target_type'),
            field=FieldSnapshot(
                field_id=cell('field_id'),
                label=cell('field_label'),
                attributes=_parse_attributes(cell('field_attributes'), row_number),
            ),
            mapping_details=cell('mapping_details'),
            outputs=_parse_outputs(cell('outputs'), row_number),
            timestamp=_parse_timestamp(cell('timestamp'), row_number),
        )
    except ValidationError as e:
        raise CodecError(f"Row {row_number}: invalid mapping ({e})") from e


@log_execution_time
def import_workbook(source: SourceInput, sheet_name: str = DATA_SHEET) -> ImportedMappings:
    """
    Parse a mapping-exchange workbook

    The meta sheet is read first (the caller selects the schema from it), then
    every data row is parsed. Any problem aborts the whole import.

    Raises:
        CodecError: unreadable file, missing meta sheet or schema key,
                    missing Target Path column, unparseable cell values
    """
    data = io.BytesIO(source) if isinstance(source, (bytes, bytearray)) else source
    try:
        sheets = pd.read_excel(data, sheet_name=None, dtype=str, keep_default_na=False)
    except (ValueError, OSError, KeyError, zipfile.BadZipFile) as e:
        raise CodecError(f"Mapping workbook could not be read: {e}") from e

    if META_SHEET not in sheets:
        raise CodecError(f"Mapping workbook has no '{META_SHEET}' sheet; schema cannot be identified")
    meta = _read_meta(sheets[META_SHEET])
    schema_key = meta.get(SCHEMA_KEY_PROPERTY, '').strip()
    if not schema_key:
        raise CodecError(f"'{META_SHEET}' sheet has no {SCHEMA_KEY_PROPERTY}")
    version = _parse_version(meta.get(VERSION_PROPERTY, ''))

    data_df = sheets.get(sheet_name)
    if data_df is None:
        data_df = next((df for name, df in sheets.items() if name != META_SHEET), None)
    if data_df is None:
        raise CodecError("Mapping workbook has no data sheet")

    columns = _column_lookup([str(c) for c in data_df.columns])
    missing = [EXPORT_HEADERS[key] for key in REQUIRED_COLUMNS if key not in columns]
    if missing:
        raise CodecError(f"Mapping sheet is missing required column(s): {', '.join(missing)}")

    mappings: List[MappingRecord] = []
    for offset, row in enumerate(data_df.to_dict('records')):
        if not any(str(v).strip() for v in row.values() if v is not None):
            continue
        mappings.append(_row_to_record(row, columns, row_number=offset + 2))

    errors = DataValidator.errors_only(DataValidator.validate_mapping_records(mappings))
    if errors:
        raise CodecError("Mapping workbook is inconsistent: " + "; ".join(issue['message'] for issue in errors))

    logger.info(f"✅ Imported {len(mappings)} mappings for schema '{schema_key}' (format {version})")
    return ImportedMappings(schema_key=schema_key, mappings=mappings, format_version=version)
