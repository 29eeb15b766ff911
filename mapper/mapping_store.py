# mapper/mapping_store.py
"""
In-memory collection of MappingRecords for the active schema

Records are keyed by target path, never by live node objects, so they survive
the tree being rebuilt. Records whose target no longer resolves (orphans) are
kept until the user removes them.
"""
import logging
import uuid
from typing import Dict, Iterable, List, Optional

from mapper.schemas import FieldRecord, MappingRecord, OutputDescriptor, TreeNode, utc_now
from utils.errors import DuplicateTargetError, MappingEngineError
from utils.validators import DataValidator

logger = logging.getLogger(__name__)


def new_mapping_id() -> str:
    return f"MAP-{uuid.uuid4().hex[:12]}"


class MappingStore:
    """Mapping set for one schema; last write wins"""

    def __init__(self, schema_key: str = ''):
        self.schema_key = schema_key
        self._records: Dict[str, MappingRecord] = {}

    def __len__(self):
        return len(self._records)

    def __iter__(self):
        return iter(list(self._records.values()))

    def records(self) -> List[MappingRecord]:
        return list(self._records.values())

    def get(self, mapping_id: str) -> Optional[MappingRecord]:
        return self._records.get(mapping_id)

    def for_target(self, target_node_id: str) -> Optional[MappingRecord]:
        for record in self._records.values():
            if record.target_node_id == target_node_id:
                return record
        return None

    def save(self, record: MappingRecord, overwrite: bool = False) -> MappingRecord:
        """
        Insert or replace a mapping, keeping one mapping per target

        Re-mapping the same field onto the same target replaces the earlier
        record (its id is kept). A different field on an already mapped target
        raises DuplicateTargetError unless overwrite is set.
        """
        existing = self.for_target(record.target_node_id)
        if existing is not None and existing.mapping_id != record.mapping_id:
            same_field = (existing.field.field_id, existing.field.label) == (record.field.field_id, record.field.label)
            if not same_field and not overwrite:
                raise DuplicateTargetError(record.target_node_id, existing.field.label, record.field.label)
            del self._records[existing.mapping_id]
            if same_field:
                record = record.model_copy(update={'mapping_id': existing.mapping_id})
            logger.info(f"Replaced mapping on {record.target_node_id} ({existing.field.label} -> {record.field.label})")

        self._records[record.mapping_id] = record
        return record

    def create(self, field: FieldRecord, target_node: TreeNode, mapping_details: str = '',
               outputs: Iterable[OutputDescriptor] = (), overwrite: bool = False) -> MappingRecord:
        """Build a record from a field and a live tree node, then save it"""
        record = MappingRecord(
            mapping_id=new_mapping_id(),
            target_node_id=target_node.id,
            target_name=target_node.name,
            target_type=target_node.type,
            field=field.snapshot(),
            mapping_details=mapping_details,
            outputs=list(outputs),
            timestamp=utc_now(),
        )
        saved = self.save(record, overwrite=overwrite)
        logger.info(f"✅ Mapped '{field.label}' -> {target_node.id}")
        return saved

    def update_details(self, mapping_id: str, mapping_details: Optional[str] = None,
                       outputs: Optional[Iterable[OutputDescriptor]] = None) -> MappingRecord:
        record = self._records.get(mapping_id)
        if record is None:
            raise KeyError(mapping_id)

        changes = {'timestamp': utc_now()}
        if mapping_details is not None:
            changes['mapping_details'] = mapping_details
        if outputs is not None:
            changes['outputs'] = list(outputs)
        updated = record.model_copy(update=changes)
        self._records[mapping_id] = updated
        return updated

    def remove(self, mapping_id: str) -> bool:
        return self._records.pop(mapping_id, None) is not None

    def remove_target(self, target_node_id: str) -> bool:
        record = self.for_target(target_node_id)
        return record is not None and self.remove(record.mapping_id)

    def clear(self) -> int:
        count = len(self._records)
        self._records = {}
        logger.info(f"Cleared {count} mappings")
        return count

    def replace_all(self, schema_key: str, records: List[MappingRecord]):
        """Install a complete mapping set (e.g. after a workbook import) or nothing at all"""
        errors = DataValidator.errors_only(DataValidator.validate_mapping_records(records))
        if errors:
            raise MappingEngineError("; ".join(issue['message'] for issue in errors))

        self.schema_key = schema_key
        self._records = {record.mapping_id: record for record in records}
        logger.info(f"Installed {len(records)} mappings for schema '{schema_key}'")

    def apply_relinks(self, report) -> int:
        """Move fallback-matched records onto the node they were re-attached to"""
        moved = 0
        for relink in report.relinked:
            record = self._records.get(relink.mapping_id)
            if record is None or record.target_node_id != relink.old_target_id:
                continue
            occupant = self.for_target(relink.new_target_id)
            if occupant is not None and occupant.mapping_id != record.mapping_id:
                logger.warning(f"Skipping relink of {record.mapping_id}: {relink.new_target_id} is taken")
                continue
            self._records[record.mapping_id] = record.model_copy(update={'target_node_id': relink.new_target_id})
            moved += 1
        if moved:
            logger.info(f"Relinked {moved} mappings to their new target paths")
        return moved

    def orphans(self, report) -> List[MappingRecord]:
        """Records the last binding pass could not attach anywhere"""
        orphan_ids = {item.mapping.mapping_id for item in report.orphaned}
        return [r for r in self._records.values() if r.mapping_id in orphan_ids]
