# mapper/schemas.py
"""
Data model shared by the normalizer, the mapping store, the binder and the
workbook codec
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Obligation = Literal['required', 'conditional', 'optional']
Severity = Literal['ok', 'info', 'warn', 'error']


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TreeNode(BaseModel):
    """One schema location in the normalized hierarchy"""
    model_config = ConfigDict(extra='forbid')

    id: str = Field(description="Dot path from the root, e.g. root.address.city")
    name: str = Field(description="Property name (or 'items' for array elements)")
    type: str = Field(description="Schema type; unions are joined with '|'")
    description: Optional[str] = Field(default=None, description="Schema description")
    obligation: Obligation = Field(default='optional', description="required / conditional / optional")
    rules: List[str] = Field(default_factory=list, description="Literal constraint strings")
    value_preview: Optional[str] = Field(default=None, description="Sample value (trees built from JSON instances)")
    children: List['TreeNode'] = Field(default_factory=list, description="Ordered child nodes")
    mapping_ref: Optional[str] = Field(
        default=None, exclude=True,
        description="Mapping id set by the binder only; never serialized"
    )

    @property
    def is_leaf(self) -> bool:
        return not self.children


class FieldRecord(BaseModel):
    """One supplier-side field extracted from an uploaded sheet"""
    model_config = ConfigDict(extra='forbid')

    field_id: str = Field(description="Identifier assigned at extraction time")
    label: str = Field(description="Supplier field name")
    attributes: Dict[str, Any] = Field(
        default_factory=dict,
        description="type_hint, sample_value, notes, color and any extra template columns"
    )
    source: int = Field(default=0, description="1-based row index in the uploaded sheet")

    def snapshot(self) -> 'FieldSnapshot':
        return FieldSnapshot(field_id=self.field_id, label=self.label, attributes=dict(self.attributes))


class FieldSnapshot(BaseModel):
    """Denormalized copy of a field kept on the mapping (fields do not outlive a session)"""
    model_config = ConfigDict(extra='forbid')

    field_id: str = Field(default='', description="Field id at mapping time")
    label: str = Field(description="Supplier field name")
    attributes: Dict[str, Any] = Field(default_factory=dict, description="Field attributes at mapping time")


class OutputDescriptor(BaseModel):
    """Optional output transform attached to a mapping"""
    model_config = ConfigDict(extra='forbid')

    label: str = Field(description="Output name")
    expression: str = Field(default='', description="Transform expression")


class MappingRecord(BaseModel):
    """Durable link from a supplier field to a tree node"""
    model_config = ConfigDict(extra='forbid')

    mapping_id: str = Field(description="Stable mapping identifier")
    target_node_id: str = Field(description="TreeNode id this mapping targets")
    target_name: str = Field(default='', description="Target node name when mapped (fallback key)")
    target_type: str = Field(default='', description="Target node type when mapped (fallback key)")
    field: FieldSnapshot = Field(description="Mapped supplier field")
    mapping_details: str = Field(default='', description="Parser / transform description")
    outputs: List[OutputDescriptor] = Field(default_factory=list, description="Ordered output transforms")
    timestamp: datetime = Field(default_factory=utc_now, description="Creation / last edit time")


class BoundNode(BaseModel):
    """TreeNode copy decorated with its mapping state"""
    model_config = ConfigDict(extra='forbid')

    id: str
    name: str
    type: str
    description: Optional[str] = None
    obligation: Obligation = 'optional'
    rules: List[str] = Field(default_factory=list)
    value_preview: Optional[str] = None
    mapped: bool = False
    mapping: Optional[MappingRecord] = None
    mapping_ref: Optional[str] = None
    children: List['BoundNode'] = Field(default_factory=list)


class SchemaField(BaseModel):
    """One leaf of one registered schema, as listed in the cross-schema field index"""
    schema_key: str
    schema_title: str
    node_id: str
    path: str = Field(description="Display path, e.g. 'address -> city'")
    name: str
    type: str
    obligation: Obligation = 'optional'
    description: Optional[str] = None
    rules: List[str] = Field(default_factory=list)


# --- Event surface exchanged with collaborators ---

class DropEvent(BaseModel):
    """A field cube dropped onto a tree node"""
    field_id: str
    target_node_id: str


class SaveMappingRequest(BaseModel):
    """Mapping form submission"""
    field_id: str
    target_node_id: str
    mapping_details: str = ''
    outputs: List[OutputDescriptor] = Field(default_factory=list)
    overwrite: bool = False


class ClearMappingsRequest(BaseModel):
    """Bulk clear of every mapping in the store"""
    reason: str = ''


class Notification(BaseModel):
    """Status message for the user"""
    severity: Severity = 'info'
    message: str


class DropCheck(BaseModel):
    """What a drop resolves to before the mapping form opens"""
    accepted: bool
    field: Optional[FieldRecord] = None
    target: Optional[TreeNode] = None
    existing: Optional[MappingRecord] = Field(default=None, description="Mapping already on the target")
    needs_confirmation: bool = Field(default=False, description="Target is mapped to a different field")
    message: str = ''
