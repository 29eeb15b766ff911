# utils/errors.py
"""
Error taxonomy for the schema tree & field-mapping engine

Fatal errors are raised. Per-record binding anomalies are not exceptions;
they are returned in the binding report (see mapper/binder.py).
"""


class MappingEngineError(Exception):
    """Base class for every error raised by the engine"""


class SchemaError(MappingEngineError):
    """Malformed or cyclic JSON Schema - aborts normalization"""

    def __init__(self, message: str, path: str = 'root'):
        self.path = path
        super().__init__(f"{message} (at {path})")


class ExtractionError(MappingEngineError):
    """Uploaded field sheet is unreadable or has no data rows"""


class CodecError(MappingEngineError):
    """Mapping workbook could not be written or parsed - nothing is applied"""


class DuplicateTargetError(MappingEngineError):
    """A tree leaf already carries a mapping from a different field"""

    def __init__(self, target_node_id: str, existing_field: str, new_field: str):
        self.target_node_id = target_node_id
        self.existing_field = existing_field
        self.new_field = new_field
        super().__init__(
            f"'{target_node_id}' is already mapped to field '{existing_field}'; "
            f"saving '{new_field}' requires overwrite"
        )


class UnknownSchemaError(MappingEngineError, KeyError):
    """Schema key is not present in the registry"""

    def __str__(self):
        return str(self.args[0]) if self.args else 'Unknown schema'
