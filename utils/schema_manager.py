# utils/schema_manager.py
"""
Schema registry - schema key -> JSON Schema document

Bundled schemas live as <key>.json files in the schema directory; more can be
registered at runtime. A document that does not look like a JSON Schema is
treated as a sample instance and gets an inferred tree. Trees are never
cached: every get_tree() call runs a fresh normalization pass.
"""
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from extractors.schema_normalizer import build_tree, display_path, leaf_nodes
from mapper.schemas import SchemaField, TreeNode
from utils.errors import SchemaError, UnknownSchemaError

logger = logging.getLogger(__name__)


class SchemaManager:
    """Load and serve the JSON Schemas available for mapping"""

    def __init__(self, schema_dir: Optional[Union[str, Path]] = 'schemas',
                 custom_keywords: Optional[Iterable[str]] = None):
        self.schema_dir = Path(schema_dir) if schema_dir else None
        self.custom_keywords = list(custom_keywords or [])
        self.schema_cache: Dict[str, Dict[str, Any]] = {}
        self._registered: Dict[str, Dict[str, Any]] = {}

    def _schema_files(self) -> Dict[str, Path]:
        if self.schema_dir is None or not self.schema_dir.is_dir():
            return {}
        return {path.stem: path for path in sorted(self.schema_dir.glob('*.json'))}

    def _load_file(self, key: str, path: Path) -> Dict[str, Any]:
        try:
            with open(path, 'r', encoding='utf-8') as f:
                schema = json.load(f)
        except json.JSONDecodeError as e:
            raise SchemaError(f"Schema file {path.name} is not valid JSON: {e}") from e
        except OSError as e:
            raise SchemaError(f"Schema file {path.name} could not be read: {e}") from e

        if not isinstance(schema, dict):
            raise SchemaError(f"Schema file {path.name} must contain a JSON object")
        logger.info(f"📁 Loaded schema '{key}' from {path}")
        return schema

    def list_schemas(self) -> Dict[str, str]:
        """
        Available schemas

        Returns:
            Dict of schema key -> display title, sorted by key
        """
        titles = {}
        for key, path in self._schema_files().items():
            try:
                titles[key] = self.get_schema(key).get('title') or key
            except SchemaError as e:
                logger.warning(f"Skipping unreadable schema '{key}': {e}")
        for key, schema in self._registered.items():
            titles[key] = schema.get('title') or key
        return dict(sorted(titles.items()))

    def get_schema(self, key: str) -> Dict[str, Any]:
        """
        Fetch a schema document by key

        Raises:
            UnknownSchemaError: no schema registered or bundled under this key
            SchemaError: the bundled file exists but cannot be parsed
        """
        if key in self._registered:
            return self._registered[key]

        if key in self.schema_cache:
            logger.debug(f"Using cached schema for {key}")
            return self.schema_cache[key]

        path = self._schema_files().get(key)
        if path is None:
            raise UnknownSchemaError(key)

        schema = self._load_file(key, path)
        self.schema_cache[key] = schema
        return schema

    def register(self, key: str, schema: Dict[str, Any]):
        """Make an in-memory schema available under a key (replaces a bundled one)"""
        if not key or not str(key).strip():
            raise SchemaError("Schema key must not be empty")
        if not isinstance(schema, dict):
            raise SchemaError(f"Schema '{key}' must be a JSON object")
        self._registered[key] = schema
        logger.info(f"Registered schema '{key}'")

    def get_tree(self, key: str) -> TreeNode:
        """Normalize the schema stored under key into a new tree"""
        schema = self.get_schema(key)
        return build_tree(schema, custom_keywords=self.custom_keywords)

    def list_fields(self, schema_key: Optional[str] = None, query: str = '') -> List[SchemaField]:
        """
        Flat index of the leaf fields of every available schema

        Args:
            schema_key: Only list this schema
            query: Case-insensitive text matched against path, type and description

        Returns:
            SchemaField entries sorted by schema title, then path. Schemas that
            fail to normalize are logged and left out.
        """
        titles = self.list_schemas()
        if schema_key is not None:
            titles = {k: v for k, v in titles.items() if k == schema_key}
        needle = query.strip().lower()

        fields = []
        for key, title in titles.items():
            try:
                tree = self.get_tree(key)
            except SchemaError as e:
                logger.warning(f"Leaving schema '{key}' out of the field index: {e}")
                continue
            for node in leaf_nodes(tree):
                entry = SchemaField(
                    schema_key=key,
                    schema_title=title,
                    node_id=node.id,
                    path=display_path(node.id),
                    name=node.name,
                    type=node.type,
                    obligation=node.obligation,
                    description=node.description,
                    rules=list(node.rules),
                )
                haystack = ' '.join([entry.path, entry.type, entry.description or '']).lower()
                if needle and needle not in haystack:
                    continue
                fields.append(entry)

        fields.sort(key=lambda f: (f.schema_title.lower(), f.path))
        logger.info(f"Field index: {len(fields)} fields across {len(titles)} schemas")
        return fields

    def refresh_schema(self):
        """Clear cache and force re-reading the schema files on next fetch"""
        self.schema_cache.clear()
        logger.info("Schema cache cleared")
