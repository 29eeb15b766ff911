# main.py
"""
Field mapping session - ties the schema registry, field catalog, mapping
store, binder and workbook codec together behind one event surface

Run as a script for the command line tools:
    python main.py schemas
    python main.py tree person
    python main.py fields suppliers.xlsx
    python main.py template field_template.xlsx
    python main.py bind mappings.xlsx
"""
import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from extractors.field_extractor import FieldCatalog, SheetInput, extract, write_field_template
from extractors.schema_normalizer import build_tree, display_path, find_node
from loaders.workbook_codec import SourceInput, export_workbook, import_workbook
from mapper.binder import BindResult, bind
from mapper.mapping_store import MappingStore
from mapper.schemas import (ClearMappingsRequest, DropCheck, DropEvent, Notification,
                            SaveMappingRequest, Severity, TreeNode)
from utils.config import Settings, load_settings
from utils.errors import (CodecError, DuplicateTargetError, MappingEngineError,
                          SchemaError, UnknownSchemaError)
from utils.logging_config import setup_logging
from utils.schema_manager import SchemaManager

logger = logging.getLogger(__name__)

LOG_LEVELS = {'ok': logging.INFO, 'info': logging.INFO, 'warn': logging.WARNING, 'error': logging.ERROR}


class MappingSession:
    """One user's working state: active schema, uploaded fields and mappings"""

    def __init__(self, settings: Optional[Settings] = None, schema_manager: Optional[SchemaManager] = None):
        self.settings = settings or Settings()
        self.schema_manager = schema_manager or SchemaManager(
            self.settings.schema_dir, self.settings.custom_rule_keywords
        )
        self.catalog = FieldCatalog()
        self.store = MappingStore()
        self.schema_key: Optional[str] = None
        self.tree: Optional[TreeNode] = None
        self.bound: Optional[BindResult] = None
        self.notifications: List[Notification] = []

    def notify(self, severity: Severity, message: str) -> Notification:
        notification = Notification(severity=severity, message=message)
        self.notifications.append(notification)
        logger.log(LOG_LEVELS[severity], message)
        return notification

    def dismiss_notifications(self):
        self.notifications = []

    # --- schema ---

    def select_schema(self, key: str) -> Optional[BindResult]:
        """
        Make a schema active and bind the current mappings onto its new tree

        Returns:
            BindResult, or None when the schema cannot be loaded (the previous
            tree stays active)
        """
        try:
            tree = self.schema_manager.get_tree(key)
        except UnknownSchemaError as e:
            self.notify('error', f"Schema '{e}' not found")
            return None
        except SchemaError as e:
            self.notify('error', f"Schema '{key}' is invalid: {e}")
            return None

        self.schema_key = key
        self.store.schema_key = key
        self.tree = tree
        result = self.rebind()
        self.notify('ok', f"Schema '{key}' loaded")
        self._report_anomalies(result)
        return result

    def rebind(self) -> Optional[BindResult]:
        """Re-derive mapped state after the tree or the store changed"""
        if self.tree is None:
            self.bound = None
            return None
        self.bound = bind(self.tree, self.store.records())
        return self.bound

    def _report_anomalies(self, result: Optional[BindResult]):
        if result is None:
            return
        for notification in result.report.notifications():
            self.notifications.append(notification)

    # --- fields ---

    def upload_fields(self, sheet: SheetInput) -> Notification:
        """Replace the field collection from an uploaded sheet"""
        notification = self.catalog.load_sheet(sheet)
        self.notifications.append(notification)
        return notification

    # --- mapping events ---

    def handle_drop(self, event: DropEvent) -> DropCheck:
        """Resolve a dropped field and target before the mapping form is shown"""
        field = self.catalog.get(event.field_id)
        if field is None:
            return DropCheck(accepted=False, message=f"Unknown field '{event.field_id}'")
        if self.tree is None:
            return DropCheck(accepted=False, field=field, message="No schema selected")

        target = find_node(self.tree, event.target_node_id)
        if target is None:
            return DropCheck(accepted=False, field=field,
                             message=f"Unknown target node '{event.target_node_id}'")
        if not target.is_leaf:
            return DropCheck(accepted=False, field=field, target=target,
                             message=f"{display_path(target.id)} is not a leaf; map its children instead")

        existing = self.store.for_target(target.id)
        if existing is None:
            return DropCheck(accepted=True, field=field, target=target)

        same_field = (existing.field.field_id, existing.field.label) == (field.field_id, field.label)
        if same_field:
            return DropCheck(accepted=True, field=field, target=target, existing=existing,
                             message=f"'{field.label}' is already mapped here; saving updates the mapping")
        return DropCheck(
            accepted=True, field=field, target=target, existing=existing, needs_confirmation=True,
            message=f"{display_path(target.id)} is already mapped to '{existing.field.label}'",
        )

    def save_mapping(self, request: SaveMappingRequest) -> Notification:
        """Store the mapping form submission and rebind"""
        if self.tree is None:
            return self.notify('error', "No schema selected")

        target = find_node(self.tree, request.target_node_id)
        if target is None:
            return self.notify('error', f"Unknown target node '{request.target_node_id}'")

        field = self.catalog.get(request.field_id)
        if field is None:
            # editing a mapping whose field came from an imported workbook
            existing = self.store.for_target(target.id)
            if existing is None or existing.field.field_id != request.field_id:
                return self.notify('error', f"Unknown field '{request.field_id}'")
            self.store.update_details(existing.mapping_id, request.mapping_details, request.outputs)
            self.rebind()
            return self.notify('ok', f"Mapping on {display_path(target.id)} updated")

        try:
            self.store.create(field, target, request.mapping_details, request.outputs,
                              overwrite=request.overwrite)
        except DuplicateTargetError as e:
            return self.notify('warn', str(e))

        self.rebind()
        return self.notify('ok', f"Mapped '{field.label}' -> {display_path(target.id)}")

    def remove_mapping(self, mapping_id: str) -> Notification:
        if not self.store.remove(mapping_id):
            return self.notify('warn', f"Mapping {mapping_id} not found")
        self.rebind()
        return self.notify('ok', "Mapping removed")

    def clear_mappings(self, request: Optional[ClearMappingsRequest] = None) -> Notification:
        count = self.store.clear()
        self.rebind()
        reason = f" ({request.reason})" if request is not None and request.reason else ''
        return self.notify('ok', f"Cleared {count} mappings{reason}")

    def accept_relinks(self) -> Notification:
        """Move drift-matched mappings onto their new paths for good"""
        if self.bound is None:
            return self.notify('info', "Nothing to relink")
        moved = self.store.apply_relinks(self.bound.report)
        self.rebind()
        return self.notify('ok', f"Relinked {moved} mappings")

    # --- workbook exchange ---

    def export_mappings(self, target: Optional[str] = None) -> Optional[bytes]:
        """Mapping workbook for the active schema; None (with an error notification) on failure"""
        if not self.schema_key:
            self.notify('error', "Select a schema before exporting mappings")
            return None
        try:
            content = export_workbook(self.schema_key, self.store.records(), target=target,
                                      sheet_name=self.settings.data_sheet_name)
        except CodecError as e:
            self.notify('error', f"Export failed: {e}")
            return None
        self.notify('ok', f"Exported {len(self.store)} mappings")
        return content

    def import_mappings(self, source: SourceInput) -> List[Notification]:
        """
        Install a mapping workbook: its schema becomes active and its mappings
        replace the current set. Nothing changes when any step fails.
        """
        start = len(self.notifications)
        try:
            imported = import_workbook(source, sheet_name=self.settings.data_sheet_name)
            tree = self.schema_manager.get_tree(imported.schema_key)
            self.store.replace_all(imported.schema_key, imported.mappings)
        except UnknownSchemaError as e:
            self.notify('error', f"Workbook refers to unknown schema '{e}'")
            return self.notifications[start:]
        except MappingEngineError as e:
            self.notify('error', f"Import failed: {e}")
            return self.notifications[start:]

        self.schema_key = imported.schema_key
        self.tree = tree
        result = self.rebind()
        self.notify('ok', f"Imported {len(imported.mappings)} mappings; schema '{imported.schema_key}' selected")
        self._report_anomalies(result)
        return self.notifications[start:]


# --- command line ---

def _print_tree(node: TreeNode, depth: int = 0):
    marker = {'required': '*', 'conditional': '?', 'optional': ' '}[node.obligation]
    rules = f"  [{'; '.join(node.rules)}]" if node.rules else ''
    preview = f"  = {node.value_preview}" if node.value_preview else ''
    print(f"{'  ' * depth}{marker} {node.name} ({node.type}){rules}{preview}")
    for child in node.children:
        _print_tree(child, depth + 1)


def _cmd_schemas(session: MappingSession, args) -> int:
    for key, title in session.schema_manager.list_schemas().items():
        print(f"{key:30} {title}")
    return 0


def _cmd_tree(session: MappingSession, args) -> int:
    path = Path(args.schema)
    if path.suffix == '.json' and path.is_file():
        with open(path, 'r', encoding='utf-8') as f:
            tree = build_tree(json.load(f), custom_keywords=session.settings.custom_rule_keywords)
    else:
        tree = session.schema_manager.get_tree(args.schema)
    _print_tree(tree)
    return 0


def _cmd_index(session: MappingSession, args) -> int:
    fields = session.schema_manager.list_fields(schema_key=args.schema, query=args.query)
    for field in fields:
        marker = {'required': '*', 'conditional': '?', 'optional': ' '}[field.obligation]
        print(f"{field.schema_key:24} {marker} {field.path:45} {field.type}")
    print(f"\n{len(fields)} fields")
    return 0


def _cmd_fields(session: MappingSession, args) -> int:
    for field in extract(args.sheet):
        attributes = ', '.join(f"{k}={v}" for k, v in field.attributes.items() if v and k != 'color')
        print(f"{field.field_id:10} row {field.source:<4} {field.label}  {attributes}")
    return 0


def _cmd_template(session: MappingSession, args) -> int:
    write_field_template(args.output)
    print(f"Field template written to {args.output}")
    return 0


def _cmd_bind(session: MappingSession, args) -> int:
    notifications = session.import_mappings(args.workbook)
    for notification in notifications:
        print(f"[{notification.severity.upper()}] {notification.message}")
    if session.bound is None:
        return 1

    report = session.bound.report
    print("\n" + "=" * 60)
    print(f"Schema:     {session.schema_key}")
    print(f"Mappings:   {len(session.store)}")
    print(f"Exact:      {len(report.exact)}")
    print(f"Relinked:   {len(report.relinked)}")
    print(f"Ambiguous:  {len(report.ambiguous)}")
    print(f"Orphaned:   {len(report.orphaned)}")
    print("=" * 60)
    return 2 if report.has_anomalies else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Schema tree & field mapping tools")
    sub = parser.add_subparsers(dest='command', required=True)

    sub.add_parser('schemas', help="List available schemas").set_defaults(func=_cmd_schemas)

    tree = sub.add_parser('tree', help="Print the normalized tree of a schema key or .json file")
    tree.add_argument('schema')
    tree.set_defaults(func=_cmd_tree)

    index = sub.add_parser('index', help="List the leaf fields of every schema")
    index.add_argument('--schema', default=None, help="Only this schema key")
    index.add_argument('--query', default='', help="Filter on path, type or description")
    index.set_defaults(func=_cmd_index)

    fields = sub.add_parser('fields', help="List the fields extracted from a supplier sheet")
    fields.add_argument('sheet')
    fields.set_defaults(func=_cmd_fields)

    template = sub.add_parser('template', help="Write a blank field template")
    template.add_argument('output')
    template.set_defaults(func=_cmd_template)

    bind_cmd = sub.add_parser('bind', help="Import a mapping workbook and report how it binds")
    bind_cmd.add_argument('workbook')
    bind_cmd.set_defaults(func=_cmd_bind)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    settings = load_settings()
    setup_logging(log_level=settings.log_level, log_file=settings.log_file or None,
                  module_levels=settings.log_module_levels)

    args = build_parser().parse_args(argv)
    session = MappingSession(settings)
    try:
        return args.func(session, args)
    except (MappingEngineError, OSError, ValueError) as e:
        logger.error(f"❌ {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
