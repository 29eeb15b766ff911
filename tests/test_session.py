import io
import unittest
from pathlib import Path

import pandas as pd

from extractors.field_extractor import FIELD_TEMPLATE_COLUMNS
from loaders.workbook_codec import DATA_SHEET, META_SHEET, export_workbook
from main import MappingSession, build_parser
from mapper.schemas import (ClearMappingsRequest, DropEvent, FieldSnapshot, MappingRecord,
                            OutputDescriptor, SaveMappingRequest)
from utils.config import Settings

SCHEMA_DIR = Path(__file__).resolve().parent.parent / 'schemas'


def field_frame():
    return pd.DataFrame([
        ["product_name", "string", "Widget", None],
        ["unit_price", "decimal", "9.99", None],
        ["available", "bool", "Y", "Y/N flag"],
    ], columns=FIELD_TEMPLATE_COLUMNS)


def new_session():
    return MappingSession(Settings(schema_dir=str(SCHEMA_DIR), log_file=''))


class TestSchemaSelection(unittest.TestCase):
    def test_unknown_schema_reports_error_and_keeps_state(self):
        session = new_session()
        self.assertIsNone(session.select_schema('does_not_exist'))
        self.assertIsNone(session.tree)
        self.assertEqual(session.notifications[-1].severity, 'error')

    def test_select_schema_binds_tree(self):
        session = new_session()
        result = session.select_schema('product')
        self.assertIsNotNone(result)
        self.assertEqual(session.schema_key, 'product')
        self.assertEqual(result.mapped_count, 0)


class TestMappingEvents(unittest.TestCase):
    def setUp(self):
        self.session = new_session()
        self.session.select_schema('product')
        self.assertEqual(self.session.upload_fields(field_frame()).severity, 'ok')

    def test_drop_and_save(self):
        check = self.session.handle_drop(DropEvent(field_id='field-1', target_node_id='root.name'))
        self.assertTrue(check.accepted)
        self.assertFalse(check.needs_confirmation)
        self.assertEqual(check.target.id, 'root.name')

        notification = self.session.save_mapping(SaveMappingRequest(
            field_id='field-1', target_node_id='root.name', mapping_details='copy as-is',
            outputs=[OutputDescriptor(label='name_trimmed', expression='strip(value)')],
        ))
        self.assertEqual(notification.severity, 'ok')
        node = self.session.bound.find('root.name')
        self.assertTrue(node.mapped)
        self.assertEqual(node.mapping.field.label, 'product_name')

    def test_drop_on_mapped_target_asks_for_confirmation(self):
        self.session.save_mapping(SaveMappingRequest(field_id='field-1', target_node_id='root.name'))
        check = self.session.handle_drop(DropEvent(field_id='field-2', target_node_id='root.name'))
        self.assertTrue(check.accepted)
        self.assertTrue(check.needs_confirmation)
        self.assertEqual(check.existing.field.label, 'product_name')

        refused = self.session.save_mapping(SaveMappingRequest(field_id='field-2', target_node_id='root.name'))
        self.assertEqual(refused.severity, 'warn')
        self.assertEqual(self.session.store.for_target('root.name').field.label, 'product_name')

        self.session.save_mapping(SaveMappingRequest(field_id='field-2', target_node_id='root.name', overwrite=True))
        self.assertEqual(self.session.store.for_target('root.name').field.label, 'unit_price')
        self.assertEqual(len(self.session.store), 1)

    def test_drop_rejections(self):
        self.assertFalse(self.session.handle_drop(DropEvent(field_id='field-9', target_node_id='root.name')).accepted)
        self.assertFalse(self.session.handle_drop(DropEvent(field_id='field-1', target_node_id='root.nope')).accepted)
        not_leaf = self.session.handle_drop(DropEvent(field_id='field-1', target_node_id='root.tags'))
        self.assertFalse(not_leaf.accepted)
        self.assertIn('not a leaf', not_leaf.message)

    def test_clear_mappings(self):
        self.session.save_mapping(SaveMappingRequest(field_id='field-1', target_node_id='root.name'))
        self.session.save_mapping(SaveMappingRequest(field_id='field-2', target_node_id='root.price'))
        notification = self.session.clear_mappings(ClearMappingsRequest(reason='start over'))
        self.assertIn('Cleared 2 mappings', notification.message)
        self.assertEqual(self.session.bound.mapped_count, 0)

    def test_switching_schema_keeps_mappings_and_reports_orphans(self):
        self.session.save_mapping(SaveMappingRequest(field_id='field-3', target_node_id='root.inStock'))
        self.session.select_schema('order')
        self.assertEqual(len(self.session.store), 1)
        self.assertEqual(len(self.session.bound.report.orphaned), 1)
        self.assertIn('warn', [n.severity for n in self.session.notifications])


class TestWorkbookExchange(unittest.TestCase):
    def test_export_then_import_in_new_session(self):
        session = new_session()
        session.select_schema('product')
        session.upload_fields(field_frame())
        session.save_mapping(SaveMappingRequest(field_id='field-1', target_node_id='root.name', mapping_details='x'))
        session.save_mapping(SaveMappingRequest(field_id='field-2', target_node_id='root.price'))
        content = session.export_mappings()
        self.assertIsNotNone(content)

        other = new_session()
        notifications = other.import_mappings(content)
        self.assertEqual(notifications[0].severity, 'ok')
        self.assertEqual(other.schema_key, 'product')
        self.assertEqual(other.store.records(), session.store.records())
        self.assertFalse(other.bound.report.has_anomalies)
        self.assertEqual(other.bound.mapped_count, 2)

    def test_mapping_from_imported_workbook_can_be_edited(self):
        record = MappingRecord(mapping_id='MAP-1', target_node_id='root.orderId', target_name='orderId',
                               target_type='string', field=FieldSnapshot(field_id='field-4', label='order_no'))
        session = new_session()
        session.import_mappings(export_workbook('order', [record]))
        notification = session.save_mapping(SaveMappingRequest(
            field_id='field-4', target_node_id='root.orderId', mapping_details='strip prefix'))
        self.assertEqual(notification.severity, 'ok')
        self.assertEqual(session.store.get('MAP-1').mapping_details, 'strip prefix')

    def test_import_with_unknown_schema_changes_nothing(self):
        session = new_session()
        session.select_schema('product')
        session.upload_fields(field_frame())
        session.save_mapping(SaveMappingRequest(field_id='field-1', target_node_id='root.name'))

        buffer = io.BytesIO()
        with pd.ExcelWriter(buffer, engine='openpyxl') as writer:
            pd.DataFrame([['root.x', 'X']], columns=['Target Path', 'Field Label']).to_excel(
                writer, sheet_name=DATA_SHEET, index=False)
            pd.DataFrame([['schemaKey', 'retired_schema']], columns=['Property', 'Value']).to_excel(
                writer, sheet_name=META_SHEET, index=False)

        notifications = session.import_mappings(buffer.getvalue())
        self.assertEqual([n.severity for n in notifications], ['error'])
        self.assertEqual(session.schema_key, 'product')
        self.assertEqual(len(session.store), 1)

    def test_export_without_schema(self):
        session = new_session()
        self.assertIsNone(session.export_mappings())
        self.assertEqual(session.notifications[-1].severity, 'error')


class TestCommandLine(unittest.TestCase):
    def test_parser_knows_every_command(self):
        parser = build_parser()
        self.assertEqual(parser.parse_args(['schemas']).command, 'schemas')
        self.assertEqual(parser.parse_args(['tree', 'person']).schema, 'person')
        self.assertEqual(parser.parse_args(['fields', 'f.xlsx']).sheet, 'f.xlsx')
        self.assertEqual(parser.parse_args(['template', 't.xlsx']).output, 't.xlsx')
        self.assertEqual(parser.parse_args(['bind', 'm.xlsx']).workbook, 'm.xlsx')
        index = parser.parse_args(['index', '--schema', 'person', '--query', 'city'])
        self.assertEqual((index.schema, index.query), ('person', 'city'))


if __name__ == "__main__":
    unittest.main()
