import io
import os
import tempfile
import unittest
from datetime import datetime, timezone

import pandas as pd
from openpyxl import Workbook, load_workbook

from loaders.workbook_codec import (DATA_SHEET, EXPORT_HEADERS, META_SHEET, export_workbook,
                                    import_workbook)
from mapper.schemas import FieldSnapshot, MappingRecord, OutputDescriptor
from utils.errors import CodecError


def sample_mappings():
    return [
        MappingRecord(
            mapping_id="MAP-1",
            target_node_id="root.address.city",
            target_name="city",
            target_type="string",
            field=FieldSnapshot(field_id="field-3", label="Ville",
                                attributes={"type_hint": "string", "sample_value": "Lyon", "color": "blue"}),
            mapping_details="=TRIM(A1)\nthen upper-case",
            outputs=[OutputDescriptor(label="city_upper", expression="upper(value)"),
                     OutputDescriptor(label="city_raw")],
            timestamp=datetime(2026, 3, 4, 5, 6, 7, 123456, tzinfo=timezone.utc),
        ),
        MappingRecord(
            mapping_id="MAP-2",
            target_node_id="root.documents.items.sizeKb",
            target_name="sizeKb",
            target_type="integer",
            field=FieldSnapshot(field_id="field-7", label="Größe (KB)", attributes={"color": "default", "rank": 2}),
            timestamp=datetime(2026, 3, 5, tzinfo=timezone.utc),
        ),
    ]


def workbook_bytes(data_rows, columns, meta=(("Property", "Value"), ("schemaKey", "person"))):
    buffer = io.BytesIO()
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        pd.DataFrame(data_rows, columns=columns).to_excel(writer, sheet_name=DATA_SHEET, index=False)
        if meta is not None:
            header, *rows = meta
            pd.DataFrame(rows, columns=list(header)).to_excel(writer, sheet_name=META_SHEET, index=False)
    return buffer.getvalue()


class TestRoundTrip(unittest.TestCase):
    def test_import_of_export_gives_back_key_and_mappings(self):
        mappings = sample_mappings()
        imported = import_workbook(export_workbook("person", mappings))
        self.assertEqual(imported.schema_key, "person")
        self.assertEqual(imported.format_version, 1)
        self.assertEqual(imported.mappings, mappings)

    def test_empty_export_has_header_only_and_meta_key(self):
        content = export_workbook("order", [])
        book = load_workbook(io.BytesIO(content))
        self.assertEqual(book[DATA_SHEET].max_row, 1)
        self.assertEqual([c.value for c in book[DATA_SHEET][1]], list(EXPORT_HEADERS.values()))

        meta = book[META_SHEET]
        self.assertEqual(meta.sheet_state, "hidden")
        self.assertEqual(meta["A2"].value, "schemaKey")
        self.assertEqual(meta["B2"].value, "order")

        imported = import_workbook(content)
        self.assertEqual(imported.schema_key, "order")
        self.assertEqual(imported.mappings, [])

    def test_formula_like_text_stays_text(self):
        book = load_workbook(io.BytesIO(export_workbook("person", sample_mappings())))
        details = book[DATA_SHEET]["G2"]
        self.assertEqual(details.data_type, "s")
        self.assertTrue(details.value.startswith("=TRIM"))

    def test_line_endings_whitespace_and_unicode_survive(self):
        record = MappingRecord(
            mapping_id="MAP-9",
            target_node_id="root.notes",
            target_name="notes",
            target_type="string",
            field=FieldSnapshot(field_id="field-9", label="  Bemerkung über Größe  ",
                                attributes={"notes": "a\r\nb"}),
            mapping_details="line1\r\nline2\rline3\n",
            outputs=[OutputDescriptor(label="ключ", expression="split(value, '\r\n')")],
            timestamp=datetime(2026, 3, 6, tzinfo=timezone.utc),
        )
        imported = import_workbook(export_workbook("person", [record]))
        self.assertEqual(imported.mappings[0], record)
        self.assertEqual(imported.mappings[0].mapping_details, "line1\r\nline2\rline3\n")

    def test_excel_escape_lookalikes_survive(self):
        record = MappingRecord(
            mapping_id="MAP-10",
            target_node_id="root.code",
            target_name="code",
            target_type="string",
            field=FieldSnapshot(field_id="field-10", label="~text:\"not json"),
            mapping_details="literal _x000D_ and _x005F_x000A_ text",
            timestamp=datetime(2026, 3, 6, tzinfo=timezone.utc),
        )
        self.assertEqual(import_workbook(export_workbook("person", [record])).mappings[0], record)

    def test_plain_text_cells_are_not_wrapped(self):
        book = load_workbook(io.BytesIO(export_workbook("person", sample_mappings())))
        self.assertEqual(book[DATA_SHEET]["D3"].value, "Größe (KB)")

    def test_dotted_property_path_round_trips(self):
        record = MappingRecord(mapping_id="MAP-11", target_node_id="root.meta.v1~12", target_name="v1.2",
                               target_type="string", field=FieldSnapshot(field_id="field-1", label="Version"),
                               timestamp=datetime(2026, 3, 6, tzinfo=timezone.utc))
        self.assertEqual(import_workbook(export_workbook("person", [record])).mappings[0], record)

    def test_export_writes_target_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "out", "mappings.xlsx")
            content = export_workbook("person", sample_mappings(), target=path)
            with open(path, "rb") as f:
                self.assertEqual(f.read(), content)
            self.assertEqual(len(import_workbook(path).mappings), 2)


class TestExportErrors(unittest.TestCase):
    def test_schema_key_is_required(self):
        with self.assertRaises(CodecError):
            export_workbook("", sample_mappings())

    def test_duplicate_targets_abort_before_writing(self):
        first, second = sample_mappings()
        clash = second.model_copy(update={"target_node_id": first.target_node_id})
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "mappings.xlsx")
            with self.assertRaises(CodecError):
                export_workbook("person", [first, clash], target=path)
            self.assertFalse(os.path.exists(path))


class TestImport(unittest.TestCase):
    def test_columns_found_by_header_name(self):
        columns = ["Mapping Details", "Field Label", "Target Path", "Outputs"]
        content = workbook_bytes(
            [["split", "Street", "root.address.street", '[{"label": "n", "expression": "x"}]']],
            columns,
        )
        imported = import_workbook(content)
        record = imported.mappings[0]
        self.assertEqual(record.target_node_id, "root.address.street")
        self.assertEqual(record.target_name, "street")
        self.assertEqual(record.field.label, "Street")
        self.assertEqual(record.mapping_details, "split")
        self.assertEqual(record.outputs, [OutputDescriptor(label="n", expression="x")])
        self.assertTrue(record.mapping_id.startswith("MAP-"))

    def test_hierarchy_label_is_accepted_as_target(self):
        content = workbook_bytes([["address -> city", "Town"]], ["Target Path", "Field Label"])
        self.assertEqual(import_workbook(content).mappings[0].target_node_id, "root.address.city")

    def test_hierarchy_label_with_dotted_name(self):
        content = workbook_bytes([["meta -> v1.2", "Version"]], ["Target Path", "Field Label"])
        record = import_workbook(content).mappings[0]
        self.assertEqual(record.target_node_id, "root.meta.v1~12")
        self.assertEqual(record.target_name, "v1.2")

    def test_target_name_defaults_to_unescaped_last_segment(self):
        content = workbook_bytes([["root.meta.v1~12", "Version"]], ["Target Path", "Field Label"])
        self.assertEqual(import_workbook(content).mappings[0].target_name, "v1.2")

    def test_blank_rows_are_skipped(self):
        content = workbook_bytes([["root.a", "A"], [None, None], ["root.b", "B"]], ["Target Path", "Field Label"])
        self.assertEqual([m.target_node_id for m in import_workbook(content).mappings], ["root.a", "root.b"])

    def test_bare_meta_layout(self):
        data = io.BytesIO(workbook_bytes([["root.a", "A"]], ["Target Path", "Field Label"], meta=None))
        book = load_workbook(data)
        meta = book.create_sheet(META_SHEET)
        meta["A1"] = "schemaKey"
        meta["B1"] = "product"
        out = io.BytesIO()
        book.save(out)
        self.assertEqual(import_workbook(out.getvalue()).schema_key, "product")

    def test_missing_meta_sheet_fails(self):
        content = workbook_bytes([["root.a", "A"]], ["Target Path", "Field Label"], meta=None)
        with self.assertRaises(CodecError):
            import_workbook(content)

    def test_missing_schema_key_fails(self):
        content = workbook_bytes([["root.a", "A"]], ["Target Path", "Field Label"],
                                 meta=(("Property", "Value"), ("formatVersion", "1")))
        with self.assertRaises(CodecError):
            import_workbook(content)

    def test_newer_format_version_fails(self):
        content = workbook_bytes([["root.a", "A"]], ["Target Path", "Field Label"],
                                 meta=(("Property", "Value"), ("schemaKey", "person"), ("formatVersion", "2")))
        with self.assertRaises(CodecError):
            import_workbook(content)

    def test_missing_target_column_fails(self):
        content = workbook_bytes([["A"]], ["Field Label"])
        with self.assertRaises(CodecError):
            import_workbook(content)

    def test_unparseable_outputs_fail_whole_import(self):
        book = load_workbook(io.BytesIO(export_workbook("person", sample_mappings())))
        book[DATA_SHEET]["H3"] = "not json"
        out = io.BytesIO()
        book.save(out)
        with self.assertRaises(CodecError):
            import_workbook(out.getvalue())

    def test_duplicate_targets_fail_import(self):
        content = workbook_bytes([["root.a", "A"], ["root.a", "B"]], ["Target Path", "Field Label"])
        with self.assertRaises(CodecError):
            import_workbook(content)

    def test_not_a_workbook(self):
        with self.assertRaises(CodecError):
            import_workbook(b"plain text")


if __name__ == "__main__":
    unittest.main()
