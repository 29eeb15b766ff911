import io
import os
import tempfile
import unittest

import pandas as pd

from extractors.field_extractor import FIELD_TEMPLATE_COLUMNS, FieldCatalog, extract, write_field_template
from utils.errors import ExtractionError


def sheet_bytes(rows, columns=FIELD_TEMPLATE_COLUMNS):
    buffer = io.BytesIO()
    pd.DataFrame(rows, columns=columns).to_excel(buffer, index=False)
    return buffer.getvalue()


class TestExtract(unittest.TestCase):
    def test_empty_row_skipped_label_only_row_kept(self):
        data = sheet_bytes([
            [None, None, None, None],
            ["customer_id", None, None, None],
        ])
        fields = extract(data)
        self.assertEqual(len(fields), 1)
        self.assertEqual(fields[0].label, "customer_id")
        self.assertEqual(fields[0].field_id, "field-1")
        self.assertEqual(fields[0].attributes["type_hint"], "")
        self.assertEqual(fields[0].attributes["color"], "default")

    def test_positional_slots_and_extra_columns(self):
        data = sheet_bytes(
            [
                ["policy_no", "string", "P-1", "primary key", "ops"],
                ["premium", "decimal", "12.50", None, None],
            ],
            columns=FIELD_TEMPLATE_COLUMNS + ["Owner"],
        )
        fields = extract(data)
        self.assertEqual([f.label for f in fields], ["policy_no", "premium"])
        self.assertEqual([f.source for f in fields], [2, 3])
        self.assertEqual(fields[0].attributes, {
            "type_hint": "string",
            "sample_value": "P-1",
            "notes": "primary key",
            "color": "default",
            "Owner": "ops",
        })
        self.assertNotIn("Owner", fields[1].attributes)
        self.assertEqual(fields[1].attributes["sample_value"], "12.50")

    def test_missing_label_gets_placeholder(self):
        fields = extract(sheet_bytes([["first", None, None, None], [None, "int", "5", None]]))
        self.assertEqual([f.label for f in fields], ["first", "Field_2"])
        self.assertEqual(fields[1].field_id, "field-2")

    def test_dataframe_input(self):
        frame = pd.DataFrame([["a", "string", None, None], ["b", None, None, "note"]],
                             columns=FIELD_TEMPLATE_COLUMNS)
        fields = extract(frame)
        self.assertEqual([f.label for f in fields], ["a", "b"])
        self.assertEqual(fields[1].attributes["notes"], "note")

    def test_csv_input(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "fields.csv")
            with open(path, "w", encoding="utf-8") as f:
                f.write("Field Name,Type Hint,Sample Value,Notes\n")
                f.write("zip,string,01234,\n")
            fields = extract(path)
        self.assertEqual(len(fields), 1)
        self.assertEqual(fields[0].attributes["sample_value"], "01234")

    def test_header_only_sheet_raises(self):
        with self.assertRaises(ExtractionError):
            extract(write_field_template())

    def test_unreadable_file_raises(self):
        with self.assertRaises(ExtractionError):
            extract(b"this is not a workbook")


class TestFieldCatalog(unittest.TestCase):
    def test_upload_replaces_collection(self):
        catalog = FieldCatalog()
        notification = catalog.load_sheet(sheet_bytes([["a", None, None, None], ["b", None, None, None]]))
        self.assertEqual(notification.severity, "ok")
        self.assertEqual(len(catalog), 2)

        catalog.load_sheet(sheet_bytes([["c", None, None, None]]))
        self.assertEqual([f.label for f in catalog.fields()], ["c"])

    def test_failed_upload_leaves_empty_collection(self):
        catalog = FieldCatalog()
        catalog.load_sheet(sheet_bytes([["a", None, None, None]]))
        notification = catalog.load_sheet(b"garbage")
        self.assertEqual(notification.severity, "error")
        self.assertEqual(len(catalog), 0)

    def test_duplicate_labels_warn(self):
        catalog = FieldCatalog()
        notification = catalog.load_sheet(sheet_bytes([["a", "x", None, None], ["a", "y", None, None]]))
        self.assertEqual(notification.severity, "warn")
        self.assertEqual(len(catalog), 2)

    def test_edit_and_remove(self):
        catalog = FieldCatalog()
        catalog.load_sheet(sheet_bytes([["a", None, None, None], ["b", None, None, None]]))
        updated = catalog.update("field-1", label="alpha", color="red")
        self.assertEqual(updated.label, "alpha")
        self.assertEqual(catalog.get("field-1").attributes["color"], "red")
        self.assertTrue(catalog.remove("field-2"))
        self.assertFalse(catalog.remove("field-2"))
        with self.assertRaises(KeyError):
            catalog.update("field-9", label="x")
        catalog.clear()
        self.assertEqual(catalog.fields(), [])


if __name__ == "__main__":
    unittest.main()
