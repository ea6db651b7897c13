"""Tests for request intake from sheet-shaped rows and CSV."""

import os
import shutil
import sys
import tempfile
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from checkin.errors import IntakeError
from checkin.intake import parse_rows, read_csv
from checkin.types import RegistrationRequest


class TestParseRows(unittest.TestCase):

    def test_care_type_labels(self):
        result = parse_rows([
            [1, "张三", "家护（失能）", "否"],
            [2, "李四", "家护（门诊慢特病）", "是"],
        ])
        self.assertEqual(result.requests, [
            RegistrationRequest("张三", "05", False),
            RegistrationRequest("李四", "06", True),
        ])
        self.assertEqual(result.rejected, [])

    def test_missing_tracheotomy_defaults_false(self):
        result = parse_rows([[1, "张三", "家护（失能）"]])
        self.assertFalse(result.requests[0].medical_flag)

    def test_unknown_label_rejected(self):
        result = parse_rows([[1, "张三", "门诊"], [2, "李四", "家护（失能）", ""]])
        self.assertEqual([r.name for r in result.requests], ["李四"])
        self.assertEqual(len(result.rejected), 1)
        self.assertEqual(result.rejected[0].line, 1)
        self.assertIn("门诊", result.rejected[0].reason)

    def test_blank_name_rejected_but_empty_row_ignored(self):
        result = parse_rows([[3, "  ", "家护（失能）"], [None, None, None], []])
        self.assertEqual(result.requests, [])
        self.assertEqual(len(result.rejected), 1)
        self.assertEqual(result.rejected[0].reason, "blank name")

    def test_names_trimmed(self):
        result = parse_rows([[1, " 张三 ", " 家护（失能） ", " 是 "]])
        self.assertEqual(result.requests[0], RegistrationRequest("张三", "05", True))

    def test_duplicates_keep_first(self):
        result = parse_rows([
            [1, "张三", "家护（失能）", "否"],
            [2, "张三", "家护（门诊慢特病）", "是"],
        ])
        self.assertEqual(result.requests, [RegistrationRequest("张三", "05", False)])
        self.assertEqual(result.duplicates, 1)


class TestReadCsv(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_header_skipped_and_bom_handled(self):
        path = os.path.join(self.tmpdir, "requests.csv")
        with open(path, "w", encoding="utf-8-sig", newline="") as f:
            f.write("序号,姓名,护理类型,气管切开\n")
            f.write("1,张三,家护（失能）,否\n")
            f.write("2,李四,未知,否\n")
        result = read_csv(path)
        self.assertEqual([r.name for r in result.requests], ["张三"])
        self.assertEqual(result.rejected[0].line, 3)

    def write_gbk(self):
        path = os.path.join(self.tmpdir, "excel.csv")
        with open(path, "w", encoding="gbk", newline="") as f:
            f.write("序号,姓名,护理类型,气管切开\n")
            f.write("1,张三,家护（门诊慢特病）,是\n")
        return path

    def test_gbk_export_with_default_encoding_is_intake_error(self):
        with self.assertRaises(IntakeError) as ctx:
            read_csv(self.write_gbk())
        self.assertIn("gbk", str(ctx.exception))
        self.assertEqual(ctx.exception.context["encoding"], "utf-8-sig")

    def test_gbk_export_with_gbk_encoding(self):
        result = read_csv(self.write_gbk(), encoding="gbk")
        self.assertEqual(result.requests, [RegistrationRequest("张三", "06", True)])

    def test_unknown_encoding_is_intake_error(self):
        with self.assertRaises(IntakeError):
            read_csv(self.write_gbk(), encoding="no-such-codec")

    def test_missing_file(self):
        with self.assertRaises(OSError):
            read_csv(os.path.join(self.tmpdir, "missing.csv"))


if __name__ == "__main__":
    unittest.main()
