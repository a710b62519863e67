import io
import unittest
from unittest import mock

import pandas as pd
from openpyxl import Workbook, load_workbook

import report_parser
from report_model import NOT_AVAILABLE
from report_parser import ParseError, extract_tab, parse_report, parse_workbook


def make_workbook(tabs):
    """Build an .xlsx in memory from [(tab name, rows), ...]."""
    wb = Workbook()
    wb.remove(wb.active)
    for name, rows in tabs:
        ws = wb.create_sheet(title=name)
        for row in rows:
            ws.append(row)
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


def make_sheet(rows, title="Sheet"):
    ws = Workbook().active
    ws.title = title
    for row in rows:
        ws.append(row)
    return ws


PL_ROWS = [["Sales", 1000], ["Net Profit", 250]]
PAYOUT_ROWS = [["Latest", 500], ["Previous", 400]]
PRODUCT_ROWS = [
    ["ASIN", "Title", "Sales This Month", "Sales Change"],
    ["B001", "Widget", 100, "+5%"],
    ["B002", "Gadget", "N/A", ""],
]


class TestExtractTab(unittest.TestCase):

    def test_prefers_flattened_text(self):
        ws = make_sheet(PL_ROWS)
        with self.assertLogs("report_parser", level="INFO") as cm:
            rows = extract_tab(ws)
        self.assertEqual(rows, [["Sales", "1000"], ["Net Profit", "250"]])
        self.assertTrue(any("flattened text" in m for m in cm.output))

    def test_threshold_falls_back_to_structured_rows(self):
        ws = make_sheet(PL_ROWS)
        with self.assertLogs("report_parser", level="INFO") as cm:
            rows = extract_tab(ws, text_density_threshold=1000)
        self.assertEqual(rows, [["Sales", "1000"], ["Net Profit", "250"]])
        self.assertTrue(any("using structured rows" in m for m in cm.output))

    def test_prefers_records_when_they_outnumber_rows(self):
        ws = make_sheet([["ASIN", "Title"]])
        records = [{"ASIN": "B1", "Title": "One"}, {"ASIN": "B2", "Title": "Two"}]
        with mock.patch.object(report_parser, "_read_text", side_effect=RuntimeError("no text")), \
                mock.patch.object(report_parser, "_read_records", return_value=records):
            rows = extract_tab(ws)
        self.assertEqual(rows, [["ASIN", "Title"], ["B1", "One"], ["B2", "Two"]])

    def test_drops_placeholder_rows(self):
        ws = make_sheet([])
        grid = [["Sales", "10"], ["undefined", "null"], ["", ""]]
        with mock.patch.object(report_parser, "_read_grid", return_value=grid), \
                mock.patch.object(report_parser, "_read_text", side_effect=RuntimeError("no text")), \
                mock.patch.object(report_parser, "_read_records", return_value=[]):
            rows = extract_tab(ws)
        self.assertEqual(rows, [["Sales", "10"]])

    def test_total_failure_returns_empty(self):
        ws = make_sheet(PL_ROWS, title="Corrupt")
        err = RuntimeError("unreadable")
        with mock.patch.object(report_parser, "_read_grid", side_effect=err), \
                mock.patch.object(report_parser, "_read_text", side_effect=err), \
                mock.patch.object(report_parser, "_read_records", side_effect=err):
            with self.assertLogs("report_parser", level="WARNING") as cm:
                rows = extract_tab(ws)
        self.assertEqual(rows, [])
        self.assertTrue(any("All extraction methods failed for tab 'Corrupt'" in m for m in cm.output))

    def test_percent_formatted_cell(self):
        ws = make_sheet([["Margin", 0.54]])
        ws["B1"].number_format = "0.0%"
        self.assertEqual(extract_tab(ws), [["Margin", "54%"]])

    def test_line_break_inside_cell_stays_in_cell(self):
        ws = make_sheet([["ASIN", "Title", "Sales"], ["B001", "Widget\nBlue", 100]])
        rows = extract_tab(ws)
        self.assertEqual(rows, [["ASIN", "Title", "Sales"], ["B001", "Widget\nBlue", "100"]])

    def test_records_read_through_pandas(self):
        data = make_workbook([("Sheet1", [["Name", None, "Name"], ["a", "b", "c"], [], ["d", "e", "f"]])])
        ws = load_workbook(io.BytesIO(data), data_only=True)["Sheet1"]
        records = report_parser._read_records(ws, pd.ExcelFile(io.BytesIO(data)))
        self.assertEqual(records, [
            {"Name": "a", "__EMPTY": "b", "Name_1": "c"},
            {"Name": "d", "__EMPTY": "e", "Name_1": "f"},
        ])

    def test_records_need_a_workbook_reader(self):
        ws = make_sheet(PL_ROWS)
        with self.assertRaises(ValueError):
            report_parser._read_records(ws)


class TestParseWorkbook(unittest.TestCase):

    def test_tabs_classified_by_name(self):
        data = make_workbook([
            ("Profit & Loss", PL_ROWS),
            ("Per-Product Performance", PRODUCT_ROWS),
            ("Payouts", PAYOUT_ROWS),
            ("Amazon Performance", [["Sales This Month", 5000, "+4%"], ["ACOS", 0.15]]),
        ])
        report = parse_workbook(data)

        self.assertEqual(report.profit_loss.sales, 1000.0)
        self.assertEqual(report.profit_loss.net_profit, 250.0)
        self.assertEqual([p.asin for p in report.product_performance], ["B001", "B002"])
        self.assertEqual(report.product_performance[0].sales_this_month, 100.0)
        self.assertEqual(report.product_performance[0].sales_change, "+5%")
        self.assertIs(report.product_performance[1].sales_this_month, NOT_AVAILABLE)
        self.assertEqual(report.payouts.latest, 500.0)
        self.assertEqual(report.payouts.previous, 400.0)
        self.assertIs(report.payouts.average, NOT_AVAILABLE)
        self.assertEqual(report.amazon_performance.sales_this_month, 5000.0)
        self.assertEqual(report.amazon_performance.sales_change, "+4%")
        self.assertEqual(report.amazon_performance.acos_this_month, 0.15)

    def test_unnamed_tab_with_asin_header(self):
        report = parse_workbook(make_workbook([("Sheet1", PRODUCT_ROWS)]))
        self.assertEqual(len(report.product_performance), 2)

    def test_unnamed_tab_with_titled_sections(self):
        rows = [["Profit & Loss"], ["Sales", 100], ["Payouts"], ["Latest", 50]]
        report = parse_workbook(make_workbook([("Report", rows)]))
        self.assertEqual(report.profit_loss.sales, 100.0)
        self.assertEqual(report.payouts.latest, 50.0)

    def test_unrecognised_and_empty_tabs_are_skipped(self):
        data = make_workbook([
            ("Notes", []),
            ("Summary", [["Foo", "Bar"], ["1", "2"]]),
            ("Payouts", PAYOUT_ROWS),
        ])
        with self.assertLogs("report_parser", level="INFO") as cm:
            report = parse_workbook(data)
        self.assertEqual(report.payouts.latest, 500.0)
        self.assertIs(report.profit_loss.sales, NOT_AVAILABLE)
        self.assertTrue(any("Tab 'Notes' has no data range" in m for m in cm.output))
        self.assertTrue(any("Could not classify tab 'Summary'" in m for m in cm.output))

    def test_percent_formatted_margin(self):
        wb = Workbook()
        ws = wb.active
        ws.title = "Profit & Loss"
        ws.append(["Sales", 1000])
        ws.append(["Margin", 0.54])
        ws["B2"].number_format = "0.00%"
        buf = io.BytesIO()
        wb.save(buf)
        report = parse_workbook(buf.getvalue())
        self.assertEqual(report.profit_loss.margin, 54.0)

    def test_multi_line_product_title(self):
        rows = [
            ["ASIN", "Title", "Sales This Month"],
            ["B001", "Widget\nBlue", 100],
            ["B002", "Gadget", 40],
        ]
        report = parse_workbook(make_workbook([("Per-Product Performance", rows)]))
        self.assertEqual([p.asin for p in report.product_performance], ["B001", "B002"])
        self.assertEqual(report.product_performance[0].title, "Widget\nBlue")
        self.assertEqual(report.product_performance[0].sales_this_month, 100.0)

    def test_record_strategy_used_when_cell_readers_fail(self):
        data = make_workbook([("Profit & Loss", PL_ROWS)])
        err = RuntimeError("cell walk failed")
        with mock.patch.object(report_parser, "_read_grid", side_effect=err), \
                mock.patch.object(report_parser, "_read_text", side_effect=err):
            with self.assertLogs("report_parser", level="INFO") as cm:
                report = parse_workbook(data)
        self.assertEqual(report.profit_loss.sales, 1000.0)
        self.assertEqual(report.profit_loss.net_profit, 250.0)
        self.assertTrue(any("record objects" in m for m in cm.output))

    def test_broken_tab_extraction_does_not_affect_others(self):
        data = make_workbook([
            ("Profit & Loss", PL_ROWS),
            ("Broken", PRODUCT_ROWS),
            ("Payouts", PAYOUT_ROWS),
        ])

        def failing_for_broken(original):
            def wrapper(ws, *args):
                if ws.title == "Broken":
                    raise RuntimeError("corrupt tab")
                return original(ws, *args)
            return wrapper

        with mock.patch.object(report_parser, "_read_grid",
                               side_effect=failing_for_broken(report_parser._read_grid)), \
                mock.patch.object(report_parser, "_read_text",
                                  side_effect=failing_for_broken(report_parser._read_text)), \
                mock.patch.object(report_parser, "_read_records",
                                  side_effect=failing_for_broken(report_parser._read_records)):
            report = parse_workbook(data)

        self.assertEqual(report.profit_loss.sales, 1000.0)
        self.assertEqual(report.payouts.latest, 500.0)
        self.assertEqual(report.product_performance, ())

    def test_tab_level_error_is_isolated(self):
        data = make_workbook([
            ("Profit & Loss", PL_ROWS),
            ("Broken", PRODUCT_ROWS),
            ("Payouts", PAYOUT_ROWS),
        ])
        original = report_parser.extract_tab

        def extract(ws, **kwargs):
            if ws.title == "Broken":
                raise RuntimeError("unexpected")
            return original(ws, **kwargs)

        with mock.patch.object(report_parser, "extract_tab", side_effect=extract):
            with self.assertLogs("report_parser", level="ERROR") as cm:
                report = parse_workbook(data)

        self.assertEqual(report.profit_loss.sales, 1000.0)
        self.assertEqual(report.payouts.previous, 400.0)
        self.assertEqual(report.product_performance, ())
        self.assertTrue(any("Error processing tab 'Broken'" in m for m in cm.output))

    def test_invalid_workbook_input(self):
        for data in ("not bytes", None, b"", b"definitely not a workbook"):
            with self.assertRaises(ParseError):
                parse_workbook(data)


class TestParseReport(unittest.TestCase):

    def test_csv_content(self):
        report = parse_report("Payouts\nLatest,12", content_type="text/csv", filename="report.csv")
        self.assertEqual(report.payouts.latest, 12.0)

    def test_workbook_labelled_as_csv(self):
        data = make_workbook([("Payouts", PAYOUT_ROWS)])
        with self.assertLogs("report_parser", level="INFO") as cm:
            report = parse_report(data, content_type="text/csv", filename="report.csv")
        self.assertEqual(report.payouts.latest, 500.0)
        self.assertTrue(any("contains workbook data" in m for m in cm.output))

    def test_workbook_delivered_as_text(self):
        data = make_workbook([("Payouts", PAYOUT_ROWS)])
        report = parse_report(data.decode("latin-1"), content_type="text/csv")
        self.assertEqual(report.payouts.previous, 400.0)

    def test_declared_workbook(self):
        data = make_workbook([("Profit & Loss", PL_ROWS)])
        mime = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
        self.assertEqual(parse_report(data, content_type=mime).profit_loss.sales, 1000.0)

    def test_unreadable_workbook(self):
        with self.assertRaises(ParseError):
            parse_report(b"Sales,10", filename="report.xlsx")
        with self.assertRaises(ParseError):
            parse_report("PK\x03\x04garbage", content_type="text/csv")


if __name__ == "__main__":
    unittest.main()
