import math
import unittest
from datetime import date, datetime
from decimal import Decimal

import pandas as pd

from expense_intake.normalizer import (
    is_blank,
    parse_amount,
    parse_date,
    parse_sheet_date,
    parse_signed_amount,
)


class ParseAmountTests(unittest.TestCase):
    def test_european_thousands_and_decimal_comma(self):
        self.assertEqual(parse_amount("1.234,56"), Decimal("1234.56"))

    def test_negative_with_currency_suffix_becomes_absolute(self):
        self.assertEqual(parse_amount("-45,00 €"), Decimal("45.00"))

    def test_unparseable_text_fails(self):
        self.assertIsNone(parse_amount("n/a"))
        self.assertIsNone(parse_amount(""))
        self.assertIsNone(parse_amount(None))

    def test_zero_is_not_an_amount(self):
        self.assertIsNone(parse_amount(0))
        self.assertIsNone(parse_amount("0,00"))

    def test_native_numbers_take_absolute_value(self):
        self.assertEqual(parse_amount(12), Decimal("12"))
        self.assertEqual(parse_amount(-9.99), Decimal("9.99"))
        self.assertEqual(parse_amount(Decimal("-3.5")), Decimal("3.5"))

    def test_booleans_dates_and_nan_are_rejected(self):
        self.assertIsNone(parse_amount(True))
        self.assertIsNone(parse_amount(date(2024, 1, 1)))
        self.assertIsNone(parse_amount(float("nan")))

    def test_other_currency_symbols_are_stripped(self):
        self.assertEqual(parse_amount("R$ 10,50"), Decimal("10.50"))
        self.assertEqual(parse_amount("£7"), Decimal("7"))
        self.assertEqual(parse_amount("$ 1.000"), Decimal("1000"))

    def test_trailing_junk_after_number_is_ignored(self):
        self.assertEqual(parse_amount("12,50 approx"), Decimal("12.50"))

    def test_signed_amount_keeps_sign(self):
        self.assertEqual(parse_signed_amount("-45,00 €"), Decimal("-45.00"))
        self.assertEqual(parse_signed_amount(-3), Decimal("-3"))
        self.assertIsNone(parse_signed_amount("abc"))


class ParseDateTests(unittest.TestCase):
    def test_day_month_year_order(self):
        self.assertEqual(parse_date("05/03/2024"), date(2024, 3, 5))

    def test_dash_separator_and_two_digit_year(self):
        self.assertEqual(parse_date("1-2-24"), date(2024, 2, 1))

    def test_impossible_calendar_date_is_none(self):
        self.assertIsNone(parse_date("31/02/2024"))

    def test_native_datetime_and_timestamp(self):
        self.assertEqual(parse_date(datetime(2025, 12, 10, 15, 30)), date(2025, 12, 10))
        self.assertEqual(parse_date(pd.Timestamp("2025-01-02")), date(2025, 1, 2))
        self.assertEqual(parse_date(date(2023, 7, 1)), date(2023, 7, 1))

    def test_spreadsheet_serial(self):
        self.assertEqual(parse_date(45292), date(2024, 1, 1))
        self.assertEqual(parse_date(45292.75), date(2024, 1, 1))

    def test_iso_string_falls_back_to_generic_parsing(self):
        self.assertEqual(parse_date("2024-06-30"), date(2024, 6, 30))
        self.assertEqual(parse_date("March 5, 2024"), date(2024, 3, 5))

    def test_text_without_a_year_is_not_a_date(self):
        for text in ("Jan", "now", "today", "Dez", "12"):
            with self.subTest(text=text):
                self.assertIsNone(parse_date(text))

    def test_blank_total_and_garbage_are_none(self):
        self.assertIsNone(parse_date(""))
        self.assertIsNone(parse_date("   "))
        self.assertIsNone(parse_date("Total"))
        self.assertIsNone(parse_date("not a date"))
        self.assertIsNone(parse_date(None))
        self.assertIsNone(parse_date(pd.NaT))
        self.assertIsNone(parse_date(math.nan))


class SheetDateTests(unittest.TestCase):
    def test_english_month_name(self):
        self.assertEqual(parse_sheet_date("December 2025"), date(2025, 12, 1))

    def test_portuguese_month_inside_longer_title(self):
        self.assertEqual(parse_sheet_date("Gastos Março 2024"), date(2024, 3, 1))

    def test_abbreviation(self):
        self.assertEqual(parse_sheet_date("Fev 2023"), date(2023, 2, 1))

    def test_unknown_month_token_is_skipped(self):
        self.assertEqual(parse_sheet_date("Budget 2024 jan 2025"), date(2025, 1, 1))
        self.assertIsNone(parse_sheet_date("Casa"))
        self.assertIsNone(parse_sheet_date("Budget 2024"))


class BlankTests(unittest.TestCase):
    def test_blank_values(self):
        self.assertTrue(is_blank(None))
        self.assertTrue(is_blank("  "))
        self.assertTrue(is_blank(float("nan")))
        self.assertFalse(is_blank(0))
        self.assertFalse(is_blank("x"))


if __name__ == "__main__":
    unittest.main()
