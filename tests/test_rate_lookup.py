import unittest
import sys
import os

# Add src to path
sys.path.append(os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'src'))

from rate_lookup import (
    FLAT,
    UNKNOWN,
    VARIABLE,
    RateCache,
    RateRecord,
    TieredRateRule,
    TieredRateTable,
    canonical_rate_type,
    rule_type_for_role,
)


def rule(rate_type=FLAT, flat_rate=150, flex_rate=0, distance_end=50, max_value=100, operation="NL-DOM"):
    return TieredRateRule(operation=operation, type="ORIGIN", distance_start=0, distance_end=distance_end,
                          min_value=0, max_value=max_value, rate_type=rate_type,
                          flat_rate=flat_rate, flex_rate=flex_rate)


class TestTieredRateTable(unittest.TestCase):

    def test_flat_rate(self):
        table = TieredRateTable([rule()])
        quote = table.lookup(30, 40, "origin", "nl-dom")
        self.assertEqual(quote.rate_type, FLAT)
        self.assertEqual(quote.rate, 150)
        self.assertTrue(quote.available)

    def test_variable_rate_scales_with_volume(self):
        table = TieredRateTable([rule(rate_type=VARIABLE, flat_rate=0, flex_rate=12)])
        quote = table.lookup(30, 5, "ORIGIN", "NL-DOM")
        self.assertEqual(quote.rate_type, VARIABLE)
        self.assertEqual(quote.rate, 60)
        self.assertEqual(quote.rate_per_unit, 12)

    def test_first_matching_rule_wins(self):
        wide = rule(flat_rate=500, distance_end=1000, max_value=1000)
        tight = rule(flat_rate=150)
        table = TieredRateTable([wide, tight])
        self.assertEqual(table.lookup(30, 40, "ORIGIN", "NL-DOM").rate, 500)

    def test_closed_intervals(self):
        table = TieredRateTable([rule()])
        self.assertEqual(table.lookup(0, 0, "ORIGIN", "NL-DOM").rate, 150)
        self.assertEqual(table.lookup(50, 100, "ORIGIN", "NL-DOM").rate, 150)
        self.assertEqual(table.lookup(50.01, 100, "ORIGIN", "NL-DOM").rate_type, UNKNOWN)

    def test_no_match_is_unknown_zero(self):
        table = TieredRateTable([rule()])
        for query in [(30, 40, "DESTINATION", "NL-DOM"), (30, 40, "ORIGIN", "BE-DOM"),
                      (30, 400, "ORIGIN", "NL-DOM"), (30, 40, "ORIGIN", None)]:
            quote = table.lookup(*query)
            self.assertEqual(quote.rate_type, UNKNOWN)
            self.assertEqual(quote.rate, 0)
            self.assertFalse(quote.available)

    def test_operations_in_table_order(self):
        table = TieredRateTable([rule(operation="B"), rule(operation="A"), rule(operation="B")])
        self.assertEqual(table.operations(), ["B", "A"])


class TestRateTypes(unittest.TestCase):

    def test_spreadsheet_spelling(self):
        self.assertEqual(canonical_rate_type(" Variabel "), VARIABLE)
        self.assertEqual(canonical_rate_type("flat"), FLAT)

    def test_roles(self):
        self.assertEqual(rule_type_for_role("origin"), "ORIGIN")
        self.assertEqual(rule_type_for_role("Source"), "ORIGIN")
        self.assertEqual(rule_type_for_role("transport"), "ORIGIN")
        self.assertEqual(rule_type_for_role("destination"), "DESTINATION")

    def test_rule_round_trips_through_dict(self):
        r = rule(rate_type=VARIABLE, flex_rate=12)
        self.assertEqual(TieredRateRule.from_dict(r.to_dict()), r)


class TestRateCache(unittest.TestCase):

    def setUp(self):
        self.cache = RateCache([
            RateRecord("Rotterdam, NL", "Shanghai, CN", 1234.567, "20ft dry"),
            RateRecord("Rotterdam, NL", "Shanghai, CN", 2100.0, "40ft dry"),
        ])

    def test_exact_lookup_ignores_case_and_padding(self):
        self.assertEqual(self.cache.lookup_cost(" rotterdam, nl", "SHANGHAI, CN ", "40FT DRY"),
                         {"cost": 2100.0, "currency": "EUR"})

    def test_cost_rounded(self):
        self.assertEqual(self.cache.lookup_cost("Rotterdam, NL", "Shanghai, CN", "20ft dry")["cost"], 1234.57)

    def test_miss(self):
        self.assertIsNone(self.cache.lookup_cost("Hamburg, DE", "Shanghai, CN", "20ft dry"))


if __name__ == '__main__':
    unittest.main()
