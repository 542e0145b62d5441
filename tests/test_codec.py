import math
import unittest

from pulse.engine.codec import (
    NumberValue,
    PercentageValue,
    Unparseable,
    decode,
    decode_percentage,
    encode,
    encode_text,
    numeric_value,
    read_weight,
)


class DecodeTests(unittest.TestCase):
    def test_plain_numbers(self):
        self.assertEqual(decode(42), NumberValue(42.0))
        self.assertEqual(decode(42.5), NumberValue(42.5))

    def test_numeric_text_variants(self):
        self.assertEqual(decode("42.5"), NumberValue(42.5))
        self.assertEqual(decode('"162.94"'), NumberValue(162.94))
        self.assertEqual(decode("64.2%"), NumberValue(64.2))

    def test_value_payload_text_and_mapping(self):
        self.assertEqual(decode('{"value": 42.5, "sessions": 120}'), NumberValue(42.5))
        self.assertEqual(decode({"value": "7"}), NumberValue(7.0))

    def test_percentage_payload_keeps_sessions(self):
        self.assertEqual(
            decode('{"percentage": 64.8, "sessions": 4439}'),
            PercentageValue(64.8, 4439),
        )
        self.assertEqual(decode({"percentage": 12}), PercentageValue(12.0, None))

    def test_garbage_is_unparseable_not_zero(self):
        for raw in (None, True, "n/a", "", float("nan"), math.inf, {"foo": 1}, [1, 2], '{"value": "abc"}'):
            with self.subTest(raw=raw):
                decoded = decode(raw)
                self.assertIsInstance(decoded, Unparseable)
                self.assertIsNone(numeric_value(decoded))

    def test_decode_percentage_reads_numbers_as_percentages(self):
        self.assertEqual(decode_percentage("35.5"), PercentageValue(35.5))
        self.assertEqual(decode_percentage('{"percentage": 20, "sessions": 5}'), PercentageValue(20.0, 5))
        self.assertIsInstance(decode_percentage("bad"), Unparseable)


class EncodeTests(unittest.TestCase):
    def test_round_trip(self):
        for value in (NumberValue(3.25), PercentageValue(41.0, 900), PercentageValue(7.5)):
            with self.subTest(value=value):
                self.assertEqual(decode(encode(value)), value)
                self.assertEqual(decode(encode_text(value)), value)

    def test_unparseable_cannot_be_encoded(self):
        with self.assertRaises(ValueError):
            encode(Unparseable("x", "bad"))


class ReadWeightTests(unittest.TestCase):
    def test_reads_counts_from_text_and_mapping(self):
        self.assertEqual(read_weight('{"value": 1, "sessions": 120}', "sessions"), 120.0)
        self.assertEqual(read_weight({"users": "80"}, "users"), 80.0)

    def test_missing_field_or_plain_value(self):
        self.assertIsNone(read_weight({"value": 1}, "sessions"))
        self.assertIsNone(read_weight("42", "sessions"))
        self.assertIsNone(read_weight(None, "users"))


if __name__ == "__main__":
    unittest.main()
