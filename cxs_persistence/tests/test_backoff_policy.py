import unittest

from cxs_exception_model.exception import InvalidConfigurationException
from cxs_persistence.engine.manager.backoff_policy import BackoffPolicy
from cxs_persistence.utils.units import parse_time_value, parse_byte_size


class TestUnits(unittest.TestCase):

    def test_time_values(self):
        self.assertEqual(parse_time_value("5s"), 5.0)
        self.assertAlmostEqual(parse_time_value("500ms"), 0.5)
        self.assertEqual(parse_time_value("2m"), 120.0)
        self.assertEqual(parse_time_value("1h"), 3600.0)
        self.assertEqual(parse_time_value("250"), 0.25)
        self.assertEqual(parse_time_value(1500), 1.5)
        self.assertEqual(parse_time_value("-1"), -1)

    def test_invalid_time_value(self):
        with self.assertRaises(InvalidConfigurationException) as ctx:
            parse_time_value("soon", key="bulkProcessor.flushInterval")
        self.assertEqual(ctx.exception.key, "bulkProcessor.flushInterval")
        self.assertEqual(ctx.exception.value, "soon")

    def test_byte_sizes(self):
        self.assertEqual(parse_byte_size("5MB"), 5 * 1024 * 1024)
        self.assertEqual(parse_byte_size("512kb"), 512 * 1024)
        self.assertEqual(parse_byte_size("100"), 100)
        self.assertEqual(parse_byte_size(2048), 2048)
        self.assertEqual(parse_byte_size("-1"), -1)
        with self.assertRaises(InvalidConfigurationException):
            parse_byte_size("huge")


class TestBackoffPolicy(unittest.TestCase):

    def test_no_backoff(self):
        policy = BackoffPolicy.parse("noBackoff")
        self.assertEqual(list(policy.delays()), [])
        self.assertEqual(policy.max_retries(), 0)

    def test_constant(self):
        policy = BackoffPolicy.parse("constant(2s,3)")
        self.assertEqual(list(policy.delays()), [2.0, 2.0, 2.0])

    def test_exponential_defaults(self):
        delays = list(BackoffPolicy.parse("exponential").delays())

        self.assertEqual(len(delays), 8)
        for actual, expected in zip(delays, [0.05, 0.06, 0.08, 0.15]):
            self.assertAlmostEqual(actual, expected)
        self.assertEqual(delays, sorted(delays))

    def test_exponential_with_arguments(self):
        policy = BackoffPolicy.parse(" exponential( 1s , 2 ) ")
        self.assertEqual(list(policy.delays()), [1.0, 1.01])

    def test_delays_iterator_is_fresh(self):
        policy = BackoffPolicy.constant(0.5, 2)
        self.assertEqual(list(policy.delays()), list(policy.delays()))

    def test_invalid_policies(self):
        for text in ("linear", "constant", "constant(1s)", "constant(1s,x)", "noBackoff(1s,2)",
                     "exponential(,2)", ""):
            with self.subTest(text=text):
                with self.assertRaises(InvalidConfigurationException):
                    BackoffPolicy.parse(text)


if __name__ == '__main__':
    unittest.main()
