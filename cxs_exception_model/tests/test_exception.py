import unittest

from cxs_exception_model.exception import MalformedConditionException, UnsupportedConditionException, \
    IndexNotFoundException, PersistenceException, ItemDeserializationException, UnknownItemTypeException, \
    BulkProcessorClosedException, InvalidConfigurationException


class BaseExceptionTest(unittest.TestCase):
    """Base test class for common exception testing behavior"""

    exception_class = None  # Will be set in subclasses

    def setUp(self):
        # Skip tests in this base class
        if self.__class__ == BaseExceptionTest:
            self.skipTest("Base class")

    def test_inheritance(self):
        """Test that the exception inherits from Exception"""
        self.assertTrue(issubclass(self.exception_class, Exception))

    def test_basic_instantiation(self):
        """Test that exception can be instantiated with just a message"""
        message = "Test error message"
        exc = self.exception_class(message)
        self.assertEqual(exc.message, message)
        self.assertEqual(str(exc), message)

    def test_raise_and_catch(self):
        """Test that exception can be raised and caught"""
        message = "Test error message"
        try:
            raise self.exception_class(message)
        except self.exception_class as e:
            self.assertEqual(e.message, message)


class TestMalformedConditionException(BaseExceptionTest):
    exception_class = MalformedConditionException

    def test_with_condition_type_and_parameter(self):
        """Both details are rendered in order"""
        exc = MalformedConditionException("Missing value", "propertyCondition", "propertyValue")
        self.assertEqual(str(exc), "Missing value (condition_type=propertyCondition, parameter=propertyValue)")

    def test_with_condition_type_only(self):
        exc = MalformedConditionException("Bad operator", condition_type_id="propertyCondition")
        self.assertEqual(str(exc), "Bad operator (condition_type=propertyCondition)")
        self.assertIsNone(exc.parameter)


class TestUnsupportedConditionException(BaseExceptionTest):
    exception_class = UnsupportedConditionException

    def test_with_side(self):
        exc = UnsupportedConditionException("No handler", "fooCondition", "evaluator")
        self.assertEqual(exc.condition_type_id, "fooCondition")
        self.assertEqual(str(exc), "No handler (condition_type=fooCondition, side=evaluator)")


class TestIndexNotFoundException(BaseExceptionTest):
    exception_class = IndexNotFoundException

    def test_with_index(self):
        exc = IndexNotFoundException("Index missing", "context-2024-03")
        self.assertEqual(str(exc), "Index missing (index=context-2024-03)")


class TestPersistenceException(BaseExceptionTest):
    exception_class = PersistenceException

    def test_with_all_details(self):
        cause = ValueError("boom")
        exc = PersistenceException("Search failed", operation="query", index_name="context", cause=cause)
        self.assertIs(exc.cause, cause)
        self.assertEqual(str(exc), "Search failed (operation=query, index=context, cause=boom)")

    def test_with_operation_only(self):
        exc = PersistenceException("Search failed", operation="query")
        self.assertEqual(str(exc), "Search failed (operation=query)")


class TestItemDeserializationException(BaseExceptionTest):
    exception_class = ItemDeserializationException

    def test_with_item_details(self):
        exc = ItemDeserializationException("Bad hit", item_id="p1", item_type="profile")
        self.assertEqual(str(exc), "Bad hit (item_id=p1, item_type=profile)")


class TestUnknownItemTypeException(BaseExceptionTest):
    exception_class = UnknownItemTypeException

    def test_with_class(self):
        exc = UnknownItemTypeException("No kind", "Foo")
        self.assertEqual(str(exc), "No kind (class=Foo)")


class TestBulkProcessorClosedException(BaseExceptionTest):
    exception_class = BulkProcessorClosedException

    def test_with_processor_name(self):
        exc = BulkProcessorClosedException("Closed", "cxs-bulk")
        self.assertEqual(str(exc), "Closed (processor=cxs-bulk)")


class TestInvalidConfigurationException(BaseExceptionTest):
    exception_class = InvalidConfigurationException

    def test_with_key_and_value(self):
        exc = InvalidConfigurationException("Unparsable", key="backoffPolicy", value="linear")
        self.assertEqual(str(exc), "Unparsable (key=backoffPolicy, value=linear)")


if __name__ == '__main__':
    unittest.main()
