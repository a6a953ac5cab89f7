class MalformedConditionException(Exception):
    """
    Exception raised when a condition cannot be evaluated or compiled because its
    parameters are incomplete or inconsistent (missing value, wrong arity,
    unknown comparison operator).

    Attributes:
        condition_type_id -- id of the offending condition type
        parameter -- name of the parameter at fault
        message -- explanation of the error
    """

    def __init__(self, message, condition_type_id=None, parameter=None):
        self.condition_type_id = condition_type_id
        self.parameter = parameter
        self.message = message
        super().__init__(self.message)

    def __str__(self):
        details = []
        if self.condition_type_id is not None:
            details.append(f"condition_type={self.condition_type_id}")
        if self.parameter is not None:
            details.append(f"parameter={self.parameter}")

        if details:
            return f"{self.message} ({', '.join(details)})"
        return self.message


class UnsupportedConditionException(Exception):
    """
    Exception raised when no evaluator or query builder is registered for a
    condition type.
    """

    def __init__(self, message, condition_type_id=None, side=None):
        self.condition_type_id = condition_type_id
        self.side = side
        self.message = message
        super().__init__(self.message)

    def __str__(self):
        details = []
        if self.condition_type_id is not None:
            details.append(f"condition_type={self.condition_type_id}")
        if self.side is not None:
            details.append(f"side={self.side}")

        if details:
            return f"{self.message} ({', '.join(details)})"
        return self.message


class IndexNotFoundException(Exception):
    """
    Exception raised when a write targets an index that does not exist and
    cannot be created on demand.
    """

    def __init__(self, message, index_name=None):
        self.index_name = index_name
        self.message = message
        super().__init__(self.message)

    def __str__(self):
        if self.index_name is not None:
            return f"{self.message} (index={self.index_name})"
        return self.message


class PersistenceException(Exception):
    """
    Exception raised when a remote call to the search engine fails.
    """

    def __init__(self, message, operation=None, index_name=None, cause: Exception = None):
        self.operation = operation
        self.index_name = index_name
        self.cause = cause
        self.message = message
        super().__init__(self.message)

    def __str__(self):
        details = []
        if self.operation is not None:
            details.append(f"operation={self.operation}")
        if self.index_name is not None:
            details.append(f"index={self.index_name}")
        if self.cause is not None:
            details.append(f"cause={self.cause}")

        if details:
            return f"{self.message} ({', '.join(details)})"
        return self.message


class ItemDeserializationException(Exception):
    """
    Exception raised when a stored document cannot be turned back into an item.
    """

    def __init__(self, message, item_id=None, item_type=None, cause: Exception = None):
        self.item_id = item_id
        self.item_type = item_type
        self.cause = cause
        self.message = message
        super().__init__(self.message)

    def __str__(self):
        details = []
        if self.item_id is not None:
            details.append(f"item_id={self.item_id}")
        if self.item_type is not None:
            details.append(f"item_type={self.item_type}")
        if self.cause is not None:
            details.append(f"cause={self.cause}")

        if details:
            return f"{self.message} ({', '.join(details)})"
        return self.message


class UnknownItemTypeException(Exception):
    """
    Exception raised when the kind of an item class cannot be determined.
    """

    def __init__(self, message, item_class=None):
        self.item_class = item_class
        self.message = message
        super().__init__(self.message)

    def __str__(self):
        if self.item_class is not None:
            return f"{self.message} (class={self.item_class})"
        return self.message


class BulkProcessorClosedException(Exception):
    """
    Exception raised when an action is submitted to a bulk processor that has
    already been closed.
    """

    def __init__(self, message, processor_name=None):
        self.processor_name = processor_name
        self.message = message
        super().__init__(self.message)

    def __str__(self):
        if self.processor_name is not None:
            return f"{self.message} (processor={self.processor_name})"
        return self.message


class InvalidConfigurationException(Exception):
    """
    Exception raised when a configuration value (time value, byte size,
    backoff policy) cannot be parsed.
    """

    def __init__(self, message, key=None, value=None):
        self.key = key
        self.value = value
        self.message = message
        super().__init__(self.message)

    def __str__(self):
        details = []
        if self.key is not None:
            details.append(f"key={self.key}")
        if self.value is not None:
            details.append(f"value={self.value}")

        if details:
            return f"{self.message} ({', '.join(details)})"
        return self.message
