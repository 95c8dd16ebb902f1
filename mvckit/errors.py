class MvcKitError(Exception):
    """Base class for every error raised by the toolkit."""


class ConfigurationError(MvcKitError):
    """
    A model, relation or database handle was set up incorrectly.

    Fatal to the operation that registered it, never retried.
    """


class SchemaIntrospectionError(ConfigurationError):
    def __init__(self, table: str, reason: str):
        super().__init__(f"cannot read columns of table '{table}': {reason}")
        self.table = table


class ModelNotInitializedError(ConfigurationError):
    def __init__(self, action: str):
        super().__init__(f"cannot perform action : {action} on uninitialized model")
        self.action = action


class RelationCycleError(ConfigurationError):
    def __init__(self, path: list[str]):
        super().__init__("relation cycle detected: " + " -> ".join(path))
        self.path = path


class QueryExecutionError(MvcKitError):
    """
    The backend rejected a statement.

    Only the statement text is kept; bound values never reach the message
    or the logs.
    """

    def __init__(self, statement: str, reason: str = "query failed"):
        super().__init__(f"{reason}: {statement}")
        self.statement = statement


class QueryTimeoutError(QueryExecutionError):
    def __init__(self, statement: str, timeout: float):
        super().__init__(statement, f"statement exceeded {timeout:g}s deadline")
        self.timeout = timeout


class NotFoundError(MvcKitError):
    def __init__(self, message: str = "no records found"):
        super().__init__(message)


class ValueDecodeError(MvcKitError):
    """A column literal did not parse against its declared database type."""

    def __init__(self, type_name: str, raw, reason: str = ""):
        message = f"cannot decode {raw!r} as {type_name}"
        if reason:
            message += f" ({reason})"
        super().__init__(message)
        self.type_name = type_name
        self.raw = raw
