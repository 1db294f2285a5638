class TableBridgeError(Exception):
    """
    Base exception for all table conversion errors
    """
    pass


class FormatError(TableBridgeError):
    """
    Raised on a signature mismatch or an unknown format identifier / extension
    """
    pass


class SchemaError(TableBridgeError):
    """
    Raised when a native file's descriptors and row data are inconsistent
    """
    pass


class ValidationError(TableBridgeError):
    """
    Raised when a table violates its own schema at write time
    """
    pass


class TableIOError(TableBridgeError):
    """
    Raised when a file is missing, unreadable, locked or not writable
    """
    pass


class OperationCancelled(TableBridgeError):
    """
    Raised when a read or write observes its cancellation signal
    """
    pass


class TableNotFoundError(TableBridgeError, KeyError):
    """
    Raised when a table reference does not match any loaded table
    """

    def __str__(self):
        return str(self.args[0]) if self.args else ""
