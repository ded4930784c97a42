"""Logging filters for enriching log records with request context.

Add ``RequestIdFilter`` to a handler and every record carries
``request_id`` and ``session_id`` taken from the ContextVars set by
``RequestIdMiddleware``, so formatters can reference ``%(request_id)s``
without touching individual log calls.
"""

from logging import Filter, LogRecord

from .middleware import REQUEST_ID_CTX, SESSION_ID_CTX


class RequestIdFilter(Filter):
    """Attach ``request_id`` and ``session_id`` to log records ("-" when unset)."""

    def filter(self, record: LogRecord) -> bool:
        record.request_id = REQUEST_ID_CTX.get()
        record.session_id = SESSION_ID_CTX.get()
        return True
