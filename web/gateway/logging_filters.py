"""Logging filter stamping log records with the current request id.

Referenced from ``LOGGING`` in the settings so the JSON formatter can always
emit a ``request_id`` field, including for records produced by the orders
core and the HTTP clients.
"""

from logging import Filter, LogRecord

from .middleware import REQUEST_ID_CTX


class RequestIdFilter(Filter):
    """Attach ``record.request_id`` ("-" outside a request)."""

    def filter(self, record: LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = REQUEST_ID_CTX.get()
        return True
