"""Logging filter stamping records with the current request id."""

from logging import Filter, LogRecord

from .middleware import REQUEST_ID_CTX


class RequestIdFilter(Filter):
    """Attach ``request_id`` from ``REQUEST_ID_CTX`` to every record.

    Outside a request (management commands, the sweeper) the ContextVar
    default ``"-"`` is used, so formatters can always reference
    ``%(request_id)s``. A record that already carries a ``request_id``
    through ``extra=`` keeps it.
    """

    def filter(self, record: LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = REQUEST_ID_CTX.get()
        return True
