"""Operation context: stamps every log line with the current operation id.

Many orchestrated operations run concurrently on the same event loop, so
their log lines interleave:

  INFO  Lock acquired operation=enroll_student lock_id=...
  INFO  Lock acquired operation=update_progress lock_id=...
  ERROR Transaction aborted

A ContextVar gives each asyncio task its own copy of the operation id,
even when the tasks share one thread.  The filter below copies it onto
every LogRecord so both formatters in core/logging.py can show it.
"""

from __future__ import annotations

import logging
from contextvars import ContextVar

operation_id_var: ContextVar[str] = ContextVar("operation_id", default="-")


class _OperationContextFilter(logging.Filter):
    """Inject the active operation id into every LogRecord."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "operation_id"):
            record.operation_id = operation_id_var.get("-")  # type: ignore[attr-defined]
        return True


def install_context_filter() -> None:
    """Attach the filter to the root logger's handlers (idempotent).

    Filters on a logger only apply to records logged directly on that
    logger, so the filter goes on the handlers, which see records from
    every module.
    """
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, _OperationContextFilter) for f in handler.filters):
            handler.addFilter(_OperationContextFilter())
