"""Console logging handler that survives non-UTF-8 terminals."""

from __future__ import annotations

import logging


class UTF8StreamHandler(logging.StreamHandler):
    """StreamHandler that degrades unencodable characters instead of failing.

    With ``include_tracebacks`` off, exception and stack text is stripped from
    console records; file handlers still receive it.
    """

    def __init__(self, stream=None, include_tracebacks: bool = True):
        super().__init__(stream)
        self.include_tracebacks = include_tracebacks

    def emit(self, record: logging.LogRecord) -> None:
        saved = None
        if not self.include_tracebacks and (record.exc_info or record.stack_info or record.exc_text):
            saved = (record.exc_info, record.stack_info, record.exc_text)
            record.exc_info, record.stack_info, record.exc_text = None, None, None
        try:
            try:
                super().emit(record)
            except UnicodeEncodeError:
                original_msg = record.msg
                try:
                    record.msg = str(original_msg).encode("ascii", errors="replace").decode("ascii")
                    super().emit(record)
                finally:
                    record.msg = original_msg
        except Exception:
            self.handleError(record)
        finally:
            if saved is not None:
                record.exc_info, record.stack_info, record.exc_text = saved
