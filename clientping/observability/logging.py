from __future__ import annotations

import logging
from typing import Callable, Optional


class _ContextFilter(logging.Filter):
    def __init__(
        self,
        *,
        request_id_getter: Optional[Callable[[], Optional[str]]] = None,
        platform_getter: Optional[Callable[[], Optional[str]]] = None,
        chat_getter: Optional[Callable[[], Optional[str]]] = None,
    ) -> None:
        super().__init__()
        self._request_id_getter = request_id_getter
        self._platform_getter = platform_getter
        self._chat_getter = chat_getter

    def filter(self, record: logging.LogRecord) -> bool:
        # Inject defaults so formatters can always reference these fields.
        record.request_id = None
        record.platform = None
        record.chat_id = None
        try:
            if self._request_id_getter:
                record.request_id = self._request_id_getter()
        except Exception:
            record.request_id = None
        try:
            if self._platform_getter:
                record.platform = self._platform_getter()
        except Exception:
            record.platform = None
        try:
            if self._chat_getter:
                record.chat_id = self._chat_getter()
        except Exception:
            record.chat_id = None
        return True


def configure_logging(
    *,
    level: str = "INFO",
    request_id_getter: Optional[Callable[[], Optional[str]]] = None,
    platform_getter: Optional[Callable[[], Optional[str]]] = None,
    chat_getter: Optional[Callable[[], Optional[str]]] = None,
) -> None:
    """Configure root logging with consistent contextual fields.

    Every record carries request_id/platform/chat_id so a single chat can be followed
    from webhook ingress through the automation engine to the outbound send.
    """
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(lvl)

    # If something already configured handlers (uvicorn), avoid duplicating them.
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setLevel(lvl)
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s %(levelname)s %(name)s "
                "request_id=%(request_id)s platform=%(platform)s chat=%(chat_id)s "
                "%(message)s"
            )
        )
        root.addHandler(handler)

    ctx_filter = _ContextFilter(
        request_id_getter=request_id_getter,
        platform_getter=platform_getter,
        chat_getter=chat_getter,
    )
    # Filters on the root logger don't see records propagated from child loggers,
    # so attach to the handlers too.
    for h in root.handlers:
        if not any(isinstance(f, _ContextFilter) for f in h.filters):
            h.addFilter(ctx_filter)
    if not any(isinstance(f, _ContextFilter) for f in root.filters):
        root.addFilter(ctx_filter)
