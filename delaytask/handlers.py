import importlib
import logging
from typing import Any, Callable, Dict, Iterable, Optional, Sequence, Tuple

from .models import Task

logger = logging.getLogger(__name__)

Handler = Callable[[Task], Any]


class HandlerRegistry:
    """
    In-process task handlers keyed by (handler_id, action_id). Handler
    modules register themselves on import; workers import them at start-up.
    """

    def __init__(self):
        self._handlers: Dict[Tuple[str, str], Handler] = {}

    def register(self, handler_id: str, action_id: str, fn: Optional[Handler] = None):
        """Register fn directly, or use as a decorator when fn is omitted."""
        def decorator(func: Handler) -> Handler:
            self._handlers[(handler_id, action_id)] = func
            return func

        if fn is not None:
            return decorator(fn)
        return decorator

    def resolve(self, ref: Sequence[str]) -> Optional[Handler]:
        if len(ref) != 2:
            return None
        return self._handlers.get((ref[0], ref[1]))

    def __contains__(self, ref) -> bool:
        return self.resolve(ref) is not None


registry = HandlerRegistry()


def load_handler_modules(modules: Iterable[str]) -> None:
    for name in modules:
        importlib.import_module(name)
        logger.debug("handler module loaded: %s", name)


def parse_handler_ref(value: str) -> list:
    """'billing:charge' -> ['billing', 'charge']"""
    handler_id, sep, action_id = value.partition(":")
    if not sep or not handler_id or not action_id:
        raise ValueError(f"handler reference must look like 'handler:action', got {value!r}")
    return [handler_id, action_id]
