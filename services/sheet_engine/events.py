"""In-process message bus between the engine and its callers.

Each message type has a fixed schema. Subscribers register per type (or
for every message with `subscribe_all`) and are called synchronously in
subscription order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Literal, Optional, Type, Union


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DataChanged:
    """Grid values or per-cell metadata of a sheet changed."""
    sheet_id: str
    scope: Literal["values", "metadata", "structure"] = "values"
    cell_count: int = 0


@dataclass(frozen=True)
class RulesChanged:
    """The conditional formatting rule set of a sheet changed."""
    sheet_id: str
    action: Literal["add", "update", "remove", "move", "replace"]
    rule_id: Optional[str] = None


@dataclass(frozen=True)
class SheetSwitched:
    """The workbook's active sheet changed."""
    previous_index: int
    active_index: int
    sheet_id: str


Message = Union[DataChanged, RulesChanged, SheetSwitched]
Handler = Callable[[Message], None]


@dataclass
class EventBus:
    _handlers: Dict[type, List[Handler]] = field(default_factory=dict)
    _catch_all: List[Handler] = field(default_factory=list)

    def subscribe(self, message_type: Type, handler: Handler) -> Callable[[], None]:
        """Register `handler` for one message type. Returns an unsubscribe callable."""
        self._handlers.setdefault(message_type, []).append(handler)

        def _unsubscribe() -> None:
            handlers = self._handlers.get(message_type, [])
            if handler in handlers:
                handlers.remove(handler)

        return _unsubscribe

    def subscribe_all(self, handler: Handler) -> Callable[[], None]:
        self._catch_all.append(handler)

        def _unsubscribe() -> None:
            if handler in self._catch_all:
                self._catch_all.remove(handler)

        return _unsubscribe

    def publish(self, message: Message) -> None:
        handlers = list(self._handlers.get(type(message), [])) + list(self._catch_all)
        logger.debug(f"[EVENTS] {type(message).__name__} -> {len(handlers)} handler(s)")
        for handler in handlers:
            handler(message)
