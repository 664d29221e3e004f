from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy.orm import Session

from callstream.services.normalize import DEFAULT_LIMITS, SanitizeLimits

logger = structlog.get_logger(__name__)

AUDIENCE_TENANT = "tenant"
AUDIENCE_USER = "user"


@dataclass
class Notification:
    """A live update queued by a handler, published once its transaction commits."""

    tenant_id: str
    event: Dict[str, Any]
    provider_user_id: Optional[str] = None
    audience: str = AUDIENCE_TENANT


@dataclass
class HandlerContext:
    db: Session
    tenant_id: str
    event_type: str
    event_id: Optional[int] = None
    sanitize_limits: SanitizeLimits = DEFAULT_LIMITS
    voicemail_window_seconds: int = 60
    notifications: List[Notification] = field(default_factory=list)

    def notify(
        self,
        event: Dict[str, Any],
        *,
        provider_user_id: Optional[str] = None,
        audience: str = AUDIENCE_TENANT,
    ) -> None:
        self.notifications.append(
            Notification(
                tenant_id=self.tenant_id,
                event=event,
                provider_user_id=provider_user_id,
                audience=audience,
            )
        )


EventHandler = Callable[[HandlerContext, Dict[str, Any]], None]


class HandlerRegistry:
    """Explicit event-type -> handler map consulted by the processor."""

    def __init__(self) -> None:
        self._handlers: Dict[str, EventHandler] = {}

    def register(self, event_type: str, handler: Optional[EventHandler] = None):
        """Register ``handler`` for ``event_type``; without a handler, acts as a decorator."""
        if handler is None:
            def decorator(fn: EventHandler) -> EventHandler:
                self.register(event_type, fn)
                return fn

            return decorator

        if event_type in self._handlers and self._handlers[event_type] is not handler:
            logger.warning("handler_registry.replaced", event_type=event_type)
        self._handlers[event_type] = handler
        return handler

    def dispatch(self, event_type: str) -> Optional[EventHandler]:
        return self._handlers.get(event_type)

    @property
    def event_types(self) -> List[str]:
        return sorted(self._handlers)

    def __contains__(self, event_type: object) -> bool:
        return event_type in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


def build_default_registry() -> HandlerRegistry:
    # Lazy import: handler modules import HandlerContext from here
    from callstream.services.call_handlers import register_call_handlers  # pylint: disable=import-outside-toplevel
    from callstream.services.voicemail_handlers import register_voicemail_handlers  # pylint: disable=import-outside-toplevel

    registry = HandlerRegistry()
    register_call_handlers(registry)
    register_voicemail_handlers(registry)
    logger.info("handler_registry.built", event_types=registry.event_types)
    return registry
