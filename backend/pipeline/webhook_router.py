"""
Webhook Router
==============
Maps provider event names to handlers. Several event names can share one
handler, since PhonePe has used both dotted and SHOUTING spellings.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

WebhookHandler = Callable[[Dict[str, Any], "WebhookContext"], Awaitable[Any]]


class WebhookContext:
    """Per-delivery facts a handler may need besides the event data."""

    def __init__(self, event_type: str, environment: str, signature_verified: bool,
                 recipe: Optional[str] = None):
        self.event_type = event_type
        self.environment = environment
        self.signature_verified = signature_verified
        self.recipe = recipe


def extract_event_type(payload: Dict[str, Any]) -> str:
    return str(payload.get("event") or payload.get("type") or payload.get("eventType") or "unknown")


def extract_event_data(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Event body lives under "payload", else "data", else at the top level."""
    for key in ("payload", "data"):
        value = payload.get(key)
        if isinstance(value, dict):
            return value
    return payload


class WebhookRouter:
    def __init__(self):
        self._handlers: Dict[str, WebhookHandler] = {}
        self._logger = structlog.get_logger().bind(component="webhook_router")

    def register(self, *event_types: str):
        """Decorator to register a handler for one or more event types"""
        def decorator(handler: WebhookHandler):
            for event_type in event_types:
                self._handlers[event_type] = handler
                self._logger.debug("handler_registered", event_type=event_type)
            return handler
        return decorator

    async def route(self, payload: Dict[str, Any], context: WebhookContext) -> Optional[Any]:
        handler = self._handlers.get(context.event_type)
        if not handler:
            self._logger.warning("no_handler", event_type=context.event_type)
            return None
        return await handler(extract_event_data(payload), context)

    @property
    def supported_events(self) -> List[str]:
        return list(self._handlers.keys())
