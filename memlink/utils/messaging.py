"""
Asynchronous request/reply and publish interface over a message bus.

The transport itself lives outside memlink; ``InProcessMessageBus`` routes messages between
handlers registered in the same process and is used for local wiring and tests.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .logging_config import get_logger

logger = get_logger(__name__)

Handler = Callable[[Dict[str, Any]], Awaitable[Optional[Dict[str, Any]]]]


class MessagingError(Exception):
    """Custom exception for message bus errors."""
    pass


class MessageTimeoutError(MessagingError):
    """No reply arrived within the request timeout."""
    pass


class MessageBus(ABC):
    """Async message bus used for embedding requests and event publication."""

    @abstractmethod
    async def request(self, subject: str, payload: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        """
        Send a request and await exactly one correlated reply.

        Raises:
            MessageTimeoutError: If no reply arrives within ``timeout`` seconds
            MessagingError: If the request cannot be delivered
        """

    @abstractmethod
    async def publish(self, subject: str, payload: Dict[str, Any]) -> None:
        """Fire-and-forget publication."""


class SubscribableMessageBus(MessageBus):
    """Message bus that can also deliver requests and publications to local handlers."""

    @abstractmethod
    def subscribe(self, subject: str, handler: Handler) -> None:
        """Register ``handler`` for messages on ``subject``."""

    @abstractmethod
    def unsubscribe(self, subject: str) -> None:
        """Remove every handler registered on ``subject``."""



def _round_trip(payload: Dict[str, Any]) -> Dict[str, Any]:
    # Same constraints as a real wire: JSON only
    try:
        return json.loads(json.dumps(payload))
    except (TypeError, ValueError) as e:
        raise MessagingError(f'Payload is not JSON serializable: {e}')


class InProcessMessageBus(SubscribableMessageBus):
    """Message bus delivering to in-process handlers.

    Requests go to the first handler subscribed on the subject (queue-group semantics);
    publications go to every subscriber.
    """

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, subject: str, handler: Handler) -> None:
        self._handlers[subject].append(handler)
        logger.debug(f'Subscribed handler on {subject}')

    def unsubscribe(self, subject: str) -> None:
        self._handlers.pop(subject, None)

    async def request(self, subject: str, payload: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        handlers = self._handlers.get(subject)
        if not handlers:
            raise MessagingError(f'No responders available for {subject}')

        try:
            reply = await asyncio.wait_for(handlers[0](_round_trip(payload)), timeout=timeout)
        except asyncio.TimeoutError:
            raise MessageTimeoutError(f'Request on {subject} timed out after {timeout}s')

        if reply is None:
            raise MessagingError(f'Handler on {subject} sent no reply')
        return _round_trip(reply)

    async def publish(self, subject: str, payload: Dict[str, Any]) -> None:
        message = _round_trip(payload)
        for handler in list(self._handlers.get(subject, [])):
            try:
                await handler(message)
            except Exception as e:
                logger.error(f'Subscriber on {subject} failed: {e}')
