"""Routing of typed network messages to registered handlers."""

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, ClassVar

from .core import PeerId, encode_message, message_category

log = logging.getLogger(__name__)


class MessageHandler(ABC):
    """Handles the payloads of one message type."""

    message_type: ClassVar[str] = ""

    @abstractmethod
    def handle_message(self, sender: PeerId, payload: bytes) -> bytes | None:
        """Process a payload and optionally return a reply."""


@dataclass
class NetworkMessage:
    """Envelope in which a message travels across the network."""

    message_type: str
    sender: PeerId
    recipient: PeerId | None
    payload: bytes
    timestamp: int
    signature: bytes = b""


class MessageRouter:
    """Dispatches network messages to the handler of their type."""

    def __init__(self) -> None:
        self._handlers: dict[str, MessageHandler] = {}

    @property
    def handlers(self) -> Mapping[str, MessageHandler]:
        return MappingProxyType(self._handlers)

    def register_handler(self, handler: MessageHandler) -> None:
        """Register a handler, replacing any earlier one for the same type."""
        self._handlers[handler.message_type] = handler

    def route_message(self, sender: PeerId, message: NetworkMessage) -> bytes | None:
        handler = self._handlers.get(message.message_type)
        if handler is None:
            log.warning("No handler for message type: %s", message.message_type)
            return None
        return handler.handle_message(sender, message.payload)

    def create_network_message(
        self, sender: PeerId, recipient: PeerId | None, message: Any
    ) -> NetworkMessage:
        """Wrap a protocol message in an unsigned network envelope."""
        return NetworkMessage(
            message_type=message_category(message),
            sender=sender,
            recipient=recipient,
            payload=encode_message(message),
            timestamp=int(time.time()),
            signature=b"",
        )


class ControlMessageHandler(MessageHandler):
    """Default handler for control messages."""

    message_type: ClassVar[str] = "control"

    def handle_message(self, sender: PeerId, payload: bytes) -> bytes | None:
        log.debug("Handling control message from %s: %d bytes", sender, len(payload))
        return None


class DataMessageHandler(MessageHandler):
    """Default handler for data messages."""

    message_type: ClassVar[str] = "data"

    def handle_message(self, sender: PeerId, payload: bytes) -> bytes | None:
        log.debug("Handling data message from %s: %d bytes", sender, len(payload))
        return None