import logging

from ..config import CONTINUATION_SENTINEL
from .messages import UIMessage

logger = logging.getLogger(__name__)


class ContinuationFilter:
    """Keeps caller-generated continuation turns out of the rendered transcript."""

    def __init__(self, sentinel: str = CONTINUATION_SENTINEL) -> None:
        self.sentinel = sentinel
        self.hidden_ids: set[str] = set()
        self.suppress_next = False

    def arm(self) -> None:
        self.suppress_next = True

    def observe(self, messages: list[UIMessage]) -> None:
        """Hide the first new sentinel user turn once armed, then disarm."""
        if not self.suppress_next:
            return
        for msg in messages:
            if msg.role == "user" and msg.text == self.sentinel and msg.id not in self.hidden_ids:
                self.hidden_ids.add(msg.id)
                self.suppress_next = False
                logger.debug("Hiding continuation turn %s", msg.id)
                return

    def is_hidden(self, message: UIMessage) -> bool:
        if message.id in self.hidden_ids or message.hidden:
            return True
        # Sentinel turns loaded from history were never observed by this view.
        return message.role == "user" and message.text == self.sentinel

    def visible(self, messages: list[UIMessage]) -> list[UIMessage]:
        return [m for m in messages if not self.is_hidden(m)]
