"""Merge the live transcript with persisted history into one displayable sequence."""

from typing import Callable, Iterable

from ..config import FINGERPRINT_PREFIX_LENGTH
from .messages import UIMessage


def content_fingerprint(message: UIMessage, prefix_length: int = FINGERPRINT_PREFIX_LENGTH) -> str:
    return f"{message.role}:{message.display_text()[:prefix_length]}"


def reconcile(
    live: Iterable[UIMessage],
    persisted: Iterable[UIMessage] = (),
    is_hidden: Callable[[UIMessage], bool] | None = None,
) -> list[UIMessage]:
    """Persisted turns first, then live ones; hidden turns dropped, duplicates removed.

    Duplicates by id keep the first occurrence. Assistant turns with a
    different id but the same content fingerprint are also dropped, but only
    within the run of turns answering the same user turn, so an assistant
    repeating itself later in the conversation is still shown.
    Running this on its own output returns the same sequence.
    """
    seen_ids: set[str] = set()
    segment_fingerprints: set[str] = set()
    out: list[UIMessage] = []
    for msg in [*persisted, *live]:
        if is_hidden is not None and is_hidden(msg):
            continue
        if msg.id in seen_ids:
            continue
        if msg.role == "user":
            segment_fingerprints = set()
        elif msg.role == "assistant":
            fingerprint = content_fingerprint(msg)
            if fingerprint in segment_fingerprints:
                continue
            segment_fingerprints.add(fingerprint)
        seen_ids.add(msg.id)
        out.append(msg)
    return out
