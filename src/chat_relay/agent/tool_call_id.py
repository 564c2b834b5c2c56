"""Bounded-length tool-call identifiers of the form ``prefix-toolName-hash``."""

from ..config import TOOL_CALL_ID_MAX_LENGTH

MIN_HASH_LENGTH = 8
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def simple_hash(seed: str, length: int) -> str:
    """Fast non-cryptographic hash of ``seed``, base-36, sized to exactly ``length``."""
    h = 0
    for ch in seed:
        h = _to_int32((h << 5) - h + ord(ch))
    digest = _base36(abs(h))
    if len(digest) > length:
        return digest[:length]
    return digest.rjust(length, "0")


def generate_tool_call_id(
    prefix: str, tool_name: str, seed: str, max_length: int = TOOL_CALL_ID_MAX_LENGTH
) -> str:
    """Deterministic id for ``(prefix, tool_name, seed)`` that never exceeds ``max_length``.

    The hash segment fills whatever the prefix and tool name leave over. When
    those two are too long to leave room for ``MIN_HASH_LENGTH`` hash characters,
    the tool name is shortened first, then the prefix.
    """
    room = max_length - 2 - MIN_HASH_LENGTH
    overflow = len(prefix) + len(tool_name) - room
    if overflow > 0:
        cut = min(overflow, len(tool_name))
        tool_name = tool_name[: len(tool_name) - cut]
        overflow -= cut
    if overflow > 0:
        prefix = prefix[: len(prefix) - overflow]

    hash_length = max_length - len(prefix) - len(tool_name) - 2
    tool_call_id = f"{prefix}-{tool_name}-{simple_hash(seed, hash_length)}"
    return validate_tool_call_id(tool_call_id, max_length)


def validate_tool_call_id(tool_call_id: str, max_length: int = TOOL_CALL_ID_MAX_LENGTH) -> str:
    """Truncate an externally supplied id to ``max_length`` bytes rather than rejecting it."""
    encoded = tool_call_id.encode("utf-8")
    if len(encoded) <= max_length:
        return tool_call_id
    return encoded[:max_length].decode("utf-8", errors="ignore")
