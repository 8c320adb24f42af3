"""
Idempotency key utilities.

A ledger event is identified by the transaction that produced it and its
position in the authoritative log.  The relational mirror stores this key
under a UNIQUE constraint so a replayed event is absorbed exactly once.
"""


def make_dedup_key(origin_tx_id: str, log_position: int) -> str:
    """
    Build the de-duplication key for an event.

    Format: origin_tx_id:log_position

    Example:
        >>> make_dedup_key("0xabc", 7)
        "0xabc:7"
    """
    return f"{origin_tx_id}:{log_position}"


def parse_dedup_key(key: str) -> tuple[str, int]:
    """
    Split a de-duplication key into ``(origin_tx_id, log_position)``.

    The origin transaction id may itself contain colons; the position is
    always the last segment.

    Raises:
        ValueError: If key format is invalid.
    """
    origin, sep, position = key.rpartition(":")
    if not sep or not origin or not position.isdigit():
        raise ValueError(f"Invalid dedup key format: {key}")
    return origin, int(position)
