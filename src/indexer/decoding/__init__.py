"""Event decoding layer -- Anchor log framing and Borsh layouts."""

from indexer.decoding.borsh import BorshReader
from indexer.decoding.events import (
    decode_event,
    event_discriminator,
    parse_logs,
    parse_webhook_payload,
)

__all__ = [
    "BorshReader",
    "decode_event",
    "event_discriminator",
    "parse_logs",
    "parse_webhook_payload",
]
