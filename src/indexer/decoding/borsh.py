"""Little-endian Borsh cursor for ledger event and account payloads."""

import base58

from indexer.exceptions import EventDecodeError

PUBKEY_LENGTH = 32


class BorshReader:
    """Sequential reader over a Borsh-encoded byte buffer.

    Every read advances the cursor. Reading past the end raises
    EventDecodeError rather than returning a short value.
    """

    def __init__(self, data: bytes, offset: int = 0) -> None:
        self._data = data
        self._offset = offset

    @property
    def offset(self) -> int:
        return self._offset

    @property
    def remaining(self) -> int:
        return len(self._data) - self._offset

    def _take(self, size: int) -> bytes:
        if self.remaining < size:
            raise EventDecodeError(
                f"Buffer underrun: need {size} bytes at offset {self._offset}, "
                f"have {self.remaining}"
            )
        chunk = self._data[self._offset:self._offset + size]
        self._offset += size
        return chunk

    def skip(self, size: int) -> None:
        self._take(size)

    def _uint(self, size: int) -> int:
        return int.from_bytes(self._take(size), "little", signed=False)

    def u8(self) -> int:
        return self._uint(1)

    def u16(self) -> int:
        return self._uint(2)

    def u32(self) -> int:
        return self._uint(4)

    def u64(self) -> int:
        return self._uint(8)

    def u128(self) -> int:
        return self._uint(16)

    def i64(self) -> int:
        return int.from_bytes(self._take(8), "little", signed=True)

    def bool(self) -> bool:
        return self.u8() != 0

    def pubkey(self) -> str:
        """Read a 32-byte public key and render it as base58."""
        return base58.b58encode(self._take(PUBKEY_LENGTH)).decode("ascii")
