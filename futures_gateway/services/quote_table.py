from __future__ import annotations

from typing import Literal

from futures_gateway.schemas.quote import InstrumentQuote

UpsertOutcome = Literal["inserted", "replaced", "stale"]


class QuoteTable:
    """Latest quote per instrument, kept in first-seen order."""

    def __init__(self, *, reject_stale: bool = True) -> None:
        self.reject_stale = reject_stale
        self._rows: dict[str, InstrumentQuote] = {}

    def __len__(self) -> int:
        return len(self._rows)

    def _is_stale(self, current: InstrumentQuote, incoming: InstrumentQuote) -> bool:
        if not self.reject_stale:
            return False
        current_key = current.ordering_key()
        incoming_key = incoming.ordering_key()
        if current_key is None or incoming_key is None:
            return False
        return incoming_key < current_key

    def upsert(self, quote: InstrumentQuote) -> UpsertOutcome:
        current = self._rows.get(quote.instrument_id)
        if current is None:
            self._rows[quote.instrument_id] = quote
            return "inserted"
        if self._is_stale(current, quote):
            return "stale"
        # dict assignment to an existing key keeps its position
        self._rows[quote.instrument_id] = quote
        return "replaced"

    def get(self, instrument_id: str) -> InstrumentQuote | None:
        row = self._rows.get(instrument_id)
        return row.model_copy() if row is not None else None

    def list_all(self) -> list[InstrumentQuote]:
        return [row.model_copy() for row in self._rows.values()]

    def clear(self) -> None:
        self._rows.clear()


class StreamMetrics:
    def __init__(self) -> None:
        self.frames_received = 0
        self.frames_repaired = 0
        self.frames_dropped = 0
        self.frames_ignored = 0
        self.stale_rejected = 0
        self.upserts = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "frames_received": self.frames_received,
            "frames_repaired": self.frames_repaired,
            "frames_dropped": self.frames_dropped,
            "frames_ignored": self.frames_ignored,
            "stale_rejected": self.stale_rejected,
            "upserts": self.upserts,
        }
