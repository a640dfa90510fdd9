from __future__ import annotations

import threading

from futures_gateway.schemas.quote import BasisSnapshot, InstrumentQuote


class BasisCalculator:
    """Spot minus futures basis over the live quote set.

    The reference contract is the explicitly selected instrument, else the
    first quote in the table. A missing quote prices the contract at 0.0, so
    callers should check ``meaningful`` before using the number.
    """

    def __init__(self, reference_instrument: str | None = None) -> None:
        self._lock = threading.Lock()
        self.selected_instrument = reference_instrument
        self.spot_price: float | None = None
        self._quotes: list[InstrumentQuote] = []
        self._reference: str | None = None
        self._futures_price = 0.0
        self._basis: float | None = None
        self._previous_basis: float | None = None

    def _resolve_reference(self) -> tuple[str | None, float]:
        if self.selected_instrument:
            for quote in self._quotes:
                if quote.instrument_id == self.selected_instrument:
                    return quote.instrument_id, quote.last_price
            return self.selected_instrument, 0.0
        if self._quotes:
            first = self._quotes[0]
            return first.instrument_id, first.last_price
        return None, 0.0

    def _recompute(self) -> None:
        reference, futures_price = self._resolve_reference()
        self._reference = reference
        if self.spot_price is None:
            self._futures_price = futures_price
            return

        basis = self.spot_price - futures_price
        if self._basis is not None and basis == self._basis and futures_price == self._futures_price:
            return
        self._futures_price = futures_price
        self._previous_basis = self._basis
        self._basis = basis

    def update_spot(self, price: float) -> BasisSnapshot:
        with self._lock:
            self.spot_price = float(price)
            self._recompute()
            return self._snapshot()

    def select_instrument(self, instrument_id: str | None) -> BasisSnapshot:
        with self._lock:
            self.selected_instrument = instrument_id or None
            self._recompute()
            return self._snapshot()

    def on_quotes_changed(self, quotes: list[InstrumentQuote]) -> None:
        with self._lock:
            self._quotes = list(quotes)
            self._recompute()

    def _snapshot(self) -> BasisSnapshot:
        change = 0.0
        if self._basis is not None and self._previous_basis is not None:
            change = self._basis - self._previous_basis
        return BasisSnapshot(
            spot_price=self.spot_price,
            reference_instrument=self._reference,
            futures_price=self._futures_price,
            basis=self._basis,
            basis_change=change,
            meaningful=self.spot_price is not None and self._futures_price > 0,
        )

    def snapshot(self) -> BasisSnapshot:
        with self._lock:
            return self._snapshot()
