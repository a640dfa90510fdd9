from __future__ import annotations

import threading
import time
from typing import Any, Callable, Optional

import requests

from futures_gateway.errors import SpotPriceUnavailableError


class SpotPriceClient:
    """Minimal REST client for the current spot (index) price of a symbol."""

    def __init__(self, base_url: str, session: Optional[Any] = None, timeout: float = 5) -> None:
        if not base_url:
            raise ValueError("spot price base_url is required")
        self.base_url = base_url
        self.session = session or requests
        self.timeout = timeout

    @staticmethod
    def _to_float(value: Any) -> float | None:
        try:
            if value is None or value == "" or isinstance(value, bool):
                return None
            return float(value)
        except (TypeError, ValueError):
            return None

    def get_spot_price(self, symbol: str) -> float:
        response = self.session.get(
            self.base_url,
            headers={"accept": "application/json"},
            params={"symbol": symbol},
            timeout=self.timeout,
        )
        response.raise_for_status()
        payload = response.json()

        if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
            payload = payload["data"]
        if not isinstance(payload, dict):
            raise SpotPriceUnavailableError(f"unexpected spot payload for {symbol}")

        for key in ("price", "last_price", "close"):
            price = self._to_float(payload.get(key))
            if price is not None and price > 0:
                return price
        raise SpotPriceUnavailableError(f"missing spot price for {symbol}")


class SpotPricePoller:
    """Periodically fetch the spot price and hand it to a consumer."""

    def __init__(
        self,
        client: SpotPriceClient,
        symbol: str,
        *,
        on_price: Callable[[float], Any],
        interval_sec: float = 5.0,
        sleep_fn: Optional[Callable[[float], Any]] = None,
    ) -> None:
        self.client = client
        self.symbol = symbol
        self.interval_sec = interval_sec
        self.running = False
        self.last_price: float | None = None
        self.last_error: str | None = None
        self.polls = 0
        self.failures = 0
        self._on_price = on_price
        self._stop_event = threading.Event()
        self._sleep_fn = sleep_fn or self._stop_event.wait
        self._thread: threading.Thread | None = None

    def poll_once(self) -> float | None:
        self.polls += 1
        try:
            price = self.client.get_spot_price(self.symbol)
        except (requests.RequestException, SpotPriceUnavailableError, ValueError) as exc:
            self.failures += 1
            self.last_error = str(exc)
            print(f"[SPOT][poll_error] symbol={self.symbol} error={exc}", flush=True)
            return None
        self.last_price = price
        self.last_error = None
        self._on_price(price)
        return price

    def run(self) -> None:
        while not self._stop_event.is_set():
            self.poll_once()
            if self._stop_event.is_set():
                break
            self._sleep_fn(self.interval_sec)

    def start(self) -> None:
        self._stop_event.clear()
        self.running = True
        self._thread = threading.Thread(target=self.run, daemon=True, name="spot-poller")
        print(f"[SPOT][poller_start] symbol={self.symbol} interval_sec={self.interval_sec}", flush=True)
        self._thread.start()

    def stop(self, timeout: float = 1.0) -> None:
        self.running = False
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        print(f"[SPOT][poller_stop] symbol={self.symbol}", flush=True)
