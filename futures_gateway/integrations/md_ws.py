from __future__ import annotations

import threading
import time
from typing import Any, Callable, Optional

from pydantic import ValidationError

from futures_gateway.errors import FrameRejectedError, StreamNotConfiguredError
from futures_gateway.integrations.json_repair import parse_frame
from futures_gateway.schemas.quote import (
    ConnectionState,
    DepthMarketDataFrame,
    InstrumentQuote,
    StreamStatus,
)
from futures_gateway.services.quote_table import QuoteTable, StreamMetrics

NORMAL_CLOSURE = 1000
# close() otherwise waits up to 3s for the peer close frame
CLOSE_TIMEOUT_SEC = 0


def _preview(raw: Any, limit: int = 80) -> str:
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, (bytes, bytearray)) else str(raw)
    return text[:limit].replace("\n", " ")


class MarketDataStreamHandler:
    """Single streaming depth-market-data connection and its live quote table.

    Transport callbacks arrive on the websocket worker thread while snapshots
    are read from API threads, so every state change goes through one lock.
    Callbacks raised by a handle that is no longer current are ignored.
    """

    def __init__(
        self,
        url: str | None = None,
        *,
        on_quotes_changed: Optional[Callable[[list[InstrumentQuote]], None]] = None,
        on_state_change: Optional[Callable[[StreamStatus], None]] = None,
        websocket_app_factory: Optional[Callable[..., Any]] = None,
        thread_factory: Optional[Callable[[Callable[[], Any]], Any]] = None,
        timer_factory: Optional[Callable[[float, Callable[[], None]], Any]] = None,
        auto_reconnect: bool = False,
        reject_stale: bool = True,
        backoff_base_sec: float = 1.0,
        backoff_cap_sec: float = 30.0,
        max_retries: int = 5,
        clock: Callable[[], float] = time.time,
        autoconnect: bool = False,
    ) -> None:
        self.url = url
        self.auto_reconnect = auto_reconnect
        self.backoff_base_sec = backoff_base_sec
        self.backoff_cap_sec = backoff_cap_sec
        self.max_retries = max_retries
        self.last_update_ts: float | None = None
        self.last_error: str | None = None
        self.reconnect_count = 0

        self._on_quotes_changed = on_quotes_changed
        self._on_state_change = on_state_change
        self._websocket_app_factory = websocket_app_factory or self._default_websocket_app_factory
        self._thread_factory = thread_factory or self._default_thread_factory
        self._timer_factory = timer_factory or self._default_timer_factory
        self._clock = clock

        self._lock = threading.RLock()
        self._table = QuoteTable(reject_stale=reject_stale)
        self._metrics = StreamMetrics()
        self._state = ConnectionState.DISCONNECTED
        self._ws_app: Any = None
        self._reconnect_timer: Any = None
        self._retry_attempt = 0
        self._torn_down = False
        self._first_frame_logged = False

        if autoconnect:
            self.connect()

    @staticmethod
    def _default_websocket_app_factory(*args: Any, **kwargs: Any) -> Any:
        from websocket import WebSocketApp

        return WebSocketApp(*args, **kwargs)

    @staticmethod
    def _default_thread_factory(target: Callable[[], Any]) -> threading.Thread:
        return threading.Thread(target=target, daemon=True, name="md-ws-worker")

    @staticmethod
    def _default_timer_factory(delay: float, callback: Callable[[], None]) -> threading.Timer:
        timer = threading.Timer(delay, callback)
        timer.daemon = True
        return timer

    def set_on_quotes_changed(self, callback: Callable[[list[InstrumentQuote]], None]) -> None:
        self._on_quotes_changed = callback

    def set_on_state_change(self, callback: Callable[[StreamStatus], None]) -> None:
        self._on_state_change = callback

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connection(self) -> Any:
        return self._ws_app

    @property
    def reject_stale(self) -> bool:
        return self._table.reject_stale

    @reject_stale.setter
    def reject_stale(self, value: bool) -> None:
        with self._lock:
            self._table.reject_stale = bool(value)

    def _is_live(self, ws: Any) -> bool:
        if self._torn_down:
            return False
        return ws is None or ws is self._ws_app

    def _emit_state(self) -> None:
        if self._on_state_change is None:
            return
        self._on_state_change(self.status())

    def _notify_quotes(self, quotes: list[InstrumentQuote]) -> None:
        if self._on_quotes_changed is None:
            return
        try:
            self._on_quotes_changed(quotes)
        except Exception as exc:
            # a failing consumer must not tear down the transport thread
            print(f"[MD][listener_error] {exc!r}", flush=True)

    @staticmethod
    def _close_handle(ws_app: Any, reason: str) -> None:
        try:
            ws_app.close(status=NORMAL_CLOSURE, reason=reason.encode("utf-8"), timeout=CLOSE_TIMEOUT_SEC)
        except Exception as exc:
            print(f"[MD][ws_close_error] {exc!r}", flush=True)

    def _cancel_reconnect_timer(self) -> None:
        timer = self._reconnect_timer
        self._reconnect_timer = None
        if timer is not None:
            timer.cancel()

    def connect(self, *, start: bool = True) -> Any:
        """Open a new connection, closing the previous handle first. Does not block."""
        with self._lock:
            if not self.url:
                raise StreamNotConfiguredError("market data stream url is not configured")
            previous = self._ws_app
            self._ws_app = None
            self._torn_down = False
            self._cancel_reconnect_timer()

        if previous is not None:
            self._close_handle(previous, "reconnecting")

        with self._lock:
            self._state = ConnectionState.CONNECTING
            print(f"[MD][ws_connect] url={self.url}", flush=True)

            def _on_open(ws: Any) -> None:
                self.on_transport_opened(ws=ws)

            def _on_message(ws: Any, raw_message: Any) -> None:
                self.on_frame_received(raw_message, ws=ws)

            def _on_error(ws: Any, error: Any) -> None:
                self.on_transport_error(error, ws=ws)

            def _on_close(ws: Any, code: Any = None, reason: Any = None) -> None:
                self.on_transport_closed(code, reason, ws=ws)

            ws_app = self._websocket_app_factory(
                self.url,
                on_open=_on_open,
                on_message=_on_message,
                on_error=_on_error,
                on_close=_on_close,
            )
            self._ws_app = ws_app

        self._emit_state()
        if start:
            self._thread_factory(ws_app.run_forever).start()
        return ws_app

    def reconnect(self) -> Any:
        """User-initiated reconnect."""
        with self._lock:
            self.reconnect_count += 1
            self._retry_attempt = 0
        print(f"[MD][ws_reconnect] source=manual count={self.reconnect_count}", flush=True)
        return self.connect()

    def disconnect(self) -> None:
        with self._lock:
            self._torn_down = True
            ws_app = self._ws_app
            self._ws_app = None
            self._cancel_reconnect_timer()
            self._state = ConnectionState.DISCONNECTED
        if ws_app is not None:
            self._close_handle(ws_app, "client shutdown")
        self._first_frame_logged = False
        print("[MD][ws_disconnect] source=client", flush=True)

    def on_transport_opened(self, *, ws: Any = None) -> None:
        with self._lock:
            if not self._is_live(ws):
                return
            self._cancel_reconnect_timer()
            self._retry_attempt = 0
            self.last_error = None
            self._state = ConnectionState.CONNECTED
        print("[MD][ws_connect_result] status=open", flush=True)
        self._emit_state()

    def on_transport_closed(self, code: Any = None, reason: Any = None, *, ws: Any = None) -> None:
        with self._lock:
            if not self._is_live(ws):
                return
            self._ws_app = None
            self._state = ConnectionState.DISCONNECTED
            if code is not None and code != NORMAL_CLOSURE:
                self.last_error = f"closed code={code} reason={reason}"
            self._schedule_reconnect()
        print(f"[MD][ws_close] code={code} reason={reason}", flush=True)
        self._emit_state()

    def on_transport_error(self, error: Any, *, ws: Any = None) -> None:
        with self._lock:
            if not self._is_live(ws):
                return
            self._ws_app = None
            self._state = ConnectionState.DISCONNECTED
            self.last_error = str(error)
            self._schedule_reconnect()
        print(f"[MD][ws_error] {self.last_error}", flush=True)
        self._emit_state()

    def _schedule_reconnect(self) -> None:
        if not self.auto_reconnect or self._torn_down or self._reconnect_timer is not None:
            return
        if self._retry_attempt >= self.max_retries:
            print(f"[MD][ws_reconnect_exhausted] attempts={self._retry_attempt}", flush=True)
            return
        delay = min(self.backoff_base_sec * (2**self._retry_attempt), self.backoff_cap_sec)
        self._retry_attempt += 1
        timer = self._timer_factory(delay, self._on_reconnect_timer)
        self._reconnect_timer = timer
        print(f"[MD][ws_reconnect_scheduled] delay_sec={delay} attempt={self._retry_attempt}", flush=True)
        timer.start()

    def _on_reconnect_timer(self) -> None:
        with self._lock:
            self._reconnect_timer = None
            if self._torn_down or self._ws_app is not None:
                return
            self.reconnect_count += 1
        self.connect()

    def on_frame_received(self, raw: Any, *, ws: Any = None) -> InstrumentQuote | None:
        """Repair, validate and upsert one inbound frame. Never raises."""
        with self._lock:
            if not self._is_live(ws):
                return None
            if not self._first_frame_logged:
                print("[MD][ws_first_frame] received=1", flush=True)
                self._first_frame_logged = True
            self._metrics.frames_received += 1

            payload, repaired = parse_frame(raw)
            if payload is None:
                self._metrics.frames_dropped += 1
                print(f"[MD][frame_drop] reason=unparseable raw={_preview(raw)!r}", flush=True)
                return None
            if repaired:
                self._metrics.frames_repaired += 1

            try:
                quote = DepthMarketDataFrame.from_payload(payload).to_quote()
            except (FrameRejectedError, ValidationError) as exc:
                self._metrics.frames_ignored += 1
                print(f"[MD][frame_skip] reason={exc}", flush=True)
                return None

            outcome = self._table.upsert(quote)
            if outcome == "stale":
                self._metrics.stale_rejected += 1
                print(
                    f"[MD][frame_stale] instrument={quote.instrument_id} ts={quote.timestamp}",
                    flush=True,
                )
                return None

            self._metrics.upserts += 1
            self.last_update_ts = self._clock()
            snapshot = self._table.list_all()

        self._notify_quotes(snapshot)
        return quote

    def quotes(self) -> list[InstrumentQuote]:
        with self._lock:
            return self._table.list_all()

    def get_quote(self, instrument_id: str) -> InstrumentQuote | None:
        with self._lock:
            return self._table.get(instrument_id)

    def status(self) -> StreamStatus:
        with self._lock:
            return StreamStatus(
                url=self.url,
                state=self._state,
                last_update_ts=self.last_update_ts,
                reconnect_count=self.reconnect_count,
                auto_reconnect=self.auto_reconnect,
                last_error=self.last_error,
                quote_count=len(self._table),
            )

    def metrics(self) -> dict:
        with self._lock:
            out: dict = dict(self._metrics.as_dict())
            out.update(
                {
                    "cached_instruments": len(self._table),
                    "ws_state": self._state.value,
                    "ws_connected": self._state is ConnectionState.CONNECTED,
                    "last_update_ts": self.last_update_ts,
                    "ws_last_error": self.last_error,
                    "ws_reconnect_count": self.reconnect_count,
                    "reconnect_pending": self._reconnect_timer is not None,
                }
            )
            return out
