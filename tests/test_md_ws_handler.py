import json
import unittest

from futures_gateway.errors import StreamNotConfiguredError
from futures_gateway.integrations.md_ws import MarketDataStreamHandler
from futures_gateway.schemas.quote import ConnectionState


class _FakeWebSocketApp:
    def __init__(self, url, *, header=None, on_open=None, on_message=None, on_error=None, on_close=None):
        self.url = url
        self.on_open = on_open
        self.on_message = on_message
        self.on_error = on_error
        self.on_close = on_close
        self.closed_with = None
        self.run_forever_calls = 0

    def run_forever(self):
        self.run_forever_calls += 1

    def close(self, **kwargs):
        self.closed_with = kwargs


class _InlineThread:
    def __init__(self, target):
        self.target = target

    def start(self):
        self.target()


def _frame(instrument_id, last_price, **extra):
    return json.dumps({"InstrumentID": instrument_id, "LastPrice": last_price, **extra})


class MarketDataStreamHandlerTest(unittest.TestCase):
    def setUp(self):
        self.clock_value = 1700000000.0
        self.changes = []
        self.states = []
        self.handler = MarketDataStreamHandler(
            "ws://md.example:8765",
            websocket_app_factory=_FakeWebSocketApp,
            thread_factory=_InlineThread,
            on_quotes_changed=self.changes.append,
            on_state_change=lambda status: self.states.append(status.state),
            clock=lambda: self.clock_value,
        )

    def test_constructing_with_autoconnect_yields_connecting(self):
        handler = MarketDataStreamHandler(
            "ws://md.example:8765",
            websocket_app_factory=_FakeWebSocketApp,
            thread_factory=_InlineThread,
            autoconnect=True,
        )

        self.assertEqual(handler.state, ConnectionState.CONNECTING)
        self.assertEqual(handler.connection.run_forever_calls, 1)

    def test_connect_sets_connecting_before_transport_resolves(self):
        ws = self.handler.connect(start=False)

        self.assertEqual(self.handler.state, ConnectionState.CONNECTING)
        self.assertEqual(ws.url, "ws://md.example:8765")
        self.assertEqual(ws.run_forever_calls, 0)
        self.assertEqual(self.states, [ConnectionState.CONNECTING])

    def test_connect_runs_transport_on_worker(self):
        ws = self.handler.connect()

        self.assertEqual(ws.run_forever_calls, 1)

    def test_connect_without_url_raises(self):
        handler = MarketDataStreamHandler(websocket_app_factory=_FakeWebSocketApp)

        with self.assertRaises(StreamNotConfiguredError):
            handler.connect()
        self.assertEqual(handler.state, ConnectionState.DISCONNECTED)

    def test_transport_events_drive_state_machine(self):
        ws = self.handler.connect(start=False)

        ws.on_open(ws)
        self.assertEqual(self.handler.state, ConnectionState.CONNECTED)

        ws.on_close(ws, 1006, "abnormal")
        self.assertEqual(self.handler.state, ConnectionState.DISCONNECTED)
        self.assertIsNone(self.handler.connection)
        self.assertEqual(self.handler.status().last_error, "closed code=1006 reason=abnormal")

        ws = self.handler.connect(start=False)
        ws.on_error(ws, ConnectionRefusedError("refused"))
        self.assertEqual(self.handler.state, ConnectionState.DISCONNECTED)
        self.assertEqual(self.handler.last_error, "refused")

        self.assertEqual(
            self.states,
            [
                ConnectionState.CONNECTING,
                ConnectionState.CONNECTED,
                ConnectionState.DISCONNECTED,
                ConnectionState.CONNECTING,
                ConnectionState.DISCONNECTED,
            ],
        )

    def test_direct_transport_signals_from_any_state(self):
        self.handler.on_transport_opened()
        self.assertEqual(self.handler.state, ConnectionState.CONNECTED)
        self.handler.on_transport_error(RuntimeError("boom"))
        self.assertEqual(self.handler.state, ConnectionState.DISCONNECTED)
        self.handler.on_transport_opened()
        self.handler.on_transport_closed(1000, "bye")
        self.assertEqual(self.handler.state, ConnectionState.DISCONNECTED)
        self.assertIsNone(self.handler.last_error)

    def test_reconnect_closes_previous_handle_with_normal_closure(self):
        first = self.handler.connect(start=False)
        first.on_open(first)

        second = self.handler.reconnect()

        self.assertIsNot(first, second)
        self.assertEqual(first.closed_with["status"], 1000)
        self.assertIsInstance(first.closed_with["reason"], bytes)
        self.assertEqual(first.closed_with["timeout"], 0)
        self.assertIs(self.handler.connection, second)
        self.assertEqual(self.handler.state, ConnectionState.CONNECTING)
        self.assertEqual(self.handler.reconnect_count, 1)

    def test_callbacks_from_superseded_handle_are_ignored(self):
        first = self.handler.connect(start=False)
        second = self.handler.connect(start=False)

        first.on_open(first)
        self.assertEqual(self.handler.state, ConnectionState.CONNECTING)

        second.on_open(second)
        first.on_close(first, 1006, "late close")
        first.on_message(first, _frame("IF2512", 4000))

        self.assertEqual(self.handler.state, ConnectionState.CONNECTED)
        self.assertEqual(self.handler.quotes(), [])

    def test_new_instrument_appends_quote(self):
        ws = self.handler.connect(start=False)
        ws.on_open(ws)

        ws.on_message(ws, _frame("IF2512", 4000, Volume=10, OpenInterest=20, UpdateTime="09:30:00"))

        quotes = self.handler.quotes()
        self.assertEqual(len(quotes), 1)
        self.assertEqual(quotes[0].instrument_id, "IF2512")
        self.assertEqual(quotes[0].last_price, 4000.0)
        self.assertEqual(quotes[0].volume, 10.0)
        self.assertEqual(quotes[0].open_interest, 20.0)
        self.assertEqual(quotes[0].timestamp, "09:30:00")
        self.assertEqual(self.handler.last_update_ts, self.clock_value)

    def test_updates_replace_in_place_and_keep_insertion_order(self):
        self.handler.on_frame_received(_frame("IF2512", 4000))
        self.handler.on_frame_received(_frame("IC2512", 6000))
        self.handler.on_frame_received(_frame("IF2512", 4050, Volume=99))

        quotes = self.handler.quotes()
        self.assertEqual([(q.instrument_id, q.last_price) for q in quotes], [("IF2512", 4050.0), ("IC2512", 6000.0)])
        self.assertEqual(quotes[0].volume, 99.0)
        self.assertEqual(len(self.changes), 3)
        self.assertEqual(len(self.changes[-1]), 2)

    def test_repaired_frame_is_ingested(self):
        quote = self.handler.on_frame_received('{InstrumentID:"IF2512",LastPrice:4000')

        self.assertIsNotNone(quote)
        self.assertEqual(self.handler.get_quote("IF2512").last_price, 4000.0)
        self.assertEqual(self.handler.metrics()["frames_repaired"], 1)

    def test_unrepairable_frame_is_a_no_op(self):
        ws = self.handler.connect(start=False)
        ws.on_open(ws)
        self.handler.on_frame_received(_frame("IF2512", 4000))
        before_quotes = self.handler.quotes()
        before_ts = self.handler.last_update_ts
        self.clock_value += 10

        result = self.handler.on_frame_received("@@ not a frame @@", ws=ws)

        self.assertIsNone(result)
        self.assertEqual(self.handler.quotes(), before_quotes)
        self.assertEqual(self.handler.state, ConnectionState.CONNECTED)
        self.assertEqual(self.handler.last_update_ts, before_ts)
        self.assertEqual(self.handler.metrics()["frames_dropped"], 1)

    def test_hostile_frames_leave_quotes_and_connection_untouched(self):
        ws = self.handler.connect(start=False)
        ws.on_open(ws)
        self.handler.on_frame_received(_frame("IF2512", 4000, ActionDay="20251020", UpdateTime="09:30:00"))
        before_quotes = self.handler.quotes()

        numeric_fields = (
            "LastPrice",
            "ChangeRate",
            "PreSettlementPrice",
            "Volume",
            "OpenInterest",
            "BidPrice1",
            "BidVolume1",
            "AskPrice1",
            "AskVolume1",
            "UpperLimitPrice",
            "LowerLimitPrice",
            "UpdateMillisec",
        )
        cases = {
            "oversized_integer": '{"InstrumentID":"IF2512","Volume":' + "9" * 5000 + "}",
            "deep_array_nesting": "[" * 100000,
            "deep_object_nesting": '{"a":' * 100000,
            "float_literal_overflow": '{"InstrumentID":"IF2512","LastPrice":1e400}',
            "integer_overflow": '{"InstrumentID":"IF2512","LastPrice":1' + "0" * 400 + "}",
        }
        for field in numeric_fields:
            for literal in ("Infinity", "-Infinity", "NaN"):
                cases[f"{field}={literal}"] = '{"InstrumentID":"IF2512","' + field + '":' + literal + "}"

        for name, raw in cases.items():
            with self.subTest(case=name):
                self.assertIsNone(self.handler.on_frame_received(raw, ws=ws))
                self.assertEqual(self.handler.quotes(), before_quotes)
                self.assertEqual(self.handler.state, ConnectionState.CONNECTED)
                self.assertIsNone(self.handler.last_error)

        metrics = self.handler.metrics()
        self.assertEqual(metrics["upserts"], 1)
        self.assertEqual(metrics["frames_dropped"] + metrics["frames_ignored"], len(cases))

    def test_hostile_frame_through_transport_callback_keeps_connection(self):
        ws = self.handler.connect(start=False)
        ws.on_open(ws)

        ws.on_message(ws, '{"InstrumentID":"IF2512","UpdateMillisec":Infinity}')
        ws.on_message(ws, "[" * 100000)

        self.assertEqual(self.handler.quotes(), [])
        self.assertEqual(self.handler.state, ConnectionState.CONNECTED)
        self.assertIs(self.handler.connection, ws)

    def test_frame_without_identifier_is_ignored(self):
        result = self.handler.on_frame_received(json.dumps({"LastPrice": 4000}))

        self.assertIsNone(result)
        self.assertEqual(self.handler.quotes(), [])
        self.assertIsNone(self.handler.last_update_ts)
        self.assertEqual(self.handler.metrics()["frames_ignored"], 1)

    def test_stale_frame_is_rejected(self):
        self.handler.on_frame_received(
            _frame("IF2512", 4050, ActionDay="20251020", UpdateTime="09:30:01")
        )

        result = self.handler.on_frame_received(
            _frame("IF2512", 4000, ActionDay="20251020", UpdateTime="09:30:00")
        )

        self.assertIsNone(result)
        self.assertEqual(self.handler.get_quote("IF2512").last_price, 4050.0)
        self.assertEqual(self.handler.metrics()["stale_rejected"], 1)

    def test_night_session_trading_day_does_not_mark_day_frame_stale(self):
        self.handler.on_frame_received(_frame("rb2601", 3100, TradingDay="20251021", UpdateTime="22:59:59"))

        result = self.handler.on_frame_received(
            _frame("rb2601", 3150, TradingDay="20251021", UpdateTime="09:00:01")
        )

        self.assertIsNotNone(result)
        self.assertEqual(self.handler.get_quote("rb2601").last_price, 3150.0)
        self.assertEqual(self.handler.metrics()["stale_rejected"], 0)

    def test_failing_listener_does_not_break_ingest(self):
        def _boom(_quotes):
            raise RuntimeError("consumer failed")

        self.handler.set_on_quotes_changed(_boom)

        quote = self.handler.on_frame_received(_frame("IF2512", 4000))

        self.assertEqual(quote.instrument_id, "IF2512")
        self.assertEqual(len(self.handler.quotes()), 1)

    def test_disconnect_closes_transport_and_silences_callbacks(self):
        ws = self.handler.connect(start=False)
        ws.on_open(ws)
        states_before = list(self.states)

        self.handler.disconnect()

        self.assertEqual(ws.closed_with["status"], 1000)
        self.assertEqual(ws.closed_with["timeout"], 0)
        self.assertIsNone(self.handler.connection)
        self.assertEqual(self.handler.state, ConnectionState.DISCONNECTED)

        ws.on_message(ws, _frame("IF2512", 4000))
        ws.on_open(ws)
        ws.on_close(ws, 1000, "")
        self.handler.on_frame_received(_frame("IC2512", 6000))

        self.assertEqual(self.handler.quotes(), [])
        self.assertEqual(self.handler.state, ConnectionState.DISCONNECTED)
        self.assertEqual(self.states, states_before)

    def test_status_and_metrics_expose_observable_surface(self):
        ws = self.handler.connect(start=False)
        ws.on_open(ws)
        ws.on_message(ws, _frame("IF2512", 4000))

        status = self.handler.status()
        metrics = self.handler.metrics()

        self.assertEqual(status.state, ConnectionState.CONNECTED)
        self.assertEqual(status.quote_count, 1)
        self.assertEqual(status.last_update_ts, self.clock_value)
        self.assertEqual(metrics["frames_received"], 1)
        self.assertEqual(metrics["upserts"], 1)
        self.assertTrue(metrics["ws_connected"])
        self.assertEqual(metrics["ws_state"], "connected")


if __name__ == "__main__":
    unittest.main()
