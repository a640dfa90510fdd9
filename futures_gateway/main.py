from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from pydantic import ValidationError

from futures_gateway.api.routes import router
from futures_gateway.config.settings import get_settings
from futures_gateway.integrations.md_ws import MarketDataStreamHandler
from futures_gateway.integrations.spot_rest import SpotPriceClient, SpotPricePoller
from futures_gateway.services.basis import BasisCalculator


@asynccontextmanager
async def lifespan(app: FastAPI):
    handler = app.state.stream_handler
    basis = app.state.basis_calculator
    app.state.spot_poller = None

    try:
        settings = app.state.get_settings()
    except ValidationError as exc:
        # serve snapshots with a disconnected stream when env is incomplete
        print(f"[MD][settings_invalid] errors={exc.error_count()}", flush=True)
        settings = None

    if settings is not None:
        handler.url = settings.MD_WS_URL
        handler.auto_reconnect = settings.MD_AUTO_RECONNECT
        handler.reject_stale = settings.MD_REJECT_STALE_FRAMES
        if settings.MD_REFERENCE_INSTRUMENT:
            basis.select_instrument(settings.MD_REFERENCE_INSTRUMENT)
        handler.connect()

        if settings.MD_SPOT_URL:
            poller = SpotPricePoller(
                SpotPriceClient(settings.MD_SPOT_URL),
                settings.MD_SPOT_SYMBOL,
                on_price=basis.update_spot,
                interval_sec=settings.MD_SPOT_POLL_SEC,
            )
            app.state.spot_poller = poller
            poller.start()

    try:
        yield
    finally:
        if app.state.spot_poller is not None:
            app.state.spot_poller.stop()
        handler.disconnect()


app = FastAPI(title="Futures Basis Gateway", version="0.1.0", lifespan=lifespan)
app.include_router(router, prefix="/v1")

# NOTE: lazy-loaded so app import does not require env during tests.
app.state.get_settings = get_settings
app.state.basis_calculator = BasisCalculator()
app.state.stream_handler = MarketDataStreamHandler(
    on_quotes_changed=app.state.basis_calculator.on_quotes_changed,
)
app.state.spot_poller = None
