from fastapi import APIRouter, HTTPException, Request

from futures_gateway.errors import StreamNotConfiguredError
from futures_gateway.schemas.quote import (
    BasisSnapshot,
    InstrumentQuote,
    ReferenceSelection,
    SpotPriceUpdate,
    StreamStatus,
)

router = APIRouter()


@router.get('/quotes', response_model=list[InstrumentQuote])
def list_quotes(request: Request):
    return request.app.state.stream_handler.quotes()


@router.get('/quotes/{instrument_id}', response_model=InstrumentQuote)
def get_quote(instrument_id: str, request: Request):
    row = request.app.state.stream_handler.get_quote(instrument_id)
    if row is None:
        raise HTTPException(status_code=404, detail='instrument not found')
    return row


@router.get('/stream/status', response_model=StreamStatus)
def get_stream_status(request: Request):
    return request.app.state.stream_handler.status()


@router.post('/stream/reconnect', response_model=StreamStatus)
def reconnect_stream(request: Request):
    handler = request.app.state.stream_handler
    try:
        handler.reconnect()
    except StreamNotConfiguredError as exc:
        raise HTTPException(status_code=409, detail='STREAM_NOT_CONFIGURED') from exc
    return handler.status()


@router.get('/basis', response_model=BasisSnapshot)
def get_basis(request: Request):
    return request.app.state.basis_calculator.snapshot()


@router.put('/basis/reference', response_model=BasisSnapshot)
def select_reference(req: ReferenceSelection, request: Request):
    instrument_id = req.instrument_id.strip() if req.instrument_id else None
    return request.app.state.basis_calculator.select_instrument(instrument_id)


@router.post('/basis/spot', response_model=BasisSnapshot)
def push_spot_price(req: SpotPriceUpdate, request: Request):
    return request.app.state.basis_calculator.update_spot(req.price)


@router.get('/metrics/stream')
def stream_metrics(request: Request):
    metrics = request.app.state.stream_handler.metrics()
    poller = getattr(request.app.state, 'spot_poller', None)
    metrics.update(
        {
            'spot_polls': poller.polls if poller is not None else 0,
            'spot_failures': poller.failures if poller is not None else 0,
            'spot_last_error': poller.last_error if poller is not None else None,
        }
    )
    return metrics
