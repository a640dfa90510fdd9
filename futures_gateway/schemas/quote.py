from __future__ import annotations

import math
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from futures_gateway.errors import FrameRejectedError

# Producers fill absent prices with DBL_MAX.
_NO_VALUE_THRESHOLD = 1e300


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class DepthMarketDataFrame(BaseModel):
    """Optional-field view of one inbound depth-market-data frame."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    instrument_id: str | None = Field(
        default=None,
        validation_alias=_alias("InstrumentID", "instrument_id", "instrumentId", "symbol", "code"),
    )
    last_price: float | None = Field(default=None, validation_alias=_alias("LastPrice", "last_price", "lastPrice", "price"))
    change_rate: float | None = Field(
        default=None, validation_alias=_alias("ChangeRate", "change_rate", "changeRate", "UpDownRate")
    )
    pre_settlement: float | None = Field(
        default=None,
        validation_alias=_alias("PreSettlementPrice", "pre_settlement_price", "preSettlement"),
    )
    volume: float | None = Field(default=None, validation_alias=_alias("Volume", "volume"))
    open_interest: float | None = Field(
        default=None, validation_alias=_alias("OpenInterest", "open_interest", "openInterest")
    )
    bid_price1: float | None = Field(default=None, validation_alias=_alias("BidPrice1", "bid_price1", "bidPrice1"))
    bid_volume1: float | None = Field(default=None, validation_alias=_alias("BidVolume1", "bid_volume1", "bidVolume1"))
    ask_price1: float | None = Field(default=None, validation_alias=_alias("AskPrice1", "ask_price1", "askPrice1"))
    ask_volume1: float | None = Field(default=None, validation_alias=_alias("AskVolume1", "ask_volume1", "askVolume1"))
    upper_limit: float | None = Field(
        default=None, validation_alias=_alias("UpperLimitPrice", "upper_limit_price", "upperLimitPrice")
    )
    lower_limit: float | None = Field(
        default=None, validation_alias=_alias("LowerLimitPrice", "lower_limit_price", "lowerLimitPrice")
    )
    timestamp: str | None = Field(
        default=None, validation_alias=_alias("UpdateTime", "update_time", "updateTime", "timestamp")
    )
    update_millisec: int | None = Field(
        default=None, validation_alias=_alias("UpdateMillisec", "update_millisec", "updateMillisec")
    )
    action_day: str | None = Field(
        default=None, validation_alias=_alias("ActionDay", "action_day", "actionDay")
    )

    @field_validator(
        "last_price",
        "change_rate",
        "pre_settlement",
        "volume",
        "open_interest",
        "bid_price1",
        "bid_volume1",
        "ask_price1",
        "ask_volume1",
        "upper_limit",
        "lower_limit",
        mode="before",
    )
    @classmethod
    def _lenient_float(cls, value: Any) -> float | None:
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, str):
            value = value.strip().rstrip("%")
            if not value:
                return None
        try:
            number = float(value)
        except OverflowError:
            raise ValueError("numeric value out of range") from None
        except (TypeError, ValueError):
            return None
        if not math.isfinite(number):
            raise ValueError("numeric value must be finite")
        if abs(number) >= _NO_VALUE_THRESHOLD:
            return None
        return number

    @field_validator("update_millisec", mode="before")
    @classmethod
    def _lenient_int(cls, value: Any) -> int | None:
        if value is None or value == "" or isinstance(value, bool):
            return None
        try:
            number = float(value)
        except OverflowError:
            raise ValueError("numeric value out of range") from None
        except (TypeError, ValueError):
            return None
        if not math.isfinite(number):
            raise ValueError("numeric value must be finite")
        return int(number)

    @field_validator("instrument_id", "timestamp", "action_day", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str | None:
        if value is None or isinstance(value, (dict, list)):
            return None
        text = str(value).strip()
        return text or None

    @classmethod
    def from_payload(cls, payload: Any) -> "DepthMarketDataFrame":
        if not isinstance(payload, dict):
            raise FrameRejectedError("frame payload must be an object")
        nested = payload.get("data")
        if isinstance(nested, dict):
            payload = {**payload, **nested}
        frame = cls.model_validate(payload)
        if not frame.instrument_id:
            raise FrameRejectedError("missing instrument identifier in frame")
        return frame

    def to_quote(self) -> "InstrumentQuote":
        last_price = self.last_price or 0.0
        change_rate = self.change_rate
        if change_rate is None and self.pre_settlement and self.pre_settlement > 0 and self.last_price is not None:
            change_rate = (last_price - self.pre_settlement) / self.pre_settlement * 100.0
        if change_rate is not None and not math.isfinite(change_rate):
            change_rate = None

        return InstrumentQuote(
            instrument_id=str(self.instrument_id),
            last_price=last_price,
            change_rate=change_rate or 0.0,
            volume=self.volume or 0.0,
            open_interest=self.open_interest or 0.0,
            bid_price1=self.bid_price1 or 0.0,
            bid_volume1=self.bid_volume1 or 0.0,
            ask_price1=self.ask_price1 or 0.0,
            ask_volume1=self.ask_volume1 or 0.0,
            upper_limit=self.upper_limit or 0.0,
            lower_limit=self.lower_limit or 0.0,
            timestamp=self.timestamp,
            update_millisec=self.update_millisec or 0,
            action_day=self.action_day,
        )


class InstrumentQuote(BaseModel):
    instrument_id: str
    last_price: float = 0.0
    change_rate: float = 0.0
    volume: float = 0.0
    open_interest: float = 0.0
    bid_price1: float = 0.0
    bid_volume1: float = 0.0
    ask_price1: float = 0.0
    ask_volume1: float = 0.0
    upper_limit: float = 0.0
    lower_limit: float = 0.0
    timestamp: str | None = None
    update_millisec: int = 0
    action_day: str | None = None

    def ordering_key(self) -> tuple[str, str, int] | None:
        # time of day alone wraps at midnight during night sessions
        if not self.action_day or not self.timestamp:
            return None
        return (self.action_day, self.timestamp, self.update_millisec)


class StreamStatus(BaseModel):
    url: str | None = None
    state: ConnectionState
    last_update_ts: float | None = None
    reconnect_count: int = 0
    auto_reconnect: bool = False
    last_error: str | None = None
    quote_count: int = 0


class BasisSnapshot(BaseModel):
    spot_price: float | None = None
    reference_instrument: str | None = None
    futures_price: float = 0.0
    basis: float | None = None
    basis_change: float = 0.0
    meaningful: bool = False


class ReferenceSelection(BaseModel):
    instrument_id: str | None = None


class SpotPriceUpdate(BaseModel):
    price: float

    @field_validator("price")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("price must be positive")
        return value
