"""Typed chain events decoded from ``Program data:`` log lines.

Each log payload starts with a one-byte discriminator followed by a
little-endian fixed layout. Every discriminator belongs to exactly one event
family; ``EVENT_FAMILIES`` is the single table the decoder dispatches on, and
``parse_payload`` refuses anything not listed there.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Union

from ledger.core.errors import MalformedEventError
from ledger.core.types import EventKind


@dataclass(frozen=True)
class EventOrigin:
    """Where an event came from; this is also the chain-native ordering key."""

    transaction_hash: str
    slot: int | None
    block_time: datetime
    log_index: int


@dataclass(frozen=True)
class FillEvent:
    kind: EventKind
    origin: EventOrigin
    side: int  # 0 = bid, 1 = ask
    instr_id: int
    client_id: int
    order_id: int
    qty: int
    value: int
    price: int
    rebates: int


@dataclass(frozen=True)
class FeeEvent:
    kind: EventKind
    origin: EventOrigin
    instr_id: int
    ref_client_id: int
    fees: int
    ref_payment: int


@dataclass(frozen=True)
class FundingEvent:
    kind: EventKind
    origin: EventOrigin
    instr_id: int
    client_id: int
    time: int
    funding: int


@dataclass(frozen=True)
class SocLossEvent:
    kind: EventKind
    origin: EventOrigin
    instr_id: int
    client_id: int
    time: int
    soc_loss: int


@dataclass(frozen=True)
class CapitalEvent:
    kind: EventKind
    origin: EventOrigin
    token_id: int
    client_id: int
    amount: int


@dataclass(frozen=True)
class OrderEvent:
    kind: EventKind
    origin: EventOrigin
    side: int
    instr_id: int
    client_id: int
    order_id: int
    qty: int
    price: int


RawChainEvent = Union[FillEvent, FeeEvent, FundingEvent, SocLossEvent, CapitalEvent, OrderEvent]

_FILL = struct.Struct("<BBHIqqqqq")
_FEE = struct.Struct("<BxHIqq")
_ACCRUAL = struct.Struct("<BxHIqq")
_CAPITAL = struct.Struct("<BxHIq")
_ORDER = struct.Struct("<BBHIqqq")


def _fill(kind: EventKind, origin: EventOrigin, data: bytes) -> FillEvent:
    _, side, instr_id, client_id, order_id, qty, value, price, rebates = _FILL.unpack_from(data)
    if side not in (0, 1):
        raise MalformedEventError(f"{kind.name}: bad side byte {side}")
    return FillEvent(kind, origin, side, instr_id, client_id, order_id, qty, value, price, rebates)


def _fee(kind: EventKind, origin: EventOrigin, data: bytes) -> FeeEvent:
    _, instr_id, ref_client_id, fees, ref_payment = _FEE.unpack_from(data)
    return FeeEvent(kind, origin, instr_id, ref_client_id, fees, ref_payment)


def _funding(kind: EventKind, origin: EventOrigin, data: bytes) -> FundingEvent:
    _, instr_id, client_id, time, funding = _ACCRUAL.unpack_from(data)
    return FundingEvent(kind, origin, instr_id, client_id, time, funding)


def _soc_loss(kind: EventKind, origin: EventOrigin, data: bytes) -> SocLossEvent:
    _, instr_id, client_id, time, soc_loss = _ACCRUAL.unpack_from(data)
    return SocLossEvent(kind, origin, instr_id, client_id, time, soc_loss)


def _capital(kind: EventKind, origin: EventOrigin, data: bytes) -> CapitalEvent:
    _, token_id, client_id, amount = _CAPITAL.unpack_from(data)
    return CapitalEvent(kind, origin, token_id, client_id, amount)


def _order(kind: EventKind, origin: EventOrigin, data: bytes) -> OrderEvent:
    _, side, instr_id, client_id, order_id, qty, price = _ORDER.unpack_from(data)
    return OrderEvent(kind, origin, side, instr_id, client_id, order_id, qty, price)


_Parser = Callable[[EventKind, EventOrigin, bytes], RawChainEvent]

# kind -> (payload size, parser)
EVENT_FAMILIES: dict[EventKind, tuple[int, _Parser]] = {
    EventKind.SPOT_FILL_ORDER: (_FILL.size, _fill),
    EventKind.PERP_FILL_ORDER: (_FILL.size, _fill),
    EventKind.SWAP_ORDER: (_FILL.size, _fill),
    EventKind.SPOT_FEES: (_FEE.size, _fee),
    EventKind.PERP_FEES: (_FEE.size, _fee),
    EventKind.PERP_FUNDING: (_ACCRUAL.size, _funding),
    EventKind.PERP_SOC_LOSS: (_ACCRUAL.size, _soc_loss),
    EventKind.DEPOSIT: (_CAPITAL.size, _capital),
    EventKind.WITHDRAW: (_CAPITAL.size, _capital),
    EventKind.PERP_DEPOSIT: (_CAPITAL.size, _capital),
    EventKind.PERP_WITHDRAW: (_CAPITAL.size, _capital),
    EventKind.FEES_DEPOSIT: (_CAPITAL.size, _capital),
    EventKind.FEES_WITHDRAW: (_CAPITAL.size, _capital),
    EventKind.SPOT_LP_TRADE: (_ORDER.size, _order),
    EventKind.SPOT_PLACE_ORDER: (_ORDER.size, _order),
    EventKind.SPOT_NEW_ORDER: (_ORDER.size, _order),
    EventKind.SPOT_ORDER_CANCEL: (_ORDER.size, _order),
    EventKind.SPOT_ORDER_REVOKE: (_ORDER.size, _order),
    EventKind.SPOT_MASS_CANCEL: (_ORDER.size, _order),
    EventKind.PERP_PLACE_ORDER: (_ORDER.size, _order),
    EventKind.PERP_ORDER_CANCEL: (_ORDER.size, _order),
    EventKind.PERP_ORDER_REVOKE: (_ORDER.size, _order),
    EventKind.PERP_MASS_CANCEL: (_ORDER.size, _order),
    EventKind.PERP_CHANGE_LEVERAGE: (_ORDER.size, _order),
    EventKind.MOVE_SPOT: (_ORDER.size, _order),
}


def parse_payload(data: bytes, origin: EventOrigin) -> RawChainEvent:
    """Decode one binary payload, raising MalformedEventError for anything unusable."""

    if not data:
        raise MalformedEventError("empty payload")
    try:
        kind = EventKind(data[0])
    except ValueError as e:
        raise MalformedEventError(f"unknown discriminator {data[0]}") from e
    size, parser = EVENT_FAMILIES[kind]
    if len(data) < size:
        raise MalformedEventError(f"{kind.name}: payload {len(data)}B shorter than {size}B")
    return parser(kind, origin, data)


def pack_payload(kind: EventKind, *fields: int) -> bytes:
    """Inverse of parse_payload: pack the fields after the tag into one payload."""

    layouts = {
        _fill: _FILL,
        _fee: _FEE,
        _funding: _ACCRUAL,
        _soc_loss: _ACCRUAL,
        _capital: _CAPITAL,
        _order: _ORDER,
    }
    _, parser = EVENT_FAMILIES[kind]
    return layouts[parser].pack(int(kind), *fields)
