"""Typed payment details, one shape per lifecycle stage.

Stored on ``Order.payment_details`` as JSON with a ``stage`` tag. Decimals
and datetimes are kept as strings so the JSON column round-trips cleanly.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from datetime import datetime
from decimal import Decimal, InvalidOperation


def _dec(value) -> Decimal | None:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _dt(value) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class SessionCreated:
    payment_id: str
    amount: Decimal | None = None
    create_time: str = ""
    attempt: int = 0

    stage = "created"


@dataclass(frozen=True)
class PaymentExecuted:
    payment_id: str
    trx_id: str
    amount: Decimal | None = None
    transaction_status: str = ""
    customer_msisdn: str = ""
    execute_time: str = ""
    paid_at: datetime | None = None
    source: str = ""

    stage = "executed"


@dataclass(frozen=True)
class PaymentFailed:
    payment_id: str
    reason: str
    transaction_status: str = ""
    cancelled: bool = False
    failed_at: datetime | None = None

    stage = "failed"


@dataclass(frozen=True)
class PaymentRefunded:
    payment_id: str
    trx_id: str
    refund_trx_id: str
    amount: Decimal | None = None
    reason: str = ""
    refunded_at: datetime | None = None

    stage = "refunded"


STAGES = {cls.stage: cls for cls in (SessionCreated, PaymentExecuted, PaymentFailed, PaymentRefunded)}


def dump_details(details) -> dict:
    data = {"stage": details.stage}
    for key, value in asdict(details).items():
        if isinstance(value, Decimal):
            value = f"{value:.2f}"
        elif isinstance(value, datetime):
            value = value.isoformat()
        data[key] = value
    return data


def load_details(data):
    if not data:
        return None
    cls = STAGES.get(data.get("stage"))
    if cls is None:
        raise ValueError(f"unknown payment details stage: {data.get('stage')!r}")
    kwargs = {}
    for f in fields(cls):
        if f.name not in data:
            continue
        value = data[f.name]
        if f.name == "amount":
            value = _dec(value)
        elif f.name.endswith("_at"):
            value = _dt(value)
        kwargs[f.name] = value
    return cls(**kwargs)
