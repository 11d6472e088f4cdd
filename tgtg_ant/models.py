"""Typed records decoded from API responses.

Parsers are lenient: a field the API leaves out falls back to the default
declared on the record instead of failing.  Only a body that is not JSON at
all raises :class:`~tgtg_ant.errors.ResponseParseError`.
"""

from __future__ import annotations

import datetime as _dt
import enum
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Union

from .errors import OrderError, ResponseParseError

logger = logging.getLogger(__name__)

Body = Union[bytes, str]


def _load_json(body: Body) -> Any:
    try:
        return json.loads(body)
    except (TypeError, ValueError) as e:
        logger.debug("full response: %r", body)
        raise ResponseParseError(f"response is not valid JSON: {e}") from e


def _load_object(body: Body) -> Dict[str, Any]:
    data = _load_json(body)
    if not isinstance(data, dict):
        raise ResponseParseError(f"expected a JSON object, got {type(data).__name__}")
    return data


def _dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _parse_time(value: Optional[str]) -> Optional[_dt.datetime]:
    if not value:
        return None
    try:
        return _dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Ignoring unparsable timestamp %r", value)
        return None


# ---- Price -------------------------------------------------------------------

@dataclass(frozen=True)
class Price:
    minor_units: int = 0
    decimals: int = 0
    code: str = ""

    @property
    def amount(self) -> float:
        return self.minor_units / (10 ** self.decimals)

    def __str__(self) -> str:
        return f"{self.amount:g} {self.code}".strip()

    @classmethod
    def from_json(cls, data: Any) -> "Price":
        data = _dict(data)
        return cls(
            minor_units=int(data.get("minor_units", 0) or 0),
            decimals=int(data.get("decimals", 0) or 0),
            code=str(data.get("code", "") or ""),
        )


# ---- Stores ------------------------------------------------------------------

@dataclass(frozen=True)
class Store:
    """A store offering bags.  Two stores are the same store iff their ids match."""

    id: str
    name: str = field(default="", compare=False)
    rating: float = field(default=0.0, compare=False)
    price: Price = field(default_factory=Price, compare=False)
    available_bags: int = field(default=0, compare=False)

    def __str__(self) -> str:
        return f"{self.name}, rated {self.rating:g}, price {self.price}"


def stores_from_response(body: Body) -> List[Store]:
    """Parse the item search response (``items[]``)."""
    if not body:
        return []
    data = _load_object(body)
    stores: List[Store] = []
    for entry in _list(data.get("items")):
        entry = _dict(entry)
        item = _dict(entry.get("item"))
        store_id = str(item.get("item_id") or "")
        if not store_id:
            logger.debug("Skipping item without item_id: %s", entry)
            continue
        rating = _dict(item.get("average_overall_rating")).get("average_overall_rating", 0.0)
        stores.append(
            Store(
                id=store_id,
                name=str(_dict(entry.get("store")).get("store_name", "") or ""),
                rating=float(rating or 0.0),
                price=Price.from_json(item.get("price_including_taxes")),
                available_bags=int(entry.get("items_available", 0) or 0),
            )
        )
    return stores


# ---- Orders ------------------------------------------------------------------

@dataclass(frozen=True)
class PickupDetails:
    address: str = ""
    start: Optional[_dt.datetime] = None
    end: Optional[_dt.datetime] = None

    def __str__(self) -> str:
        return f"{self.address} between [{self.start}, {self.end}]"


@dataclass(frozen=True)
class Order:
    """An open order waiting for pickup.  Identity is the order id."""

    id: str
    store_id: str = field(default="", compare=False)
    store_name: str = field(default="", compare=False)
    state: str = field(default="", compare=False)
    pickup: PickupDetails = field(default_factory=PickupDetails, compare=False)
    price: Price = field(default_factory=Price, compare=False)
    quantity: int = field(default=0, compare=False)

    def __str__(self) -> str:
        return (
            f"Order # {self.id}, Store # {self.store_id}, "
            f"with {self.quantity} bags to pick at {self.pickup}"
        )


def orders_from_response(body: Body) -> List[Order]:
    """Parse the active orders response (``orders[]``)."""
    if not body:
        return []
    data = _load_object(body)
    orders: List[Order] = []
    for raw in _list(data.get("orders")):
        raw = _dict(raw)
        order_id = str(raw.get("order_id") or "")
        if not order_id:
            continue
        location = _dict(_dict(raw.get("pickup_location")).get("address"))
        interval = _dict(raw.get("pickup_interval"))
        orders.append(
            Order(
                id=order_id,
                store_id=str(raw.get("store_id", "") or ""),
                store_name=str(raw.get("store_name", "") or ""),
                state=str(raw.get("state", "") or ""),
                pickup=PickupDetails(
                    address=str(location.get("address_line", "") or ""),
                    start=_parse_time(interval.get("start")),
                    end=_parse_time(interval.get("end")),
                ),
                price=Price.from_json(raw.get("price_including_taxes")),
                quantity=int(raw.get("quantity", 0) or 0),
            )
        )
    return orders


# ---- Payments ----------------------------------------------------------------

class PaymentProvider(str, enum.Enum):
    CASH = "CASH"
    BRAINTREE = "BRAINTREE"
    ADYEN = "ADYEN"
    SATISPAY = "SATISPAY"

    @property
    def authorization_payload_type(self) -> str:
        return f"{self.value.lower()}AuthorizationPayload"

    @classmethod
    def parse(cls, value: str) -> "PaymentProvider":
        try:
            return cls(value)
        except ValueError as e:
            raise ResponseParseError(f"unknown payment provider {value}") from e


class PaymentType(str, enum.Enum):
    CREDITCARD = "CREDITCARD"
    GOOGLEPAY = "GOOGLEPAY"
    BCMCMOBILE = "BCMCMOBILE"
    BCMCCARD = "BCMCCARD"
    VIPPS = "VIPPS"
    TWINT = "TWINT"
    MBWAY = "MBWAY"
    SWISH = "SWISH"
    BLIK = "BLIK"
    VENMO = "VENMO"
    FAKE_DOOR = "FAKE_DOOR"
    PAYPAL = "PAYPAL"
    SOFORT = "SOFORT"

    @classmethod
    def parse(cls, value: str) -> "PaymentType":
        try:
            return cls(value)
        except ValueError as e:
            raise ResponseParseError(f"unknown payment type {value}") from e


@dataclass(frozen=True)
class PaymentMethod:
    # Most fields are optional in the API answer.
    id: str = ""
    internal_type: str = ""
    adyen_api_payload: str = ""
    display_value: str = ""
    save_payment_method: str = ""
    payment_provider: PaymentProvider = PaymentProvider.CASH
    payment_type: PaymentType = PaymentType.CREDITCARD
    is_preferred: bool = False

    def __str__(self) -> str:
        return f"{self.payment_type.value}{self.display_value}, isPreferred={self.is_preferred}"


def payment_methods_from_response(body: Body) -> List[PaymentMethod]:
    if not body:
        return []
    data = _load_object(body)
    methods: List[PaymentMethod] = []
    for raw in _list(data.get("payment_methods")):
        raw = _dict(raw)
        kwargs: Dict[str, Any] = {
            "id": str(raw.get("identifier", "") or ""),
            "internal_type": str(raw.get("type", "") or ""),
            "adyen_api_payload": str(raw.get("adyen_api_payload", "") or ""),
            "display_value": str(raw.get("display_value", "") or ""),
            "save_payment_method": str(raw.get("save_payment_method", "") or ""),
            "is_preferred": bool(raw.get("preferred", False)),
        }
        if raw.get("payment_provider"):
            kwargs["payment_provider"] = PaymentProvider.parse(raw["payment_provider"])
        if raw.get("payment_type"):
            kwargs["payment_type"] = PaymentType.parse(raw["payment_type"])
        methods.append(PaymentMethod(**kwargs))
    return methods


@dataclass(frozen=True)
class ReservedOrder:
    id: str = ""
    store_id: str = ""
    quantity: int = 0

    def __str__(self) -> str:
        return f"Order # {self.id} in store {self.store_id} with {self.quantity} bags"


def reserved_order_from_response(body: Body) -> ReservedOrder:
    if not body:
        return ReservedOrder()
    data = _load_object(body)
    state = data.get("state")
    if state != "SUCCESS":
        raise OrderError(f"reserved order state {state} is not OK")
    order = _dict(data.get("order"))
    return ReservedOrder(
        id=str(order.get("id", "") or ""),
        store_id=str(order.get("item_id", "") or ""),
        quantity=int(_dict(order.get("order_line")).get("quantity", 0) or 0),
    )


@dataclass(frozen=True)
class OrderPayment:
    id: str = ""
    order_id: str = ""
    payment_provider: Optional[PaymentProvider] = None
    state: str = ""


def order_payment_from_response(body: Body) -> OrderPayment:
    data = _load_object(body)
    provider = data.get("payment_provider")
    return OrderPayment(
        id=str(data.get("payment_id", "") or ""),
        order_id=str(data.get("order_id", "") or ""),
        payment_provider=PaymentProvider.parse(provider) if provider else None,
        state=str(data.get("state", "") or ""),
    )


# ---- Change detection --------------------------------------------------------

def same_records(previous: Iterable[Any], current: Iterable[Any]) -> bool:
    """True when both collections hold the same records, ignoring order."""
    return set(previous) == set(current)


__all__ = [
    "Price",
    "Store",
    "stores_from_response",
    "PickupDetails",
    "Order",
    "orders_from_response",
    "PaymentProvider",
    "PaymentType",
    "PaymentMethod",
    "payment_methods_from_response",
    "ReservedOrder",
    "reserved_order_from_response",
    "OrderPayment",
    "order_payment_from_response",
    "same_records",
]
