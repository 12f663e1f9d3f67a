"""Pydantic models for exchange payloads.

The exchange mixes string and numeric encodings for the same field across
endpoints, so models coerce loosely and ignore unknown keys.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PayloadValidationError

from .errors import ValidationError
from .logging_setup import logger

M = TypeVar("M", bound=BaseModel)


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, coerce_numbers_to_str=True)


class OrderItem(_Payload):
    """One entry of the order list or an order detail."""
    id: str
    item_id: Optional[str] = Field(default=None, alias="itemId")
    user_id: Optional[str] = Field(default=None, alias="userId")
    target_user_id: Optional[str] = Field(default=None, alias="targetUserId")
    status: int = 0
    side: Optional[int] = None
    token_id: Optional[str] = Field(default=None, alias="tokenId")
    currency_id: Optional[str] = Field(default=None, alias="currencyId")
    price: Optional[Decimal] = None
    amount: Optional[Decimal] = None
    quantity: Optional[Decimal] = None
    create_date: Optional[str] = Field(default=None, alias="createDate")

    @field_validator("price", "amount", "quantity", mode="before")
    @classmethod
    def _blank_decimal(cls, v: Any) -> Any:
        return None if v in ("", None) else v


class OrderPage(_Payload):
    count: int = 0
    items: List[OrderItem] = Field(default_factory=list)

    @field_validator("items", mode="before")
    @classmethod
    def _valid_items(cls, v: Any) -> Any:
        return parse_list(OrderItem, v or [])


class ChatItem(_Payload):
    id: str
    message: str = ""
    user_id: Optional[str] = Field(default=None, alias="userId")
    content_type: Optional[str] = Field(default=None, alias="contentType")
    create_date: Optional[str] = Field(default=None, alias="createDate")
    msg_type: Optional[int] = Field(default=None, alias="msgType")

    @model_validator(mode="before")
    @classmethod
    def _fallback_id(cls, data: Any) -> Any:
        # system notices can arrive without an id
        if isinstance(data, dict) and not data.get("id"):
            if data.get("msgUuid"):
                data = {**data, "id": data["msgUuid"]}
            elif data.get("createDate") and data.get("userId"):
                data = {**data, "id": f"{data['createDate']}_{data['userId']}"}
        return data

    @field_validator("message", mode="before")
    @classmethod
    def _null_message(cls, v: Any) -> Any:
        return v or ""


class AdItem(_Payload):
    id: str
    user_id: Optional[str] = Field(default=None, alias="userId")
    token_id: Optional[str] = Field(default=None, alias="tokenId")
    currency_id: Optional[str] = Field(default=None, alias="currencyId")
    side: Optional[int] = None
    price: Decimal
    quantity: Optional[Decimal] = Field(default=None, alias="lastQuantity")
    min_amount: Optional[Decimal] = Field(default=None, alias="minAmount")
    max_amount: Optional[Decimal] = Field(default=None, alias="maxAmount")
    status: Optional[int] = None
    payments: List[str] = Field(default_factory=list)

    @field_validator("payments", mode="before")
    @classmethod
    def _payments(cls, v: Any) -> Any:
        return [str(p) for p in (v or [])]


class PaymentConfig(_Payload):
    payment_name: Optional[str] = Field(default=None, alias="paymentName")


class PaymentMethodItem(_Payload):
    id: str
    payment_type: Optional[str] = Field(default=None, alias="paymentType")
    bank_name: Optional[str] = Field(default=None, alias="bankName")
    account_no: Optional[str] = Field(default=None, alias="accountNo")
    online: Optional[str] = None
    payment_config: Optional[PaymentConfig] = Field(default=None, alias="paymentConfigVo")

    @property
    def name(self) -> str:
        if self.payment_config and self.payment_config.payment_name:
            return self.payment_config.payment_name
        return self.bank_name or ""


class AccountInfo(_Payload):
    user_id: str = Field(alias="userId")
    nick_name: Optional[str] = Field(default=None, alias="nickName")


def extract_list(result: Any, *keys: str) -> List[Dict[str, Any]]:
    """Pull a list out of a result that may be a bare list or a wrapper dict."""
    if isinstance(result, list):
        return result
    if isinstance(result, dict):
        for key in keys:
            value = result.get(key)
            if isinstance(value, list):
                return value
    return []


def parse(model: Type[M], data: Any) -> M:
    """Validate one payload, raising :class:`~p2ptrader.errors.ValidationError` when it is malformed."""
    try:
        return model.model_validate(data or {})
    except PayloadValidationError as e:
        raise ValidationError(f"Malformed {model.__name__} payload: {e.error_count()} invalid field(s)", details={"payload": data}) from e


def parse_list(model: Type[M], items: Any) -> List[M]:
    """Validate list entries one by one; malformed entries are logged and dropped."""
    parsed: List[M] = []
    for item in items or []:
        if isinstance(item, model):
            parsed.append(item)
            continue
        try:
            parsed.append(model.model_validate(item))
        except PayloadValidationError as e:
            logger.warning(f"Malformed payload entry skipped | model={model.__name__} errors={e.error_count()} entry={item!r}")
    return parsed
