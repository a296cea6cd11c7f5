from __future__ import annotations

import hashlib
import hmac
import json
import logging
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from rewardsync.config import settings
from rewardsync.errors import MalformedWrite, NotEligible
from rewardsync.keys import resolve_key
from rewardsync.models import TIERS, Tier
from rewardsync.rewards import (
    IdempotentRewardApplier,
    RewardResult,
    payment_credit,
    tier_activation,
)

log = logging.getLogger("rewardsync.payments")

STARS_CURRENCY = "XTR"
COINS_KIND = "coins"


def sign_body(body: bytes | str, secret: str | None = None) -> str:
    secret = settings.PAYMENTS_WEBHOOK_SECRET if secret is None else secret
    raw = body.encode("utf-8") if isinstance(body, str) else body
    return hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()


def verify_body(body: bytes | str, signature: str, secret: str | None = None) -> bool:
    return hmac.compare_digest(signature or "", sign_body(body, secret))


class PaymentEvent(BaseModel):
    """Payment notification, from the provider webhook or a Telegram payment."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    invoice_id: str = Field(alias="invoiceId", min_length=1)
    user_id: str = Field(alias="userId", min_length=1)
    amount: int = Field(gt=0)
    status: Literal["paid", "failed", "cancelled", "pending"] = "paid"
    transaction_id: Optional[str] = Field(default=None, alias="transactionId")
    kind: str = COINS_KIND
    method: Literal["stars", "inr"] = "stars"

    @field_validator("user_id", "invoice_id", mode="before")
    @classmethod
    def _stringify(cls, v):
        return str(v).strip() if v is not None else v

    @field_validator("kind", "method", "status", mode="before")
    @classmethod
    def _lower(cls, v):
        return str(v).strip().lower() if v is not None else v

    @field_validator("kind")
    @classmethod
    def _known_kind(cls, v: str) -> str:
        if v == COINS_KIND or v in {tier.value for tier in Tier if tier is not Tier.FREE}:
            return v
        raise ValueError(f"unknown payment kind: {v}")

    @property
    def event_id(self) -> str:
        return f"payment:{self.transaction_id or self.invoice_id}"

    @property
    def coins(self) -> int:
        rate = settings.STARS_TO_COINS if self.method == "stars" else settings.INR_TO_COINS
        return self.amount * rate

    @classmethod
    def from_webhook(cls, data: Dict[str, Any]) -> "PaymentEvent":
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise MalformedWrite(f"invalid payment payload: {exc.errors()[0]['msg']}") from exc

    @classmethod
    def from_telegram(
        cls,
        *,
        user_id: int | str,
        invoice_payload: str,
        total_amount: int,
        currency: str,
        charge_id: str,
    ) -> "PaymentEvent":
        kind = parse_invoice_payload(invoice_payload)
        method = "stars" if currency.upper() == STARS_CURRENCY else "inr"
        return cls.from_webhook(
            {
                "invoiceId": invoice_payload,
                "userId": user_id,
                "amount": total_amount,
                "status": "paid",
                "transactionId": charge_id,
                "kind": kind,
                "method": method,
            }
        )


def parse_invoice_payload(payload: str) -> str:
    """Invoice payloads look like ``coins`` or ``tier1:<nonce>``; return the kind."""

    if not payload:
        raise MalformedWrite("invoice payload is empty")
    text = payload.strip()
    if text.startswith("{"):
        try:
            text = str(json.loads(text).get("kind", ""))
        except (ValueError, AttributeError) as exc:
            raise MalformedWrite("invoice payload is not valid JSON") from exc
    kind = text.split(":", 1)[0].strip().lower()
    if kind != COINS_KIND and kind not in {tier.value for tier in Tier if tier is not Tier.FREE}:
        raise MalformedWrite(f"unknown invoice kind: {kind!r}")
    return kind


def check_tier_price(event: PaymentEvent) -> None:
    config = TIERS[Tier(event.kind)]
    if event.method == "stars" and event.amount != config.price_stars:
        raise NotEligible(
            f"{event.kind} costs {config.price_stars} stars, got {event.amount}",
            key=resolve_key(event.user_id),
        )


async def process_payment(
    applier: IdempotentRewardApplier,
    event: PaymentEvent,
) -> Optional[RewardResult]:
    """Credit a paid event once; other statuses are acknowledged and ignored."""

    if event.status != "paid":
        log.info("payment %s for %s ignored (status=%s)", event.invoice_id, event.user_id, event.status)
        return None

    key = resolve_key(event.user_id)
    if event.kind == COINS_KIND:
        reward = payment_credit(event.coins)
    else:
        check_tier_price(event)
        reward = tier_activation(event.kind)

    result = await applier.apply_reward(key, event.event_id, reward)
    log.info(
        "payment %s kind=%s user=%s outcome=%s",
        event.event_id,
        event.kind,
        event.user_id,
        result.outcome.value,
    )
    return result


__all__ = [
    "COINS_KIND",
    "PaymentEvent",
    "STARS_CURRENCY",
    "check_tier_price",
    "parse_invoice_payload",
    "process_payment",
    "sign_body",
    "verify_body",
]
