"""
Translation of Stripe payloads into the engine's vocabulary.

Stripe objects arrive in two shapes: raw webhook JSON and objects returned by
stripe.Subscription.retrieve. Both are read as plain dicts here so the state
machine never sees provider types.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from upestate_billing.domain.subscriptions import SubscriptionStatus, parse_tier
from upestate_billing.errors import MalformedEventError
from upestate_billing.utils.clock import from_unix

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_DELETED = "subscription.deleted"
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"


PROVIDER_EVENT_KINDS = {
    "customer.subscription.created": EventKind.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": EventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventKind.SUBSCRIPTION_DELETED,
    "invoice.payment_succeeded": EventKind.PAYMENT_SUCCEEDED,
    "invoice.paid": EventKind.PAYMENT_SUCCEEDED,
    "invoice.payment_failed": EventKind.PAYMENT_FAILED,
}

# Stripe statuses outside our vocabulary collapse onto the closest local state.
PROVIDER_STATUS_MAP = {
    "trialing": SubscriptionStatus.TRIALING,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.INCOMPLETE,
}


@dataclass(frozen=True)
class ProviderSubscriptionSnapshot:
    """The provider's view of one subscription at a point in time."""
    external_subscription_id: str
    external_customer_id: Optional[str]
    status: SubscriptionStatus
    tier: Optional[str]
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool = False
    user_id: Optional[int] = None


@dataclass(frozen=True)
class BillingEvent:
    """A provider notification normalised for the state machine."""
    kind: EventKind
    external_event_id: str
    provider_type: str
    subscription_ref: Optional[str]
    customer_ref: Optional[str] = None
    user_id: Optional[int] = None
    snapshot: Optional[ProviderSubscriptionSnapshot] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None


def _ref(value) -> Optional[str]:
    """Stripe fields may hold an id or an expanded object."""
    if value is None:
        return None
    if isinstance(value, Mapping):
        return value.get("id")
    return str(value)


def _user_id(metadata: Optional[Mapping]) -> Optional[int]:
    if not metadata:
        return None
    raw = metadata.get("user_id")
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        logger.warning("Ignoring non-integer user_id in provider metadata", extra={"user_id": raw})
        return None


def stripe_object_to_dict(obj) -> Dict[str, Any]:
    """
    Plain-dict view of a Stripe object. Older stripe-python objects are dict
    subclasses; newer ones serialise to JSON through str().
    """
    if isinstance(obj, dict):
        return obj
    return json.loads(str(obj))


def snapshot_from_subscription(obj: Mapping, price_tiers: Mapping[str, str]) -> ProviderSubscriptionSnapshot:
    """Build a snapshot from a Stripe subscription object."""
    subscription_id = obj.get("id")
    if not subscription_id:
        raise MalformedEventError("Subscription object has no id")

    provider_status = obj.get("status")
    status = PROVIDER_STATUS_MAP.get(provider_status)
    if status is None:
        raise MalformedEventError(f"Unknown provider subscription status {provider_status!r}")

    metadata = obj.get("metadata") or {}
    items = (obj.get("items") or {}).get("data") or []
    first_item = items[0] if items else {}

    tier = parse_tier(metadata.get("tier"))
    tier = tier.value if tier else None
    if tier is None:
        price_id = _ref((first_item.get("price") or {}) if first_item else None)
        tier = price_tiers.get(price_id) if price_id else None

    # Period bounds moved onto subscription items in newer API versions.
    period_start = obj.get("current_period_start") or first_item.get("current_period_start")
    period_end = obj.get("current_period_end") or first_item.get("current_period_end")

    return ProviderSubscriptionSnapshot(
        external_subscription_id=subscription_id,
        external_customer_id=_ref(obj.get("customer")),
        status=status,
        tier=tier,
        current_period_start=from_unix(period_start),
        current_period_end=from_unix(period_end),
        cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
        user_id=_user_id(metadata),
    )


def _invoice_subscription(invoice: Mapping) -> Tuple[Optional[str], Optional[Mapping]]:
    details = invoice.get("subscription_details") or {}
    parent_details = (invoice.get("parent") or {}).get("subscription_details") or {}
    subscription_id = (
        _ref(invoice.get("subscription"))
        or _ref(parent_details.get("subscription"))
    )
    metadata = details.get("metadata") or parent_details.get("metadata")
    return subscription_id, metadata


def _invoice_period(invoice: Mapping) -> Tuple[Optional[datetime], Optional[datetime]]:
    lines = (invoice.get("lines") or {}).get("data") or []
    periods = [line["period"] for line in lines if line.get("period")]
    if not periods:
        return None, None
    latest = max(periods, key=lambda period: period.get("end") or 0)
    return from_unix(latest.get("start")), from_unix(latest.get("end"))


def parse_envelope(raw_body: bytes) -> Tuple[str, str, Dict[str, Any]]:
    """Return (event id, event type, data.object) from a webhook body."""
    try:
        event = json.loads(raw_body)
    except (TypeError, ValueError) as exc:
        raise MalformedEventError(f"Webhook body is not valid JSON: {exc}")

    if not isinstance(event, dict):
        raise MalformedEventError("Webhook body is not a JSON object")

    event_id = event.get("id")
    event_type = event.get("type")
    if not event_id or not event_type:
        raise MalformedEventError("Webhook body is missing id or type")

    data_object = (event.get("data") or {}).get("object")
    if not isinstance(data_object, dict):
        raise MalformedEventError("Webhook body has no data.object", event_id=event_id)
    return event_id, event_type, data_object


def to_billing_event(event_id: str, event_type: str, data_object: Mapping,
                     price_tiers: Mapping[str, str]) -> Optional[BillingEvent]:
    """
    Normalise a provider event. Returns None for event types the engine does
    not act on.
    """
    kind = PROVIDER_EVENT_KINDS.get(event_type)
    if kind is None:
        return None

    if kind in (EventKind.PAYMENT_SUCCEEDED, EventKind.PAYMENT_FAILED):
        subscription_id, metadata = _invoice_subscription(data_object)
        if subscription_id is None:
            # One-off invoices carry no subscription and do not affect entitlement.
            return None
        period_start, period_end = _invoice_period(data_object)
        return BillingEvent(
            kind=kind,
            external_event_id=event_id,
            provider_type=event_type,
            subscription_ref=subscription_id,
            customer_ref=_ref(data_object.get("customer")),
            user_id=_user_id(metadata),
            period_start=period_start,
            period_end=period_end,
        )

    try:
        snapshot = snapshot_from_subscription(data_object, price_tiers)
    except MalformedEventError as exc:
        exc.event_id = event_id
        raise
    return BillingEvent(
        kind=kind,
        external_event_id=event_id,
        provider_type=event_type,
        subscription_ref=snapshot.external_subscription_id,
        customer_ref=snapshot.external_customer_id,
        user_id=snapshot.user_id,
        snapshot=snapshot,
    )


def subscription_ref_from_payload(payload: str) -> Tuple[Optional[str], Optional[int]]:
    """
    Best-effort (subscription id, user id) extraction from a stored payload,
    used to reconcile subscriptions whose webhook processing failed or stalled.
    """
    try:
        _, event_type, data_object = parse_envelope(payload.encode("utf-8"))
    except MalformedEventError:
        return None, None

    kind = PROVIDER_EVENT_KINDS.get(event_type)
    if kind in (EventKind.PAYMENT_SUCCEEDED, EventKind.PAYMENT_FAILED):
        subscription_id, metadata = _invoice_subscription(data_object)
        return subscription_id, _user_id(metadata)
    if kind is not None:
        return data_object.get("id"), _user_id(data_object.get("metadata"))
    return None, None
