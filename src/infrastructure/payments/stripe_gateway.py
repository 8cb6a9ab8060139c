# src/infrastructure/payments/stripe_gateway.py

import hashlib
import os
from dataclasses import dataclass

import stripe

from src.domain.exceptions import PaymentVerificationError


PAID_EVENT_TYPES = {"checkout.session.completed"}


@dataclass(frozen=True)
class PaymentSignal:
    """A verified, confirmed payment for a booking (or one participant's share)."""

    provider: str
    payment_id: str
    booking_id: str
    participant_email: str | None
    payload_hash: str


class StripeWebhookVerifier:
    """
    Turns a signed Stripe webhook into a confirmed-payment signal.
    Checkout sessions carry booking_id (and optionally participant_email)
    in their metadata. Capture and refunds stay with Stripe.
    """

    provider = "STRIPE"

    def __init__(self, endpoint_secret: str | None = None):
        self.endpoint_secret = endpoint_secret or os.getenv("STRIPE_WEBHOOK_SECRET")

    def verify(self, payload: bytes, sig_header: str | None) -> PaymentSignal | None:
        """
        Returns None for well-signed events that are not payment
        confirmations.
        """
        if not self.endpoint_secret:
            raise PaymentVerificationError("Webhook secret not configured (STRIPE_WEBHOOK_SECRET)")
        if not sig_header:
            raise PaymentVerificationError("Missing Stripe-Signature header")

        try:
            event = stripe.Webhook.construct_event(payload, sig_header, self.endpoint_secret)
        except Exception as exc:
            raise PaymentVerificationError("Invalid webhook signature") from exc

        if event.get("type") not in PAID_EVENT_TYPES:
            return None

        session = event["data"]["object"]
        meta = session.get("metadata", {}) or {}
        booking_id = meta.get("booking_id")
        if not booking_id:
            raise PaymentVerificationError("Checkout session has no booking_id metadata")

        return PaymentSignal(
            provider=self.provider,
            payment_id=session.get("payment_intent") or session.get("id") or event.get("id"),
            booking_id=booking_id,
            participant_email=meta.get("participant_email") or None,
            payload_hash=hashlib.sha256(payload).hexdigest(),
        )
