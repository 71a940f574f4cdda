"""Stripe implementation of the ``PaymentProcessor`` port.

Charges are PaymentIntents created on the platform account with
``transfer_data.destination`` set to the shop's Connect Express account
and the platform cut as ``application_fee_amount``. The mobile client
confirms the intent with the returned client secret; the outcome reaches
us through ``confirm_authorization`` (polled) or the signed webhook.
"""

import logging

import stripe

from .domain import (
    AuthorizationOutcome,
    MerchantAccountStatus,
    PaymentEvent,
    PaymentEventType,
    PaymentHandle,
)
from .errors import PaymentFailed

logger = logging.getLogger("orders")

_EVENT_TYPES = {
    "payment_intent.succeeded": PaymentEventType.AUTHORIZATION_SUCCEEDED,
    "payment_intent.payment_failed": PaymentEventType.AUTHORIZATION_FAILED,
    "account.updated": PaymentEventType.ACCOUNT_UPDATED,
}

_PENDING_STATES = {"requires_confirmation", "requires_action", "processing"}


def intent_outcome(intent) -> AuthorizationOutcome:
    """Map a PaymentIntent's status to an authorization outcome.

    ``requires_payment_method`` is the initial state too, so it only counts
    as a decline once a payment attempt has failed.
    """
    status = intent["status"]
    if status in ("succeeded", "requires_capture"):
        return AuthorizationOutcome.AUTHORIZED
    if status == "canceled":
        return AuthorizationOutcome.DECLINED
    if status == "requires_payment_method" and "last_payment_error" in intent and intent["last_payment_error"]:
        return AuthorizationOutcome.DECLINED
    return AuthorizationOutcome.PENDING


class StripePaymentProcessor:
    def __init__(self, api_key: str, webhook_secret: str):
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    def create_authorization(self, amount_minor, currency, merchant_account, application_fee_minor,
                             metadata=None, idempotency_key=None) -> PaymentHandle:
        try:
            intent = stripe.PaymentIntent.create(
                api_key=self.api_key,
                amount=amount_minor,
                currency=currency,
                automatic_payment_methods={"enabled": True},
                transfer_data={"destination": merchant_account},
                application_fee_amount=application_fee_minor,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
            )
        except stripe.InvalidRequestError as e:
            # e.g. destination account cannot receive transfers
            logger.warning("payment intent rejected", extra={"merchant_account": merchant_account, "error": str(e)})
            raise PaymentFailed((metadata or {}).get("order_id"), stage="authorization", reason=e.code or "invalid_request")
        return PaymentHandle(authorization_id=intent["id"], client_secret=intent["client_secret"])

    def confirm_authorization(self, authorization_id) -> AuthorizationOutcome:
        intent = stripe.PaymentIntent.retrieve(authorization_id, api_key=self.api_key)
        return intent_outcome(intent)

    def cancel_authorization(self, authorization_id) -> None:
        intent = stripe.PaymentIntent.retrieve(authorization_id, api_key=self.api_key)
        status = intent["status"]
        if status == "canceled":
            return
        if status == "succeeded":
            # captured automatically; the only way back is a refund
            stripe.Refund.create(
                api_key=self.api_key,
                payment_intent=authorization_id,
                reason="requested_by_customer",
                refund_application_fee=True,
                reverse_transfer=True,
            )
            logger.info("payment refunded", extra={"authorization_id": authorization_id})
            return
        stripe.PaymentIntent.cancel(authorization_id, api_key=self.api_key)

    def parse_event(self, payload: bytes, signature) -> PaymentEvent:
        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError:
            raise ValueError("INVALID_SIGNATURE")
        obj = event["data"]["object"]
        return PaymentEvent(
            type=_EVENT_TYPES.get(event["type"], PaymentEventType.OTHER),
            object_id=obj["id"],
            data={"event_id": event["id"], "event_type": event["type"]},
        )

    def create_merchant_account(self, email: str) -> str:
        account = stripe.Account.create(
            api_key=self.api_key,
            type="express",
            email=email,
            capabilities={"card_payments": {"requested": True}, "transfers": {"requested": True}},
        )
        return account["id"]

    def create_onboarding_link(self, account_ref, refresh_url, return_url) -> str:
        link = stripe.AccountLink.create(
            api_key=self.api_key,
            account=account_ref,
            refresh_url=refresh_url,
            return_url=return_url,
            type="account_onboarding",
        )
        return link["url"]

    def retrieve_merchant_account(self, account_ref) -> MerchantAccountStatus:
        account = stripe.Account.retrieve(account_ref, api_key=self.api_key)
        return MerchantAccountStatus(
            account_ref=account["id"],
            charges_enabled=bool(account["charges_enabled"]),
            payouts_enabled=bool(account["payouts_enabled"]),
            details_submitted=bool(account["details_submitted"]),
        )
