"""HTTP adapter for the payment processor sandbox, with retries and a circuit breaker.

This module implements the ``PaymentProcessor`` port against the sandbox
service in ``services/payments`` using ``httpx``. It adds:

- Request correlation: propagates ``X-Request-ID`` from the ContextVar set
    by the gateway middleware.
- A circuit breaker for the processor to avoid hammering an unhealthy
    dependency, with HALF_OPEN probing after a timeout.
- Simple retry policy with exponential backoff for transport errors and 5xx.
- Idempotency: authorization requests carry an ``Idempotency-Key`` header so
    a retried request never creates a second authorization.
- Webhook verification: sandbox events are signed with HMAC-SHA256 over the
    raw body using ``PAYMENTS_WEBHOOK_SECRET``.
"""

import hashlib
import hmac
import json
import threading
import time
from typing import Iterable, Optional

import httpx
from django.conf import settings

from gateway.middleware import REQUEST_ID_CTX

from .domain import (
    AuthorizationOutcome,
    MerchantAccountStatus,
    PaymentEvent,
    PaymentEventType,
    PaymentHandle,
)
from .errors import NotFoundError, PaymentFailed

SIGNATURE_HEADER = "X-Sandbox-Signature"

_OUTCOMES = {
    "authorized": AuthorizationOutcome.AUTHORIZED,
    "declined": AuthorizationOutcome.DECLINED,
    "cancelled": AuthorizationOutcome.DECLINED,
    "requires_confirmation": AuthorizationOutcome.PENDING,
}


# ---------------- Circuit Breaker ---------------- #

class CircuitOpenError(RuntimeError):
    """Raised instead of calling a dependency whose circuit is open."""


class CircuitBreaker:
    """Minimal circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED → OPEN when failures reach ``fail_threshold``.
    - OPEN → HALF_OPEN after ``reset_timeout`` seconds.
    - HALF_OPEN → CLOSED on a successful probe; stays HALF_OPEN while a
      single probe is in flight; transitions back to OPEN on failure.

    This implementation is thread-safe via an internal lock.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"  # CLOSED | OPEN | HALF_OPEN
        self._opened_at = 0.0
        self._probe_in_flight = False

    @property
    def state(self) -> str:
        with self._lock:
            if self._state == "OPEN" and (time.monotonic() - self._opened_at) >= self.reset_timeout:
                self._state = "HALF_OPEN"
                self._probe_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Check the breaker before a protected call.

        Raises:
            CircuitOpenError: If the circuit is OPEN or a HALF_OPEN probe is busy.
        """
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise CircuitOpenError(f"{self.name}: CIRCUIT_OPEN")
            if st == "HALF_OPEN":
                if self._probe_in_flight:
                    raise CircuitOpenError(f"{self.name}: CIRCUIT_HALF_OPEN_BUSY")
                self._probe_in_flight = True
            return st

    def on_success(self):
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._probe_in_flight = False

    def on_failure(self):
        with self._lock:
            self._failures += 1
            if self._state == "HALF_OPEN" or (self._failures >= self.fail_threshold and self._state != "OPEN"):
                self._state = "OPEN"
                self._opened_at = time.monotonic()
                self._probe_in_flight = False

    def on_finish(self):
        with self._lock:
            if self._state == "HALF_OPEN":
                self._probe_in_flight = False

    def snapshot(self) -> dict:
        return {"name": self.name, "state": self.state, "failures": self._failures}


payments_cb = CircuitBreaker(
    "payments",
    getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
    getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
)


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    """Build base headers including X-Request-ID and any extras."""
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _retry_policy():
    """Return retry configuration as (max_retries, backoff_base_seconds, max_sleep)."""
    return (
        max(1, getattr(settings, "HTTP_RETRY_MAX", 3)),
        getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15),
        getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5),
    )


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    # Retry only on transport errors or 5xx
    if exc is not None:
        return True
    return resp is not None and 500 <= resp.status_code < 600


def _detail(resp) -> Optional[str]:
    try:
        body = resp.json()
    except (ValueError, AttributeError):
        return None
    return body.get("detail") if isinstance(body, dict) else None


def _send(method: str, url: str, timeout: float, payload: Optional[dict] = None,
          headers: Optional[dict] = None, expected: Iterable[int] = (200, 201)):
    """Send a request through the payments circuit breaker with retries.

    Responses with a status in ``expected`` or any 4xx are business answers:
    they close the circuit and are returned to the caller. Transport errors
    and 5xx are retried with exponential backoff and count as circuit
    failures once retries are exhausted.

    Raises:
        CircuitOpenError: The circuit is open.
        httpx.RequestError: Transport error after the last retry.
        httpx.HTTPStatusError: 5xx after the last retry.
    """
    max_retries, backoff, cap = _retry_policy()
    state = payments_cb.before_call()
    headers = _request_headers({**(headers or {}), "X-Circuit-State": state, "X-Retry-Count": "0"})
    tries = 0
    try:
        with httpx.Client(timeout=timeout) as client:
            while True:
                resp = None
                exc = None
                try:
                    resp = client.request(method, url, json=payload, headers=headers)
                    if resp.status_code in expected or 400 <= resp.status_code < 500:
                        payments_cb.on_success()
                        return resp
                except httpx.RequestError as e:
                    exc = e

                tries += 1
                headers["X-Retry-Count"] = str(tries)
                if tries >= max_retries or not _should_retry(resp, exc):
                    payments_cb.on_failure()
                    if exc:
                        raise exc
                    resp.raise_for_status()
                    return resp

                sleep_s = backoff * (2 ** (tries - 1))  # exponential backoff
                if sleep_s > 0:
                    time.sleep(min(sleep_s, cap))
    finally:
        payments_cb.on_finish()


def _raise_for_refusal(resp, resource: str, ref: str, stage: str) -> None:
    """Map a 4xx answer from the sandbox to a domain error.

    404 means the referenced object is unknown; any other 4xx is the
    processor refusing the request.
    """
    if resp.status_code == 404:
        raise NotFoundError(resource, ref)
    if 400 <= resp.status_code < 500:
        raise PaymentFailed(stage=stage, reason=_detail(resp) or str(resp.status_code))


def sign_payload(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


# ---------------- Payments Adapter ---------------- #

class HttpPaymentProcessor:
    """``PaymentProcessor`` backed by the sandbox service over HTTP."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None, webhook_secret: str | None = None):
        self.base_url = (base_url or settings.PAYMENTS_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS
        self.webhook_secret = webhook_secret if webhook_secret is not None else getattr(settings, "PAYMENTS_WEBHOOK_SECRET", "")

    def create_authorization(self, amount_minor, currency, merchant_account, application_fee_minor,
                             metadata=None, idempotency_key=None) -> PaymentHandle:
        """Create an authorization.

        Business mappings:
        - 200/201 → ``PaymentHandle``
        - other 4xx → ``PaymentFailed`` (e.g. merchant account not enabled)
        """
        payload = {
            "amount_minor": amount_minor,
            "currency": currency,
            "merchant_account": merchant_account,
            "application_fee_minor": application_fee_minor,
            "metadata": metadata or {},
        }
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        resp = _send("POST", f"{self.base_url}/authorizations", self.timeout, payload, headers)
        if resp.status_code not in (200, 201):
            raise PaymentFailed(
                (metadata or {}).get("order_id"), stage="authorization", reason=_detail(resp) or str(resp.status_code)
            )
        data = resp.json()
        return PaymentHandle(authorization_id=data["authorization_id"], client_secret=data.get("client_secret"))

    def confirm_authorization(self, authorization_id) -> AuthorizationOutcome:
        resp = _send("GET", f"{self.base_url}/authorizations/{authorization_id}", self.timeout)
        _raise_for_refusal(resp, "authorization", authorization_id, stage="confirmation")
        return _OUTCOMES.get(resp.json().get("status"), AuthorizationOutcome.PENDING)

    def cancel_authorization(self, authorization_id) -> None:
        resp = _send("POST", f"{self.base_url}/authorizations/{authorization_id}/cancel", self.timeout)
        # 409: already cancelled
        if resp.status_code != 409:
            _raise_for_refusal(resp, "authorization", authorization_id, stage="cancellation")

    def parse_event(self, payload: bytes, signature) -> PaymentEvent:
        if not self.webhook_secret:
            raise ValueError("WEBHOOK_SECRET_NOT_CONFIGURED")
        expected = sign_payload(payload, self.webhook_secret)
        if not signature or not hmac.compare_digest(expected, signature):
            raise ValueError("INVALID_SIGNATURE")
        data = json.loads(payload)
        try:
            event_type = PaymentEventType(data.get("type"))
        except ValueError:
            event_type = PaymentEventType.OTHER
        return PaymentEvent(type=event_type, object_id=str(data.get("object_id", "")), data=data.get("data") or {})

    def create_merchant_account(self, email: str) -> str:
        resp = _send("POST", f"{self.base_url}/accounts", self.timeout, {"email": email})
        _raise_for_refusal(resp, "merchant_account", email, stage="onboarding")
        return resp.json()["account_ref"]

    def create_onboarding_link(self, account_ref, refresh_url, return_url) -> str:
        resp = _send(
            "POST",
            f"{self.base_url}/accounts/{account_ref}/onboarding-links",
            self.timeout,
            {"refresh_url": refresh_url, "return_url": return_url},
        )
        _raise_for_refusal(resp, "merchant_account", account_ref, stage="onboarding")
        return resp.json()["url"]

    def retrieve_merchant_account(self, account_ref) -> MerchantAccountStatus:
        resp = _send("GET", f"{self.base_url}/accounts/{account_ref}", self.timeout)
        _raise_for_refusal(resp, "merchant_account", account_ref, stage="onboarding")
        data = resp.json()
        return MerchantAccountStatus(
            account_ref=data["account_ref"],
            charges_enabled=bool(data.get("charges_enabled")),
            payouts_enabled=bool(data.get("payouts_enabled")),
            details_submitted=bool(data.get("details_submitted")),
        )
