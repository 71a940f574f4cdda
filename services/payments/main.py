"""Payment processor sandbox built with FastAPI.

Stands in for the real payment processor during development and tests:
authorizations are created by the web app, confirmed by the client with a
test payment method, and their outcome is pushed back to the web app as an
HMAC-signed webhook. Connected merchant accounts go through a simulated
onboarding flow that flips their capability flags and emits
``account.updated``.

Test payment methods: ``pm_card_visa`` authorizes; ``pm_card_chargeDeclined``
and ``pm_card_insufficientFunds`` decline.

Validation is performed with Pydantic models, while persistence is
delegated to the SQLAlchemy-backed repository in ``repo``.
"""

import hashlib
import hmac
import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from typing import Annotated, Optional
from urllib.parse import urlencode

import httpx
from fastapi import BackgroundTasks, FastAPI, Header, HTTPException, Request, Response
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field, model_validator
from pythonjsonlogger.json import JsonFormatter
from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError, OperationalError

from repo import (
    AUTHORIZED,
    CANCELLED,
    DECLINED,
    REQUIRES_CONFIRMATION,
    IdempotencyKey,
    PaymentsRepo,
    canonical_hash,
    engine,
    get_session,
)

WEBHOOK_URL = os.getenv("WEBHOOK_URL", "")
WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "")
WEBHOOK_RETRIES = int(os.getenv("WEBHOOK_RETRIES", "3"))
PUBLIC_URL = os.getenv("PUBLIC_URL", "http://localhost:9002").rstrip("/")
SIGNATURE_HEADER = "X-Sandbox-Signature"
DECLINING_METHODS = {"pm_card_chargeDeclined", "pm_card_insufficientFunds"}

logger = logging.getLogger("payments")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())


@asynccontextmanager
async def lifespan(_app: FastAPI):
    # wait briefly until the DB accepts connections
    deadline = time.time() + 30
    while True:
        try:
            with engine.connect() as conn:
                conn.execute(text("select 1"))
            break
        except OperationalError:
            if time.time() > deadline:
                raise
            time.sleep(1)
    yield


app = FastAPI(title="Payment Processor Sandbox", lifespan=lifespan)


# ---------------- schemas ---------------- #

class AuthorizationRequest(BaseModel):
    amount_minor: int = Field(gt=0)
    currency: str = Field(pattern=r"^[a-z]{3}$")
    merchant_account: str = Field(min_length=1, max_length=40)
    application_fee_minor: int = Field(default=0, ge=0)
    metadata: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def fee_within_amount(self):
        if self.application_fee_minor > self.amount_minor:
            raise ValueError("application_fee_minor exceeds amount_minor")
        return self


class AuthorizationResponse(BaseModel):
    authorization_id: str
    client_secret: str
    status: str
    amount_minor: int
    currency: str
    merchant_account: str
    application_fee_minor: int
    metadata: dict[str, str]


class ConfirmRequest(BaseModel):
    client_secret: str
    payment_method: str = "pm_card_visa"


class AccountRequest(BaseModel):
    email: str = Field(min_length=3, max_length=254)


class AccountResponse(BaseModel):
    account_ref: str
    email: str
    charges_enabled: bool
    payouts_enabled: bool
    details_submitted: bool


class OnboardingLinkRequest(BaseModel):
    refresh_url: str
    return_url: str


def _auth_out(auth) -> AuthorizationResponse:
    return AuthorizationResponse(
        authorization_id=auth.id,
        client_secret=auth.client_secret,
        status=auth.status,
        amount_minor=auth.amount_minor,
        currency=auth.currency,
        merchant_account=auth.merchant_account,
        application_fee_minor=auth.application_fee_minor,
        metadata=auth.meta or {},
    )


def _account_out(acct) -> AccountResponse:
    return AccountResponse(
        account_ref=acct.id,
        email=acct.email,
        charges_enabled=acct.charges_enabled,
        payouts_enabled=acct.payouts_enabled,
        details_submitted=acct.details_submitted,
    )


# ---------------- webhooks ---------------- #

def sign(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def deliver_event(event_type: str, object_id: str, data: dict, request_id: str = "-") -> bool:
    """POST a signed event to ``WEBHOOK_URL``, retrying transport errors and 5xx.

    Returns:
        bool: Whether the web app acknowledged the event.
    """
    if not WEBHOOK_URL:
        logger.info("webhook skipped, no WEBHOOK_URL", extra={"request_id": request_id, "event_type": event_type})
        return False
    body = json.dumps(
        {"id": f"evt_{uuid.uuid4().hex}", "type": event_type, "object_id": object_id, "data": data},
        separators=(",", ":"),
    ).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        SIGNATURE_HEADER: sign(body, WEBHOOK_SECRET),
        "X-Request-ID": request_id,
    }
    with httpx.Client(timeout=5.0) as client:
        for attempt in range(1, WEBHOOK_RETRIES + 1):
            try:
                resp = client.post(WEBHOOK_URL, content=body, headers=headers)
                if resp.status_code < 500:
                    ok = resp.status_code < 300
                    logger.info(
                        "webhook delivered" if ok else "webhook rejected",
                        extra={"request_id": request_id, "event_type": event_type, "status": resp.status_code},
                    )
                    return ok
            except httpx.RequestError as e:
                logger.warning(
                    "webhook transport error",
                    extra={"request_id": request_id, "event_type": event_type, "attempt": attempt, "error": str(e)},
                )
            time.sleep(min(0.5 * attempt, 2.0))
    logger.error("webhook delivery gave up", extra={"request_id": request_id, "event_type": event_type})
    return False


# ---------------- endpoints ---------------- #

@app.get("/health")
def health():
    return {"ok": True}


@app.post("/authorizations", response_model=AuthorizationResponse, status_code=201)
def create_authorization(
    req: AuthorizationRequest,
    response: Response,
    idempotency_key: Annotated[Optional[str], Header(alias="Idempotency-Key")] = None,
):
    """Create an authorization with optional idempotency.

    The first request with an ``Idempotency-Key`` creates the authorization
    and binds it to the key; retries with the same payload return the same
    authorization with HTTP 200. Reusing the key with a different payload
    responds with HTTP 409.

    Raises:
        HTTPException: 404 unknown merchant account, 409 account not enabled
            or idempotency conflict.
    """
    repo = PaymentsRepo()
    acct = repo.get_account(req.merchant_account)
    if acct is None:
        raise HTTPException(status_code=404, detail="ACCOUNT_NOT_FOUND")
    if not acct.charges_enabled:
        raise HTTPException(status_code=409, detail="ACCOUNT_NOT_ENABLED")

    if not idempotency_key:
        return _auth_out(
            repo.create_authorization(
                req.amount_minor, req.currency, req.merchant_account, req.application_fee_minor, req.metadata
            )
        )

    payload_hash = canonical_hash(req.model_dump())
    with get_session() as s:
        try:
            s.add(IdempotencyKey(key=idempotency_key, request_hash=payload_hash))
            s.commit()
        except IntegrityError:
            s.rollback()
            rec = s.execute(
                select(IdempotencyKey).where(IdempotencyKey.key == idempotency_key).with_for_update()
            ).scalars().first()
            if not rec:
                raise HTTPException(status_code=500, detail="IDEMPOTENCY_LOOKUP_ERROR")
            if rec.request_hash != payload_hash:
                raise HTTPException(status_code=409, detail="IDEMPOTENCY_CONFLICT")
            if rec.authorization_id:
                response.status_code = 200
                return _auth_out(repo.get_authorization(rec.authorization_id))
            # key recorded but nothing created yet: create it now

        auth = repo.create_authorization(
            req.amount_minor, req.currency, req.merchant_account, req.application_fee_minor, req.metadata, session=s
        )
        rec = s.get(IdempotencyKey, idempotency_key)
        rec.authorization_id = auth.id
        s.commit()
        return _auth_out(auth)


@app.get("/authorizations/{auth_id}", response_model=AuthorizationResponse)
def get_authorization(auth_id: str):
    auth = PaymentsRepo().get_authorization(auth_id)
    if auth is None:
        raise HTTPException(status_code=404, detail="AUTHORIZATION_NOT_FOUND")
    return _auth_out(auth)


@app.post("/authorizations/{auth_id}/confirm", response_model=AuthorizationResponse)
def confirm_authorization(auth_id: str, req: ConfirmRequest, request: Request, background: BackgroundTasks):
    """Client-side confirmation with a test payment method.

    Emits ``authorization.succeeded`` or ``authorization.failed``.
    """
    repo = PaymentsRepo()
    auth = repo.get_authorization(auth_id)
    if auth is None:
        raise HTTPException(status_code=404, detail="AUTHORIZATION_NOT_FOUND")
    if not hmac.compare_digest(auth.client_secret, req.client_secret):
        raise HTTPException(status_code=403, detail="INVALID_CLIENT_SECRET")

    new = DECLINED if req.payment_method in DECLINING_METHODS else AUTHORIZED
    if not repo.transition(auth_id, [REQUIRES_CONFIRMATION], new):
        raise HTTPException(status_code=409, detail="AUTHORIZATION_NOT_CONFIRMABLE")

    event_type = "authorization.succeeded" if new == AUTHORIZED else "authorization.failed"
    background.add_task(
        deliver_event, event_type, auth_id, {"metadata": auth.meta or {}}, request.state.request_id
    )
    logger.info(
        "authorization confirmed",
        extra={"request_id": request.state.request_id, "authorization_id": auth_id, "status": new},
    )
    return _auth_out(repo.get_authorization(auth_id))


@app.post("/authorizations/{auth_id}/cancel", response_model=AuthorizationResponse)
def cancel_authorization(auth_id: str):
    repo = PaymentsRepo()
    if repo.get_authorization(auth_id) is None:
        raise HTTPException(status_code=404, detail="AUTHORIZATION_NOT_FOUND")
    if not repo.transition(auth_id, [REQUIRES_CONFIRMATION, AUTHORIZED, DECLINED], CANCELLED):
        raise HTTPException(status_code=409, detail="ALREADY_CANCELLED")
    return _auth_out(repo.get_authorization(auth_id))


@app.post("/accounts", response_model=AccountResponse, status_code=201)
def create_account(req: AccountRequest):
    return _account_out(PaymentsRepo().create_account(req.email))


@app.get("/accounts/{account_id}", response_model=AccountResponse)
def get_account(account_id: str):
    acct = PaymentsRepo().get_account(account_id)
    if acct is None:
        raise HTTPException(status_code=404, detail="ACCOUNT_NOT_FOUND")
    return _account_out(acct)


@app.post("/accounts/{account_id}/onboarding-links")
def create_onboarding_link(account_id: str, req: OnboardingLinkRequest):
    if PaymentsRepo().get_account(account_id) is None:
        raise HTTPException(status_code=404, detail="ACCOUNT_NOT_FOUND")
    query = urlencode({"return_url": req.return_url, "refresh_url": req.refresh_url})
    return {"url": f"{PUBLIC_URL}/accounts/{account_id}/onboard?{query}"}


def _complete(account_id: str, request: Request, background: BackgroundTasks):
    acct = PaymentsRepo().complete_onboarding(account_id)
    if acct is None:
        raise HTTPException(status_code=404, detail="ACCOUNT_NOT_FOUND")
    background.add_task(deliver_event, "account.updated", account_id, {}, request.state.request_id)
    return acct


@app.post("/accounts/{account_id}/complete-onboarding", response_model=AccountResponse)
def complete_onboarding(account_id: str, request: Request, background: BackgroundTasks):
    return _account_out(_complete(account_id, request, background))


@app.get("/accounts/{account_id}/onboard")
def hosted_onboarding(account_id: str, request: Request, background: BackgroundTasks, return_url: Optional[str] = None):
    """Simulated hosted onboarding page: completes at once and sends the user back."""
    acct = _complete(account_id, request, background)
    if return_url:
        return RedirectResponse(return_url, status_code=303, background=background)
    return _account_out(acct)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    try:
        response = await call_next(request)
    finally:
        logger.info("request handled", extra={"request_id": rid, "path": request.url.path, "method": request.method})
    response.headers["X-Request-ID"] = rid
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "9002")),
        workers=int(os.getenv("UVICORN_WORKERS", "2")),
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )
