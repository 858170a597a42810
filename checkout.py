from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import requests

import config
from exceptions import (
    AuthError,
    GatewayResponseError,
    InvalidPaymentRequest,
    PaymentInitError,
    VerificationError,
)
from phonepe_client import TokenCache, build_session
from utils import first_of, to_minor_units

logger = logging.getLogger("checkout")
logger.setLevel(config.LOG_LEVEL)

REDIRECT_URL_PATHS = ("redirectUrl", "data.redirectUrl", "response.redirectUrl")
STATE_PATHS = ("state", "data.state", "response.state")
AMOUNT_PATHS = ("amount", "data.amount", "response.amount")
ORDER_ID_PATHS = ("orderId", "data.orderId", "response.orderId")

SUCCESS_STATES = frozenset({"COMPLETED", "SUCCESS"})

_ORDER_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def _sanitize_merchant_order_id(m: Any) -> str:
    if not isinstance(m, str) or not m.strip():
        raise InvalidPaymentRequest("orderId is required")
    m = m.strip()
    if len(m) > 63:
        raise InvalidPaymentRequest("orderId length must be <= 63 characters")
    if not _ORDER_ID_RE.match(m):
        raise InvalidPaymentRequest("orderId contains invalid characters; only A-Z a-z 0-9 _ - allowed")
    return m


def _is_plausible_url(value: Any) -> bool:
    return isinstance(value, str) and value.lower().startswith(("https://", "http://"))


# ======================
# Models
# ======================
@dataclass
class PaymentSession:
    merchant_order_id: str
    amount_minor_units: int
    expire_after_seconds: int
    return_url: str
    callback_url: Optional[str] = None
    meta_info: Dict[str, str] = field(default_factory=dict)
    message: str = "Payment for order"

    def to_payload(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "merchantOrderId": self.merchant_order_id,
            "amount": self.amount_minor_units,
            "expireAfter": self.expire_after_seconds,
            "paymentFlow": {
                "type": "PG_CHECKOUT",
                "message": f"{self.message} {self.merchant_order_id}",
                "merchantUrls": {"redirectUrl": self.return_url},
            },
        }
        if self.callback_url:
            body["paymentFlow"]["merchantUrls"]["callbackUrl"] = self.callback_url
        if self.meta_info:
            body["metaInfo"] = dict(self.meta_info)
        return body


class VerificationState(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    NOT_SUCCEEDED = "NOT_SUCCEEDED"
    UNKNOWN = "UNKNOWN"


@dataclass
class VerificationResult:
    order_id: str
    state: VerificationState
    amount_minor_units: int = 0
    gateway_state: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def succeeded(self) -> bool:
        return self.state is VerificationState.SUCCEEDED


def classify_state(gateway_state: Optional[str]) -> VerificationState:
    if gateway_state is None:
        return VerificationState.UNKNOWN
    if str(gateway_state).upper() in SUCCESS_STATES:
        return VerificationState.SUCCEEDED
    return VerificationState.NOT_SUCCEEDED


# ======================
# Checkout client
# ======================
class PhonePeCheckout:
    """
    Creates PG_CHECKOUT sessions and checks order status against PhonePe v2.

    Both calls authenticate with whatever scheme the token endpoint handed
    back (usually `O-Bearer`), taken from the shared TokenCache.
    """

    def __init__(
        self,
        token_cache: TokenCache,
        checkout_base: str = config.PHONEPE_CHECKOUT_BASE,
        public_base_url: str = config.PUBLIC_BASE_URL,
        callback_url: Optional[str] = config.PHONEPE_CALLBACK_URL,
        merchant_id: Optional[str] = config.MERCHANT_ID,
        expire_after: int = config.PAYMENT_EXPIRE_AFTER_SEC,
        session: Optional[requests.Session] = None,
        timeout: float = config.HTTP_TIMEOUT,
    ):
        self.token_cache = token_cache
        self.checkout_base = checkout_base.rstrip("/")
        self.public_base_url = public_base_url.rstrip("/")
        self.callback_url = callback_url or None
        self.merchant_id = merchant_id
        self.expire_after = expire_after
        self.session = session or build_session()
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        token = self.token_cache.get_token()
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": token.authorization,
        }
        if self.merchant_id:
            headers["X-MERCHANT-ID"] = self.merchant_id
        return headers

    def return_url_for(self, order_id: str) -> str:
        return f"{self.public_base_url}/verify/{order_id}"

    def build_session(self, order_id: Any, amount: Any, meta_info: Optional[Dict[str, str]] = None) -> PaymentSession:
        merchant_order_id = _sanitize_merchant_order_id(order_id)
        if amount is None or isinstance(amount, bool):
            raise InvalidPaymentRequest("amount is required")
        try:
            amount_minor = to_minor_units(amount)
        except ValueError as e:
            raise InvalidPaymentRequest(str(e))
        if amount_minor <= 0:
            raise InvalidPaymentRequest("Invalid amount; must be > 0")

        return PaymentSession(
            merchant_order_id=merchant_order_id,
            amount_minor_units=amount_minor,
            expire_after_seconds=self.expire_after,
            return_url=self.return_url_for(merchant_order_id),
            callback_url=self.callback_url,
            meta_info=meta_info or {},
        )

    def create_payment(self, order_id: Any, amount: Any, meta_info: Optional[Dict[str, str]] = None) -> str:
        """
        Start a hosted checkout for `order_id` and return the redirect URL.

        `amount` is in rupees; it is converted to paise with half-up rounding.
        Raises InvalidPaymentRequest, AuthError, GatewayResponseError or
        PaymentInitError.
        """
        payment = self.build_session(order_id, amount, meta_info)
        payload = payment.to_payload()
        headers = self._headers()
        url = self.checkout_base + "/checkout/v2/pay"

        logger.info(
            "Creating PhonePe checkout merchantOrderId=%s amount=%s url=%s",
            payment.merchant_order_id,
            payment.amount_minor_units,
            url,
        )
        try:
            resp = self.session.post(url, json=payload, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            logger.exception("PhonePe checkout request failed")
            raise GatewayResponseError(f"PhonePe checkout request failed: {e}")

        snippet = (resp.text[:1200] + "...") if len(resp.text) > 1200 else resp.text
        logger.info("PhonePe checkout status=%s body_snippet=%s", resp.status_code, snippet)

        try:
            j = resp.json()
        except ValueError:
            raise GatewayResponseError(f"Invalid JSON in PhonePe response ({resp.status_code})")
        if not isinstance(j, dict):
            raise GatewayResponseError(f"Unexpected PhonePe response shape ({resp.status_code})")

        redirect_url = first_of(j, REDIRECT_URL_PATHS)
        if not isinstance(redirect_url, str):
            redirect_url = None
        code = j.get("code")
        success = code == "SUCCESS" or code is None or _is_plausible_url(redirect_url)

        if not redirect_url or not success:
            logger.warning("No redirect URL in PhonePe response for %s: %s", payment.merchant_order_id, j)
            raise PaymentInitError(j.get("message") or "No redirect URL in PhonePe response", payload=j)

        logger.info("PhonePe redirect URL for %s: %s", payment.merchant_order_id, redirect_url)
        return redirect_url

    def verify(self, order_id: str) -> VerificationResult:
        """
        Look up the order on PhonePe and classify it.

        A failed or pending payment is a normal result; only a malformed order
        id or a transport, auth or parse failure raises VerificationError.
        """
        try:
            order_id = _sanitize_merchant_order_id(order_id)
        except InvalidPaymentRequest as e:
            raise VerificationError(str(e))
        url = self.checkout_base + f"/checkout/v2/order/{order_id}/status"
        params = {"details": "false", "errorContext": "false"}
        try:
            headers = self._headers()
        except AuthError as e:
            raise VerificationError(f"Could not authenticate status check: {e.message}")

        logger.info("PhonePe order_status merchantOrderId=%s", order_id)
        try:
            resp = self.session.get(url, headers=headers, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            logger.exception("PhonePe order_status request failed")
            raise VerificationError(f"PhonePe order_status request failed: {e}")

        try:
            j = resp.json()
        except ValueError:
            logger.error("PhonePe order_status returned non-json: %s", resp.text[:1000])
            raise VerificationError(f"PhonePe order_status returned non-json: {resp.status_code}")
        if not isinstance(j, dict):
            raise VerificationError(f"Unexpected PhonePe order_status shape ({resp.status_code})")
        if not 200 <= resp.status_code < 300:
            raise VerificationError(f"PhonePe order_status error {resp.status_code}: {j}")

        gateway_state = first_of(j, STATE_PATHS)
        amount = first_of(j, AMOUNT_PATHS, 0)
        try:
            amount_minor = int(amount)
        except (TypeError, ValueError):
            amount_minor = 0

        result = VerificationResult(
            order_id=order_id,
            state=classify_state(gateway_state),
            amount_minor_units=amount_minor,
            gateway_state=gateway_state,
            raw=j,
        )
        logger.info("PhonePe order %s state=%s -> %s amount=%s", order_id, gateway_state, result.state.value, amount_minor)
        return result
