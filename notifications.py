from __future__ import annotations

import html
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import requests

import config
from exceptions import NotificationError
from phonepe_client import build_session
from storage import OrderStore, utcnow_iso
from utils import from_minor_units

logger = logging.getLogger("notifications")
logger.setLevel(config.LOG_LEVEL)

Schedule = Callable[..., Any]


@dataclass
class NotificationOutcome:
    step: str
    ok: bool
    detail: Any = None
    error: Optional[str] = None


# ========================
# Providers
# ========================
class ResendMailer:
    """Transactional email through the Resend HTTP API."""

    def __init__(
        self,
        api_key: Optional[str] = config.RESEND_API_KEY,
        sender: str = config.EMAIL_FROM,
        api_url: str = config.RESEND_API_URL,
        session: Optional[requests.Session] = None,
        timeout: float = config.HTTP_TIMEOUT,
    ):
        self.api_key = api_key
        self.sender = sender
        self.api_url = api_url
        self.session = session or build_session()
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def send(self, to: str, subject: str, html_body: str) -> Dict[str, Any]:
        if not self.enabled:
            raise NotificationError("RESEND_API_KEY not configured")
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        body = {"from": self.sender, "to": [to], "subject": subject, "html": html_body}
        try:
            r = self.session.post(self.api_url, json=body, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise NotificationError(f"Resend request failed: {e}")
        if not 200 <= r.status_code < 300:
            raise NotificationError(f"Resend returned {r.status_code}: {r.text[:300]}")
        logger.info("Email sent to %s subject=%r", to, subject)
        try:
            return r.json()
        except ValueError:
            return {"status": r.status_code}


class SmsSender:
    """Plain-text SMS through the Fast2SMS bulk endpoint."""

    def __init__(
        self,
        api_key: Optional[str] = config.SMS_API_KEY,
        api_url: str = config.SMS_API_URL,
        session: Optional[requests.Session] = None,
        timeout: float = config.HTTP_TIMEOUT,
    ):
        self.api_key = api_key
        self.api_url = api_url
        self.session = session or build_session()
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def send(self, phone: str, message: str) -> Dict[str, Any]:
        if not self.enabled:
            raise NotificationError("SMS_API_KEY not configured")
        payload = {"route": "q", "message": message, "numbers": str(phone).lstrip("+")}
        try:
            r = self.session.post(self.api_url, json=payload, headers={"authorization": self.api_key}, timeout=self.timeout)
        except requests.RequestException as e:
            raise NotificationError(f"SMS request failed: {e}")
        if r.status_code != 200:
            raise NotificationError(f"SMS provider returned {r.status_code}: {r.text[:300]}")
        logger.info("SMS sent to %s", phone)
        try:
            return r.json()
        except ValueError:
            return {"status": r.status_code}


# ========================
# Templates
# ========================
def customer_email_html(order_id: str, amount: Any, name: Optional[str] = None) -> str:
    greeting = f"Hi {html.escape(name)}," if name else "Hi,"
    return f"""
    <div style="font-family:sans-serif;color:#4b3b32;">
      <h2>Thank you for your order!</h2>
      <p>{greeting}</p>
      <p>We have received your payment of <b>&#8377;{amount}</b> for order <b>{html.escape(order_id)}</b>.</p>
      <p>We'll let you know as soon as it ships.</p>
    </div>
    """


def admin_email_html(order_id: str, amount: Any, status: str, extra: Optional[Dict[str, Any]] = None) -> str:
    rows = "".join(
        f"<tr><td>{html.escape(str(k))}</td><td>{html.escape(str(v))}</td></tr>"
        for k, v in (extra or {}).items()
        if v is not None
    )
    return f"""
    <div style="font-family:sans-serif;">
      <h3>New order {html.escape(order_id)}</h3>
      <p>Amount: &#8377;{amount} &middot; Status: {html.escape(status)}</p>
      <table>{rows}</table>
    </div>
    """


# ========================
# Fan-out
# ========================
def run_isolated(step: str, fn: Callable[[], Any]) -> NotificationOutcome:
    try:
        detail = fn()
    except Exception as e:
        logger.exception("Notification step %s failed", step)
        return NotificationOutcome(step=step, ok=False, error=str(e))
    if detail == "skipped":
        return NotificationOutcome(step=step, ok=False, detail=detail)
    logger.info("Notification step %s done", step)
    return NotificationOutcome(step=step, ok=True, detail=detail)


class NotificationFanout:
    """
    Side effects of a verified payment.

    The order row is written first, inline. Rewards, customer email, admin
    email and SMS then run as independent steps; one failing never stops
    the others and none of them is allowed to raise into the caller.
    """

    def __init__(
        self,
        store: Optional[OrderStore],
        mailer: Optional[ResendMailer] = None,
        sms: Optional[SmsSender] = None,
        admin_email: Optional[str] = config.ADMIN_EMAIL,
    ):
        self.store = store
        self.mailer = mailer or ResendMailer()
        self.sms = sms or SmsSender()
        self.admin_email = admin_email

    def _require_store(self) -> OrderStore:
        if self.store is None:
            raise NotificationError("Order storage is not configured")
        return self.store

    # -- individual steps --
    def _reward_step(self, order_id: str, amount: Any, order: Dict[str, Any]) -> Any:
        return self._require_store().add_reward_points(order_id, amount, user_id=order.get("user_id"))

    def _customer_email_step(self, order_id: str, amount: Any, order: Dict[str, Any]) -> Any:
        to = order.get("customer_email")
        if not to or not self.mailer.enabled:
            logger.warning("Customer email skipped for %s (recipient=%s, mailer=%s)", order_id, bool(to), self.mailer.enabled)
            return "skipped"
        return self.mailer.send(
            to,
            f"Order {order_id} confirmed",
            customer_email_html(order_id, amount, order.get("customer_name")),
        )

    def _admin_email_step(self, order_id: str, amount: Any, order: Dict[str, Any]) -> Any:
        if not self.admin_email or not self.mailer.enabled:
            logger.warning("Admin email skipped for %s (admin=%s, mailer=%s)", order_id, bool(self.admin_email), self.mailer.enabled)
            return "skipped"
        status = order.get("payment_status") or "SUCCESS"
        extra = {k: order.get(k) for k in ("customer_name", "customer_email", "customer_phone", "verified_at")}
        return self.mailer.send(
            self.admin_email,
            f"New paid order {order_id}",
            admin_email_html(order_id, amount, status, extra),
        )

    def _sms_step(self, order_id: str, amount: Any, order: Dict[str, Any]) -> Any:
        phone = order.get("customer_phone")
        if not phone or not self.sms.enabled:
            logger.warning("SMS skipped for %s (recipient=%s, sms=%s)", order_id, bool(phone), self.sms.enabled)
            return "skipped"
        return self.sms.send(phone, f"Payment of Rs.{amount} received for order {order_id}. Thank you!")

    def _dispatch(self, steps: List[tuple], schedule: Optional[Schedule]) -> List[NotificationOutcome]:
        if schedule is not None:
            for name, fn in steps:
                schedule(run_isolated, name, fn)
            return []
        return [run_isolated(name, fn) for name, fn in steps]

    # -- entry points --
    def on_verified_success(
        self,
        order_id: str,
        amount_minor_units: int,
        schedule: Optional[Schedule] = None,
    ) -> List[NotificationOutcome]:
        """
        Persist the paid order, then fan out rewards and notifications.

        With `schedule` (e.g. BackgroundTasks.add_task) the follow-up steps
        are queued to run after the response; without it they run here.
        Returns the outcomes of whatever ran inline.
        """
        amount = from_minor_units(amount_minor_units)
        saved = run_isolated(
            "order_save",
            lambda: self._require_store().upsert_order(order_id, {
                "amount": float(amount),
                "amount_paise": int(amount_minor_units),
                "payment_status": "SUCCESS",
                "verified_at": utcnow_iso(),
            }),
        )
        order = saved.detail if saved.ok and isinstance(saved.detail, dict) else {}

        steps = [
            ("reward_points", lambda: self._reward_step(order_id, amount, order)),
            ("customer_email", lambda: self._customer_email_step(order_id, amount, order)),
            ("admin_email", lambda: self._admin_email_step(order_id, amount, order)),
            ("sms", lambda: self._sms_step(order_id, amount, order)),
        ]
        return [saved] + self._dispatch(steps, schedule)

    def on_order_saved(
        self,
        order_id: str,
        amount: Any,
        order: Dict[str, Any],
        schedule: Optional[Schedule] = None,
    ) -> List[NotificationOutcome]:
        steps = [("admin_email", lambda: self._admin_email_step(order_id, amount, order))]
        return self._dispatch(steps, schedule)