import html
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import urlencode

# config loads .env before anything reads the environment
import config

from fastapi import BackgroundTasks, Depends, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, RedirectResponse
from pydantic import BaseModel

from checkout import PhonePeCheckout
from exceptions import (
    AuthError,
    GatewayResponseError,
    InvalidPaymentRequest,
    NotificationError,
    PaymentInitError,
    VerificationError,
)
from notifications import NotificationFanout
from phonepe_client import AuthClient, TokenCache
from storage import OrderStore, get_store

logger = logging.getLogger("uvicorn.error")
logger.setLevel(config.LOG_LEVEL)
config.log_env_check(logger)

TEST_AMOUNT_RUPEES = 10

# -----------------------
# FastAPI
# -----------------------
app = FastAPI(title="Perlyn Backend - PhonePe")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    """
    Adds the response headers PhonePe requires on pages it redirects to:
      - Referrer-Policy: strict-origin-when-cross-origin
      - Cross-Origin-Opener-Policy: same-origin
    """
    response: Response = await call_next(request)
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Cross-Origin-Opener-Policy"] = "same-origin"
    return response


# -----------------------
# Shared components (one token cache per process)
# -----------------------
_token_cache = TokenCache(AuthClient())
_checkout = PhonePeCheckout(_token_cache)
_fanout: Optional[NotificationFanout] = None


def get_checkout() -> PhonePeCheckout:
    return _checkout


def get_order_store() -> Optional[OrderStore]:
    # storage is best-effort: payments keep working without Supabase
    try:
        return get_store()
    except Exception as e:
        logger.warning("Order storage unavailable: %s", e)
        return None


def get_fanout(store: Optional[OrderStore] = Depends(get_order_store)) -> NotificationFanout:
    global _fanout
    if _fanout is None or _fanout.store is not store:
        _fanout = NotificationFanout(store)
    return _fanout


# ======================
# Schemas
# ======================
class CustomerInfo(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    userId: Optional[str] = None


class CreatePaymentRequest(BaseModel):
    # optional so missing fields get our 400 instead of FastAPI's 422
    amount: Optional[Any] = None
    orderId: Optional[str] = None
    customer: Optional[CustomerInfo] = None


class OrderSaveRequest(BaseModel):
    orderId: Optional[str] = None
    amount: Optional[float] = None
    payment_status: Optional[str] = None
    verifiedAt: Optional[str] = None


def _fail(status_code: int, message: str, data: Any = None) -> JSONResponse:
    body: Dict[str, Any] = {"success": False, "message": message}
    if data is not None:
        body["data"] = data
    return JSONResponse(body, status_code=status_code)


def _outcome_url(base: str, order_id: str) -> str:
    sep = "&" if "?" in base else "?"
    return f"{base}{sep}{urlencode({'orderId': order_id})}"


# ======================
# Root / health
# ======================
@app.get("/", response_class=PlainTextResponse)
def root():
    return f"🚀 PhonePe checkout broker running ({config.MODE})"


@app.get("/ping", response_class=PlainTextResponse)
def ping():
    return "pong"


# ======================
# Payments
# ======================
@app.get("/pay", response_class=HTMLResponse)
def pay(checkout: PhonePeCheckout = Depends(get_checkout)):
    merchant_order_id = f"ORDER{int(time.time() * 1000)}"
    try:
        redirect_url = checkout.create_payment(merchant_order_id, TEST_AMOUNT_RUPEES, meta_info={"udf1": "pay_test"})
    except PaymentInitError as e:
        logger.warning("No redirect URL found for %s", merchant_order_id)
        body = html.escape(json.dumps(e.payload, indent=2))
        return HTMLResponse(f"<h2>⚠️ Payment Creation Failed</h2><pre>{body}</pre>", status_code=400)
    except Exception as e:
        logger.exception("GET /pay failed")
        return HTMLResponse(f"<h2>Error:</h2><pre>{html.escape(str(e))}</pre>", status_code=500)

    url = html.escape(redirect_url, quote=True)
    return HTMLResponse(f"""
    <html>
      <body style="font-family:sans-serif;text-align:center;background:#f3e4db;color:#4b3b32;">
        <h2>✅ Checkout Ready</h2>
        <p>Order {merchant_order_id}. Click below to open the checkout page:</p>
        <a href="{url}" target="_blank"
           style="display:inline-block;background:#b98474;color:#fff;padding:12px 24px;border-radius:8px;text-decoration:none;">
           Open Payment Page</a>
        <br><br><small>{url}</small>
      </body>
    </html>
    """)


@app.post("/create-payment")
def create_payment(
    req: CreatePaymentRequest,
    checkout: PhonePeCheckout = Depends(get_checkout),
    store: Optional[OrderStore] = Depends(get_order_store),
):
    if req.orderId is None or req.amount is None:
        return _fail(400, "Missing amount or orderId")

    try:
        redirect_url = checkout.create_payment(req.orderId, req.amount)
    except InvalidPaymentRequest as e:
        return _fail(400, str(e))
    except PaymentInitError as e:
        return _fail(400, e.message, data=e.payload)
    except (AuthError, GatewayResponseError) as e:
        logger.error("create-payment failed for %s: %s", req.orderId, e.message)
        return _fail(500, e.message)

    response_payload: Dict[str, Any] = {"success": True, "redirectUrl": redirect_url, "orderId": req.orderId}

    # remember who is paying so the fan-out can reach them later
    if req.customer and store is None:
        response_payload["warning"] = "Saved to DB failed: order storage is not configured"
    elif req.customer:
        c = req.customer
        try:
            store.upsert_order(req.orderId, {
                "amount": float(req.amount),
                "payment_status": "PENDING",
                "customer_name": c.name,
                "customer_email": c.email,
                "customer_phone": c.phone,
                "user_id": c.userId,
            })
        except NotificationError as e:
            response_payload["warning"] = f"Saved to DB failed: {e.message}"

    return response_payload


@app.get("/verify/{order_id}")
def verify(
    order_id: str,
    background_tasks: BackgroundTasks,
    checkout: PhonePeCheckout = Depends(get_checkout),
    fanout: NotificationFanout = Depends(get_fanout),
):
    try:
        result = checkout.verify(order_id)
    except VerificationError as e:
        logger.error("Verification failed for %s: %s", order_id, e.message)
        return RedirectResponse(_outcome_url(config.FAILURE_REDIRECT_URL, order_id), status_code=302)

    if not result.succeeded:
        logger.info("Order %s not successful (state=%s)", order_id, result.gateway_state)
        return RedirectResponse(_outcome_url(config.FAILURE_REDIRECT_URL, order_id), status_code=302)

    fanout.on_verified_success(order_id, result.amount_minor_units, schedule=background_tasks.add_task)
    return RedirectResponse(_outcome_url(config.SUCCESS_REDIRECT_URL, order_id), status_code=302)


@app.get("/order-status/{order_id}")
def order_status(order_id: str, checkout: PhonePeCheckout = Depends(get_checkout)):
    try:
        result = checkout.verify(order_id)
    except VerificationError as e:
        return _fail(502, e.message)
    return {
        "orderId": result.order_id,
        "state": result.state.value,
        "gatewayState": result.gateway_state,
        "amount": result.amount_minor_units,
    }


# ======================
# Outcome pages
# ======================
@app.get("/success/{order_id}", response_class=HTMLResponse)
def success_page(order_id: str):
    return HTMLResponse(f"""
    <html>
      <body style="background:#d1ffd1;text-align:center;font-family:sans-serif;">
        <h2>🎉 Payment Complete!</h2>
        <p>Order ID: {html.escape(order_id)}</p>
        <p>You can safely close this window and return to the store.</p>
      </body>
    </html>
    """)


@app.get("/fail", response_class=HTMLResponse)
def fail_page():
    return HTMLResponse("""
    <html>
      <body style="background:#ffe1e1;text-align:center;font-family:sans-serif;">
        <h2>❌ Payment Failed</h2>
        <p>Your payment could not be completed. No amount has been captured.</p>
        <a href="/pay">Try again</a>
      </body>
    </html>
    """)


# ======================
# Webhook / order save
# ======================
@app.post("/phonepe/webhook", response_class=PlainTextResponse)
async def phonepe_webhook(request: Request):
    raw = await request.body()
    try:
        payload = json.loads(raw) if raw else {}
    except ValueError:
        payload = {"raw": raw.decode("utf-8", errors="ignore")}
    logger.info("📩 Webhook received: %s", payload)
    # TODO: verify the Authorization header once PhonePe issues webhook credentials
    return PlainTextResponse("Webhook acknowledged", status_code=200)


@app.post("/order-save")
def order_save(
    req: OrderSaveRequest,
    background_tasks: BackgroundTasks,
    store: Optional[OrderStore] = Depends(get_order_store),
    fanout: NotificationFanout = Depends(get_fanout),
):
    if not req.orderId:
        return _fail(400, "orderId is required")
    if store is None:
        return _fail(500, "Order storage is not configured")

    verified_at = req.verifiedAt or datetime.now(timezone.utc).isoformat()
    try:
        order = store.upsert_order(req.orderId, {
            "amount": req.amount,
            "payment_status": req.payment_status,
            "verified_at": verified_at,
        })
    except NotificationError as e:
        logger.error("order-save failed for %s: %s", req.orderId, e.message)
        return _fail(500, e.message)

    fanout.on_order_saved(req.orderId, req.amount, order, schedule=background_tasks.add_task)
    return {"success": True, "order": order}


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=config.LOG_LEVEL)
    uvicorn.run("main:app", host="0.0.0.0", port=config.PORT)
