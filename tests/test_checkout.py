import pytest
import requests

from checkout import PhonePeCheckout, VerificationState, classify_state
from conftest import FakeResponse, FakeSession, StubAuthClient
from exceptions import (
    AuthError,
    GatewayResponseError,
    InvalidPaymentRequest,
    PaymentInitError,
    VerificationError,
)
from phonepe_client import TokenCache

CHECKOUT_URL = "https://pay.example/mercury/xyz"


def _checkout(session, auth=None):
    cache = TokenCache(auth or StubAuthClient(tokens=["tok"] * 5), ttl=1500, safety_margin=60)
    return PhonePeCheckout(
        cache,
        checkout_base="https://gw.test/apis/pg-sandbox/",
        public_base_url="https://shop.test",
        callback_url="",
        merchant_id="M123",
        expire_after=1200,
        session=session,
    )


# ======================
# create_payment
# ======================
def test_create_payment_builds_pg_checkout_payload():
    session = FakeSession({"/checkout/v2/pay": FakeResponse(200, {"redirectUrl": CHECKOUT_URL})})
    url = _checkout(session).create_payment("ORDER1", 499)

    assert url == CHECKOUT_URL
    call = session.calls[0]
    assert call["url"] == "https://gw.test/apis/pg-sandbox/checkout/v2/pay"
    body = call["json"]
    assert body["merchantOrderId"] == "ORDER1"
    assert body["amount"] == 49900
    assert body["expireAfter"] == 1200
    assert body["paymentFlow"]["type"] == "PG_CHECKOUT"
    assert body["paymentFlow"]["merchantUrls"]["redirectUrl"] == "https://shop.test/verify/ORDER1"
    assert "callbackUrl" not in body["paymentFlow"]["merchantUrls"]


def test_create_payment_uses_token_scheme_from_auth():
    session = FakeSession({"/checkout/v2/pay": FakeResponse(200, {"redirectUrl": CHECKOUT_URL})})
    _checkout(session).create_payment("ORDER1", 100)
    headers = session.calls[0]["headers"]
    assert headers["Authorization"] == "O-Bearer tok"
    assert headers["X-MERCHANT-ID"] == "M123"
    assert session.calls[0]["timeout"] > 0


def test_create_payment_rounds_fractional_amounts():
    session = FakeSession({"/checkout/v2/pay": FakeResponse(200, {"redirectUrl": CHECKOUT_URL})})
    _checkout(session).create_payment("ORDER2", "10.255")
    assert session.calls[0]["json"]["amount"] == 1026


@pytest.mark.parametrize(
    "body",
    [
        {"response": {"redirectUrl": CHECKOUT_URL}},
        {"data": {"redirectUrl": CHECKOUT_URL}},
        {"code": "SUCCESS", "data": {"redirectUrl": CHECKOUT_URL}},
        {"code": "PENDING", "redirectUrl": CHECKOUT_URL},
    ],
)
def test_create_payment_finds_redirect_in_any_location(body):
    session = FakeSession({"/checkout/v2/pay": FakeResponse(200, body)})
    assert _checkout(session).create_payment("ORDER1", 1) == CHECKOUT_URL


def test_create_payment_without_redirect_raises_with_payload():
    body = {"code": "BAD_REQUEST", "message": "amount invalid", "data": {}}
    session = FakeSession({"/checkout/v2/pay": FakeResponse(400, body)})
    with pytest.raises(PaymentInitError) as exc:
        _checkout(session).create_payment("ORDER1", 1)
    assert exc.value.payload == body
    assert exc.value.message == "amount invalid"


def test_create_payment_rejects_non_url_redirect_with_failure_code():
    body = {"code": "INTERNAL_ERROR", "redirectUrl": "n/a"}
    session = FakeSession({"/checkout/v2/pay": FakeResponse(200, body)})
    with pytest.raises(PaymentInitError):
        _checkout(session).create_payment("ORDER1", 1)


@pytest.mark.parametrize("redirect", [{"href": CHECKOUT_URL}, ["https://pay.example"], 42])
def test_create_payment_rejects_non_string_redirect(redirect):
    session = FakeSession({"/checkout/v2/pay": FakeResponse(200, {"redirectUrl": redirect})})
    with pytest.raises(PaymentInitError):
        _checkout(session).create_payment("ORDER1", 1)


def test_create_payment_non_json_body():
    session = FakeSession({"/checkout/v2/pay": FakeResponse(502, text="Bad Gateway")})
    with pytest.raises(GatewayResponseError):
        _checkout(session).create_payment("ORDER1", 1)


def test_create_payment_transport_failure():
    session = FakeSession({"/checkout/v2/pay": requests.Timeout("timed out")})
    with pytest.raises(GatewayResponseError, match="timed out"):
        _checkout(session).create_payment("ORDER1", 1)


def test_create_payment_auth_failure_propagates():
    session = FakeSession()
    with pytest.raises(AuthError):
        _checkout(session, auth=StubAuthClient(error=AuthError("denied"))).create_payment("ORDER1", 1)
    assert session.calls == []


@pytest.mark.parametrize(
    "order_id, amount",
    [("", 10), (None, 10), ("ORDER1", None), ("ORDER1", 0), ("ORDER1", -5), ("ORDER1", "ten"), ("bad id!", 10), ("x" * 64, 10), ("ORDER1", 1e30)],
)
def test_create_payment_validates_input(order_id, amount):
    session = FakeSession()
    with pytest.raises(InvalidPaymentRequest):
        _checkout(session).create_payment(order_id, amount)
    assert session.calls == []


# ======================
# verify
# ======================
def _status(body, status=200):
    return FakeSession({"/status": FakeResponse(status, body)})


def test_verify_completed_is_succeeded():
    session = _status({"orderId": "OMO1", "state": "COMPLETED", "amount": 10000})
    result = _checkout(session).verify("ORDER1")
    assert result.state is VerificationState.SUCCEEDED
    assert result.succeeded
    assert result.amount_minor_units == 10000
    assert session.calls[0]["url"].endswith("/checkout/v2/order/ORDER1/status")


def test_verify_nested_state():
    session = _status({"success": True, "data": {"state": "SUCCESS", "amount": 500}})
    result = _checkout(session).verify("ORDER1")
    assert result.succeeded
    assert result.amount_minor_units == 500


@pytest.mark.parametrize("state", ["FAILED", "PENDING", "failed"])
def test_verify_other_states_not_succeeded(state):
    result = _checkout(_status({"state": state, "amount": 100})).verify("ORDER1")
    assert result.state is VerificationState.NOT_SUCCEEDED


def test_verify_missing_state_is_unknown():
    result = _checkout(_status({"amount": 100})).verify("ORDER1")
    assert result.state is VerificationState.UNKNOWN
    assert not result.succeeded


def test_verify_is_stable_across_calls():
    session = _status({"state": "COMPLETED", "amount": 100})
    checkout = _checkout(session)
    assert checkout.verify("ORDER1").succeeded
    assert checkout.verify("ORDER1").succeeded


def test_verify_non_json_raises():
    with pytest.raises(VerificationError):
        _checkout(FakeSession({"/status": FakeResponse(200, text="oops")})).verify("ORDER1")


def test_verify_error_status_raises():
    with pytest.raises(VerificationError):
        _checkout(_status({"code": "ORDER_NOT_FOUND"}, status=404)).verify("ORDER1")


def test_verify_transport_failure_raises():
    session = FakeSession({"/status": requests.ConnectionError("reset")})
    with pytest.raises(VerificationError):
        _checkout(session).verify("ORDER1")


@pytest.mark.parametrize("order_id", ["ORDER1?details=true", "../../pay", "ORDER 1", "", "x" * 64])
def test_verify_rejects_malformed_order_id_without_calling_gateway(order_id):
    session = _status({"state": "COMPLETED", "amount": 100})
    with pytest.raises(VerificationError):
        _checkout(session).verify(order_id)
    assert session.calls == []


def test_verify_auth_failure_becomes_verification_error():
    with pytest.raises(VerificationError):
        _checkout(FakeSession(), auth=StubAuthClient(error=AuthError("denied"))).verify("ORDER1")


def test_classify_state():
    assert classify_state("COMPLETED") is VerificationState.SUCCEEDED
    assert classify_state("SUCCESS") is VerificationState.SUCCEEDED
    assert classify_state("FAILED") is VerificationState.NOT_SUCCEEDED
    assert classify_state(None) is VerificationState.UNKNOWN
