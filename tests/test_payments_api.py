"""End-to-end payment flows through the HTTP API."""
from decimal import Decimal

import pytest

from marketpay.models import MilestoneStatus, PaymentStatus
from marketpay.utils.errors import ProcessorError


def _intent_body(contract, amount=None):
    milestone = contract.milestones[0]
    return {
        "contractId": contract.id,
        "milestoneId": milestone.id,
        "amount": str(amount if amount is not None else milestone.amount),
        "paymentMethodId": "pm_card_visa",
    }


@pytest.mark.anyio
async def test_milestone_payment_release_and_payout(
    client, fake_stripe, client_user, freelancer, headers_for, make_contract
):
    client_headers = headers_for(client_user)
    freelancer_headers = headers_for(freelancer)
    contract = make_contract(client_user, freelancer, ("500.00",))

    created = await client.post("/payments/intent", json=_intent_body(contract), headers=client_headers)
    assert created.status_code == 201, created.text
    body = created.json()
    assert body["payment"]["status"] == PaymentStatus.PROCESSING.value
    assert Decimal(body["payment"]["platform_fee"]) == Decimal("25.00")
    assert Decimal(body["payment"]["freelancer_amount"]) == Decimal("475.00")
    intent_id = body["paymentIntent"]["id"]
    assert body["paymentIntent"]["client_secret"]

    confirmed = await client.get(f"/payments/intent/{intent_id}/confirm", headers=client_headers)
    assert confirmed.status_code == 200
    payment = confirmed.json()["payment"]
    assert payment["status"] == PaymentStatus.COMPLETED.value
    assert payment["escrow_release_date"] is not None

    account = await client.post(
        "/payments/escrow-account", json={"accountType": "FREELANCER"}, headers=freelancer_headers
    )
    assert account.status_code == 201
    assert account.json()["onboardingUrl"].startswith("https://")

    account_status = await client.get("/payments/escrow-account", headers=freelancer_headers)
    assert account_status.json()["escrowAccount"]["status"] == "ACTIVE"
    assert account_status.json()["processorAccount"]["payouts_enabled"] is True

    method = await client.post(
        "/payments/escrow-account/payout-methods",
        json={"type": "BANK_ACCOUNT", "externalPaymentMethodId": "ba_test_123"},
        headers=freelancer_headers,
    )
    assert method.status_code == 201
    payout_method = method.json()["payoutMethod"]
    assert payout_method["is_default"] is True
    assert payout_method["last4"] == "6789"

    released = await client.post(f"/payments/{payment['id']}/release", headers=client_headers)
    assert released.status_code == 200
    assert Decimal(released.json()["freelancerBalance"]) == Decimal("475.00")

    payout = await client.post(
        "/payments/payout",
        json={"amount": "475.00", "payoutMethodId": payout_method["id"]},
        headers=freelancer_headers,
    )
    assert payout.status_code == 201, payout.text
    payout_body = payout.json()
    assert payout_body["payment"]["type"] == "WITHDRAWAL"
    assert payout_body["payment"]["status"] == PaymentStatus.PROCESSING.value
    assert payout_body["transfer"]["status"] == "pending"
    # The connected account is funded by the release before any payout leaves it.
    stripe_calls = [name for name, _ in fake_stripe.calls]
    assert stripe_calls.index("create_transfer") < stripe_calls.index("create_payout")

    earnings = await client.get("/payments/earnings", headers=freelancer_headers)
    assert earnings.status_code == 200
    assert Decimal(earnings.json()["available"]) == Decimal("0.00")
    assert Decimal(earnings.json()["in_escrow"]) == Decimal("0.00")

    fake_stripe.payout_status = "paid"
    status = await client.get(
        f"/payments/payout/{payout_body['payment']['id']}/status", headers=freelancer_headers
    )
    assert status.json()["payment"]["status"] == PaymentStatus.COMPLETED.value

    history = await client.get("/payments/history", headers=freelancer_headers)
    assert history.json()["pagination"]["total"] == 2
    only_withdrawals = await client.get(
        "/payments/history", params={"type": "WITHDRAWAL"}, headers=freelancer_headers
    )
    assert [item["type"] for item in only_withdrawals.json()["items"]] == ["WITHDRAWAL"]


@pytest.mark.anyio
async def test_amount_mismatch_is_rejected(client, fake_stripe, client_user, freelancer, headers_for, make_contract):
    contract = make_contract(client_user, freelancer, ("150.00",))

    response = await client.post(
        "/payments/intent", json=_intent_body(contract, amount="200.00"), headers=headers_for(client_user)
    )

    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "AMOUNT_MISMATCH"
    assert error["details"] == {"expected": "150.00", "received": "200.00"}


@pytest.mark.anyio
async def test_processor_timeout_returns_retry_after(
    client, fake_stripe, client_user, freelancer, headers_for, make_contract, db_session
):
    contract = make_contract(client_user, freelancer)
    fake_stripe.intent_error = ProcessorError("Payment processor timed out.", retryable=True)

    response = await client.post("/payments/intent", json=_intent_body(contract), headers=headers_for(client_user))

    assert response.status_code == 503
    assert response.headers["Retry-After"] == "30"
    error = response.json()["error"]
    assert error["code"] == "PROCESSOR_UNAVAILABLE"
    assert error["details"]["retryable"] is True
    assert error["details"]["status"] == "processing"
    milestone = contract.milestones[0]
    db_session.refresh(milestone)
    assert milestone.status == MilestoneStatus.PAYMENT_PENDING


@pytest.mark.anyio
async def test_card_decline_returns_402(client, fake_stripe, client_user, freelancer, headers_for, make_contract):
    contract = make_contract(client_user, freelancer)
    fake_stripe.intent_error = ProcessorError(
        "Your card was declined.", retryable=False, code="PAYMENT_DECLINED", status_code=402
    )

    response = await client.post("/payments/intent", json=_intent_body(contract), headers=headers_for(client_user))

    assert response.status_code == 402
    assert "Retry-After" not in response.headers
    assert response.json()["error"]["details"]["status"] == "failed"


@pytest.mark.anyio
async def test_duplicate_intent_conflicts(client, fake_stripe, client_user, freelancer, headers_for, make_contract):
    contract = make_contract(client_user, freelancer)
    headers = headers_for(client_user)

    first = await client.post("/payments/intent", json=_intent_body(contract), headers=headers)
    assert first.status_code == 201
    second = await client.post("/payments/intent", json=_intent_body(contract), headers=headers)

    # The milestone left APPROVED when the first intent went out.
    assert second.status_code == 400
    assert second.json()["error"]["code"] == "MILESTONE_NOT_APPROVED"


@pytest.mark.anyio
async def test_freelancer_cannot_create_intent(client, fake_stripe, client_user, freelancer, headers_for, make_contract):
    contract = make_contract(client_user, freelancer)

    response = await client.post("/payments/intent", json=_intent_body(contract), headers=headers_for(freelancer))

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "INSUFFICIENT_ROLE"


@pytest.mark.anyio
async def test_payout_over_balance(
    client, fake_stripe, freelancer, headers_for, make_escrow_account, make_payout_method
):
    account = make_escrow_account(freelancer, balance="50.00")
    method = make_payout_method(account)

    response = await client.post(
        "/payments/payout",
        json={"amount": "75.00", "payoutMethodId": method.id},
        headers=headers_for(freelancer),
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INSUFFICIENT_BALANCE"


@pytest.mark.anyio
async def test_refund_flow(client, fake_stripe, client_user, freelancer, headers_for, make_contract, completed_payment):
    contract = make_contract(client_user, freelancer)
    payment = completed_payment(client_user, contract)
    headers = headers_for(client_user)

    refunded = await client.post(
        f"/payments/{payment.id}/refund", json={"reason": "Not delivered", "amount": "100.00"}, headers=headers
    )
    assert refunded.status_code == 200, refunded.text
    body = refunded.json()
    assert body["payment"]["status"] == PaymentStatus.REFUNDED.value
    assert Decimal(body["refund"]["amount"]) == Decimal("100.00")

    again = await client.post(f"/payments/{payment.id}/refund", json={"reason": "again"}, headers=headers)
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "ALREADY_REFUNDED"


@pytest.mark.anyio
async def test_history_pagination_limits(client, client_user, headers_for):
    response = await client.get("/payments/history", params={"limit": 500}, headers=headers_for(client_user))
    assert response.status_code == 422

    empty = await client.get("/payments/history", headers=headers_for(client_user))
    assert empty.json() == {"items": [], "pagination": {"page": 1, "limit": 10, "total": 0, "pages": 0}}
