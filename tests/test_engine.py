"""Session builder, verifier, status lookup and history against the in-memory processor."""

from datetime import datetime, timedelta, timezone
from dataclasses import replace

import pytest

from insurepay.core.errors import PaymentProviderError, ValidationError
from insurepay.engine.engine import InsurancePaymentEngine, PaymentSessionRequest, PaymentStatus
from insurepay.engine.policy import PAYMENT_TYPE

from conftest import BASE_URL, FIXED_NOW


# ============================================================================
# Session builder
# ============================================================================


async def test_session_expires_thirty_minutes_after_creation(engine, session_request):
    session = await engine.create_insurance_payment_session(session_request)

    assert session.id.startswith("cs_test_")
    assert session.redirect_url
    assert session.expires_at == FIXED_NOW + timedelta(minutes=30)


async def test_session_expiry_with_wall_clock(db, fake_provider, policy, session_request):
    engine = InsurancePaymentEngine(db=db, stripe=fake_provider, policy=policy, base_url=BASE_URL)
    before = datetime.now(tz=timezone.utc)
    session = await engine.create_insurance_payment_session(session_request)
    after = datetime.now(tz=timezone.utc)

    assert before + timedelta(minutes=30) - timedelta(seconds=1) <= session.expires_at
    assert session.expires_at <= after + timedelta(minutes=30, seconds=2)


async def test_line_item_uses_fixed_fee_and_currency(engine, fake_provider, session_request):
    await engine.create_insurance_payment_session(session_request)

    op, params = fake_provider.calls[-1]
    assert op == "create_checkout_session"
    (item,) = params["line_items"]
    assert item["quantity"] == 1
    assert item["price_data"]["unit_amount"] == 15000
    assert item["price_data"]["currency"] == "mad"
    assert params["mode"] == "payment"


async def test_session_carries_reconciliation_metadata(engine, fake_provider, session_request):
    await engine.create_insurance_payment_session(session_request)

    _, params = fake_provider.calls[-1]
    md = params["metadata"]
    assert md["insured_party_id"] == "a1"
    assert md["period_id"] == "2025"
    assert md["organization_id"] == "club-7"
    assert md["payment_type"] == PAYMENT_TYPE
    assert md["order_id"].startswith("INS_2025-2026_a1_")

    intent_md = params["payment_intent_data"]["metadata"]
    assert intent_md["insured_party_id"] == "a1"
    assert intent_md["period_id"] == "2025"
    assert intent_md["payment_type"] == PAYMENT_TYPE


async def test_redirect_targets(engine, fake_provider, session_request):
    await engine.create_insurance_payment_session(session_request)

    _, params = fake_provider.calls[-1]
    assert params["success_url"] == f"{BASE_URL}/payment/success?session_id={{CHECKOUT_SESSION_ID}}"
    assert params["cancel_url"] == f"{BASE_URL}/payment/cancel"
    assert params["customer_email"] == "parent@example.com"


async def test_missing_fields_are_all_reported(engine, fake_provider):
    request = PaymentSessionRequest(
        insured_party_id="",
        insured_party_name="Amina",
        organization_id="  ",
        organization_name="Club Atlas",
        period_id="",
        period_label="2025-2026",
    )

    with pytest.raises(ValidationError) as exc:
        await engine.create_insurance_payment_session(request)

    assert exc.value.missing_fields == ["insured_party_id", "organization_id", "period_id"]
    assert fake_provider.calls == []


async def test_contact_info_is_optional(engine, session_request):
    request = replace(session_request, contact_email=None, contact_phone=None)
    session = await engine.create_insurance_payment_session(request)
    assert session.id


async def test_provider_failure_is_not_retried(engine, fake_provider, session_request):
    fake_provider.fail_with = "card_declined: rate limited"

    with pytest.raises(PaymentProviderError) as exc:
        await engine.create_insurance_payment_session(session_request)

    assert "rate limited" in exc.value.provider_message
    assert [op for op, _ in fake_provider.calls] == ["create_checkout_session"]


async def test_idempotency_key_replays_the_same_session(engine, session_request):
    first = await engine.create_insurance_payment_session(session_request, idempotency_key="k-1")
    second = await engine.create_insurance_payment_session(session_request, idempotency_key="k-1")
    third = await engine.create_insurance_payment_session(session_request, idempotency_key="k-2")

    assert first.id == second.id
    assert third.id != first.id


async def test_incomplete_processor_session_is_a_provider_error(engine, fake_provider, session_request, monkeypatch):
    monkeypatch.setattr(fake_provider, "create_checkout_session", lambda **kw: {"id": "cs_1"})

    with pytest.raises(PaymentProviderError):
        await engine.create_insurance_payment_session(session_request)


# ============================================================================
# Session verifier
# ============================================================================


async def test_verify_open_session_is_pending(engine, session_request):
    session = await engine.create_insurance_payment_session(session_request)

    status, raw = await engine.verify_payment_session(session.id)

    assert status is PaymentStatus.pending
    assert raw["id"] == session.id


async def test_verify_is_idempotent(engine, fake_provider, session_request):
    session = await engine.create_insurance_payment_session(session_request)
    fake_provider.complete_session(session.id)

    first, _ = await engine.verify_payment_session(session.id)
    second, _ = await engine.verify_payment_session(session.id)

    assert first is second is PaymentStatus.completed


async def test_verify_expands_payment_and_customer(engine, fake_provider, session_request):
    session = await engine.create_insurance_payment_session(session_request)
    fake_provider.complete_session(session.id)

    _, raw = await engine.verify_payment_session(session.id)

    assert fake_provider.calls[-1] == ("retrieve_checkout_session", session.id)
    assert raw["payment_intent"]["status"] == "succeeded"


async def test_verify_unpaid_expired_session(engine, fake_provider, session_request):
    session = await engine.create_insurance_payment_session(session_request)
    fake_provider.expire_session(session.id)

    status, _ = await engine.verify_payment_session(session.id)

    assert status is PaymentStatus.expired


async def test_verify_completed_but_unpaid_is_failed(engine, fake_provider, session_request):
    session = await engine.create_insurance_payment_session(session_request)
    fake_provider.complete_session(session.id, paid=False)

    status, _ = await engine.verify_payment_session(session.id)

    assert status is PaymentStatus.failed


@pytest.mark.parametrize("session_id", ["", "   ", None])
async def test_verify_requires_session_id(engine, fake_provider, session_id):
    with pytest.raises(ValidationError) as exc:
        await engine.verify_payment_session(session_id)
    assert exc.value.missing_fields == ["session_id"]
    assert fake_provider.calls == []


async def test_verify_unknown_session_is_provider_error(engine):
    with pytest.raises(PaymentProviderError):
        await engine.verify_payment_session("cs_does_not_exist")


# ============================================================================
# Insurance status lookup
# ============================================================================


def _paid_intent(fake_provider, *, athlete="a1", season="2025", created=1_735_689_600, status="succeeded"):
    return fake_provider.add_payment_intent(
        amount=15000,
        currency="mad",
        status=status,
        created=created,
        metadata={"insured_party_id": athlete, "period_id": season, "payment_type": PAYMENT_TYPE},
    )


async def test_status_found_expires_one_year_after_payment(engine, fake_provider):
    created = int(datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc).timestamp())
    intent = _paid_intent(fake_provider, created=created)

    status = await engine.check_insurance_status("a1", "2025")

    assert status.has_paid is True
    assert status.payment_id == intent["id"]
    assert status.payment_date == datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc)
    assert status.expiry_date == datetime(2026, 1, 1, 10, 0, tzinfo=timezone.utc)


async def test_status_not_found(engine, fake_provider):
    _paid_intent(fake_provider, athlete="someone-else")
    _paid_intent(fake_provider, season="2024")
    _paid_intent(fake_provider, status="requires_payment_method")

    status = await engine.check_insurance_status("a1", "2025")

    assert status.has_paid is False
    assert status.payment_date is None
    assert status.expiry_date is None
    assert status.payment_id is None


async def test_status_lookup_fails_closed_on_processor_error(engine, fake_provider):
    _paid_intent(fake_provider)
    fake_provider.fail_with = "api_connection_error"

    status = await engine.check_insurance_status("a1", "2025")

    assert status.has_paid is False


async def test_status_lookup_fails_closed_on_unexpected_exception(engine, fake_provider, monkeypatch):
    def _boom(**kwargs):
        raise RuntimeError("socket closed")

    monkeypatch.setattr(fake_provider, "search_payment_intents", _boom)

    status = await engine.check_insurance_status("a1", "2025")

    assert status.has_paid is False


async def test_status_most_recent_payment_governs(engine, fake_provider):
    _paid_intent(fake_provider, created=1_700_000_000)
    newest = _paid_intent(fake_provider, created=1_740_000_000)
    _paid_intent(fake_provider, created=1_720_000_000)

    status = await engine.check_insurance_status("a1", "2025")

    assert status.payment_id == newest["id"]


async def test_status_after_completed_checkout(engine, fake_provider, session_request):
    session = await engine.create_insurance_payment_session(session_request)
    fake_provider.complete_session(session.id)

    status = await engine.check_insurance_status("a1", "2025")

    assert status.has_paid is True


async def test_status_query_escapes_quotes(engine, fake_provider):
    fake_provider.add_payment_intent(
        amount=15000,
        currency="mad",
        metadata={"insured_party_id": "o'brien", "period_id": "2025", "payment_type": PAYMENT_TYPE},
    )

    assert (await engine.check_insurance_status("o'brien", "2025")).has_paid is True
    assert (await engine.check_insurance_status("o", "2025")).has_paid is False


# ============================================================================
# Payment history
# ============================================================================


async def test_history_is_newest_first_in_major_units(engine, fake_provider):
    fake_provider.add_payment_intent(
        amount=15000, currency="mad", created=100,
        metadata={"insured_party_id": "a1", "period_label": "2023-2024", "payment_type": PAYMENT_TYPE},
    )
    fake_provider.add_payment_intent(
        amount=15000, currency="mad", created=200,
        metadata={"insured_party_id": "a1", "period_label": "2024-2025", "payment_type": PAYMENT_TYPE},
    )
    fake_provider.add_payment_intent(
        amount=9900, currency="mad", created=300,
        metadata={"insured_party_id": "a1", "payment_type": "donation"},
    )

    history = await engine.get_payment_history("a1")

    assert [p["seasonYear"] for p in history] == ["2024-2025", "2023-2024"]
    assert history[0]["amount"] == 150.0
    assert history[0]["currency"] == "MAD"


async def test_history_propagates_provider_errors(engine, fake_provider):
    fake_provider.fail_with = "boom"
    with pytest.raises(PaymentProviderError):
        await engine.get_payment_history("a1")
