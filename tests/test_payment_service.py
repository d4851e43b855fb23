import pytest
from fastapi import HTTPException

from billing.exceptions import NotFoundFailure
from payment.models import Payment
from payment.repository import PaymentRepository
from payment.services import PaymentService


@pytest.fixture
def service(provider):
    return PaymentService(provider)


def test_open_intent_is_reused(service, provider, db, user):
    first = service.create_payment_intent(user.id, 1500, db)
    second = service.create_payment_intent(user.id, 1500, db)

    assert second.client_secret == first.client_secret
    assert second.payment_intent_id == first.payment_intent_id
    assert provider.call_names().count("create_payment_intent") == 1
    assert db.query(Payment).filter(Payment.user_id == user.id).count() == 1

    payment = PaymentRepository.find_by_intent_id(db, first.payment_intent_id)
    assert payment.status == "pending"
    assert payment.amount == 1500
    assert payment.currency == "usd"


@pytest.mark.parametrize("finished_status", ["canceled", "succeeded"])
def test_finished_intent_is_not_reused(service, provider, db, user, finished_status):
    first = service.create_payment_intent(user.id, 1500, db)
    provider.intents[first.payment_intent_id]["status"] = finished_status

    second = service.create_payment_intent(user.id, 1500, db)

    assert second.payment_intent_id != first.payment_intent_id
    assert db.query(Payment).filter(Payment.user_id == user.id).count() == 2


def test_intents_are_per_user(service, db, user, other_user):
    mine = service.create_payment_intent(user.id, 1000, db)
    theirs = service.create_payment_intent(other_user.id, 1000, db)
    assert mine.payment_intent_id != theirs.payment_intent_id


@pytest.mark.parametrize("amount", [0, -5, 12.5, True])
def test_invalid_amount_rejected_before_provider_call(service, provider, db, user, amount):
    with pytest.raises(HTTPException) as exc:
        service.create_payment_intent(user.id, amount, db)
    assert exc.value.status_code == 400
    assert provider.calls == []


def test_unknown_user(service, provider, db):
    with pytest.raises(NotFoundFailure):
        service.create_payment_intent(9999, 1000, db)
    assert provider.calls == []


def test_checkout_always_creates_a_new_session(service, provider, db, user):
    first = service.create_checkout(user.id, 2000, db)
    second = service.create_checkout(user.id, 2000, db)

    assert first.url != second.url
    assert provider.call_names().count("create_checkout_session") == 2
    payments = PaymentRepository.find_by_user_id(db, user.id)
    assert len(payments) == 2
    assert all(p.stripe_checkout_session_id and p.status == "pending" for p in payments)


def test_mark_paid_once_per_event(db, user):
    payment = PaymentRepository.add(db, Payment(user_id=user.id, amount=100, stripe_payment_intent_id="pi_x"))

    PaymentRepository.mark_paid(db, payment, "evt_1")
    PaymentRepository.mark_paid(db, payment, "evt_1")

    db.refresh(payment)
    assert payment.status == "paid"
    assert payment.webhook_event_ids == ["evt_1"]


def test_failure_does_not_downgrade_a_paid_payment(db, user):
    payment = PaymentRepository.add(db, Payment(user_id=user.id, amount=100, stripe_payment_intent_id="pi_y"))
    PaymentRepository.mark_paid(db, payment, "evt_paid")
    PaymentRepository.mark_failed(db, payment, "evt_failed")

    db.refresh(payment)
    assert payment.status == "paid"
    assert payment.webhook_event_ids == ["evt_paid", "evt_failed"]


def test_user_payments_listed_newest_first(service, db, user):
    service.create_checkout(user.id, 100, db)
    service.create_checkout(user.id, 200, db)

    payments = PaymentService.get_user_payments(user.id, db)
    assert [p.amount for p in payments] == [200, 100]
