import hashlib
import hmac
import json
from datetime import datetime, timedelta

from models import db, Transaction, SubscriptionPlan
from payments import (
    activate_subscription, add_months, generate_reference, retry_failed_payments, verify_paystack_signature
)

SECRET = 'sk_test_igbaja'


def sign(body):
    return hmac.new(SECRET.encode(), body, hashlib.sha512).hexdigest()


def make_transaction(user, **fields):
    transaction = Transaction(
        user_id=user.id,
        reference=fields.pop('reference', generate_reference('TRN')),
        amount=fields.pop('amount', 5000),
        type=fields.pop('type', 'subscription'),
        provider='paystack',
        subscription_plan=fields.pop('subscription_plan', 'premium'),
        billing_cycle=fields.pop('billing_cycle', 'monthly'),
        **fields
    )
    db.session.add(transaction)
    db.session.commit()
    return transaction


def make_plan():
    plan = SubscriptionPlan(
        name='premium',
        display_name_english='Trader Premium',
        display_name_yoruba='Oniṣowo Pataki',
        description_english='Tools for traders',
        description_yoruba='Irinṣẹ fun oniṣowo',
        monthly_amount=5000,
        yearly_amount=50000,
        features=[{'name': 'advanced_analytics'}, {'name': 'data_export'}]
    )
    db.session.add(plan)
    db.session.commit()
    return plan


def test_signature_check():
    body = b'{"event": "charge.success"}'
    assert verify_paystack_signature(body, sign(body), SECRET)
    assert not verify_paystack_signature(body, 'bad', SECRET)
    assert not verify_paystack_signature(body, None, SECRET)
    assert not verify_paystack_signature(body, sign(body), '')


def test_add_months_clamps_day():
    assert add_months(datetime(2024, 1, 31), 1) == datetime(2024, 2, 29)
    assert add_months(datetime(2024, 11, 15), 12) == datetime(2025, 11, 15)


def test_mark_as_failed_backs_off(app, make_user):
    transaction = make_transaction(make_user())

    before = datetime.utcnow()
    transaction.mark_as_failed('Declined')
    assert transaction.status == 'failed'
    assert transaction.retry_count == 1
    assert transaction.next_retry_at >= before + timedelta(minutes=2)

    transaction.mark_as_failed('Declined')
    assert transaction.next_retry_at >= before + timedelta(minutes=4)

    transaction.mark_as_failed('Declined')
    assert transaction.retry_count == 3
    assert transaction.next_retry_at is None


def test_webhook_rejects_bad_signature(client, make_user):
    transaction = make_transaction(make_user())
    body = json.dumps({'event': 'charge.success', 'data': {'reference': transaction.reference}}).encode()

    response = client.post('/api/payments/webhook/paystack', data=body,
                           headers={'x-paystack-signature': 'forged', 'Content-Type': 'application/json'})
    assert response.status_code == 400
    assert db.session.get(Transaction, transaction.id).status == 'pending'


def test_webhook_charge_success_activates_subscription(client, make_user):
    make_plan()
    user = make_user()
    transaction = make_transaction(user)
    body = json.dumps({
        'event': 'charge.success',
        'data': {'reference': transaction.reference, 'channel': 'card',
                 'authorization': {'last4': '4081'}}
    }).encode()

    response = client.post('/api/payments/webhook/paystack', data=body,
                           headers={'x-paystack-signature': sign(body), 'Content-Type': 'application/json'})
    assert response.status_code == 200

    db.session.refresh(transaction)
    db.session.refresh(user)
    assert transaction.status == 'successful'
    assert user.subscription_tier == 'premium'
    assert user.subscription_status == 'active'
    assert user.subscription_features == ['advanced_analytics', 'data_export']
    assert user.is_subscription_active


def test_webhook_charge_failed_schedules_retry(client, make_user):
    transaction = make_transaction(make_user())
    body = json.dumps({
        'event': 'charge.failed',
        'data': {'reference': transaction.reference, 'gateway_response': 'Insufficient funds'}
    }).encode()

    client.post('/api/payments/webhook/paystack', data=body,
                headers={'x-paystack-signature': sign(body), 'Content-Type': 'application/json'})

    db.session.refresh(transaction)
    assert transaction.status == 'failed'
    assert transaction.failure_reason == 'Insufficient funds'
    assert transaction.next_retry_at is not None


def test_plans_are_public(client):
    make_plan()
    response = client.get('/api/payments/plans')
    assert response.status_code == 200
    plans = response.get_json()['data']['plans']
    assert plans[0]['name'] == 'premium'
    assert plans[0]['yearlySavings'] == 10000


class SuccessfulPaystack:
    def verify_transaction(self, reference):
        return {'status': 'success', 'reference': reference, 'channel': 'card'}


def test_late_charge_failed_does_not_reopen_paid_transaction(client, make_user):
    make_plan()
    user = make_user()
    transaction = make_transaction(user)
    for event in ({'event': 'charge.success', 'data': {'reference': transaction.reference}},
                  {'event': 'charge.failed', 'data': {'reference': transaction.reference,
                                                      'gateway_response': 'Declined'}}):
        body = json.dumps(event).encode()
        client.post('/api/payments/webhook/paystack', data=body,
                    headers={'x-paystack-signature': sign(body), 'Content-Type': 'application/json'})

    db.session.refresh(transaction)
    assert transaction.status == 'successful'
    assert transaction.next_retry_at is None

    assert retry_failed_payments(SuccessfulPaystack(), datetime.utcnow() + timedelta(minutes=5)) == 0
    db.session.refresh(user)
    assert user.total_spent == 5000
    assert len(user.payment_history) == 1


def test_activation_applies_each_reference_once(app, make_user):
    make_plan()
    user = make_user()
    transaction = make_transaction(user)

    activate_subscription(user, transaction)
    activate_subscription(user, transaction)
    assert user.total_spent == 5000
    assert [entry['reference'] for entry in user.payment_history] == [transaction.reference]
