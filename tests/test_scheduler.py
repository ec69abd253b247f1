from datetime import datetime, timedelta

from models import db, Transaction, SubscriptionPlan
from payments import PaystackError, generate_reference, retry_failed_payments
from scheduler import find_expiring_subscriptions


def make_transaction(user):
    transaction = Transaction(user_id=user.id, reference=generate_reference('TRN'), amount=5000,
                              type='subscription', provider='paystack',
                              subscription_plan='premium', billing_cycle='monthly')
    db.session.add(transaction)
    db.session.commit()
    return transaction


def make_plan():
    db.session.add(SubscriptionPlan(
        name='premium', display_name_english='Trader Premium', display_name_yoruba='Oniṣowo Pataki',
        description_english='Tools for traders', description_yoruba='Irinṣẹ fun oniṣowo',
        monthly_amount=5000, yearly_amount=50000, features=[{'name': 'advanced_analytics'}]
    ))
    db.session.commit()


class FakePaystack:
    def __init__(self, data=None, error=None):
        self.data = data
        self.error = error
        self.verified = []

    def verify_transaction(self, reference):
        self.verified.append(reference)
        if self.error:
            raise self.error
        return self.data


def test_expiring_subscriptions_window(app, make_user):
    soon = make_user(tier='basic', active=True)
    soon.subscription_expires_at = datetime.utcnow() + timedelta(days=2)
    later = make_user(tier='basic', active=True)
    later.subscription_expires_at = datetime.utcnow() + timedelta(days=10)
    make_user()
    db.session.commit()

    assert [u.id for u in find_expiring_subscriptions()] == [soon.id]


def test_retry_sweep_settles_due_payments(app, make_user):
    make_plan()
    user = make_user()
    transaction = make_transaction(user)
    transaction.mark_as_failed('Timeout')
    transaction.next_retry_at = datetime.utcnow() - timedelta(minutes=1)
    not_due = make_transaction(user)
    not_due.mark_as_failed('Timeout')
    db.session.commit()

    client = FakePaystack({'status': 'success', 'channel': 'card', 'authorization': {'last4': '4081'}})
    assert retry_failed_payments(client) == 1
    assert client.verified == [transaction.reference]
    assert db.session.get(Transaction, transaction.id).status == 'successful'
    assert user.subscription_tier == 'premium'


def test_retry_sweep_backs_off_on_gateway_error(app, make_user):
    transaction = make_transaction(make_user())
    transaction.mark_as_failed('Timeout')
    transaction.next_retry_at = datetime.utcnow() - timedelta(minutes=1)
    db.session.commit()

    assert retry_failed_payments(FakePaystack(error=PaystackError('Payment service error'))) == 0
    assert transaction.retry_count == 2
    assert transaction.failure_reason == 'Payment service error'


def test_nothing_due_skips_gateway(app):
    assert retry_failed_payments(FakePaystack(error=AssertionError('should not be called'))) == 0
