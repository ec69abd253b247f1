import calendar
import hashlib
import hmac
import logging
import random
import time
from datetime import datetime

import requests
from flask import current_app

from models import db, SubscriptionPlan, Transaction

logger = logging.getLogger(__name__)

PAYSTACK_CHANNELS = ['card', 'bank', 'ussd', 'qr', 'bank_transfer']


class PaystackError(Exception):
    pass


class PaystackClient:
    """Thin wrapper over the Paystack REST API."""

    def __init__(self, secret_key=None, base_url=None, timeout=20):
        self.secret_key = secret_key if secret_key is not None else current_app.config.get('PAYSTACK_SECRET_KEY')
        self.base_url = (base_url or current_app.config.get('PAYSTACK_BASE_URL') or 'https://api.paystack.co').rstrip('/')
        self.timeout = timeout

    def _request(self, method, endpoint, payload=None):
        try:
            response = requests.request(
                method,
                f"{self.base_url}{endpoint}",
                json=payload if method != 'GET' else None,
                params=payload if method == 'GET' else None,
                headers={
                    'Authorization': f"Bearer {self.secret_key}",
                    'Content-Type': 'application/json'
                },
                timeout=self.timeout
            )
            body = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.error("Paystack API error: %s", e)
            raise PaystackError('Payment service error') from e

        if response.status_code >= 400 or not body.get('status'):
            logger.error("Paystack API error: %s", body)
            raise PaystackError(body.get('message') or 'Payment service error')
        return body

    def initialize_transaction(self, email, amount, reference, metadata=None, callback_url=None):
        """amount is in naira; Paystack expects kobo."""
        payload = {
            'email': email,
            'amount': int(round(amount * 100)),
            'reference': reference,
            'currency': 'NGN',
            'metadata': metadata or {},
            'channels': PAYSTACK_CHANNELS
        }
        if callback_url:
            payload['callback_url'] = callback_url
        return self._request('POST', '/transaction/initialize', payload)['data']

    def verify_transaction(self, reference):
        return self._request('GET', f"/transaction/verify/{reference}")['data']


def generate_reference(prefix='AGR'):
    return f"{prefix}_{int(time.time() * 1000)}_{random.randint(0, 999):03d}"


def verify_paystack_signature(raw_body, signature, secret_key):
    if not signature or not secret_key:
        return False
    expected = hmac.new(secret_key.encode(), raw_body, hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected, signature)


def add_months(value, months):
    month = value.month - 1 + months
    year = value.year + month // 12
    month = month % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def activate_subscription(user, transaction, authorization=None):
    """Moves the user onto the paid plan. The caller commits."""
    plan = SubscriptionPlan.find_plan_by_name(transaction.subscription_plan)
    if not plan:
        return None
    if any(entry.get('reference') == transaction.reference for entry in (user.payment_history or [])):
        logger.info("Reference %s already applied to %s", transaction.reference, user.email)
        return plan

    now = datetime.utcnow()
    months = 12 if transaction.billing_cycle == 'yearly' else 1
    user.subscription_tier = plan.name
    user.subscription_status = 'active'
    user.subscription_start = now
    user.subscription_expires_at = add_months(now, months)
    user.subscription_features = plan.feature_names

    payment_method = dict(user.payment_method or {}, provider='paystack')
    if authorization and authorization.get('last4'):
        payment_method['lastFour'] = authorization['last4']
    user.payment_method = payment_method

    user.total_spent = (user.total_spent or 0) + transaction.amount
    user.payment_history = list(user.payment_history or []) + [{
        'amount': transaction.amount,
        'type': 'subscription',
        'status': 'completed',
        'reference': transaction.reference,
        'provider': 'paystack',
        'paidAt': now.isoformat()
    }]

    transaction.subscription_start = now
    transaction.subscription_end = user.subscription_expires_at
    logger.info("Subscription activated for %s: %s", user.email, plan.name)
    return plan


def paystack_payment_data(data):
    return {
        'paystack': {
            'transaction_id': data.get('id'),
            'customer_code': (data.get('customer') or {}).get('customer_code'),
            'authorization_code': (data.get('authorization') or {}).get('authorization_code')
        }
    }


def settle_verification(transaction, data):
    """Applies a Paystack verify/charge payload to a transaction. Returns True when paid."""
    if data.get('status') == 'success':
        transaction.mark_as_paid(paystack_payment_data(data))
        authorization = data.get('authorization') or {}
        transaction.channel = data.get('channel')
        transaction.card_last4 = authorization.get('last4')
        transaction.bank = authorization.get('bank')
        if transaction.type == 'subscription':
            activate_subscription(transaction.user, transaction, authorization)
        return True

    transaction.mark_as_failed(data.get('gateway_response') or 'Payment verification failed')
    return False


def retry_failed_payments(client=None, now=None):
    """Re-verifies failed Paystack transactions whose backoff has elapsed."""
    due = Transaction.find_pending_retries(now)
    if not due:
        return 0

    client = client or PaystackClient()
    settled = 0
    for transaction in due:
        if transaction.provider != 'paystack':
            continue
        try:
            data = client.verify_transaction(transaction.reference)
        except PaystackError as e:
            transaction.mark_as_failed(str(e))
            continue
        if settle_verification(transaction, data):
            settled += 1

    db.session.commit()
    logger.info("Payment retry sweep: %d due, %d settled", len(due), settled)
    return settled
