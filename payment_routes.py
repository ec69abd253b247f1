import json
import logging
from datetime import datetime

from flask import request, g, current_app

from models import db, SubscriptionPlan, Transaction, UsageTracking, USAGE_FEATURES
from helpers import success_response, fail_response, error_response, get_json_body, paginate, log_activity
from security import protect
from payments import (
    PaystackClient, PaystackError, generate_reference, verify_paystack_signature,
    paystack_payment_data, settle_verification, activate_subscription
)

logger = logging.getLogger(__name__)

# Counters reported by /usage; notification sends are internal
REPORTED_USAGE = [f for f in USAGE_FEATURES if f != 'notification_sent']


def process_paystack_event(event):
    """Applies a verified webhook event to its transaction. The caller commits."""
    event_type = event.get('event')
    data = event.get('data') or {}

    transaction = Transaction.query.filter_by(reference=data.get('reference')).first()
    if not transaction:
        logger.info("Transaction not found for webhook: %s", data.get('reference'))
        return None

    transaction.add_webhook_event('paystack', event_type, data)

    if event_type == 'charge.success':
        if transaction.status != 'successful':
            transaction.mark_as_paid(paystack_payment_data(data))
            if transaction.type == 'subscription':
                activate_subscription(transaction.user, transaction, data.get('authorization'))
    elif event_type == 'charge.failed':
        if transaction.status == 'successful':
            logger.info("Ignoring charge.failed for settled transaction %s", transaction.reference)
        else:
            transaction.mark_as_failed(data.get('gateway_response') or 'Payment failed')
    elif event_type in ('subscription.create', 'subscription.disable', 'subscription.enable'):
        logger.info("Subscription %s: %s", event_type, data.get('subscription_code'))
    else:
        logger.info("Unhandled webhook event: %s", event_type)
    return transaction


def register_payment_routes(app):

    # ============ Subscription Plan Routes ============

    @app.route('/api/payments/plans', methods=['GET'])
    def get_plans():
        try:
            audience = request.args.get('audience')
            if audience:
                plans = SubscriptionPlan.find_plans_for_audience(audience)
            else:
                plans = SubscriptionPlan.query.filter_by(is_active=True) \
                    .order_by(SubscriptionPlan.sort_order.asc()).all()
            return success_response({'plans': [p.to_dict() for p in plans]}, results=len(plans))
        except Exception as e:
            print(f"❌ Get plans error: {e}")
            return error_response('Failed to fetch subscription plans', 500)

    @app.route('/api/payments/plans/<plan_name>', methods=['GET'])
    def get_plan(plan_name):
        plan = SubscriptionPlan.find_plan_by_name(plan_name)
        if not plan:
            return fail_response('Subscription plan not found', 404)
        return success_response({'plan': plan.to_dict()})

    # ============ Checkout Routes ============

    @app.route('/api/payments/subscribe', methods=['POST'])
    @protect
    def subscribe():
        data = get_json_body()
        plan_name = data.get('planName')
        billing_cycle = data.get('billingCycle') or 'monthly'
        user = g.user

        plan = SubscriptionPlan.find_plan_by_name(plan_name)
        if not plan:
            return fail_response('Subscription plan not found', 404)
        if billing_cycle not in ('monthly', 'yearly'):
            return fail_response('billingCycle must be monthly or yearly')

        if data.get('customAmount') and plan_name == 'commercial':
            amount = float(data['customAmount'])
        else:
            amount = plan.monthly_amount if billing_cycle == 'monthly' else plan.yearly_amount

        reference = generate_reference('SUB')
        try:
            transaction = Transaction(
                user_id=user.id,
                reference=reference,
                amount=amount,
                type='subscription',
                provider='paystack',
                subscription_plan=plan_name,
                billing_cycle=billing_cycle,
                details={
                    'description': f"{plan.display_name_english} subscription - {billing_cycle}",
                    'customFields': {'planName': plan_name, 'billingCycle': billing_cycle, 'userId': str(user.id)}
                }
            )
            db.session.add(transaction)
            db.session.flush()

            paystack = PaystackClient().initialize_transaction(
                user.email, amount, reference,
                metadata={
                    'user_id': str(user.id),
                    'plan_name': plan_name,
                    'billing_cycle': billing_cycle,
                    'transaction_id': str(transaction.id)
                },
                callback_url=f"{current_app.config['CLIENT_URL']}/subscription/callback"
            )
            transaction.payment_data = {
                'paystack': {'access_code': paystack.get('access_code'), 'transaction_id': paystack.get('reference')}
            }
            db.session.commit()
        except PaystackError as e:
            db.session.rollback()
            return error_response(str(e) or 'Subscription initialization failed', 500)
        except Exception as e:
            db.session.rollback()
            print(f"❌ Subscribe error: {e}")
            return error_response('Subscription initialization failed', 500)

        log_activity('SUBSCRIBE_INIT', 'Transaction', transaction.id, f"{plan_name} ({billing_cycle})")
        return success_response({
            'authorization_url': paystack.get('authorization_url'),
            'access_code': paystack.get('access_code'),
            'reference': reference,
            'amount': amount,
            'plan': {'english': plan.display_name_english, 'yoruba': plan.display_name_yoruba}
        }, message='Payment initialized successfully')

    @app.route('/api/payments/verify/<reference>', methods=['GET'])
    @protect
    def verify_payment(reference):
        user = g.user
        transaction = Transaction.query.filter(
            Transaction.reference == reference,
            Transaction.user_id == user.id,
            Transaction.status != 'successful'
        ).first()
        if not transaction:
            return fail_response('Transaction not found or already processed', 404)

        try:
            data = PaystackClient().verify_transaction(reference)
            paid = settle_verification(transaction, data)
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            print(f"❌ Payment verification error: {e}")
            return error_response('Payment verification failed', 500)

        if not paid:
            return fail_response('Payment verification failed', 400,
                                 data={'gateway_response': data.get('gateway_response')})

        log_activity('PAYMENT', 'Transaction', transaction.id, f"Paid {transaction.amount} for {transaction.subscription_plan}")
        return success_response({
            'transaction': {
                'reference': transaction.reference,
                'amount': transaction.amount,
                'status': transaction.status,
                'paidAt': transaction.paid_at.isoformat() if transaction.paid_at else None
            },
            'subscription': {
                'tier': user.subscription_tier,
                'expiresAt': user.subscription_expires_at.isoformat() if user.subscription_expires_at else None,
                'features': list(user.subscription_features or [])
            }
        }, message='Payment verified and subscription activated')

    @app.route('/api/payments/webhook/paystack', methods=['POST'])
    def paystack_webhook():
        raw_body = request.get_data()
        signature = request.headers.get('x-paystack-signature')
        if not verify_paystack_signature(raw_body, signature, current_app.config.get('PAYSTACK_SECRET_KEY')):
            return fail_response('Invalid signature', 400)

        try:
            event = json.loads(raw_body or b'{}')
            logger.info("Paystack webhook received: %s", event.get('event'))
            process_paystack_event(event)
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            logger.error("Webhook processing error: %s", e, exc_info=True)
            return error_response('Webhook processing failed', 500)
        return success_response()

    # ============ Billing Account Routes ============

    @app.route('/api/payments/history', methods=['GET'])
    @protect
    def payment_history():
        page = request.args.get('page', 1, type=int)
        limit = request.args.get('limit', 10, type=int)
        query = Transaction.query.filter_by(user_id=g.user.id)
        if request.args.get('type'):
            query = query.filter(Transaction.type == request.args['type'])

        transactions, pagination = paginate(query.order_by(Transaction.created_at.desc()), page, limit)
        return success_response({
            'transactions': [t.to_dict() for t in transactions],
            'pagination': pagination
        }, results=len(transactions))

    @app.route('/api/payments/usage', methods=['GET'])
    @protect
    def usage_statistics():
        user = g.user
        feature = request.args.get('feature')
        timeframe = request.args.get('timeframe', 'monthly')

        if feature:
            usage = UsageTracking.get_user_usage(user.id, feature, timeframe)
        else:
            usage = {f: UsageTracking.get_user_usage(user.id, f, timeframe) for f in REPORTED_USAGE}

        plan = SubscriptionPlan.find_plan_by_name(user.subscription_tier)
        limits = dict(SubscriptionPlan.DEFAULT_LIMITS, **(plan.limits or {})) if plan else {}
        return success_response({
            'usage': usage,
            'limits': limits,
            'subscription': {
                'tier': user.subscription_tier,
                'expiresAt': user.subscription_expires_at.isoformat() if user.subscription_expires_at else None,
                'status': user.subscription_status
            }
        })

    @app.route('/api/payments/cancel-subscription', methods=['POST'])
    @protect
    def cancel_subscription():
        user = g.user
        if user.subscription_tier == 'free':
            return fail_response('You are already on the free plan')

        user.subscription_status = 'cancelled'
        user.auto_renew = False
        db.session.commit()

        log_activity('CANCEL_SUBSCRIPTION', 'User', user.id, f"Cancelled {user.subscription_tier}")
        return success_response(
            {'expiresAt': user.subscription_expires_at.isoformat() if user.subscription_expires_at else None},
            message='Subscription cancelled successfully. You can continue using premium features '
                    'until your current billing period ends.'
        )

    @app.route('/api/payments/reactivate-subscription', methods=['POST'])
    @protect
    def reactivate_subscription():
        user = g.user
        if user.subscription_status == 'active':
            return fail_response('Your subscription is already active')

        if not user.subscription_expires_at or datetime.utcnow() > user.subscription_expires_at:
            return fail_response('Your subscription has expired. Please subscribe to a new plan.',
                                 redirectTo='/subscription/plans')

        user.subscription_status = 'active'
        user.auto_renew = True
        db.session.commit()
        return success_response(message='Subscription reactivated successfully')
