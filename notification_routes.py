import time
from datetime import datetime, timedelta

from flask import request, g

from models import db, User, CropPrice, PriceAlert, Notification, UsageTracking
from helpers import success_response, fail_response, error_response, get_json_body, paginate, log_activity
from security import protect, restrict_to, check_subscription_access, require_verification
from notifications import notification_service, E164_REGEX
from realtime import emit_alerts_processed

NOTIFICATION_SETTINGS = ['priceAlerts', 'marketplace', 'training', 'subscription', 'system', 'marketing', 'welcome']
NOTIFICATION_METHODS = ['sms', 'whatsapp', 'email']
ALERT_CONDITIONS = ['above', 'below', 'change']

# Active alerts per tier, anything else gets DEFAULT_ALERT_LIMIT
ALERT_LIMITS = {'basic': 10, 'premium': 50, 'commercial': 50, 'enterprise': 50}
DEFAULT_ALERT_LIMIT = 3

BULK_RECIPIENT_CAP = 5000
BULK_RECIPIENTS = {
    'subscribers': lambda q: q.filter(User.subscription_tier != 'free'),
    'farmers': lambda q: q.filter(User.role == 'farmer'),
    'extension': lambda q: q.filter(User.role == 'extension_officer')
}


def alert_limits(tier):
    return {'maxAlerts': ALERT_LIMITS.get(tier, DEFAULT_ALERT_LIMIT)}


def preferences_payload(user):
    return {
        'settings': user.notification_settings or {},
        'preferences': user.notification_preferences or {},
        'phone': user.phone
    }


def register_notification_routes(app):

    # ============ Notification Preference Routes ============

    @app.route('/api/notifications/preferences', methods=['GET'])
    @protect
    def get_notification_preferences():
        data = preferences_payload(g.user)
        data['hasPhone'] = bool(g.user.phone)
        return success_response(data)

    @app.route('/api/notifications/preferences', methods=['PATCH'])
    @protect
    def update_notification_preferences():
        user = g.user
        data = get_json_body()
        settings = data.get('settings')
        preferences = data.get('preferences')
        phone = data.get('phone')

        if phone and not E164_REGEX.match(phone):
            return fail_response('Invalid phone number format. Please use E.164 format (+1234567890)')

        if isinstance(settings, dict):
            merged = dict(user.notification_settings or {})
            for key, value in settings.items():
                if key in NOTIFICATION_SETTINGS and isinstance(value, bool):
                    merged[key] = value
            user.notification_settings = merged

        if isinstance(preferences, dict):
            merged = dict(user.notification_preferences or {})
            if preferences.get('method') in NOTIFICATION_METHODS:
                merged['method'] = preferences['method']
            if isinstance(preferences.get('quiet_hours'), dict):
                merged['quiet_hours'] = preferences['quiet_hours']
            user.notification_preferences = merged

        if phone:
            user.phone = phone

        try:
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            print(f"❌ Update preferences error: {e}")
            return error_response('Failed to update notification preferences', 500)

        return success_response(preferences_payload(user), message='Notification preferences updated successfully')

    # ============ Price Alert Routes ============

    @app.route('/api/notifications/alerts', methods=['GET'])
    @protect
    def get_price_alerts():
        user = g.user
        alerts = PriceAlert.query.filter_by(user_id=user.id).order_by(PriceAlert.created_at.desc()).all()
        week_ago = datetime.utcnow() - timedelta(days=7)

        payload = []
        for alert in alerts:
            data = alert.to_dict()
            if alert.is_active:
                latest = CropPrice.query.filter(
                    CropPrice.crop_name == alert.crop_name,
                    CropPrice.market_name == alert.market,
                    CropPrice.last_updated >= week_ago
                ).order_by(CropPrice.last_updated.desc()).first()
                data['currentPrice'] = {
                    'value': latest.price_value,
                    'currency': latest.currency,
                    'unit': latest.price_unit,
                    'lastUpdated': latest.last_updated.isoformat()
                } if latest else None
            payload.append(data)

        return success_response({
            'alerts': payload,
            'limits': alert_limits(user.subscription_tier),
            'usage': {'active': len([a for a in alerts if a.is_active]), 'total': len(alerts)}
        })

    @app.route('/api/notifications/alerts', methods=['POST'])
    @protect
    @check_subscription_access('priceAlerts')
    def create_price_alert():
        user = g.user
        data = get_json_body()
        crop_name = data.get('cropName')
        market = data.get('market')
        condition = data.get('condition')
        target_price = data.get('targetPrice')

        if not crop_name or not market or not condition:
            return fail_response('cropName, market, and condition are required')
        if condition not in ALERT_CONDITIONS:
            return fail_response('Condition must be one of: above, below, change')
        if condition in ('above', 'below') and (not target_price or float(target_price) <= 0):
            return fail_response('targetPrice is required and must be positive for above/below conditions')

        active = PriceAlert.query.filter_by(user_id=user.id, is_active=True)
        limits = alert_limits(user.subscription_tier)
        if active.count() >= limits['maxAlerts']:
            return fail_response(
                f"You have reached your limit of {limits['maxAlerts']} active price alerts. "
                "Upgrade your subscription for more alerts.", 403
            )

        if active.filter_by(crop_name=crop_name, market=market, condition=condition).first():
            return fail_response('You already have an active alert for this crop, market, and condition')

        if not CropPrice.query.filter_by(crop_name=crop_name, market_name=market).first():
            return fail_response('No price data found for this crop and market combination')

        try:
            alert = PriceAlert(
                user_id=user.id, crop_name=crop_name, market=market, condition=condition,
                target_price=target_price or None, is_active=True
            )
            db.session.add(alert)
            UsageTracking.increment_usage(user.id, 'price_alert', details={'action': 'create'})
            db.session.commit()
        except ValueError as e:
            db.session.rollback()
            return fail_response(str(e))

        return success_response({'alert': alert.to_dict()}, 201, message='Price alert created successfully')

    @app.route('/api/notifications/alerts/<int:alert_id>', methods=['PATCH'])
    @protect
    def update_price_alert(alert_id):
        alert = PriceAlert.query.filter_by(id=alert_id, user_id=g.user.id).first()
        if not alert:
            return fail_response('Price alert not found', 404)

        data = get_json_body()
        if data.get('condition'):
            if data['condition'] not in ALERT_CONDITIONS:
                return fail_response('Invalid condition')
            alert.condition = data['condition']
        if 'targetPrice' in data:
            alert.target_price = data['targetPrice']
        if 'isActive' in data:
            alert.is_active = bool(data['isActive'])
        db.session.commit()

        return success_response({'alert': alert.to_dict()}, message='Price alert updated successfully')

    @app.route('/api/notifications/alerts/<int:alert_id>', methods=['DELETE'])
    @protect
    def delete_price_alert(alert_id):
        alert = PriceAlert.query.filter_by(id=alert_id, user_id=g.user.id).first()
        if not alert:
            return fail_response('User or alert not found', 404)

        db.session.delete(alert)
        db.session.commit()
        return success_response(message='Price alert deleted successfully')

    @app.route('/api/notifications/alerts/<int:alert_id>/test', methods=['POST'])
    @protect
    @require_verification('phone')
    def test_price_alert(alert_id):
        alert = PriceAlert.query.filter_by(id=alert_id, user_id=g.user.id).first()
        if not alert:
            return fail_response('Price alert not found', 404)

        latest = CropPrice.query.filter_by(crop_name=alert.crop_name, market_name=alert.market) \
            .order_by(CropPrice.last_updated.desc()).first()
        if not latest:
            return fail_response('No price data available for this crop and market')

        target = f"{alert.target_price:g}" if alert.target_price else 'price change'
        message = (f"🧪 TEST ALERT: {alert.crop_name} in {alert.market} is currently "
                   f"{latest.currency} {latest.price_value:g}/{latest.price_unit}. "
                   f"Your alert is set for {alert.condition} {target}.")
        result = notification_service.send_system_notification(
            g.user.id, 'test', 'Test Price Alert', message, {'alertId': alert.id, 'test': True}
        )

        return success_response({
            'sent': result.get('success', False),
            'currentPrice': {'value': latest.price_value, 'currency': latest.currency, 'unit': latest.price_unit},
            'error': result.get('error')
        }, message='Test notification sent')

    # ============ Notification Inbox Routes ============

    @app.route('/api/notifications/inbox', methods=['GET'])
    @protect
    def get_inbox():
        base = Notification.query.filter_by(user_id=g.user.id)
        query = base
        if request.args.get('type'):
            query = query.filter(Notification.type == request.args['type'])
        if request.args.get('unread') == 'true':
            query = query.filter(Notification.is_read.is_(False))

        notifications, pagination = paginate(
            query.order_by(Notification.created_at.desc()),
            request.args.get('page', 1, type=int),
            request.args.get('limit', 20, type=int)
        )
        pagination['unreadCount'] = base.filter(Notification.is_read.is_(False)).count()
        return success_response({
            'notifications': [n.to_dict() for n in notifications],
            'pagination': pagination
        }, results=len(notifications))

    @app.route('/api/notifications/inbox/read-all', methods=['PATCH'])
    @protect
    def mark_all_notifications_read():
        Notification.query.filter_by(user_id=g.user.id, is_read=False).update({'is_read': True})
        db.session.commit()
        return success_response(message='All notifications marked as read')

    @app.route('/api/notifications/inbox/<int:notification_id>/read', methods=['PATCH'])
    @protect
    def mark_notification_read(notification_id):
        notification = Notification.query.filter_by(id=notification_id, user_id=g.user.id).first()
        if not notification:
            return fail_response('Notification not found', 404)

        notification.is_read = True
        db.session.commit()
        return success_response(message='Notification marked as read')

    @app.route('/api/notifications/inbox/<int:notification_id>', methods=['DELETE'])
    @protect
    def delete_inbox_notification(notification_id):
        notification = Notification.query.filter_by(id=notification_id, user_id=g.user.id).first()
        if not notification:
            return fail_response('Notification not found', 404)

        db.session.delete(notification)
        db.session.commit()
        return success_response(message='Notification deleted successfully')

    # ============ Admin Notification Routes ============

    @app.route('/api/notifications/send-bulk', methods=['POST'])
    @protect
    @restrict_to('admin')
    def send_bulk_notifications():
        data = get_json_body()
        title = data.get('title')
        message = data.get('message')
        type_ = data.get('type') or 'announcement'
        filters = data.get('filters') or {}

        if not message or not title:
            return fail_response('Message and title are required')

        query = User.query.filter(User.status == 'active')
        narrow = BULK_RECIPIENTS.get(data.get('recipients') or 'all')
        if narrow:
            query = narrow(query)
        if filters.get('subscriptionTier'):
            query = query.filter(User.subscription_tier == filters['subscriptionTier'])
        if filters.get('location'):
            query = query.filter(User.state == filters['location'])

        users = query.limit(BULK_RECIPIENT_CAP).all()
        if not users:
            return fail_response('No users found matching the criteria')

        body = f"{title}\n\n{message}"
        sms_recipients, whatsapp_recipients = [], []
        for user in users:
            if not user.phone:
                continue
            recipient = {'phone': user.phone, 'userId': user.id}
            if (user.notification_preferences or {}).get('method') == 'whatsapp':
                whatsapp_recipients.append(recipient)
            else:
                sms_recipients.append(recipient)

        try:
            sms_results = notification_service.send_bulk_sms(sms_recipients, body, type_) if sms_recipients else []
            whatsapp_results = []
            for recipient in whatsapp_recipients:
                if data.get('template'):
                    result = notification_service.send_whatsapp_template(
                        recipient['phone'], data['template'], [title, message], recipient['userId']
                    )
                else:
                    result = notification_service.send_whatsapp_message(
                        recipient['phone'], body, recipient['userId'], type_
                    )
                whatsapp_results.append(result)
                time.sleep(0.1)
        except Exception as e:
            print(f"❌ Send bulk notifications error: {e}")
            return error_response('Failed to send bulk notifications', 500)

        sent = len([r for r in sms_results + whatsapp_results if r.get('success')])
        log_activity('BULK_NOTIFY', 'Notification', None, f"{title}: {sent}/{len(users)}")
        return success_response({
            'sent': sent,
            'total': len(users),
            'sms': len(sms_results),
            'whatsapp': len(whatsapp_results)
        }, message=f"Bulk notifications sent to {sent}/{len(users)} users")

    @app.route('/api/notifications/process-alerts', methods=['POST'])
    @protect
    @restrict_to('admin')
    def process_alerts_now():
        try:
            results = notification_service.process_price_alerts()
        except Exception as e:
            db.session.rollback()
            print(f"❌ Process alerts error: {e}")
            return error_response('Failed to process price alerts', 500)

        emit_alerts_processed(results)
        return success_response({
            'processed': len(results),
            'successful': len([r for r in results if r['success']]),
            'failed': len([r for r in results if not r['success']])
        }, message='Price alerts processed successfully')
