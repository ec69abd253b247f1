"""
Outbound notifications: Twilio SMS, WhatsApp Cloud API, email and the
in-app inbox, plus the price-alert sweep that feeds them.
"""
import logging
import re
import threading
import time
from datetime import datetime, timedelta

import requests
from flask import current_app
from flask_mail import Mail, Message
from twilio.base.exceptions import TwilioException
from twilio.rest import Client as TwilioClient

from models import db, User, CropPrice, PriceAlert, UsageTracking, Notification

logger = logging.getLogger(__name__)

mail = Mail()

E164_REGEX = re.compile(r'^\+[1-9]\d{1,14}$')

HOURLY_LIMIT = 5
BULK_BATCH_SIZE = 50
ALERT_LOG_SIZE = 100

WELCOME_MESSAGE = """🌾 Welcome to AgricTech!

Your account is now active. You can:
• Get real-time crop prices
• Set price alerts
• Access the marketplace
• Take training courses

Reply HELP for assistance."""

SUBSCRIPTION_REMINDER = """⏰ Your AgricTech subscription expires in {days_left} days.

Renew now to continue enjoying:
• Premium price analytics
• Unlimited price alerts
• Marketplace access
• Training courses

Visit the app to renew your subscription."""

# type -> (recipient, title, template)
MARKETPLACE_MESSAGES = {
    'order_placed': ('seller', 'New Order Received', """📦 New Order Received!

Product: {productName}
Quantity: {quantity}
Amount: {currency} {amount}
Buyer: {buyerName}

Check your dashboard to accept or decline."""),
    'order_accepted': ('buyer', 'Order Accepted', """✅ Order Accepted!

Your order for {productName} has been accepted.
Delivery expected: {deliveryDate}

Track your order in the marketplace section."""),
    'order_shipped': ('buyer', 'Order Shipped', """🚚 Order Shipped!

Your order for {productName} is on its way.
Tracking: {trackingNumber}
Expected delivery: {deliveryDate}"""),
    'order_delivered': ('buyer', 'Order Delivered', """📦 Order Delivered!

Your order for {productName} has been delivered.

Please confirm receipt and leave a review."""),
    'payment_received': ('seller', 'Payment Received', """💰 Payment Received!

Amount: {currency} {amount}
From order: {productName}
Commission: {commission}

Payment will be processed within 2-3 business days.""")
}


class _Defaults(dict):
    def __missing__(self, key):
        return 'N/A'


class NotificationService:
    """Sends SMS/WhatsApp/email and keeps a per-phone hourly throttle."""

    def __init__(self):
        self.rate_limits = {}
        self._lock = threading.Lock()
        self._twilio = None
        self._twilio_sid = None

    # --- THROTTLE ---

    def is_rate_limited(self, phone, service, now=None):
        now = time.time() if now is None else now
        key = f"{phone}_{service}"
        with self._lock:
            timestamps = [ts for ts in self.rate_limits.get(key, []) if ts > now - 3600]
            if key in self.rate_limits:
                self.rate_limits[key] = timestamps
            return len(timestamps) >= HOURLY_LIMIT

    def update_rate_limit(self, phone, service, now=None):
        now = time.time() if now is None else now
        key = f"{phone}_{service}"
        with self._lock:
            self.rate_limits.setdefault(key, []).append(now)

    def cleanup_rate_limits(self, now=None):
        now = time.time() if now is None else now
        removed = 0
        with self._lock:
            for key in list(self.rate_limits):
                timestamps = [ts for ts in self.rate_limits[key] if ts > now - 3600]
                if timestamps:
                    self.rate_limits[key] = timestamps
                else:
                    del self.rate_limits[key]
                    removed += 1
        return removed

    # --- CHANNELS ---

    def twilio_configured(self):
        config = current_app.config
        return bool(config.get('TWILIO_ACCOUNT_SID') and config.get('TWILIO_AUTH_TOKEN'))

    def twilio_client(self):
        config = current_app.config
        if self._twilio is None or self._twilio_sid != config['TWILIO_ACCOUNT_SID']:
            self._twilio = TwilioClient(config['TWILIO_ACCOUNT_SID'], config['TWILIO_AUTH_TOKEN'])
            self._twilio_sid = config['TWILIO_ACCOUNT_SID']
        return self._twilio

    def send_sms(self, to, message, user_id=None, type='general'):
        if not self.twilio_configured():
            return {'success': False, 'error': 'Twilio not configured'}

        if self.is_rate_limited(to, 'sms'):
            return {'success': False, 'error': 'Rate limit exceeded for SMS'}
        if not to or not E164_REGEX.match(to):
            return {'success': False, 'error': 'Invalid phone number format'}

        try:
            result = self.twilio_client().messages.create(
                body=message,
                from_=current_app.config.get('TWILIO_PHONE_NUMBER'),
                to=to
            )
        except TwilioException as e:
            logger.error("SMS sending failed: %s", e)
            return {'success': False, 'error': str(e)}

        self.update_rate_limit(to, 'sms')
        if user_id:
            self.track_notification_usage(user_id, 'sms', type)

        return {'success': True, 'messageId': result.sid, 'status': result.status}

    def send_bulk_sms(self, recipients, message, type='bulk', pause=1):
        """recipients: list of {'phone', 'userId'} dicts."""
        results = []
        for start in range(0, len(recipients), BULK_BATCH_SIZE):
            batch = recipients[start:start + BULK_BATCH_SIZE]
            for recipient in batch:
                result = self.send_sms(recipient.get('phone'), message, recipient.get('userId'), type)
                results.append(dict(result, phone=recipient.get('phone'), userId=recipient.get('userId')))
            if start + BULK_BATCH_SIZE < len(recipients) and pause:
                time.sleep(pause)
        return results

    def _whatsapp_post(self, payload):
        config = current_app.config
        url = f"{config['WHATSAPP_BASE_URL']}/{config.get('WHATSAPP_PHONE_ID')}/messages"
        response = requests.post(
            url,
            json=payload,
            headers={
                'Authorization': f"Bearer {config.get('WHATSAPP_ACCESS_TOKEN')}",
                'Content-Type': 'application/json'
            },
            timeout=15
        )
        response.raise_for_status()
        return response.json()

    def whatsapp_configured(self):
        config = current_app.config
        return bool(config.get('WHATSAPP_PHONE_ID') and config.get('WHATSAPP_ACCESS_TOKEN'))

    def send_whatsapp_message(self, to, message, user_id=None, type='general'):
        if not self.whatsapp_configured():
            return {'success': False, 'error': 'WhatsApp not configured'}
        if self.is_rate_limited(to, 'whatsapp'):
            return {'success': False, 'error': 'Rate limit exceeded for WhatsApp'}

        payload = {
            'messaging_product': 'whatsapp',
            'to': (to or '').replace('+', ''),
            'type': 'text',
            'text': {'body': message}
        }
        try:
            result = self._whatsapp_post(payload)
        except requests.RequestException as e:
            logger.error("WhatsApp sending failed: %s", e)
            return {'success': False, 'error': _provider_error(e)}

        self.update_rate_limit(to, 'whatsapp')
        if user_id:
            self.track_notification_usage(user_id, 'whatsapp', type)

        return {'success': True, 'messageId': _first_message_id(result), 'status': 'sent'}

    def send_whatsapp_template(self, to, template_name, parameters=None, user_id=None, language='en'):
        if not self.whatsapp_configured():
            return {'success': False, 'error': 'WhatsApp not configured'}

        payload = {
            'messaging_product': 'whatsapp',
            'to': (to or '').replace('+', ''),
            'type': 'template',
            'template': {
                'name': template_name,
                'language': {'code': language},
                'components': [{
                    'type': 'body',
                    'parameters': [{'type': 'text', 'text': str(p)} for p in parameters or []]
                }]
            }
        }
        try:
            result = self._whatsapp_post(payload)
        except requests.RequestException as e:
            logger.error("WhatsApp template failed: %s", e)
            return {'success': False, 'error': _provider_error(e)}

        if user_id:
            self.track_notification_usage(user_id, 'whatsapp', f"template_{template_name}")
        return {'success': True, 'messageId': _first_message_id(result), 'status': 'sent'}

    def send_email(self, to, subject, body, html=None):
        try:
            msg = Message(subject=subject, recipients=[to])
            msg.body = body
            if html:
                msg.html = html
            mail.send(msg)
            return {'success': True}
        except Exception as e:
            logger.error("SMTP error: %s", e)
            return {'success': False, 'error': str(e)}

    # --- USAGE ---

    def track_notification_usage(self, user_id, service, type):
        try:
            UsageTracking.increment_usage(user_id, 'notification_sent', 1, {
                'service': service,
                'type': type,
                'timestamp': datetime.utcnow().isoformat()
            })
            db.session.commit()
        except Exception as e:
            logger.error("Usage tracking failed: %s", e)
            db.session.rollback()

    # --- PRICE ALERTS ---

    def get_previous_price(self, crop_name, market, now=None):
        """Latest price recorded between one and seven days ago."""
        now = now or datetime.utcnow()
        query = CropPrice.query.filter(
            CropPrice.crop_name == crop_name,
            CropPrice.last_updated < now - timedelta(hours=24),
            CropPrice.last_updated >= now - timedelta(days=7)
        )
        if market:
            query = query.filter(CropPrice.market_name == market)
        previous = query.order_by(CropPrice.last_updated.desc()).first()
        return previous.price_value if previous else None

    def check_recent_alert(self, user, alert_id, current_price, now=None):
        now = now or datetime.utcnow()
        hour_ago = now - timedelta(hours=1)
        for entry in user.alert_log or []:
            if str(entry.get('alertId')) != str(alert_id):
                continue
            sent_at = datetime.fromisoformat(entry['sentAt']) if entry.get('sentAt') else None
            if sent_at and sent_at > hour_ago and abs((entry.get('price') or 0) - current_price) < current_price * 0.01:
                return True
        return False

    def log_price_alert(self, user, alert_id, price, success):
        entries = list(user.alert_log or []) + [{
            'alertId': alert_id,
            'price': price,
            'success': success,
            'sentAt': datetime.utcnow().isoformat()
        }]
        user.alert_log = entries[-ALERT_LOG_SIZE:]

    def build_alert_message(self, alert, latest, now=None):
        price = latest.price_value
        currency = latest.currency or 'NGN'
        unit = latest.price_unit
        market = alert.market or latest.market_name

        if alert.condition == 'above' and alert.target_price is not None and price > alert.target_price:
            return (f"🚨 PRICE ALERT: {alert.crop_name} in {market} is now {currency} {price:g}/{unit} "
                    f"(above your target of {alert.target_price:g})")
        if alert.condition == 'below' and alert.target_price is not None and price < alert.target_price:
            return (f"📉 PRICE ALERT: {alert.crop_name} in {market} is now {currency} {price:g}/{unit} "
                    f"(below your target of {alert.target_price:g})")
        if alert.condition == 'change':
            threshold = alert.target_price or 10
            previous = self.get_previous_price(alert.crop_name, alert.market, now)
            if previous:
                change = abs((price - previous) / previous * 100)
                if change >= threshold:
                    trend = '📈 UP' if price > previous else '📉 DOWN'
                    return (f"{trend} PRICE CHANGE: {alert.crop_name} in {market} changed by {change:.1f}% "
                            f"(now {currency} {price:g}/{unit})")
        return None

    def process_price_alerts(self, now=None):
        now = now or datetime.utcnow()
        logger.info("Processing price alerts...")

        alerts = PriceAlert.query.join(User).filter(
            PriceAlert.is_active.is_(True),
            User.status == 'active'
        ).all()

        pending = []
        for alert in alerts:
            user = alert.user
            if (user.notification_settings or {}).get('priceAlerts') is False:
                continue

            query = CropPrice.query.filter(
                CropPrice.crop_name == alert.crop_name,
                CropPrice.last_updated >= now - timedelta(hours=24)
            )
            if alert.market:
                query = query.filter(CropPrice.market_name == alert.market)
            latest = query.order_by(CropPrice.last_updated.desc()).first()
            if not latest:
                continue

            message = self.build_alert_message(alert, latest, now)
            if message and not self.check_recent_alert(user, alert.id, latest.price_value, now):
                pending.append({
                    'user': user,
                    'alert': alert,
                    'message': message,
                    'price': latest.price_value
                })

        results = self.send_price_alerts(pending)
        logger.info("Processed %d price alerts", len(results))
        return results

    def send_price_alerts(self, pending):
        results = []
        for item in pending:
            user, alert = item['user'], item['alert']
            preferences = user.notification_preferences or {}
            if preferences.get('method') == 'whatsapp':
                result = self.send_whatsapp_message(user.phone, item['message'], user.id, 'price_alert')
            else:
                result = self.send_sms(user.phone, item['message'], user.id, 'price_alert')

            self.log_price_alert(user, alert.id, item['price'], result['success'])
            alert.last_triggered = datetime.utcnow()
            db.session.add(Notification(
                user_id=user.id, type='price_alert', title='Price Alert',
                message=item['message'], data={'alertId': alert.id, 'price': item['price']}
            ))
            results.append({
                'userId': user.id,
                'alertId': alert.id,
                'success': result['success'],
                'error': result.get('error')
            })

        db.session.commit()
        return results

    # --- SYSTEM MESSAGES ---

    def send_system_notification(self, user_id, type, title, message, data=None):
        user = db.session.get(User, user_id)
        if not user or user.status != 'active':
            return {'success': False, 'error': 'User not found or inactive'}

        if (user.notification_settings or {}).get(type) is False:
            return {'success': False, 'reason': 'User has disabled this notification type'}

        full_message = f"{title}\n\n{message}"
        result = {'success': False, 'error': 'No phone number on file'}
        if user.phone:
            if (user.notification_preferences or {}).get('method') == 'whatsapp':
                result = self.send_whatsapp_message(user.phone, full_message, user.id, type)
            else:
                result = self.send_sms(user.phone, full_message, user.id, type)

        db.session.add(Notification(
            user_id=user.id, type=type, title=title, message=message, data=data or {}, is_read=False
        ))
        db.session.commit()
        return result

    def send_welcome_message(self, user_id):
        return self.send_system_notification(user_id, 'welcome', 'Welcome to AgricTech!', WELCOME_MESSAGE)

    def send_subscription_reminder(self, user_id, days_left):
        return self.send_system_notification(
            user_id, 'subscription', 'Subscription Reminder',
            SUBSCRIPTION_REMINDER.format(days_left=days_left),
            {'daysLeft': days_left, 'type': 'renewal_reminder'}
        )

    def send_marketplace_notification(self, buyer_id, seller_id, type, data):
        if type not in MARKETPLACE_MESSAGES:
            return []
        recipient, title, template = MARKETPLACE_MESSAGES[type]
        target = seller_id if recipient == 'seller' else buyer_id
        if not target:
            return []
        message = template.format_map(_Defaults(data))
        return [self.send_system_notification(target, 'marketplace', title, message, data)]


def _first_message_id(result):
    messages = (result or {}).get('messages') or [{}]
    return messages[0].get('id')


def _provider_error(error):
    response = getattr(error, 'response', None)
    if response is not None:
        try:
            return response.json().get('error', {}).get('message') or str(error)
        except ValueError:
            pass
    return str(error)


notification_service = NotificationService()
