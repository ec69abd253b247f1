from datetime import datetime, timedelta
from types import SimpleNamespace

from twilio.base.exceptions import TwilioRestException

from models import db, PriceAlert, Notification
import notifications
from notifications import NotificationService, HOURLY_LIMIT, ALERT_LOG_SIZE


def make_alert(user, **fields):
    alert = PriceAlert(user_id=user.id, crop_name='maize', market='Igbaja Local Market', **fields)
    db.session.add(alert)
    db.session.commit()
    return alert


def test_hourly_throttle():
    service = NotificationService()
    for i in range(HOURLY_LIMIT):
        assert not service.is_rate_limited('+2348031234567', 'sms', now=1000 + i)
        service.update_rate_limit('+2348031234567', 'sms', now=1000 + i)
    assert service.is_rate_limited('+2348031234567', 'sms', now=1010)
    assert not service.is_rate_limited('+2348031234567', 'whatsapp', now=1010)
    assert not service.is_rate_limited('+2348031234567', 'sms', now=1000 + 3600 + HOURLY_LIMIT)
    assert service.cleanup_rate_limits(now=10000) == 1


def test_sms_without_twilio_config(app):
    result = NotificationService().send_sms('+2348031234567', 'hello')
    assert result == {'success': False, 'error': 'Twilio not configured'}


class FakeMessages:
    def __init__(self):
        self.sent = []

    def create(self, **kwargs):
        self.sent.append(kwargs)
        return SimpleNamespace(sid=f"SM{len(self.sent)}", status='queued')


class FakeTwilio:
    instances = []

    def __init__(self, sid, token):
        self.credentials = (sid, token)
        self.messages = FakeMessages()
        FakeTwilio.instances.append(self)


def test_sms_goes_through_twilio_client(app, make_user, monkeypatch):
    monkeypatch.setattr(notifications, 'TwilioClient', FakeTwilio)
    FakeTwilio.instances = []
    app.config.update(TWILIO_ACCOUNT_SID='AC123', TWILIO_AUTH_TOKEN='secret',
                      TWILIO_PHONE_NUMBER='+15550001111')
    user = make_user()
    service = NotificationService()

    result = service.send_sms('+2348031234567', 'Maize is up', user.id, 'price_alert')
    assert result == {'success': True, 'messageId': 'SM1', 'status': 'queued'}
    client = FakeTwilio.instances[0]
    assert client.credentials == ('AC123', 'secret')
    assert client.messages.sent == [{'body': 'Maize is up', 'from_': '+15550001111', 'to': '+2348031234567'}]
    assert service.send_sms('08031234567', 'bad number')['error'] == 'Invalid phone number format'
    # One client per account
    service.send_sms('+2348031234567', 'again')
    assert len(FakeTwilio.instances) == 1


def test_twilio_errors_are_reported(app, monkeypatch):
    class FailingMessages:
        def create(self, **kwargs):
            raise TwilioRestException(400, 'https://api.twilio.com', msg='Unverified number')

    monkeypatch.setattr(notifications, 'TwilioClient',
                        lambda sid, token: SimpleNamespace(messages=FailingMessages()))
    app.config.update(TWILIO_ACCOUNT_SID='AC123', TWILIO_AUTH_TOKEN='secret')
    result = NotificationService().send_sms('+2348031234567', 'hello')
    assert result['success'] is False
    assert 'Unverified number' in result['error']


def test_above_and_below_messages(app, make_user, add_price):
    user = make_user()
    latest = add_price(value=1500)
    service = NotificationService()

    above = make_alert(user, condition='above', target_price=1200)
    assert 'above your target of 1200' in service.build_alert_message(above, latest)

    below = make_alert(user, condition='below', target_price=1200)
    assert service.build_alert_message(below, latest) is None


def test_change_message_uses_previous_price(app, make_user, add_price):
    user = make_user()
    add_price(value=1000, days_ago=2)
    latest = add_price(value=1150)
    alert = make_alert(user, condition='change', target_price=10)

    message = NotificationService().build_alert_message(alert, latest)
    assert message.startswith('📈 UP PRICE CHANGE')
    assert 'changed by 15.0%' in message


def test_recent_alert_is_not_repeated(app, make_user):
    user = make_user()
    service = NotificationService()
    service.log_price_alert(user, 7, 1000, True)
    assert service.check_recent_alert(user, 7, 1005)
    assert not service.check_recent_alert(user, 7, 1100)
    assert not service.check_recent_alert(user, 8, 1000)
    assert not service.check_recent_alert(user, 7, 1000, now=datetime.utcnow() + timedelta(hours=2))


def test_alert_log_is_capped(app, make_user):
    user = make_user()
    service = NotificationService()
    for i in range(ALERT_LOG_SIZE + 5):
        service.log_price_alert(user, i, 1000, True)
    assert len(user.alert_log) == ALERT_LOG_SIZE
    assert user.alert_log[0]['alertId'] == 5


def test_process_price_alerts_records_inbox_entry(app, make_user, add_price):
    user = make_user()
    add_price(value=1500)
    make_alert(user, condition='above', target_price=1200)
    muted = make_user(notification_settings={'priceAlerts': False})
    make_alert(muted, condition='above', target_price=1200)

    results = NotificationService().process_price_alerts()
    assert len(results) == 1
    assert results[0]['userId'] == user.id
    assert results[0]['success'] is False
    assert Notification.query.filter_by(user_id=user.id, type='price_alert').count() == 1
    assert user.alert_log[-1]['success'] is False

    # Same price inside the hour is not sent again
    assert NotificationService().process_price_alerts() == []
