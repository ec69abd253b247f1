import hashlib
import random
import re
import secrets
import string
from datetime import datetime, timedelta

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event
from sqlalchemy.ext.mutable import MutableDict, MutableList
from sqlalchemy.orm import validates
from werkzeug.security import generate_password_hash, check_password_hash

db = SQLAlchemy()

JSONDict = MutableDict.as_mutable(db.JSON)
JSONList = MutableList.as_mutable(db.JSON)

# --- CHOICES ---

CROP_NAMES = ['yam', 'cassava', 'maize', 'tomatoes', 'beans', 'pepper', 'onions', 'plantain', 'rice', 'cocoyam']
CROP_NAMES_YORUBA = {
    'yam': 'Isu', 'cassava': 'Ege', 'maize': 'Agbado', 'tomatoes': 'Tomati', 'beans': 'Ewa',
    'pepper': 'Ata', 'onions': 'Alubosa', 'plantain': 'Ogede', 'rice': 'Iresi', 'cocoyam': 'Koko'
}
MARKETS = ['Igbaja Local Market', 'Ilorin Central Market', 'Offa Market', 'Lagos Wholesale Market']
PRICE_UNITS = ['per tuber', 'per bag', 'per basket', 'per kg', 'per tonne']
SEASONS = ['wet_season', 'dry_season', 'harvest_season', 'planting_season']
PRICE_QUALITIES = ['premium', 'standard', 'low_grade']
AVAILABILITY_LEVELS = ['abundant', 'moderate', 'scarce']
TREND_DIRECTIONS = ['rising', 'falling', 'stable']
PRICE_SOURCES = ['market_survey', 'trader_report', 'government_data', 'automated_scraping']

USER_ROLES = ['farmer', 'trader', 'admin', 'extension_officer', 'youth', 'buyer', 'supplier']
USER_STATUSES = ['active', 'inactive', 'suspended', 'banned', 'pending_verification']
TIERS = ['free', 'basic', 'premium', 'commercial', 'enterprise']
TIER_LEVELS = {tier: level for level, tier in enumerate(TIERS)}
SUBSCRIPTION_STATUSES = ['active', 'inactive', 'cancelled', 'expired', 'trial']
SUBSCRIPTION_FEATURES = [
    'basic_prices', 'advanced_analytics', 'price_predictions', 'unlimited_alerts', 'api_access',
    'data_export', 'premium_support', 'marketplace_access', 'training_certificates', 'custom_reports'
]
PLAN_FEATURES = SUBSCRIPTION_FEATURES + [
    'bulk_operations', 'priority_notifications', 'historical_data', 'weather_integration', 'farming_consultations'
]
PERMISSIONS = ['canViewAnalytics', 'canExportData', 'canAccessAPI', 'canManageUsers', 'canManageContent', 'canViewRevenue']

EMAIL_REGEX = re.compile(r'^\w+([.-]?\w+)*@\w+([.-]?\w+)*(\.\w{2,3})+$')
NIGERIAN_PHONE_REGEX = re.compile(r'^(\+234|0)[7-9][0-1]\d{8}$')

TIP_CATEGORIES = [
    'pest_control', 'irrigation', 'composting', 'planting', 'harvesting',
    'soil_preparation', 'crop_rotation', 'organic_farming', 'storage', 'marketing'
]
DIFFICULTY_LEVELS = ['beginner', 'intermediate', 'advanced']
TIME_UNITS = ['minutes', 'hours', 'days', 'weeks']

COURSE_CATEGORIES = [
    'basic_computer', 'typing_skills', 'internet_safety', 'mobile_apps', 'python_basics',
    'scratch_programming', 'digital_farming', 'online_marketing', 'financial_literacy', 'entrepreneurship'
]
COURSE_LEVELS = ['absolute_beginner', 'beginner', 'intermediate', 'advanced']
TARGET_AUDIENCES = ['rural_youth', 'farmers', 'students', 'unemployed', 'entrepreneurs', 'women', 'all']

REPORT_TYPES = [
    'farm_theft', 'crop_vandalism', 'livestock_theft', 'equipment_theft', 'trespassing',
    'suspicious_activity', 'land_dispute', 'market_fraud', 'other'
]
REPORT_AREAS = ['Igbaja Town', 'Agbada Village', 'Oke-Oyi', 'Alapa', 'Bacita', 'Lafiagi', 'Other']
SEVERITIES = ['low', 'medium', 'high', 'critical']
REPORT_STATUSES = ['reported', 'investigating', 'resolved', 'closed', 'dismissed']
VERIFICATION_STATUSES = ['pending', 'verified', 'disputed', 'false_report']
REPORT_PRIORITIES = ['low', 'normal', 'high', 'urgent']

AREA_UNITS = ['hectares', 'acres', 'square_meters']
FARM_STATUSES = ['active', 'inactive', 'maintenance']
FARM_TYPES = ['crop', 'livestock', 'mixed', 'organic']
CROP_STATUSES = ['planted', 'growing', 'flowering', 'harvested', 'failed']
GROWTH_STAGES = ['germination', 'vegetative', 'flowering', 'fruiting', 'maturity']
IRRIGATION_TYPES = ['drip', 'sprinkler', 'flood', 'manual']
SENSOR_TYPES = ['temperature', 'humidity', 'soil_moisture', 'ph', 'light', 'co2', 'pressure']
SENSOR_STATUSES = ['active', 'inactive', 'maintenance', 'error']
READING_QUALITIES = ['excellent', 'good', 'fair', 'poor']
WEATHER_CONDITIONS = ['sunny', 'cloudy', 'partly_cloudy', 'overcast', 'rainy', 'stormy', 'foggy', 'snowy']
FORECAST_TYPES = ['current', '1_day', '3_day', '7_day']
ALERT_TYPES = ['weather', 'sensor', 'crop', 'system', 'irrigation', 'pest', 'disease']
ALERT_STATUSES = ['active', 'acknowledged', 'resolved', 'dismissed']

LISTING_UNITS = ['kg', 'bag', 'basket', 'tuber', 'tonne', 'crate']
LISTING_GRADES = ['premium', 'standard', 'commercial', 'processing']
LISTING_AVAILABILITY = ['available', 'limited', 'sold_out', 'seasonal']
DELIVERY_METHODS = ['pickup', 'local_delivery', 'shipping', 'farm_gate']
MARKET_PAYMENT_METHODS = ['cash', 'bank_transfer', 'mobile_money', 'escrow', 'credit']
ORDER_STATUSES = [
    'pending', 'accepted', 'payment_pending', 'paid', 'preparing', 'ready_for_pickup',
    'in_transit', 'delivered', 'completed', 'cancelled', 'disputed', 'resolved'
]
REQUEST_STATUSES = ['open', 'in_negotiation', 'closed', 'fulfilled']

TRANSACTION_TYPES = [
    'subscription', 'training_course', 'premium_feature', 'marketplace_commission',
    'consultation', 'api_usage', 'data_export', 'insurance_premium'
]
TRANSACTION_STATUSES = ['pending', 'processing', 'successful', 'failed', 'cancelled', 'refunded', 'disputed']
PAYMENT_PROVIDERS = ['paystack', 'flutterwave', 'bank_transfer', 'ussd', 'cash', 'wallet']
BILLING_CYCLES = ['monthly', 'yearly']
USAGE_FEATURES = [
    'api_call', 'data_export', 'price_alert', 'training_access', 'marketplace_listing',
    'consultation_hour', 'report_generation', 'notification_sent'
]
ALERT_CONDITIONS = ['above', 'below', 'change']


def check_choice(field, value, choices, allow_none=False):
    if value is None and allow_none:
        return value
    if value not in choices:
        raise ValueError(f"'{value}' is not a valid {field}. Allowed values: {', '.join(map(str, choices))}")
    return value


def check_range(field, value, low=None, high=None, allow_none=True):
    if value is None:
        if allow_none:
            return value
        raise ValueError(f'{field} is required')
    if low is not None and value < low:
        raise ValueError(f'{field} must be at least {low}')
    if high is not None and value > high:
        raise ValueError(f'{field} must be at most {high}')
    return value


def iso(value):
    return value.isoformat() if value else None


def parse_datetime(value):
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace('Z', '+00:00')).replace(tzinfo=None)


def hash_token(token):
    return hashlib.sha256(token.encode()).hexdigest()


def generate_referral_code():
    chars = string.ascii_uppercase + string.digits
    return 'AGR' + ''.join(random.choice(chars) for _ in range(5))


# --- USERS ---

DEFAULT_NOTIFICATION_SETTINGS = {
    'priceAlerts': True, 'marketplace': True, 'training': True, 'subscription': True,
    'system': True, 'marketing': False, 'welcome': True
}
DEFAULT_CONTRIBUTIONS = {'priceReports': 0, 'farmingTips': 0, 'reviews': 0, 'referrals': 0}


class User(db.Model):
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False)
    phone = db.Column(db.String(20), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)

    # --- PROFILE ---
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False)
    avatar = db.Column(db.String(255))
    gender = db.Column(db.String(30), default='prefer_not_to_say')
    date_of_birth = db.Column(db.Date)
    state = db.Column(db.String(100), default='Kwara')
    lga = db.Column(db.String(100), default='Ifelodun')
    community = db.Column(db.String(100), default='Igbaja')
    address = db.Column(db.String(255))
    preferred_language = db.Column(db.String(20), default='english')
    bio = db.Column(db.Text)

    role = db.Column(db.String(50), nullable=False, default='farmer')
    permissions = db.Column(JSONDict, default=dict)

    # --- SUBSCRIPTION ---
    subscription_tier = db.Column(db.String(20), default='free')
    subscription_status = db.Column(db.String(20), default='active')
    subscription_start = db.Column(db.DateTime, default=datetime.utcnow)
    subscription_expires_at = db.Column(db.DateTime)
    auto_renew = db.Column(db.Boolean, default=False)
    payment_method = db.Column(JSONDict, default=dict)
    subscription_features = db.Column(JSONList, default=list)

    # --- VERIFICATION ---
    email_verified = db.Column(db.Boolean, default=False)
    email_verification_token = db.Column(db.String(128))
    email_token_expires = db.Column(db.DateTime)
    phone_verified = db.Column(db.Boolean, default=False)
    phone_verification_code = db.Column(db.String(6))
    phone_code_expires = db.Column(db.DateTime)
    identity_verified = db.Column(db.Boolean, default=False)
    identity_document = db.Column(JSONDict, default=dict)

    farming_info = db.Column(JSONDict, default=dict)
    preferences = db.Column(JSONDict, default=dict)

    # --- NOTIFICATIONS ---
    notification_settings = db.Column(JSONDict, default=dict)
    notification_preferences = db.Column(JSONDict, default=dict)
    alert_log = db.Column(JSONList, default=list)

    # --- ACTIVITY ---
    last_login = db.Column(db.DateTime)
    login_count = db.Column(db.Integer, default=0)
    last_active_date = db.Column(db.DateTime)
    features_used = db.Column(JSONList, default=list)
    contributions = db.Column(JSONDict, default=dict)

    # --- FINANCIAL ---
    total_spent = db.Column(db.Float, default=0)
    total_earned = db.Column(db.Float, default=0)
    payment_history = db.Column(JSONList, default=list)

    # --- SECURITY ---
    login_attempts = db.Column(db.Integer, default=0)
    last_login_attempt = db.Column(db.DateTime)
    password_reset_token = db.Column(db.String(128))
    password_reset_expires = db.Column(db.DateTime)

    status = db.Column(db.String(30), default='active')
    notes = db.Column(db.Text)
    referral_code = db.Column(db.String(10), unique=True)
    referred_by_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='SET NULL'))

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    price_alerts = db.relationship('PriceAlert', backref='user', lazy='dynamic', cascade='all, delete-orphan')
    api_keys = db.relationship('ApiKey', backref='user', lazy='dynamic', cascade='all, delete-orphan')
    enrollments = db.relationship('CourseEnrollment', backref='user', lazy='dynamic', cascade='all, delete-orphan')

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # Column defaults only apply at flush
        if self.role is None:
            self.role = 'farmer'
        if self.subscription_tier is None:
            self.subscription_tier = 'free'
        if self.subscription_status is None:
            self.subscription_status = 'active'
        if self.subscription_start is None:
            self.subscription_start = datetime.utcnow()
        if self.subscription_expires_at is None:
            self.subscription_expires_at = datetime.utcnow() + timedelta(days=30)
        if self.subscription_features is None:
            features = ['basic_prices']
            if self.role == 'youth':
                features.append('training_certificates')
            self.subscription_features = features
        if self.permissions is None:
            self.permissions = {name: False for name in PERMISSIONS}
        if self.notification_settings is None:
            self.notification_settings = dict(DEFAULT_NOTIFICATION_SETTINGS)
        if self.notification_preferences is None:
            self.notification_preferences = {'method': 'sms', 'quiet_hours': None}
        if self.contributions is None:
            self.contributions = dict(DEFAULT_CONTRIBUTIONS)
        if self.features_used is None:
            self.features_used = []
        if self.alert_log is None:
            self.alert_log = []
        if self.payment_history is None:
            self.payment_history = []
        if self.login_count is None:
            self.login_count = 0
        if self.status is None:
            self.status = 'active'
        if self.referral_code is None:
            self.referral_code = generate_referral_code()

    @validates('email')
    def validate_email(self, key, value):
        value = (value or '').strip().lower()
        if not EMAIL_REGEX.match(value):
            raise ValueError('Please enter a valid email')
        return value

    @validates('phone')
    def validate_phone(self, key, value):
        if not value or not NIGERIAN_PHONE_REGEX.match(value):
            raise ValueError('Please enter a valid Nigerian phone number')
        return value

    @validates('role')
    def validate_role(self, key, value):
        return check_choice('role', value, USER_ROLES)

    @validates('status')
    def validate_status(self, key, value):
        return check_choice('status', value, USER_STATUSES)

    @validates('subscription_tier')
    def validate_tier(self, key, value):
        return check_choice('subscription tier', value, TIERS)

    @validates('subscription_status')
    def validate_subscription_status(self, key, value):
        return check_choice('subscription status', value, SUBSCRIPTION_STATUSES)

    @validates('preferred_language')
    def validate_language(self, key, value):
        return check_choice('preferredLanguage', value, ['english', 'yoruba'], allow_none=True)

    def set_password(self, password):
        if not password or len(password) < 6:
            raise ValueError('Password must be at least 6 characters long')
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password or '')

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}"

    @property
    def is_subscription_active(self):
        return self.subscription_status == 'active' and \
            self.subscription_expires_at is not None and \
            self.subscription_expires_at > datetime.utcnow()

    @property
    def user_level(self):
        login_count = self.login_count or 0
        total = sum((self.contributions or {}).values())
        if login_count > 100 and total > 50:
            return 'expert'
        if login_count > 50 and total > 20:
            return 'advanced'
        if login_count > 20 and total > 5:
            return 'intermediate'
        return 'beginner'

    def has_permission(self, permission):
        # Admin has all permissions
        if self.role == 'admin':
            return True
        return (self.permissions or {}).get(permission) is True

    def can_access_feature(self, feature):
        return feature in (self.subscription_features or []) or self.role == 'admin'

    def update_activity(self, feature=None):
        self.last_active_date = datetime.utcnow()
        if feature and feature not in (self.features_used or []):
            self.features_used = list(self.features_used or []) + [feature]

    def add_contribution(self, kind, amount=1):
        contributions = dict(DEFAULT_CONTRIBUTIONS, **(self.contributions or {}))
        contributions[kind] = contributions.get(kind, 0) + amount
        self.contributions = contributions

    def create_email_verification_token(self):
        token = secrets.token_hex(32)
        self.email_verification_token = hash_token(token)
        self.email_token_expires = datetime.utcnow() + timedelta(hours=24)
        return token

    def create_phone_verification_code(self):
        code = str(random.randint(100000, 999999))
        self.phone_verification_code = code
        self.phone_code_expires = datetime.utcnow() + timedelta(minutes=10)
        return code

    def create_password_reset_token(self):
        token = secrets.token_hex(32)
        self.password_reset_token = hash_token(token)
        self.password_reset_expires = datetime.utcnow() + timedelta(minutes=10)
        return token

    @classmethod
    def find_by_subscription_tier(cls, tier):
        return cls.query.filter_by(subscription_tier=tier, subscription_status='active')

    @classmethod
    def find_in_location(cls, state, lga=None):
        query = cls.query.filter_by(state=state)
        if lga:
            query = query.filter_by(lga=lga)
        return query

    def subscription_dict(self):
        return {
            'tier': self.subscription_tier,
            'status': self.subscription_status,
            'startDate': iso(self.subscription_start),
            'expiresAt': iso(self.subscription_expires_at),
            'autoRenew': self.auto_renew,
            'paymentMethod': self.payment_method or {},
            'features': list(self.subscription_features or [])
        }

    def to_dict(self, include_private=False):
        data = {
            'id': self.id,
            '_id': self.id,
            'email': self.email,
            'phone': self.phone,
            'profile': {
                'firstName': self.first_name,
                'lastName': self.last_name,
                'avatar': self.avatar,
                'gender': self.gender,
                'dateOfBirth': iso(self.date_of_birth),
                'location': {
                    'state': self.state,
                    'lga': self.lga,
                    'community': self.community,
                    'address': self.address
                },
                'preferredLanguage': self.preferred_language,
                'bio': self.bio
            },
            'fullName': self.full_name,
            'role': self.role,
            'permissions': self.permissions or {},
            'subscription': self.subscription_dict(),
            'isSubscriptionActive': self.is_subscription_active,
            'verification': {
                'email': {'isVerified': bool(self.email_verified)},
                'phone': {'isVerified': bool(self.phone_verified)},
                'identity': {'isVerified': bool(self.identity_verified)}
            },
            'farmingInfo': self.farming_info or {},
            'preferences': self.preferences or {},
            'activity': {
                'lastLogin': iso(self.last_login),
                'loginCount': self.login_count or 0,
                'lastActiveDate': iso(self.last_active_date),
                'featuresUsed': list(self.features_used or []),
                'contributions': self.contributions or {}
            },
            'userLevel': self.user_level,
            'status': self.status,
            'referralCode': self.referral_code,
            'createdAt': iso(self.created_at)
        }
        if include_private:
            data['financial'] = {
                'totalSpent': self.total_spent or 0,
                'totalEarned': self.total_earned or 0,
                'paymentHistory': list(self.payment_history or [])
            }
            data['notes'] = self.notes
        return data


class ApiKey(db.Model):
    __tablename__ = 'api_keys'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    key = db.Column(db.String(64), unique=True, nullable=False, default=lambda: secrets.token_hex(24))
    name = db.Column(db.String(100))
    permissions = db.Column(JSONList, default=list)
    last_used = db.Column(db.DateTime)
    usage = db.Column(db.Integer, default=0)
    active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'key': self.key[:6] + '...' if self.key else None,
            'permissions': list(self.permissions or []),
            'lastUsed': iso(self.last_used),
            'usage': self.usage or 0,
            'active': self.active,
            'createdAt': iso(self.created_at)
        }


class PriceAlert(db.Model):
    __tablename__ = 'price_alerts'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    crop_name = db.Column(db.String(50), nullable=False)
    market = db.Column(db.String(100))
    condition = db.Column(db.String(20), nullable=False)
    target_price = db.Column(db.Float)
    is_active = db.Column(db.Boolean, default=True)
    last_triggered = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    @validates('condition')
    def validate_condition(self, key, value):
        return check_choice('condition', value, ALERT_CONDITIONS)

    def to_dict(self):
        return {
            'id': self.id,
            '_id': self.id,
            'cropName': self.crop_name,
            'market': self.market,
            'condition': self.condition,
            'targetPrice': self.target_price,
            'isActive': self.is_active,
            'lastTriggered': iso(self.last_triggered),
            'createdAt': iso(self.created_at)
        }


# --- CROP PRICES ---

class CropPrice(db.Model):
    __tablename__ = 'crop_prices'

    id = db.Column(db.Integer, primary_key=True)
    crop_name = db.Column(db.String(50), nullable=False, index=True)
    crop_name_yoruba = db.Column(db.String(100), nullable=False)
    market_name = db.Column(db.String(100), nullable=False, index=True)
    market_state = db.Column(db.String(100), default='Kwara')
    market_lga = db.Column(db.String(100))
    price_value = db.Column(db.Float, nullable=False)
    price_unit = db.Column(db.String(20), nullable=False)
    currency = db.Column(db.String(5), default='NGN')
    price_min = db.Column(db.Float)
    price_max = db.Column(db.Float)
    season = db.Column(db.String(30), nullable=False)
    quality = db.Column(db.String(20), default='standard')
    availability = db.Column(db.String(20), default='moderate')
    trend_direction = db.Column(db.String(10), default='stable')
    trend_percentage = db.Column(db.Float, default=0)
    last_updated = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    source = db.Column(db.String(30), default='market_survey')
    notes_english = db.Column(db.Text)
    notes_yoruba = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @validates('crop_name')
    def validate_crop_name(self, key, value):
        return check_choice('cropName', value, CROP_NAMES)

    @validates('market_name')
    def validate_market(self, key, value):
        return check_choice('market name', value, MARKETS)

    @validates('price_unit')
    def validate_unit(self, key, value):
        return check_choice('price unit', value, PRICE_UNITS)

    @validates('season')
    def validate_season(self, key, value):
        return check_choice('season', value, SEASONS)

    @validates('quality')
    def validate_quality(self, key, value):
        return check_choice('quality', value, PRICE_QUALITIES, allow_none=True)

    @validates('availability')
    def validate_availability(self, key, value):
        return check_choice('availability', value, AVAILABILITY_LEVELS, allow_none=True)

    @validates('trend_direction')
    def validate_trend(self, key, value):
        return check_choice('trend direction', value, TREND_DIRECTIONS, allow_none=True)

    @validates('source')
    def validate_source(self, key, value):
        return check_choice('source', value, PRICE_SOURCES, allow_none=True)

    @validates('price_value')
    def validate_price(self, key, value):
        return check_range('pricePerUnit.value', value, low=0, allow_none=False)

    def update_from_dict(self, data):
        if 'cropName' in data:
            self.crop_name = data['cropName']
        if 'cropNameYoruba' in data:
            self.crop_name_yoruba = data['cropNameYoruba']
        elif self.crop_name_yoruba is None and self.crop_name in CROP_NAMES_YORUBA:
            self.crop_name_yoruba = CROP_NAMES_YORUBA[self.crop_name]
        market = data.get('market')
        if isinstance(market, dict):
            if 'name' in market:
                self.market_name = market['name']
            location = market.get('location') or {}
            self.market_state = location.get('state', self.market_state)
            self.market_lga = location.get('lga', self.market_lga)
        elif market:
            self.market_name = market
        price = data.get('pricePerUnit')
        if isinstance(price, dict):
            if 'value' in price:
                self.price_value = float(price['value']) if price['value'] is not None else None
            if 'unit' in price:
                self.price_unit = price['unit']
            if 'currency' in price:
                self.currency = price['currency']
        price_range = data.get('priceRange') or {}
        if 'min' in price_range:
            self.price_min = price_range['min']
        if 'max' in price_range:
            self.price_max = price_range['max']
        for field in ('season', 'quality', 'availability', 'source'):
            if field in data:
                setattr(self, field, data[field])
        trend = data.get('trend') or {}
        if 'direction' in trend:
            self.trend_direction = trend['direction']
        if 'percentage' in trend:
            self.trend_percentage = trend['percentage']
        notes = data.get('notes') or {}
        if 'english' in notes:
            self.notes_english = notes['english']
        if 'yoruba' in notes:
            self.notes_yoruba = notes['yoruba']
        if data.get('lastUpdated'):
            self.last_updated = parse_datetime(data['lastUpdated'])

    def to_dict(self):
        return {
            'id': self.id,
            '_id': self.id,
            'cropName': self.crop_name,
            'cropNameYoruba': self.crop_name_yoruba,
            'market': {
                'name': self.market_name,
                'location': {'state': self.market_state, 'lga': self.market_lga}
            },
            'pricePerUnit': {
                'value': self.price_value,
                'unit': self.price_unit,
                'currency': self.currency or 'NGN'
            },
            'priceRange': {'min': self.price_min, 'max': self.price_max},
            'season': self.season,
            'quality': self.quality,
            'availability': self.availability,
            'trend': {
                'direction': self.trend_direction or 'stable',
                'percentage': self.trend_percentage or 0
            },
            'lastUpdated': iso(self.last_updated),
            'source': self.source,
            'notes': {'english': self.notes_english, 'yoruba': self.notes_yoruba},
            'createdAt': iso(self.created_at),
            'updatedAt': iso(self.updated_at)
        }


# --- COMMUNITY CONTENT ---

class FarmingTip(db.Model):
    __tablename__ = 'farming_tips'

    id = db.Column(db.Integer, primary_key=True)
    title_english = db.Column(db.String(255), nullable=False)
    title_yoruba = db.Column(db.String(255), nullable=False)
    content_english = db.Column(db.Text, nullable=False)
    content_yoruba = db.Column(db.Text, nullable=False)
    category = db.Column(db.String(50), nullable=False)
    target_crops = db.Column(JSONList, default=list)
    difficulty = db.Column(db.String(20), default='beginner')
    season = db.Column(JSONList, default=list)
    estimated_cost = db.Column(JSONDict, default=dict)
    time_required_value = db.Column(db.Float, nullable=False)
    time_required_unit = db.Column(db.String(20), default='hours')
    materials = db.Column(JSONList, default=list)
    steps = db.Column(JSONList, default=list)
    images = db.Column(JSONList, default=list)
    video_url = db.Column(db.String(255))
    author = db.Column(JSONDict, default=dict)
    tags = db.Column(JSONList, default=list)
    likes = db.Column(db.Integer, default=0)
    views = db.Column(db.Integer, default=0)
    effectiveness_rating = db.Column(db.Float, default=3)
    review_count = db.Column(db.Integer, default=0)
    is_active = db.Column(db.Boolean, default=True)
    is_featured = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @validates('category')
    def validate_category(self, key, value):
        return check_choice('category', value, TIP_CATEGORIES)

    @validates('difficulty')
    def validate_difficulty(self, key, value):
        return check_choice('difficulty', value, DIFFICULTY_LEVELS, allow_none=True)

    @validates('time_required_unit')
    def validate_time_unit(self, key, value):
        return check_choice('timeRequired.unit', value, TIME_UNITS, allow_none=True)

    @validates('target_crops')
    def validate_target_crops(self, key, value):
        for crop in value or []:
            check_choice('targetCrops', crop, CROP_NAMES + ['all'])
        return value

    @validates('season')
    def validate_seasons(self, key, value):
        for season in value or []:
            check_choice('season', season, SEASONS + ['all_seasons'])
        return value

    def update_from_dict(self, data):
        title = data.get('title') or {}
        content = data.get('content') or {}
        if 'english' in title:
            self.title_english = title['english']
        if 'yoruba' in title:
            self.title_yoruba = title['yoruba']
        if 'english' in content:
            self.content_english = content['english']
        if 'yoruba' in content:
            self.content_yoruba = content['yoruba']
        time_required = data.get('timeRequired') or {}
        if 'value' in time_required:
            self.time_required_value = time_required['value']
        if 'unit' in time_required:
            self.time_required_unit = time_required['unit']
        mapping = {
            'category': 'category', 'targetCrops': 'target_crops', 'difficulty': 'difficulty',
            'season': 'season', 'estimatedCost': 'estimated_cost', 'materials': 'materials',
            'steps': 'steps', 'images': 'images', 'videoUrl': 'video_url', 'author': 'author',
            'tags': 'tags', 'isActive': 'is_active', 'isFeatured': 'is_featured'
        }
        for field, attr in mapping.items():
            if field in data:
                setattr(self, attr, data[field])

    def to_dict(self):
        return {
            'id': self.id,
            '_id': self.id,
            'title': {'english': self.title_english, 'yoruba': self.title_yoruba},
            'content': {'english': self.content_english, 'yoruba': self.content_yoruba},
            'category': self.category,
            'targetCrops': list(self.target_crops or []),
            'difficulty': self.difficulty,
            'season': list(self.season or []),
            'estimatedCost': self.estimated_cost or {'min': 0, 'max': 0, 'currency': 'NGN'},
            'timeRequired': {'value': self.time_required_value, 'unit': self.time_required_unit},
            'materials': list(self.materials or []),
            'steps': list(self.steps or []),
            'images': list(self.images or []),
            'videoUrl': self.video_url,
            'author': self.author or {},
            'tags': list(self.tags or []),
            'likes': self.likes or 0,
            'views': self.views or 0,
            'effectiveness': {'rating': self.effectiveness_rating, 'reviewCount': self.review_count or 0},
            'isActive': self.is_active,
            'isFeatured': self.is_featured,
            'createdAt': iso(self.created_at),
            'updatedAt': iso(self.updated_at)
        }


class YouthTraining(db.Model):
    __tablename__ = 'youth_trainings'

    id = db.Column(db.Integer, primary_key=True)
    title_english = db.Column(db.String(255), nullable=False)
    title_yoruba = db.Column(db.String(255), nullable=False)
    description_english = db.Column(db.Text, nullable=False)
    description_yoruba = db.Column(db.Text, nullable=False)
    category = db.Column(db.String(50), nullable=False)
    level = db.Column(db.String(30), default='absolute_beginner')
    duration_value = db.Column(db.Float, nullable=False)
    duration_unit = db.Column(db.String(20), default='hours')
    prerequisites = db.Column(JSONList, default=list)
    learning_objectives = db.Column(JSONList, default=list)
    modules = db.Column(JSONList, default=list)
    resources = db.Column(JSONDict, default=dict)
    certification_available = db.Column(db.Boolean, default=False)
    certification_requirements = db.Column(JSONList, default=list)
    certificate_name = db.Column(db.String(255))
    instructor = db.Column(JSONDict, default=dict)
    enrollments = db.Column(db.Integer, default=0)
    completions = db.Column(db.Integer, default=0)
    rating_average = db.Column(db.Float, default=3)
    rating_count = db.Column(db.Integer, default=0)
    tags = db.Column(JSONList, default=list)
    is_active = db.Column(db.Boolean, default=True)
    is_free = db.Column(db.Boolean, default=True)
    cost = db.Column(db.Float, default=0)
    target_audience = db.Column(JSONList, default=list)
    mobile_optimized = db.Column(db.Boolean, default=True)
    offline_capable = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    course_enrollments = db.relationship('CourseEnrollment', backref='course', lazy='dynamic', cascade='all, delete-orphan')

    @validates('category')
    def validate_category(self, key, value):
        return check_choice('category', value, COURSE_CATEGORIES)

    @validates('level')
    def validate_level(self, key, value):
        return check_choice('level', value, COURSE_LEVELS, allow_none=True)

    @validates('duration_unit')
    def validate_duration_unit(self, key, value):
        return check_choice('duration unit', value, TIME_UNITS, allow_none=True)

    @validates('target_audience')
    def validate_audience(self, key, value):
        for audience in value or []:
            check_choice('targetAudience', audience, TARGET_AUDIENCES)
        return value

    def update_from_dict(self, data):
        title = data.get('title') or {}
        description = data.get('description') or {}
        if 'english' in title:
            self.title_english = title['english']
        if 'yoruba' in title:
            self.title_yoruba = title['yoruba']
        if 'english' in description:
            self.description_english = description['english']
        if 'yoruba' in description:
            self.description_yoruba = description['yoruba']
        estimated = (data.get('duration') or {}).get('estimated') or {}
        if 'value' in estimated:
            self.duration_value = estimated['value']
        if 'unit' in estimated:
            self.duration_unit = estimated['unit']
        certification = data.get('certification') or {}
        if 'available' in certification:
            self.certification_available = bool(certification['available'])
        if 'requirements' in certification:
            self.certification_requirements = certification['requirements']
        if 'certificateName' in certification:
            self.certificate_name = certification['certificateName']
        rating = data.get('rating') or {}
        if 'average' in rating:
            self.rating_average = rating['average']
        if 'count' in rating:
            self.rating_count = rating['count']
        mapping = {
            'category': 'category', 'level': 'level', 'prerequisites': 'prerequisites',
            'learningObjectives': 'learning_objectives', 'modules': 'modules', 'resources': 'resources',
            'instructor': 'instructor', 'tags': 'tags', 'isActive': 'is_active', 'isFree': 'is_free',
            'cost': 'cost', 'targetAudience': 'target_audience', 'mobileOptimized': 'mobile_optimized',
            'offlineCapable': 'offline_capable'
        }
        for field, attr in mapping.items():
            if field in data:
                setattr(self, attr, data[field])

    def to_dict(self):
        return {
            'id': self.id,
            '_id': self.id,
            'title': {'english': self.title_english, 'yoruba': self.title_yoruba},
            'description': {'english': self.description_english, 'yoruba': self.description_yoruba},
            'category': self.category,
            'level': self.level,
            'duration': {'estimated': {'value': self.duration_value, 'unit': self.duration_unit}},
            'prerequisites': list(self.prerequisites or []),
            'learningObjectives': list(self.learning_objectives or []),
            'modules': list(self.modules or []),
            'resources': self.resources or {},
            'certification': {
                'available': self.certification_available,
                'requirements': list(self.certification_requirements or []),
                'certificateName': self.certificate_name
            },
            'instructor': self.instructor or {},
            'enrollments': self.enrollments or 0,
            'completions': self.completions or 0,
            'rating': {'average': self.rating_average, 'count': self.rating_count or 0},
            'tags': list(self.tags or []),
            'isActive': self.is_active,
            'isFree': self.is_free,
            'cost': self.cost or 0,
            'targetAudience': list(self.target_audience or []),
            'mobileOptimized': self.mobile_optimized,
            'offlineCapable': self.offline_capable,
            'createdAt': iso(self.created_at),
            'updatedAt': iso(self.updated_at)
        }


class CourseEnrollment(db.Model):
    __tablename__ = 'course_enrollments'
    __table_args__ = (db.UniqueConstraint('user_id', 'course_id', name='uq_enrollment_user_course'),)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    course_id = db.Column(db.Integer, db.ForeignKey('youth_trainings.id', ondelete='CASCADE'), nullable=False)
    score = db.Column(db.Float, default=0)
    certificate_issued = db.Column(db.Boolean, default=False)
    enrolled_at = db.Column(db.DateTime, default=datetime.utcnow)
    completed_at = db.Column(db.DateTime)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def progress_dict(self, total_modules=0):
        score = self.score or 0
        return {
            'isEnrolled': True,
            'score': score,
            'completionPercentage': score,
            'completedModules': int((score / 100) * total_modules),
            'totalModules': total_modules,
            'certificateIssued': bool(self.certificate_issued),
            'enrolledAt': iso(self.enrolled_at),
            'completedAt': iso(self.completed_at)
        }


class SecurityReport(db.Model):
    __tablename__ = 'security_reports'

    id = db.Column(db.Integer, primary_key=True)
    report_type = db.Column(db.String(50), nullable=False)
    title_english = db.Column(db.String(255), nullable=False)
    title_yoruba = db.Column(db.String(255))
    description_english = db.Column(db.Text, nullable=False)
    description_yoruba = db.Column(db.Text)
    area = db.Column(db.String(50), nullable=False)
    specific_location = db.Column(db.String(255))
    coordinates = db.Column(JSONDict, default=dict)
    landmarks = db.Column(JSONList, default=list)
    occurred_at = db.Column(db.DateTime, nullable=False)
    reported_at = db.Column(db.DateTime, default=datetime.utcnow)
    severity = db.Column(db.String(20), default='medium')
    status = db.Column(db.String(20), default='reported')
    reporter = db.Column(JSONDict, default=dict)
    suspects = db.Column(JSONList, default=list)
    witnesses = db.Column(JSONList, default=list)
    evidence = db.Column(JSONDict, default=dict)
    damages = db.Column(JSONDict, default=dict)
    response = db.Column(JSONDict, default=dict)
    follow_up = db.Column(JSONList, default=list)
    community_impact = db.Column(JSONDict, default=dict)
    preventive_measures = db.Column(JSONList, default=list)
    tags = db.Column(JSONList, default=list)
    priority = db.Column(db.String(20), default='normal')
    is_public = db.Column(db.Boolean, default=False)
    verification_status = db.Column(db.String(20), default='pending')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @validates('report_type')
    def validate_report_type(self, key, value):
        return check_choice('reportType', value, REPORT_TYPES)

    @validates('area')
    def validate_area(self, key, value):
        return check_choice('location area', value, REPORT_AREAS)

    @validates('severity')
    def validate_severity(self, key, value):
        return check_choice('severity', value, SEVERITIES, allow_none=True)

    @validates('status')
    def validate_status(self, key, value):
        return check_choice('status', value, REPORT_STATUSES, allow_none=True)

    @validates('priority')
    def validate_priority(self, key, value):
        return check_choice('priority', value, REPORT_PRIORITIES, allow_none=True)

    @validates('verification_status')
    def validate_verification(self, key, value):
        return check_choice('verificationStatus', value, VERIFICATION_STATUSES, allow_none=True)

    def update_from_dict(self, data):
        title = data.get('title') or {}
        description = data.get('description') or {}
        location = data.get('location') or {}
        if 'reportType' in data:
            self.report_type = data['reportType']
        if 'english' in title:
            self.title_english = title['english']
        if 'yoruba' in title:
            self.title_yoruba = title['yoruba']
        if 'english' in description:
            self.description_english = description['english']
        if 'yoruba' in description:
            self.description_yoruba = description['yoruba']
        if 'area' in location:
            self.area = location['area']
        if 'specificLocation' in location:
            self.specific_location = location['specificLocation']
        if 'coordinates' in location:
            self.coordinates = location['coordinates']
        if 'landmarks' in location:
            self.landmarks = location['landmarks']
        incident_time = data.get('incidentTime') or {}
        if incident_time.get('occurred'):
            self.occurred_at = parse_datetime(incident_time['occurred'])
        mapping = {
            'severity': 'severity', 'reporter': 'reporter', 'suspects': 'suspects',
            'witnesses': 'witnesses', 'evidence': 'evidence', 'damages': 'damages',
            'communityImpact': 'community_impact', 'tags': 'tags', 'priority': 'priority',
            'isPublic': 'is_public'
        }
        for field, attr in mapping.items():
            if field in data:
                setattr(self, attr, data[field])

    def to_dict(self, include_private=False):
        data = {
            'id': self.id,
            '_id': self.id,
            'reportType': self.report_type,
            'title': {'english': self.title_english, 'yoruba': self.title_yoruba},
            'description': {'english': self.description_english, 'yoruba': self.description_yoruba},
            'location': {
                'area': self.area,
                'specificLocation': self.specific_location,
                'coordinates': self.coordinates or {},
                'landmarks': list(self.landmarks or [])
            },
            'incidentTime': {'occurred': iso(self.occurred_at), 'reported': iso(self.reported_at)},
            'severity': self.severity,
            'status': self.status,
            'suspects': list(self.suspects or []),
            'damages': self.damages or {},
            'response': self.response or {},
            'followUp': list(self.follow_up or []),
            'communityImpact': self.community_impact or {},
            'preventiveMeasures': list(self.preventive_measures or []),
            'tags': list(self.tags or []),
            'priority': self.priority,
            'isPublic': self.is_public,
            'verificationStatus': self.verification_status,
            'createdAt': iso(self.created_at)
        }
        if include_private:
            data['reporter'] = self.reporter or {}
            data['witnesses'] = list(self.witnesses or [])
            data['evidence'] = self.evidence or {}
        return data


# --- FARMS & IOT ---

class Farm(db.Model):
    __tablename__ = 'farms'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    address = db.Column(db.String(255), nullable=False)
    lat = db.Column(db.Float, nullable=False)
    lng = db.Column(db.Float, nullable=False)
    size_value = db.Column(db.Float, nullable=False)
    size_unit = db.Column(db.String(20), default='hectares')
    owner = db.Column(db.String(255), nullable=False)
    contact_email = db.Column(db.String(255))
    contact_phone = db.Column(db.String(50))
    established_date = db.Column(db.DateTime, default=datetime.utcnow)
    status = db.Column(db.String(20), default='active')
    farm_type = db.Column(db.String(20), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    crops = db.relationship('Crop', backref='farm', lazy='dynamic', cascade='all, delete-orphan')
    sensors = db.relationship('Sensor', backref='farm', lazy='dynamic', cascade='all, delete-orphan')

    @validates('size_unit')
    def validate_size_unit(self, key, value):
        return check_choice('size unit', value, AREA_UNITS, allow_none=True)

    @validates('status')
    def validate_status(self, key, value):
        return check_choice('status', value, FARM_STATUSES, allow_none=True)

    @validates('farm_type')
    def validate_farm_type(self, key, value):
        return check_choice('farmType', value, FARM_TYPES)

    def update_from_dict(self, data):
        location = data.get('location') or {}
        coordinates = location.get('coordinates') or {}
        size = data.get('size') or {}
        contact = data.get('contact') or {}
        if 'name' in data:
            self.name = data['name']
        if 'address' in location:
            self.address = location['address']
        if 'lat' in coordinates:
            self.lat = coordinates['lat']
        if 'lng' in coordinates:
            self.lng = coordinates['lng']
        if 'value' in size:
            self.size_value = size['value']
        if 'unit' in size:
            self.size_unit = size['unit']
        if 'owner' in data:
            self.owner = data['owner']
        if 'email' in contact:
            self.contact_email = contact['email']
        if 'phone' in contact:
            self.contact_phone = contact['phone']
        if data.get('establishedDate'):
            self.established_date = parse_datetime(data['establishedDate'])
        if 'status' in data:
            self.status = data['status']
        if 'farmType' in data:
            self.farm_type = data['farmType']

    def to_dict(self):
        return {
            'id': self.id,
            '_id': self.id,
            'name': self.name,
            'location': {
                'address': self.address,
                'coordinates': {'lat': self.lat, 'lng': self.lng}
            },
            'size': {'value': self.size_value, 'unit': self.size_unit},
            'owner': self.owner,
            'contact': {'email': self.contact_email, 'phone': self.contact_phone},
            'establishedDate': iso(self.established_date),
            'status': self.status,
            'farmType': self.farm_type,
            'createdAt': iso(self.created_at),
            'updatedAt': iso(self.updated_at)
        }


class Crop(db.Model):
    __tablename__ = 'crops'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    variety = db.Column(db.String(255), nullable=False)
    farm_id = db.Column(db.Integer, db.ForeignKey('farms.id', ondelete='CASCADE'), nullable=False)
    planting_date = db.Column(db.DateTime, nullable=False)
    expected_harvest_date = db.Column(db.DateTime, nullable=False)
    actual_harvest_date = db.Column(db.DateTime)
    area_value = db.Column(db.Float, nullable=False)
    area_unit = db.Column(db.String(20), default='hectares')
    status = db.Column(db.String(20), default='planted')
    expected_yield = db.Column(JSONDict, default=dict)
    actual_yield = db.Column(JSONDict, default=dict)
    growth_stage = db.Column(db.String(20), default='germination')
    health_score = db.Column(db.Float, default=100)
    irrigation_type = db.Column(db.String(20), default='manual')
    irrigation_frequency = db.Column(db.String(100))
    last_watered = db.Column(db.DateTime)
    fertilizers = db.Column(JSONList, default=list)
    pesticides = db.Column(JSONList, default=list)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @validates('status')
    def validate_status(self, key, value):
        return check_choice('status', value, CROP_STATUSES, allow_none=True)

    @validates('growth_stage')
    def validate_growth_stage(self, key, value):
        return check_choice('growthStage', value, GROWTH_STAGES, allow_none=True)

    @validates('health_score')
    def validate_health_score(self, key, value):
        return check_range('healthScore', value, 0, 100)

    @validates('irrigation_type')
    def validate_irrigation_type(self, key, value):
        return check_choice('irrigation type', value, IRRIGATION_TYPES, allow_none=True)

    @validates('area_unit')
    def validate_area_unit(self, key, value):
        return check_choice('area unit', value, AREA_UNITS, allow_none=True)

    def update_from_dict(self, data):
        area = data.get('area') or {}
        yields = data.get('yield') or {}
        irrigation = data.get('irrigation') or {}
        for field, attr in (('name', 'name'), ('variety', 'variety'), ('status', 'status'),
                            ('growthStage', 'growth_stage'), ('healthScore', 'health_score'),
                            ('fertilizers', 'fertilizers'), ('pesticides', 'pesticides')):
            if field in data:
                setattr(self, attr, data[field])
        if 'farm' in data:
            self.farm_id = data['farm']
        for field, attr in (('plantingDate', 'planting_date'), ('expectedHarvestDate', 'expected_harvest_date'),
                            ('actualHarvestDate', 'actual_harvest_date')):
            if data.get(field):
                setattr(self, attr, parse_datetime(data[field]))
        if 'value' in area:
            self.area_value = area['value']
        if 'unit' in area:
            self.area_unit = area['unit']
        if 'expected' in yields:
            self.expected_yield = yields['expected']
        if 'actual' in yields:
            self.actual_yield = yields['actual']
        if 'type' in irrigation:
            self.irrigation_type = irrigation['type']
        if 'frequency' in irrigation:
            self.irrigation_frequency = irrigation['frequency']

    def to_dict(self, include_farm=False):
        data = {
            'id': self.id,
            '_id': self.id,
            'name': self.name,
            'variety': self.variety,
            'farm': self.farm_id,
            'plantingDate': iso(self.planting_date),
            'expectedHarvestDate': iso(self.expected_harvest_date),
            'actualHarvestDate': iso(self.actual_harvest_date),
            'area': {'value': self.area_value, 'unit': self.area_unit},
            'status': self.status,
            'yield': {'expected': self.expected_yield or {}, 'actual': self.actual_yield or {}},
            'growthStage': self.growth_stage,
            'healthScore': self.health_score,
            'irrigation': {
                'type': self.irrigation_type,
                'frequency': self.irrigation_frequency,
                'lastWatered': iso(self.last_watered)
            },
            'fertilizers': list(self.fertilizers or []),
            'pesticides': list(self.pesticides or []),
            'createdAt': iso(self.created_at),
            'updatedAt': iso(self.updated_at)
        }
        if include_farm and self.farm:
            data['farm'] = {'_id': self.farm.id, 'name': self.farm.name, 'location': self.farm.to_dict()['location']}
        return data


class Sensor(db.Model):
    __tablename__ = 'sensors'

    id = db.Column(db.Integer, primary_key=True)
    sensor_id = db.Column(db.String(100), unique=True, nullable=False)
    name = db.Column(db.String(255), nullable=False)
    type = db.Column(db.String(30), nullable=False)
    farm_id = db.Column(db.Integer, db.ForeignKey('farms.id', ondelete='CASCADE'), nullable=False)
    lat = db.Column(db.Float)
    lng = db.Column(db.Float)
    location_description = db.Column(db.String(255))
    status = db.Column(db.String(20), default='active')
    battery_level = db.Column(db.Float, default=100)
    last_reading = db.Column(JSONDict, default=dict)
    calibration = db.Column(JSONDict, default=dict)
    thresholds = db.Column(JSONDict, default=dict)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    readings = db.relationship('SensorData', backref='sensor', lazy='dynamic', cascade='all, delete-orphan')

    @validates('type')
    def validate_type(self, key, value):
        return check_choice('type', value, SENSOR_TYPES)

    @validates('status')
    def validate_status(self, key, value):
        return check_choice('status', value, SENSOR_STATUSES, allow_none=True)

    @validates('battery_level')
    def validate_battery(self, key, value):
        return check_range('batteryLevel', value, 0, 100)

    def update_from_dict(self, data):
        location = data.get('location') or {}
        coordinates = location.get('coordinates') or {}
        for field, attr in (('sensorId', 'sensor_id'), ('name', 'name'), ('type', 'type'),
                            ('status', 'status'), ('batteryLevel', 'battery_level'),
                            ('calibration', 'calibration'), ('thresholds', 'thresholds')):
            if field in data:
                setattr(self, attr, data[field])
        if 'farm' in data:
            self.farm_id = data['farm']
        if 'lat' in coordinates:
            self.lat = coordinates['lat']
        if 'lng' in coordinates:
            self.lng = coordinates['lng']
        if 'description' in location:
            self.location_description = location['description']

    def to_dict(self, include_farm=False):
        data = {
            'id': self.id,
            '_id': self.id,
            'sensorId': self.sensor_id,
            'name': self.name,
            'type': self.type,
            'farm': self.farm_id,
            'location': {
                'coordinates': {'lat': self.lat, 'lng': self.lng},
                'description': self.location_description
            },
            'status': self.status,
            'batteryLevel': self.battery_level,
            'lastReading': self.last_reading or {},
            'calibration': self.calibration or {},
            'thresholds': self.thresholds or {},
            'createdAt': iso(self.created_at),
            'updatedAt': iso(self.updated_at)
        }
        if include_farm and self.farm:
            data['farm'] = {'_id': self.farm.id, 'name': self.farm.name}
        return data


class SensorData(db.Model):
    __tablename__ = 'sensor_data'

    id = db.Column(db.Integer, primary_key=True)
    sensor_id = db.Column(db.Integer, db.ForeignKey('sensors.id', ondelete='CASCADE'), nullable=False, index=True)
    value = db.Column(db.Float, nullable=False)
    unit = db.Column(db.String(20), nullable=False)
    quality = db.Column(db.String(20), default='good')
    timestamp = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    @validates('quality')
    def validate_quality(self, key, value):
        return check_choice('quality', value, READING_QUALITIES, allow_none=True)

    def to_dict(self):
        return {
            'id': self.id,
            '_id': self.id,
            'sensor': self.sensor_id,
            'value': self.value,
            'unit': self.unit,
            'quality': self.quality,
            'timestamp': iso(self.timestamp)
        }


class Weather(db.Model):
    __tablename__ = 'weather'

    id = db.Column(db.Integer, primary_key=True)
    farm_id = db.Column(db.Integer, db.ForeignKey('farms.id', ondelete='CASCADE'), nullable=False)
    date = db.Column(db.DateTime, nullable=False, index=True)
    temperature_current = db.Column(db.Float, nullable=False)
    temperature_min = db.Column(db.Float, nullable=False)
    temperature_max = db.Column(db.Float, nullable=False)
    temperature_unit = db.Column(db.String(20), default='celsius')
    humidity = db.Column(db.Float, nullable=False)
    wind_speed = db.Column(JSONDict, default=dict)
    precipitation = db.Column(JSONDict, default=dict)
    pressure = db.Column(JSONDict, default=dict)
    uv_index = db.Column(db.Float)
    visibility = db.Column(JSONDict, default=dict)
    conditions = db.Column(db.String(20), nullable=False)
    forecast = db.Column(db.String(10), default='current')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    farm = db.relationship('Farm')

    @validates('humidity')
    def validate_humidity(self, key, value):
        return check_range('humidity', value, 0, 100, allow_none=False)

    @validates('uv_index')
    def validate_uv(self, key, value):
        return check_range('uvIndex', value, 0, 15)

    @validates('conditions')
    def validate_conditions(self, key, value):
        return check_choice('conditions', value, WEATHER_CONDITIONS)

    @validates('forecast')
    def validate_forecast(self, key, value):
        return check_choice('forecast', value, FORECAST_TYPES, allow_none=True)

    def update_from_dict(self, data):
        temperature = data.get('temperature') or {}
        if 'farm' in data:
            self.farm_id = data['farm']
        if data.get('date'):
            self.date = parse_datetime(data['date'])
        for field, attr in (('current', 'temperature_current'), ('min', 'temperature_min'),
                            ('max', 'temperature_max'), ('unit', 'temperature_unit')):
            if field in temperature:
                setattr(self, attr, temperature[field])
        for field, attr in (('humidity', 'humidity'), ('windSpeed', 'wind_speed'),
                            ('precipitation', 'precipitation'), ('pressure', 'pressure'),
                            ('uvIndex', 'uv_index'), ('visibility', 'visibility'),
                            ('conditions', 'conditions'), ('forecast', 'forecast')):
            if field in data:
                setattr(self, attr, data[field])

    def to_dict(self):
        return {
            'id': self.id,
            '_id': self.id,
            'farm': self.farm_id,
            'date': iso(self.date),
            'temperature': {
                'current': self.temperature_current,
                'min': self.temperature_min,
                'max': self.temperature_max,
                'unit': self.temperature_unit
            },
            'humidity': self.humidity,
            'windSpeed': self.wind_speed or {},
            'precipitation': self.precipitation or {},
            'pressure': self.pressure or {},
            'uvIndex': self.uv_index,
            'visibility': self.visibility or {},
            'conditions': self.conditions,
            'forecast': self.forecast,
            'createdAt': iso(self.created_at)
        }


class Alert(db.Model):
    __tablename__ = 'alerts'

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    message = db.Column(db.Text, nullable=False)
    type = db.Column(db.String(20), nullable=False)
    severity = db.Column(db.String(20), nullable=False)
    status = db.Column(db.String(20), default='active')
    farm_id = db.Column(db.Integer, db.ForeignKey('farms.id', ondelete='SET NULL'))
    crop_id = db.Column(db.Integer, db.ForeignKey('crops.id', ondelete='SET NULL'))
    sensor_id = db.Column(db.Integer, db.ForeignKey('sensors.id', ondelete='SET NULL'))
    trigger_value = db.Column(JSONDict, default=dict)
    action_required = db.Column(db.Boolean, default=False)
    action_taken = db.Column(JSONDict, default=dict)
    auto_resolved = db.Column(db.Boolean, default=False)
    resolved_at = db.Column(db.DateTime)
    acknowledged_at = db.Column(db.DateTime)
    acknowledged_by = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    farm = db.relationship('Farm')

    @validates('type')
    def validate_type(self, key, value):
        return check_choice('type', value, ALERT_TYPES)

    @validates('severity')
    def validate_severity(self, key, value):
        return check_choice('severity', value, SEVERITIES)

    @validates('status')
    def validate_status(self, key, value):
        return check_choice('status', value, ALERT_STATUSES, allow_none=True)

    def update_from_dict(self, data):
        for field, attr in (('title', 'title'), ('message', 'message'), ('type', 'type'),
                            ('severity', 'severity'), ('status', 'status'), ('farm', 'farm_id'),
                            ('crop', 'crop_id'), ('sensor', 'sensor_id'), ('triggerValue', 'trigger_value'),
                            ('actionRequired', 'action_required')):
            if field in data:
                setattr(self, attr, data[field])

    def to_dict(self):
        return {
            'id': self.id,
            '_id': self.id,
            'title': self.title,
            'message': self.message,
            'type': self.type,
            'severity': self.severity,
            'status': self.status,
            'farm': {'_id': self.farm.id, 'name': self.farm.name} if self.farm else None,
            'crop': self.crop_id,
            'sensor': self.sensor_id,
            'triggerValue': self.trigger_value or {},
            'actionRequired': self.action_required,
            'actionTaken': self.action_taken or {},
            'autoResolved': self.auto_resolved,
            'resolvedAt': iso(self.resolved_at),
            'acknowledgedAt': iso(self.acknowledged_at),
            'acknowledgedBy': self.acknowledged_by,
            'createdAt': iso(self.created_at),
            'updatedAt': iso(self.updated_at)
        }


# --- MARKETPLACE ---

class ProductListing(db.Model):
    __tablename__ = 'product_listings'

    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False)
    crop_name = db.Column(db.String(50), nullable=False)
    crop_variety = db.Column(db.String(100))
    crop_name_yoruba = db.Column(db.String(100))
    quantity_available = db.Column(db.Float, nullable=False)
    quantity_unit = db.Column(db.String(20), nullable=False)
    unit_weight = db.Column(db.Float)
    price_per_unit = db.Column(db.Float, nullable=False)
    currency = db.Column(db.String(5), default='NGN')
    negotiable = db.Column(db.Boolean, default=True)
    bulk_pricing = db.Column(JSONList, default=list)
    state = db.Column(db.String(100), nullable=False)
    lga = db.Column(db.String(100), nullable=False)
    community = db.Column(db.String(100))
    farm_address = db.Column(db.String(255))
    quality_grade = db.Column(db.String(20), default='standard')
    certifications = db.Column(JSONList, default=list)
    harvest_date = db.Column(db.DateTime)
    availability_status = db.Column(db.String(20), default='available')
    available_from = db.Column(db.DateTime, default=datetime.utcnow)
    available_until = db.Column(db.DateTime)
    images = db.Column(JSONList, default=list)
    delivery_options = db.Column(JSONList, default=list)
    delivery_cost = db.Column(JSONDict, default=dict)
    payment_methods = db.Column(JSONList, default=list)
    tags = db.Column(JSONList, default=list)
    views = db.Column(db.Integer, default=0)
    favorites = db.Column(db.Integer, default=0)
    inquiries = db.Column(db.Integer, default=0)
    is_active = db.Column(db.Boolean, default=True)
    is_featured = db.Column(db.Boolean, default=False)
    is_verified = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    seller = db.relationship('User')

    @validates('crop_name')
    def validate_crop(self, key, value):
        return check_choice('crop name', value, CROP_NAMES)

    @validates('quantity_unit')
    def validate_unit(self, key, value):
        return check_choice('quantity unit', value, LISTING_UNITS)

    @validates('quantity_available', 'price_per_unit')
    def validate_non_negative(self, key, value):
        return check_range(key, value, low=0, allow_none=False)

    @validates('quality_grade')
    def validate_grade(self, key, value):
        return check_choice('quality grade', value, LISTING_GRADES, allow_none=True)

    @validates('availability_status')
    def validate_availability(self, key, value):
        return check_choice('availability status', value, LISTING_AVAILABILITY, allow_none=True)

    @validates('images')
    def validate_images(self, key, value):
        if value and len(value) > 5:
            raise ValueError('A listing can have at most 5 images')
        return value

    def update_from_dict(self, data):
        crop = data.get('crop') or {}
        quantity = data.get('quantity') or {}
        pricing = data.get('pricing') or {}
        location = data.get('location') or {}
        quality = data.get('quality') or {}
        availability = data.get('availability') or {}
        delivery = data.get('delivery') or {}
        payment_terms = data.get('paymentTerms') or {}
        for field in ('title', 'description', 'images', 'tags'):
            if field in data:
                setattr(self, field, data[field])
        if 'name' in crop:
            self.crop_name = crop['name']
            self.crop_name_yoruba = crop.get('nameYoruba') or CROP_NAMES_YORUBA.get(crop['name'])
        if 'variety' in crop:
            self.crop_variety = crop['variety']
        if 'available' in quantity:
            self.quantity_available = quantity['available']
        if 'unit' in quantity:
            self.quantity_unit = quantity['unit']
        if 'unitWeight' in quantity:
            self.unit_weight = quantity['unitWeight']
        if 'pricePerUnit' in pricing:
            self.price_per_unit = pricing['pricePerUnit']
        if 'negotiable' in pricing:
            self.negotiable = pricing['negotiable']
        if 'bulkPricing' in pricing:
            self.bulk_pricing = pricing['bulkPricing']
        for field, attr in (('state', 'state'), ('lga', 'lga'), ('community', 'community'),
                            ('farmAddress', 'farm_address')):
            if field in location:
                setattr(self, attr, location[field])
        if 'grade' in quality:
            self.quality_grade = quality['grade']
        if 'certifications' in quality:
            self.certifications = quality['certifications']
        if quality.get('harvestDate'):
            self.harvest_date = parse_datetime(quality['harvestDate'])
        if 'status' in availability:
            self.availability_status = availability['status']
        if availability.get('availableUntil'):
            self.available_until = parse_datetime(availability['availableUntil'])
        if 'options' in delivery:
            self.delivery_options = delivery['options']
        if 'cost' in delivery:
            self.delivery_cost = delivery['cost']
        if 'acceptedMethods' in payment_terms:
            self.payment_methods = payment_terms['acceptedMethods']

    def price_for_quantity(self, quantity):
        """Unit price of the bulk tier with the highest minQuantity not above quantity."""
        unit_price = self.price_per_unit
        best_min = None
        for tier in self.bulk_pricing or []:
            min_quantity = tier.get('minQuantity')
            if min_quantity is None or tier.get('pricePerUnit') is None:
                continue
            if quantity >= min_quantity and (best_min is None or min_quantity > best_min):
                best_min = min_quantity
                unit_price = tier['pricePerUnit']
        return unit_price

    def to_dict(self, seller=False):
        data = {
            'id': self.id,
            '_id': self.id,
            'seller': self.seller_id,
            'title': self.title,
            'description': self.description,
            'crop': {'name': self.crop_name, 'variety': self.crop_variety, 'nameYoruba': self.crop_name_yoruba},
            'quantity': {'available': self.quantity_available, 'unit': self.quantity_unit, 'unitWeight': self.unit_weight},
            'pricing': {
                'pricePerUnit': self.price_per_unit,
                'currency': self.currency,
                'negotiable': self.negotiable,
                'bulkPricing': list(self.bulk_pricing or [])
            },
            'location': {
                'state': self.state, 'lga': self.lga,
                'community': self.community, 'farmAddress': self.farm_address
            },
            'quality': {
                'grade': self.quality_grade,
                'certifications': list(self.certifications or []),
                'harvestDate': iso(self.harvest_date)
            },
            'availability': {
                'status': self.availability_status,
                'availableFrom': iso(self.available_from),
                'availableUntil': iso(self.available_until)
            },
            'images': list(self.images or []),
            'delivery': {'options': list(self.delivery_options or []), 'cost': self.delivery_cost or {}},
            'paymentTerms': {'acceptedMethods': list(self.payment_methods or [])},
            'tags': list(self.tags or []),
            'views': self.views or 0,
            'favorites': self.favorites or 0,
            'inquiries': self.inquiries or 0,
            'isActive': self.is_active,
            'isFeatured': self.is_featured,
            'isVerified': self.is_verified,
            'createdAt': iso(self.created_at),
            'updatedAt': iso(self.updated_at)
        }
        if seller and self.seller:
            data['seller'] = {
                '_id': self.seller.id,
                'profile': {'firstName': self.seller.first_name, 'lastName': self.seller.last_name},
                'phone': self.seller.phone
            }
        return data


class MarketplaceTransaction(db.Model):
    __tablename__ = 'marketplace_transactions'

    id = db.Column(db.Integer, primary_key=True)
    buyer_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    seller_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    listing_id = db.Column(db.Integer, db.ForeignKey('product_listings.id'), nullable=False)
    quantity = db.Column(db.Float, nullable=False)
    unit_price = db.Column(db.Float, nullable=False)
    total_amount = db.Column(db.Float, nullable=False)
    delivery_fee = db.Column(db.Float, default=0)
    platform_fee = db.Column(db.Float, default=0)
    grand_total = db.Column(db.Float, nullable=False)
    status = db.Column(db.String(30), default='pending')
    payment_method = db.Column(db.String(20), nullable=False)
    payment_status = db.Column(db.String(20), default='pending')
    paid_amount = db.Column(db.Float, default=0)
    delivery_method = db.Column(db.String(20), nullable=False)
    delivery_address = db.Column(JSONDict, default=dict)
    delivery_notes = db.Column(db.Text)
    communication = db.Column(JSONList, default=list)
    timeline = db.Column(JSONList, default=list)
    commission_rate = db.Column(db.Float, default=0.03)
    platform_commission = db.Column(db.Float, default=0)
    commission_paid = db.Column(db.Boolean, default=False)
    dispute = db.Column(JSONDict, default=dict)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    buyer = db.relationship('User', foreign_keys=[buyer_id])
    seller = db.relationship('User', foreign_keys=[seller_id])
    listing = db.relationship('ProductListing')

    @validates('quantity')
    def validate_quantity(self, key, value):
        return check_range('quantity', value, low=1, allow_none=False)

    @validates('status')
    def validate_status(self, key, value):
        return check_choice('status', value, ORDER_STATUSES, allow_none=True)

    @validates('payment_method')
    def validate_payment_method(self, key, value):
        return check_choice('payment method', value, MARKET_PAYMENT_METHODS)

    @validates('delivery_method')
    def validate_delivery_method(self, key, value):
        return check_choice('delivery method', value, DELIVERY_METHODS)

    def apply_commission(self):
        rate = self.commission_rate if self.commission_rate is not None else 0.03
        self.platform_commission = (self.total_amount or 0) * rate

    def add_timeline(self, status, note, user_id=None):
        self.timeline = list(self.timeline or []) + [{
            'status': status,
            'timestamp': datetime.utcnow().isoformat(),
            'note': note,
            'updatedBy': user_id
        }]

    def to_dict(self):
        return {
            'id': self.id,
            '_id': self.id,
            'buyer': self.buyer_id,
            'seller': self.seller_id,
            'listing': self.listing.to_dict() if self.listing else self.listing_id,
            'orderDetails': {
                'quantity': self.quantity,
                'unitPrice': self.unit_price,
                'totalAmount': self.total_amount,
                'deliveryFee': self.delivery_fee,
                'platformFee': self.platform_fee,
                'grandTotal': self.grand_total
            },
            'status': self.status,
            'paymentDetails': {
                'method': self.payment_method,
                'status': self.payment_status,
                'paidAmount': self.paid_amount
            },
            'delivery': {
                'method': self.delivery_method,
                'address': self.delivery_address or {},
                'deliveryNotes': self.delivery_notes
            },
            'communication': list(self.communication or []),
            'commission': {
                'platformCommission': self.platform_commission,
                'commissionRate': self.commission_rate,
                'isPaid': self.commission_paid
            },
            'timeline': list(self.timeline or []),
            'createdAt': iso(self.created_at),
            'updatedAt': iso(self.updated_at)
        }


@event.listens_for(MarketplaceTransaction, 'before_insert')
@event.listens_for(MarketplaceTransaction, 'before_update')
def refresh_commission(mapper, connection, target):
    target.apply_commission()


class BuyerRequest(db.Model):
    __tablename__ = 'buyer_requests'

    id = db.Column(db.Integer, primary_key=True)
    buyer_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False)
    crop_name = db.Column(db.String(50), nullable=False)
    crop_variety = db.Column(db.String(100))
    specifications = db.Column(db.Text)
    quantity_needed = db.Column(db.Float, nullable=False)
    quantity_unit = db.Column(db.String(20), nullable=False)
    budget = db.Column(JSONDict, default=dict)
    location = db.Column(JSONDict, default=dict)
    timeline = db.Column(JSONDict, default=dict)
    minimum_grade = db.Column(db.String(20))
    responses = db.Column(JSONList, default=list)
    status = db.Column(db.String(20), default='open')
    is_active = db.Column(db.Boolean, default=True)
    expires_at = db.Column(db.DateTime, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    buyer = db.relationship('User')

    @validates('crop_name')
    def validate_crop(self, key, value):
        return check_choice('crop name', value, CROP_NAMES)

    @validates('quantity_unit')
    def validate_unit(self, key, value):
        return check_choice('quantity unit', value, LISTING_UNITS)

    @validates('status')
    def validate_status(self, key, value):
        return check_choice('status', value, REQUEST_STATUSES, allow_none=True)

    @validates('minimum_grade')
    def validate_grade(self, key, value):
        return check_choice('minimum grade', value, LISTING_GRADES, allow_none=True)

    def update_from_dict(self, data):
        crop = data.get('crop') or {}
        quantity = data.get('quantity') or {}
        quality = data.get('quality') or {}
        for field in ('title', 'description', 'budget', 'location', 'timeline'):
            if field in data:
                setattr(self, field, data[field])
        if 'name' in crop:
            self.crop_name = crop['name']
        if 'variety' in crop:
            self.crop_variety = crop['variety']
        if 'specifications' in crop:
            self.specifications = crop['specifications']
        if 'needed' in quantity:
            self.quantity_needed = quantity['needed']
        if 'unit' in quantity:
            self.quantity_unit = quantity['unit']
        if 'minimumGrade' in quality:
            self.minimum_grade = quality['minimumGrade']

    def to_dict(self):
        return {
            'id': self.id,
            '_id': self.id,
            'buyer': {
                '_id': self.buyer.id,
                'profile': {'firstName': self.buyer.first_name, 'lastName': self.buyer.last_name}
            } if self.buyer else self.buyer_id,
            'title': self.title,
            'description': self.description,
            'crop': {'name': self.crop_name, 'variety': self.crop_variety, 'specifications': self.specifications},
            'quantity': {'needed': self.quantity_needed, 'unit': self.quantity_unit},
            'budget': self.budget or {},
            'location': self.location or {},
            'timeline': self.timeline or {},
            'quality': {'minimumGrade': self.minimum_grade},
            'responses': list(self.responses or []),
            'status': self.status,
            'isActive': self.is_active,
            'expiresAt': iso(self.expires_at),
            'createdAt': iso(self.created_at)
        }


class Favorite(db.Model):
    __tablename__ = 'favorites'
    __table_args__ = (db.UniqueConstraint('user_id', 'listing_id', name='uq_favorite_user_listing'),)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    listing_id = db.Column(db.Integer, db.ForeignKey('product_listings.id', ondelete='CASCADE'), nullable=False)
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    listing = db.relationship('ProductListing')

    def to_dict(self):
        return {
            'id': self.id,
            '_id': self.id,
            'listing': self.listing.to_dict() if self.listing else self.listing_id,
            'notes': self.notes,
            'createdAt': iso(self.created_at)
        }


class Review(db.Model):
    __tablename__ = 'reviews'

    id = db.Column(db.Integer, primary_key=True)
    reviewer_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    reviewee_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey('marketplace_transactions.id'), nullable=False)
    rating_overall = db.Column(db.Integer, nullable=False)
    rating_quality = db.Column(db.Integer)
    rating_communication = db.Column(db.Integer)
    rating_timeliness = db.Column(db.Integer)
    rating_packaging = db.Column(db.Integer)
    comment = db.Column(db.String(500))
    images = db.Column(JSONList, default=list)
    is_verified = db.Column(db.Boolean, default=False)
    helpful_votes = db.Column(db.Integer, default=0)
    response = db.Column(JSONDict, default=dict)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    @validates('rating_overall', 'rating_quality', 'rating_communication', 'rating_timeliness', 'rating_packaging')
    def validate_rating(self, key, value):
        return check_range(key.replace('rating_', 'rating.'), value, 1, 5, allow_none=key != 'rating_overall')

    @validates('comment')
    def validate_comment(self, key, value):
        if value and len(value) > 500:
            raise ValueError('comment cannot be longer than 500 characters')
        return value

    def to_dict(self):
        return {
            'id': self.id,
            '_id': self.id,
            'reviewer': self.reviewer_id,
            'reviewee': self.reviewee_id,
            'transaction': self.transaction_id,
            'rating': {
                'overall': self.rating_overall,
                'quality': self.rating_quality,
                'communication': self.rating_communication,
                'timeliness': self.rating_timeliness,
                'packaging': self.rating_packaging
            },
            'comment': self.comment,
            'images': list(self.images or []),
            'isVerified': self.is_verified,
            'helpfulVotes': self.helpful_votes or 0,
            'createdAt': iso(self.created_at)
        }


# --- SUBSCRIPTIONS & PAYMENTS ---

class SubscriptionPlan(db.Model):
    __tablename__ = 'subscription_plans'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(20), unique=True, nullable=False)
    display_name_english = db.Column(db.String(100), nullable=False)
    display_name_yoruba = db.Column(db.String(100), nullable=False)
    description_english = db.Column(db.Text, nullable=False)
    description_yoruba = db.Column(db.Text, nullable=False)
    monthly_amount = db.Column(db.Float, nullable=False)
    yearly_amount = db.Column(db.Float, nullable=False)
    currency = db.Column(db.String(5), default='NGN')
    discount = db.Column(db.Float, default=0)
    features = db.Column(JSONList, default=list)
    limits = db.Column(JSONDict, default=dict)
    target_audience = db.Column(JSONList, default=list)
    benefits = db.Column(JSONList, default=list)
    is_active = db.Column(db.Boolean, default=True)
    is_popular = db.Column(db.Boolean, default=False)
    sort_order = db.Column(db.Integer, default=0)
    trial_enabled = db.Column(db.Boolean, default=False)
    trial_duration = db.Column(db.Integer, default=7)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    DEFAULT_LIMITS = {
        'priceAlerts': 5, 'apiCalls': 100, 'dataExports': 1, 'supportTickets': 1,
        'trainingCourses': 0, 'marketplaceListings': 0, 'consultationHours': 0
    }

    @validates('name')
    def validate_name(self, key, value):
        return check_choice('plan name', value, TIERS)

    @validates('features')
    def validate_features(self, key, value):
        for feature in value or []:
            check_choice('feature', feature.get('name') if isinstance(feature, dict) else feature, PLAN_FEATURES)
        return value

    @property
    def yearly_savings(self):
        return self.monthly_amount * 12 - self.yearly_amount

    @property
    def yearly_discount_percent(self):
        monthly_total = self.monthly_amount * 12
        if not monthly_total:
            return 0
        return round((monthly_total - self.yearly_amount) / monthly_total * 100)

    @property
    def feature_names(self):
        return [f['name'] if isinstance(f, dict) else f for f in self.features or []]

    def limit_for(self, name):
        return dict(self.DEFAULT_LIMITS, **(self.limits or {})).get(name)

    @classmethod
    def find_plan_by_name(cls, name):
        return cls.query.filter_by(name=name, is_active=True).first()

    @classmethod
    def find_plans_for_audience(cls, audience):
        plans = cls.query.filter_by(is_active=True).order_by(cls.sort_order.asc()).all()
        return [p for p in plans if audience in (p.target_audience or []) or 'all' in (p.target_audience or [])]

    def to_dict(self):
        return {
            'id': self.id,
            '_id': self.id,
            'name': self.name,
            'displayName': {'english': self.display_name_english, 'yoruba': self.display_name_yoruba},
            'description': {'english': self.description_english, 'yoruba': self.description_yoruba},
            'pricing': {
                'monthly': {'amount': self.monthly_amount, 'currency': self.currency},
                'yearly': {'amount': self.yearly_amount, 'currency': self.currency, 'discount': self.discount}
            },
            'features': list(self.features or []),
            'limits': dict(self.DEFAULT_LIMITS, **(self.limits or {})),
            'targetAudience': list(self.target_audience or []),
            'benefits': list(self.benefits or []),
            'isActive': self.is_active,
            'isPopular': self.is_popular,
            'sortOrder': self.sort_order,
            'trialPeriod': {'enabled': self.trial_enabled, 'duration': self.trial_duration},
            'yearlySavings': self.yearly_savings,
            'yearlyDiscountPercent': self.yearly_discount_percent
        }


class Transaction(db.Model):
    __tablename__ = 'transactions'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    reference = db.Column(db.String(100), unique=True, nullable=False)
    amount = db.Column(db.Float, nullable=False)
    currency = db.Column(db.String(5), default='NGN')
    type = db.Column(db.String(30), nullable=False)
    status = db.Column(db.String(20), default='pending', index=True)
    provider = db.Column(db.String(20), nullable=False)
    channel = db.Column(db.String(30))
    authorization_code = db.Column(db.String(100))
    card_last4 = db.Column(db.String(4))
    bank = db.Column(db.String(100))
    subscription_plan = db.Column(db.String(20))
    billing_cycle = db.Column(db.String(10))
    subscription_start = db.Column(db.DateTime)
    subscription_end = db.Column(db.DateTime)
    details = db.Column('metadata', JSONDict, default=dict)
    payment_data = db.Column(JSONDict, default=dict)
    fees = db.Column(JSONDict, default=dict)
    webhook_data = db.Column(JSONList, default=list)
    paid_at = db.Column(db.DateTime)
    failure_reason = db.Column(db.Text)
    retry_count = db.Column(db.Integer, default=0)
    max_retries = db.Column(db.Integer, default=3)
    next_retry_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = db.relationship('User')

    @validates('type')
    def validate_type(self, key, value):
        return check_choice('transaction type', value, TRANSACTION_TYPES)

    @validates('status')
    def validate_status(self, key, value):
        return check_choice('transaction status', value, TRANSACTION_STATUSES, allow_none=True)

    @validates('provider')
    def validate_provider(self, key, value):
        return check_choice('payment provider', value, PAYMENT_PROVIDERS)

    @validates('billing_cycle')
    def validate_cycle(self, key, value):
        return check_choice('billing cycle', value, BILLING_CYCLES, allow_none=True)

    @property
    def net_amount(self):
        return self.amount - ((self.fees or {}).get('totalFees') or 0)

    def mark_as_paid(self, payment_data=None):
        self.status = 'successful'
        self.paid_at = datetime.utcnow()
        merged = dict(self.payment_data or {})
        merged.update(payment_data or {})
        self.payment_data = merged

    def mark_as_failed(self, reason):
        self.status = 'failed'
        self.failure_reason = reason
        self.retry_count = (self.retry_count or 0) + 1
        max_retries = self.max_retries if self.max_retries is not None else 3
        if self.retry_count < max_retries:
            # Backoff doubles with each attempt: 2, 4, 8... minutes
            self.next_retry_at = datetime.utcnow() + timedelta(minutes=2 ** self.retry_count)
        else:
            self.next_retry_at = None

    def add_webhook_event(self, provider, event_name, data):
        self.webhook_data = list(self.webhook_data or []) + [{
            'provider': provider,
            'event': event_name,
            'data': data,
            'receivedAt': datetime.utcnow().isoformat()
        }]

    @classmethod
    def find_pending_retries(cls, now=None):
        now = now or datetime.utcnow()
        return cls.query.filter(
            cls.status == 'failed',
            cls.next_retry_at.isnot(None),
            cls.next_retry_at <= now,
            cls.retry_count < cls.max_retries
        ).all()

    def to_dict(self):
        return {
            'id': self.id,
            '_id': self.id,
            'user': self.user_id,
            'reference': self.reference,
            'amount': self.amount,
            'currency': self.currency,
            'type': self.type,
            'status': self.status,
            'paymentMethod': {
                'provider': self.provider,
                'channel': self.channel,
                'last4': self.card_last4,
                'bank': self.bank
            },
            'subscription': {
                'plan': self.subscription_plan,
                'billingCycle': self.billing_cycle,
                'startDate': iso(self.subscription_start),
                'endDate': iso(self.subscription_end)
            },
            'metadata': self.details or {},
            'netAmount': self.net_amount,
            'paidAt': iso(self.paid_at),
            'failureReason': self.failure_reason,
            'retryCount': self.retry_count or 0,
            'nextRetryAt': iso(self.next_retry_at),
            'createdAt': iso(self.created_at)
        }


class UsageTracking(db.Model):
    __tablename__ = 'usage_tracking'
    __table_args__ = (db.Index('ix_usage_user_feature_period', 'user_id', 'feature', 'year', 'month', 'day'),)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    feature = db.Column(db.String(30), nullable=False)
    count = db.Column(db.Integer, default=1)
    details = db.Column('metadata', JSONDict, default=dict)
    year = db.Column(db.Integer, nullable=False)
    month = db.Column(db.Integer, nullable=False)
    day = db.Column(db.Integer, nullable=False)
    reset_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @validates('feature')
    def validate_feature(self, key, value):
        return check_choice('feature', value, USAGE_FEATURES)

    @classmethod
    def increment_usage(cls, user_id, feature, count=1, details=None):
        """Adds to today's counter row, creating it on first use. The caller commits."""
        now = datetime.utcnow()
        row = cls.query.filter_by(user_id=user_id, feature=feature, year=now.year,
                                  month=now.month, day=now.day).first()
        if row is None:
            row = cls(user_id=user_id, feature=feature, count=0, year=now.year, month=now.month, day=now.day)
            db.session.add(row)
        row.count = (row.count or 0) + count
        row.details = details or {}
        return row

    @classmethod
    def get_user_usage(cls, user_id, feature, timeframe='monthly'):
        now = datetime.utcnow()
        query = db.session.query(db.func.coalesce(db.func.sum(cls.count), 0)).filter(
            cls.user_id == user_id, cls.feature == feature, cls.year == now.year
        )
        if timeframe == 'daily':
            query = query.filter(cls.month == now.month, cls.day == now.day)
        elif timeframe == 'monthly':
            query = query.filter(cls.month == now.month)
        return int(query.scalar() or 0)

    def to_dict(self):
        return {
            'id': self.id,
            'feature': self.feature,
            'count': self.count,
            'period': {'year': self.year, 'month': self.month, 'day': self.day},
            'metadata': self.details or {},
            'createdAt': iso(self.created_at)
        }


# --- AUDIT & INBOX ---

class ActivityLog(db.Model):
    __tablename__ = 'activity_logs'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='SET NULL'), nullable=True)
    user = db.relationship('User')
    action = db.Column(db.String(255), nullable=False)
    entity_type = db.Column(db.String(100))
    entity_id = db.Column(db.String(100))
    details = db.Column(db.Text)
    ip_address = db.Column(db.String(50))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'userId': self.user_id,
            'userName': self.user.full_name if self.user else None,
            'action': self.action,
            'entityType': self.entity_type,
            'entityId': self.entity_id,
            'details': self.details,
            'createdAt': iso(self.created_at)
        }


class Notification(db.Model):
    __tablename__ = 'notifications'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=True, index=True)
    type = db.Column(db.String(50), default='system')
    title = db.Column(db.String(255), nullable=False)
    message = db.Column(db.Text, nullable=False)
    data = db.Column(JSONDict, default=dict)
    is_read = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "_id": self.id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "data": self.data or {},
            "isRead": self.is_read,
            "createdAt": iso(self.created_at),
            "createdAtHuman": self.created_at.strftime("%b %d, %I:%M %p") if self.created_at else None
        }
