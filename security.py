import math
import threading
import time
from datetime import datetime, timedelta
from functools import wraps

from flask import request, jsonify, g, current_app
from flask_jwt_extended import create_access_token, decode_token
from flask_jwt_extended.exceptions import JWTExtendedException
from jwt import ExpiredSignatureError, InvalidTokenError

from models import db, User, ApiKey, TIER_LEVELS, TIERS
from helpers import fail_response


# Tiers allowed per feature area
FEATURE_ACCESS = {
    'priceAlerts': ['basic', 'premium', 'commercial', 'enterprise'],
    'analytics': ['premium', 'commercial', 'enterprise'],
    'api': ['commercial', 'enterprise'],
    'export': ['premium', 'commercial', 'enterprise'],
    'marketplace': ['basic', 'premium', 'commercial', 'enterprise'],
    'training': list(TIERS)
}

# Subscription feature that must also be present for a feature area
FEATURE_FLAGS = {
    'analytics': 'advanced_analytics',
    'api': 'api_access',
    'export': 'data_export',
    'marketplace': 'marketplace_access'
}


class RateLimiter:
    """Fixed-window request counter keyed by an arbitrary string."""

    def __init__(self, max_requests=100, window=timedelta(minutes=15)):
        self.max_requests = max_requests
        self.window = window.total_seconds() if isinstance(window, timedelta) else float(window)
        self._windows = {}
        self._lock = threading.Lock()

    def hit(self, key, now=None):
        """Counts one request; returns (allowed, retry_after_seconds)."""
        now = time.time() if now is None else now
        with self._lock:
            entry = self._windows.get(key)
            if entry is None or now > entry['reset_at']:
                entry = {'count': 0, 'reset_at': now + self.window}
                self._windows[key] = entry
            entry['count'] += 1
            if entry['count'] > self.max_requests:
                return False, math.ceil(entry['reset_at'] - now)
            return True, 0

    def cleanup(self, now=None):
        now = time.time() if now is None else now
        with self._lock:
            expired = [key for key, entry in self._windows.items() if now > entry['reset_at']]
            for key in expired:
                del self._windows[key]
        return len(expired)

    def reset(self):
        with self._lock:
            self._windows.clear()


user_limiter = RateLimiter()


# --- TOKENS ---

def extract_token():
    auth_header = request.headers.get('Authorization', '')
    if auth_header.startswith('Bearer'):
        parts = auth_header.split(' ')
        return parts[1] if len(parts) > 1 else None
    return request.cookies.get(current_app.config.get('JWT_ACCESS_COOKIE_NAME', 'jwt'))


def load_user_from_token(token):
    decoded = decode_token(token)
    return db.session.get(User, int(decoded['sub']))


def create_send_token(user, status_code=200, message='Authentication successful'):
    token = create_access_token(identity=str(user.id))
    user_data = user.to_dict()
    response = jsonify({
        'status': 'success',
        'message': message,
        'token': token,
        'user': user_data,
        'data': {'user': user_data}
    })
    response.set_cookie(
        current_app.config.get('JWT_ACCESS_COOKIE_NAME', 'jwt'),
        token,
        max_age=int(current_app.config['JWT_ACCESS_TOKEN_EXPIRES'].total_seconds()),
        httponly=True,
        secure=current_app.config.get('JWT_COOKIE_SECURE', False),
        samesite='Lax'
    )
    return response, status_code


# --- DECORATORS ---

def protect(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        token = extract_token()
        if not token:
            return fail_response('You are not logged in! Please log in to get access.', 401)

        try:
            user = load_user_from_token(token)
        except ExpiredSignatureError:
            return fail_response('Your token has expired. Please log in again.', 401)
        except (InvalidTokenError, JWTExtendedException, KeyError, ValueError):
            return fail_response('Invalid token. Please log in again.', 401)

        if not user:
            return fail_response('The user belonging to this token no longer exists.', 401)

        if user.status != 'active':
            return fail_response('Your account is not active. Please contact support.', 401)

        user.last_login = datetime.utcnow()
        user.login_count = (user.login_count or 0) + 1
        db.session.commit()

        g.user = user
        return fn(*args, **kwargs)
    return wrapper


def optional_auth(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        g.user = None
        token = extract_token()
        if token:
            try:
                user = load_user_from_token(token)
                if user and user.status == 'active':
                    g.user = user
            except (InvalidTokenError, JWTExtendedException, KeyError, ValueError):
                pass
        return fn(*args, **kwargs)
    return wrapper


def restrict_to(*roles):
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            if g.user.role not in roles:
                return fail_response('You do not have permission to perform this action.', 403)
            return fn(*args, **kwargs)
        return wrapper
    return decorator


def require_subscription(required_tier='basic', feature=None):
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            user = g.user
            if user.role != 'admin':
                if not user.is_subscription_active:
                    return fail_response(
                        'Your subscription has expired. Please upgrade to access this feature.', 403,
                        redirectTo='/subscription/upgrade'
                    )
                if TIER_LEVELS.get(user.subscription_tier, 0) < TIER_LEVELS[required_tier]:
                    return fail_response(
                        f'This feature requires {required_tier} subscription or higher.', 403,
                        currentTier=user.subscription_tier,
                        requiredTier=required_tier,
                        redirectTo='/subscription/upgrade'
                    )
                if feature and not user.can_access_feature(feature):
                    return fail_response(
                        f'Your subscription does not include access to {feature}.', 403,
                        feature=feature,
                        redirectTo='/subscription/upgrade'
                    )
            return fn(*args, **kwargs)
        return wrapper
    return decorator


def check_subscription_access(feature):
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            user = g.user
            if user.role != 'admin':
                if not user.is_subscription_active:
                    return fail_response(
                        'Your subscription has expired. Please upgrade to access this feature.', 403,
                        redirectTo='/subscription/upgrade'
                    )
                allowed_tiers = FEATURE_ACCESS.get(feature, [])
                if user.subscription_tier not in allowed_tiers:
                    return fail_response(
                        'This feature requires a higher subscription tier.', 403,
                        currentTier=user.subscription_tier,
                        requiredTiers=allowed_tiers,
                        redirectTo='/subscription/upgrade'
                    )
                flag = FEATURE_FLAGS.get(feature)
                if flag and not user.can_access_feature(flag):
                    return fail_response(
                        f'Your subscription does not include access to {feature}.', 403,
                        feature=feature,
                        redirectTo='/subscription/upgrade'
                    )
            return fn(*args, **kwargs)
        return wrapper
    return decorator


def require_permission(permission):
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            if not g.user.has_permission(permission):
                return fail_response(f'You do not have {permission} permission.', 403)
            return fn(*args, **kwargs)
        return wrapper
    return decorator


def user_rate_limit(limiter=None):
    limiter = limiter or user_limiter

    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            user = getattr(g, 'user', None)
            if user is not None:
                allowed, retry_after = limiter.hit(str(user.id))
                if not allowed:
                    return fail_response('Too many requests. Please try again later.', 429,
                                         retryAfter=retry_after)
            return fn(*args, **kwargs)
        return wrapper
    return decorator


def track_activity(feature):
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            user = getattr(g, 'user', None)
            if user is not None:
                try:
                    user.update_activity(feature)
                    db.session.commit()
                except Exception as e:
                    print(f"❌ Error logging activity: {e}")
                    db.session.rollback()
            return fn(*args, **kwargs)
        return wrapper
    return decorator


def verify_api_key(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        key = request.headers.get('x-api-key')
        if not key:
            return fail_response('API key is required', 401)

        api_key = ApiKey.query.filter_by(key=key, active=True).first()
        if not api_key or not api_key.user:
            return fail_response('Invalid API key', 401)

        api_key.last_used = datetime.utcnow()
        api_key.usage = (api_key.usage or 0) + 1
        db.session.commit()

        g.user = api_key.user
        g.api_key = api_key
        return fn(*args, **kwargs)
    return wrapper


VERIFICATION_MESSAGES = {
    'email': ('email_verified', 'Please verify your email address to access this feature.'),
    'phone': ('phone_verified', 'Please verify your phone number to access this feature.'),
    'identity': ('identity_verified', 'Please complete identity verification to access this feature.')
}


def require_verification(kind='email'):
    attr, message = VERIFICATION_MESSAGES[kind]

    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            if not getattr(g.user, attr):
                return fail_response(message, 403, redirectTo=f'/verify-{kind}')
            return fn(*args, **kwargs)
        return wrapper
    return decorator


def jwt_error_handlers(jwt):
    """Keeps flask_jwt_extended errors in the same envelope as the auth decorators."""

    @jwt.expired_token_loader
    def expired_token(jwt_header, jwt_payload):
        return jsonify({'status': 'fail', 'message': 'Your token has expired. Please log in again.'}), 401

    @jwt.invalid_token_loader
    def invalid_token(reason):
        return jsonify({'status': 'fail', 'message': 'Invalid token. Please log in again.'}), 401

    @jwt.unauthorized_loader
    def missing_token(reason):
        return jsonify({'status': 'fail', 'message': 'You are not logged in! Please log in to get access.'}), 401
