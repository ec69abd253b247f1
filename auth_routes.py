from datetime import datetime, timedelta

from flask import request, jsonify, g, current_app
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from models import db, User, hash_token
from helpers import (
    success_response, fail_response, error_response, get_json_body,
    duplicate_field_message, log_activity, client_ip
)
from security import protect, create_send_token, RateLimiter
from notifications import notification_service

auth_limiter = RateLimiter(max_requests=5, window=timedelta(minutes=15))
forgot_password_limiter = RateLimiter(max_requests=3, window=timedelta(hours=1))

# Client field -> column, or (JSON column, key)
UPDATABLE_FIELDS = {
    'profile.firstName': 'first_name',
    'profile.lastName': 'last_name',
    'profile.avatar': 'avatar',
    'profile.bio': 'bio',
    'profile.preferredLanguage': 'preferred_language',
    'profile.location.address': 'address',
    'farmingInfo.experience': ('farming_info', 'experience'),
    'farmingInfo.primaryCrops': ('farming_info', 'primaryCrops'),
    'farmingInfo.farmSize': ('farming_info', 'farmSize'),
    'farmingInfo.farmingMethod': ('farming_info', 'farmingMethod'),
    'preferences.notifications': ('preferences', 'notifications'),
    'preferences.priceAlerts': ('preferences', 'priceAlerts'),
    'preferences.marketPreferences': ('preferences', 'marketPreferences'),
    'preferences.dashboard': ('preferences', 'dashboard')
}


def verification_email_html(title, intro, action_url, expires):
    return f"""
    <div style="font-family: 'Inter', sans-serif; background-color: #f8fafc; padding: 40px; color: #0f172a;">
        <div style="max-width: 500px; margin: 0 auto; background: #ffffff; border-radius: 24px; overflow: hidden; border: 1px solid #e2e8f0;">
            <div style="background: #14532d; padding: 30px; text-align: center;">
                <h1 style="color: #4ade80; margin: 0; font-size: 24px; text-transform: uppercase; letter-spacing: 2px;">AgriTech</h1>
                <p style="color: #bbf7d0; margin: 5px 0 0 0; font-size: 10px; text-transform: uppercase; letter-spacing: 3px;">Igbaja, Kwara State</p>
            </div>
            <div style="padding: 40px; text-align: center;">
                <h2 style="font-size: 20px; color: #1e293b; margin-bottom: 8px;">{title}</h2>
                <p style="color: #64748b; font-size: 14px; margin-bottom: 30px;">{intro}</p>
                <a href="{action_url}" style="display: inline-block; background: #16a34a; color: #ffffff; padding: 14px 28px; border-radius: 12px; text-decoration: none; font-weight: 700;">Continue</a>
                <p style="color: #94a3b8; font-size: 11px; margin-top: 30px;">Expires in {expires}</p>
            </div>
        </div>
    </div>
    """


def register_auth_routes(app):

    def throttled(limiter):
        if current_app.config.get('ENVIRONMENT') != 'production' and limiter is auth_limiter:
            return None
        allowed, retry_after = limiter.hit(client_ip())
        if not allowed:
            return fail_response('Too many authentication attempts, please try again later.', 429,
                                 retryAfter=retry_after)
        return None

    # ============ Auth Routes ============

    @app.route('/api/auth/register', methods=['POST'])
    def register():
        limited = throttled(auth_limiter)
        if limited:
            return limited

        data = get_json_body()
        email, phone, password = data.get('email'), data.get('phone'), data.get('password')
        first_name, last_name = data.get('firstName'), data.get('lastName')

        if not all([email, phone, password, first_name, last_name]):
            return fail_response('Please provide all required fields: email, phone, password, firstName, lastName')

        existing = User.query.filter(or_(User.email == email.strip().lower(), User.phone == phone)).first()
        if existing:
            return fail_response('User with this email or phone number already exists')

        if data.get('role') == 'admin':
            return fail_response('Admin accounts cannot be self-registered', 403)

        referrer = None
        if data.get('referralCode'):
            referrer = User.query.filter_by(referral_code=data['referralCode']).first()
            if not referrer:
                return fail_response('Invalid referral code')

        try:
            address = ((data.get('profile') or {}).get('location') or {}).get('address') or ''
            user = User(
                email=email,
                phone=phone,
                first_name=first_name,
                last_name=last_name,
                preferred_language=data.get('preferredLanguage') or 'english',
                address=address,
                role=data.get('role') or 'farmer',
                referred_by_id=referrer.id if referrer else None
            )
            user.set_password(password)

            email_token = user.create_email_verification_token()
            phone_code = user.create_phone_verification_code()

            db.session.add(user)
            if referrer:
                referrer.add_contribution('referrals')
            db.session.commit()
        except IntegrityError as e:
            db.session.rollback()
            return fail_response(duplicate_field_message(e))
        except ValueError as e:
            db.session.rollback()
            return fail_response(str(e))

        verify_url = f"{request.host_url.rstrip('/')}/api/auth/verify-email/{email_token}"
        notification_service.send_email(
            user.email,
            'Verify Your AgriTech Account',
            f"Click this link to verify your email: {verify_url}",
            verification_email_html('Verify Your Email', 'Welcome to AgriTech! Confirm your email address to get started.',
                                    verify_url, '24 hours')
        )
        notification_service.send_sms(
            user.phone, f"Your AgriTech verification code is: {phone_code}. Valid for 10 minutes.",
            user.id, 'verification'
        )

        log_activity('REGISTER', 'User', user.id, f"New {user.role} account", user_id=user.id)
        return create_send_token(user, 201, 'User registered successfully! Please check your email and SMS for verification.')

    @app.route('/api/auth/login', methods=['POST'])
    def login():
        limited = throttled(auth_limiter)
        if limited:
            return limited

        data = get_json_body()
        email, phone, password = data.get('email'), data.get('phone'), data.get('password')
        if (not email and not phone) or not password:
            return fail_response('Please provide email/phone and password')

        try:
            if email:
                user = User.query.filter_by(email=email.strip().lower()).first()
            else:
                user = User.query.filter_by(phone=phone).first()

            if not user or not user.check_password(password):
                if user:
                    user.login_attempts = (user.login_attempts or 0) + 1
                    user.last_login_attempt = datetime.utcnow()
                    db.session.commit()
                return fail_response('Incorrect credentials', 401)

            if user.status != 'active':
                return fail_response('Your account is not active. Please contact support.', 401,
                                     accountStatus=user.status)

            user.login_attempts = 0
            user.last_login = datetime.utcnow()
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            print(f"❌ Login error: {e}")
            return error_response('Login failed', 500)

        log_activity('LOGIN', 'User', user.id, 'User logged in', user_id=user.id)
        return create_send_token(user, 200, 'Login successful')

    @app.route('/api/auth/logout', methods=['POST'])
    def logout():
        response = jsonify({'status': 'success', 'message': 'Logged out successfully'})
        response.set_cookie('jwt', 'loggedout', max_age=10, httponly=True)
        return response, 200

    @app.route('/api/auth/verify-email/<token>', methods=['GET'])
    def verify_email(token):
        user = User.query.filter(
            User.email_verification_token == hash_token(token),
            User.email_token_expires > datetime.utcnow()
        ).first()
        if not user:
            return fail_response('Token is invalid or has expired')

        user.email_verified = True
        user.email_verification_token = None
        user.email_token_expires = None
        db.session.commit()
        return success_response(message='Email verified successfully')

    @app.route('/api/auth/verify-phone', methods=['POST'])
    @protect
    def verify_phone():
        code = get_json_body().get('code')
        if not code:
            return fail_response('Please provide verification code')

        user = g.user
        if user.phone_verification_code != str(code) or \
                not user.phone_code_expires or user.phone_code_expires < datetime.utcnow():
            return fail_response('Invalid or expired verification code')

        user.phone_verified = True
        user.phone_verification_code = None
        user.phone_code_expires = None
        db.session.commit()
        notification_service.send_welcome_message(user.id)
        return success_response(message='Phone number verified successfully')

    @app.route('/api/auth/resend-phone-code', methods=['POST'])
    @protect
    def resend_phone_code():
        user = g.user
        if user.phone_verified:
            return fail_response('Phone number is already verified')

        code = user.create_phone_verification_code()
        db.session.commit()
        notification_service.send_sms(
            user.phone, f"Your AgriTech verification code is: {code}. Valid for 10 minutes.",
            user.id, 'verification'
        )
        return success_response(message='Verification code sent successfully')

    @app.route('/api/auth/forgot-password', methods=['POST'])
    def forgot_password():
        limited = throttled(forgot_password_limiter)
        if limited:
            return limited

        email = get_json_body().get('email')
        if not email:
            return fail_response('Please provide your email address')

        user = User.query.filter_by(email=email.strip().lower()).first()
        # Same answer whether or not the account exists
        if not user:
            return success_response(message='Token sent to email!')

        token = user.create_password_reset_token()
        db.session.commit()

        reset_url = f"{current_app.config['CLIENT_URL']}/reset-password/{token}"
        result = notification_service.send_email(
            user.email,
            'Password Reset Request',
            f"Reset your password using this link: {reset_url} (Valid for 10 minutes)",
            verification_email_html('Password Reset', 'A password reset was requested for your account.',
                                    reset_url, '10 minutes')
        )
        if not result['success']:
            return error_response('There was an error sending the email', 500)
        return success_response(message='Password reset token sent to email!')

    @app.route('/api/auth/reset-password/<token>', methods=['PATCH'])
    def reset_password(token):
        user = User.query.filter(
            User.password_reset_token == hash_token(token),
            User.password_reset_expires > datetime.utcnow()
        ).first()
        if not user:
            return fail_response('Token is invalid or has expired')

        try:
            user.set_password(get_json_body().get('password'))
        except ValueError as e:
            return fail_response(str(e))

        user.password_reset_token = None
        user.password_reset_expires = None
        db.session.commit()
        return create_send_token(user, 200, 'Password reset successful')

    @app.route('/api/auth/update-password', methods=['PATCH'])
    @protect
    def update_password():
        data = get_json_body()
        if not data.get('passwordCurrent') or not data.get('password'):
            return fail_response('Please provide current password and new password')

        user = g.user
        if not user.check_password(data['passwordCurrent']):
            return fail_response('Your current password is incorrect', 401)

        try:
            user.set_password(data['password'])
        except ValueError as e:
            return fail_response(str(e))
        db.session.commit()

        log_activity('UPDATE_PASSWORD', 'User', user.id, 'Password changed')
        return create_send_token(user, 200, 'Password updated successfully')

    @app.route('/api/auth/me', methods=['GET'])
    @protect
    def get_me():
        return success_response({'user': g.user.to_dict(include_private=True)})

    @app.route('/api/auth/update-me', methods=['PATCH'])
    @protect
    def update_me():
        data = get_json_body()
        if data.get('password') or data.get('passwordConfirm'):
            return fail_response('This route is not for password updates. Please use /update-password.')

        user = g.user
        try:
            for key, value in data.items():
                target = UPDATABLE_FIELDS.get(key)
                if target is None:
                    continue
                if isinstance(target, tuple):
                    column, field = target
                    current = dict(getattr(user, column) or {})
                    current[field] = value
                    setattr(user, column, current)
                else:
                    setattr(user, target, value)
            db.session.commit()
        except ValueError as e:
            db.session.rollback()
            return fail_response(str(e))

        return success_response({'user': user.to_dict()})

    @app.route('/api/auth/delete-me', methods=['DELETE'])
    @protect
    def delete_me():
        g.user.status = 'inactive'
        db.session.commit()
        log_activity('DEACTIVATE', 'User', g.user.id, 'Account deactivated')
        return '', 204

    @app.route('/api/auth/check-user', methods=['POST'])
    def check_user():
        data = get_json_body()
        email, phone = data.get('email'), data.get('phone')
        if not email and not phone:
            return fail_response('Please provide email or phone')

        query = User.query
        if email:
            query = query.filter_by(email=email.strip().lower())
        if phone:
            query = query.filter_by(phone=phone)
        user = query.first()

        if user:
            return success_response({'exists': True, 'status': user.status})
        return success_response({'exists': False})
