import itertools
from datetime import datetime, timedelta

import pytest
from flask_jwt_extended import create_access_token

from app import create_app
from models import db, User, CropPrice, CROP_NAMES_YORUBA
from security import user_limiter


@pytest.fixture
def app():
    app = create_app('testing')
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()
    user_limiter.reset()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    counter = itertools.count(1)

    def _make(role='farmer', tier='free', features=None, active=False, **fields):
        n = next(counter)
        user = User(
            email=f"user{n}@example.com",
            phone=f"0803{n:07d}",
            first_name='Ade',
            last_name=f"Bello{n}",
            role=role,
            subscription_tier=tier,
            subscription_features=features or [],
            **fields
        )
        if active:
            user.subscription_status = 'active'
            user.subscription_expires_at = datetime.utcnow() + timedelta(days=30)
        user.set_password('password123')
        db.session.add(user)
        db.session.commit()
        return user

    return _make


@pytest.fixture
def auth_headers():
    def _headers(user):
        return {'Authorization': f"Bearer {create_access_token(identity=str(user.id))}"}
    return _headers


@pytest.fixture
def add_price(app):
    def _add(crop='maize', market='Igbaja Local Market', value=1000, days_ago=0, **fields):
        price = CropPrice(
            crop_name=crop,
            crop_name_yoruba=CROP_NAMES_YORUBA[crop],
            market_name=market,
            price_value=value,
            price_unit=fields.pop('unit', 'per bag'),
            season=fields.pop('season', 'dry_season'),
            last_updated=datetime.utcnow() - timedelta(days=days_ago),
            **fields
        )
        db.session.add(price)
        db.session.commit()
        return price
    return _add
