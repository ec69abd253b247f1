import random
from datetime import datetime, timedelta
from faker import Faker
from app import create_app
from models import (
    db, User, SubscriptionPlan, CropPrice, FarmingTip, YouthTraining, SecurityReport,
    CROP_NAMES, CROP_NAMES_YORUBA, MARKETS, SEASONS, TIP_CATEGORIES, COURSE_CATEGORIES,
    REPORT_TYPES, REPORT_AREAS
)

# Initialize Faker
fake = Faker()
app = create_app()

ADMIN_EMAIL = 'admin@igbaja.ng'
ADMIN_PASSWORD = 'admin12345'

# Base price and unit per crop, Igbaja Local Market
BASE_PRICES = {
    'yam': (2500, 'per tuber'), 'cassava': (800, 'per bag'), 'maize': (18000, 'per bag'),
    'tomatoes': (12000, 'per basket'), 'beans': (45000, 'per bag'), 'pepper': (9000, 'per basket'),
    'onions': (30000, 'per bag'), 'plantain': (1500, 'per kg'), 'rice': (52000, 'per bag'),
    'cocoyam': (700, 'per kg')
}
MARKET_FACTORS = {
    'Igbaja Local Market': (1.0, 'Ifelodun'),
    'Ilorin Central Market': (0.95, 'Ilorin West'),
    'Offa Market': (1.02, 'Offa'),
    'Lagos Wholesale Market': (1.25, 'Ikeja')
}


def clear_data():
    """Deletes existing data to avoid duplicates (Order matters for Foreign Keys)"""
    print("🗑️  Cleaning old data...")
    meta = db.metadata
    for table in reversed(meta.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()
    print("✅ Database cleared.")


def feature(name, english, limit=-1):
    return {'name': name, 'description': {'english': english}, 'limit': limit}

# --------------------------------------------------
# 1. SUBSCRIPTION PLANS
# --------------------------------------------------
def seed_plans():
    print("💳 Seeding Subscription Plans...")

    core = [
        feature('basic_prices', 'All crop prices from multiple markets'),
        feature('advanced_analytics', 'Advanced price analytics and trends'),
        feature('unlimited_alerts', 'Unlimited price alerts'),
        feature('historical_data', '6 months historical price data', 6)
    ]
    trader = core + [
        feature('data_export', 'Export data in multiple formats'),
        feature('api_access', 'API access for integration'),
        feature('marketplace_access', 'Access to trading marketplace')
    ]
    commercial = trader + [
        feature('custom_reports', 'Custom report generation'),
        feature('premium_support', '24/7 priority support')
    ]

    plans = [
        SubscriptionPlan(
            name='free', display_name_english='Free', display_name_yoruba='Ọfẹ',
            description_english='Basic features for new farmers and youth',
            description_yoruba='Awọn ẹya ipilẹ fun awọn agbe tuntun ati ọdọ',
            monthly_amount=0, yearly_amount=0,
            features=[feature('basic_prices', 'Basic crop prices from 5 markets', 5)],
            limits={'priceAlerts': 5, 'apiCalls': 10, 'dataExports': 0, 'supportTickets': 1,
                    'trainingCourses': 2, 'marketplaceListings': 0, 'consultationHours': 0},
            target_audience=['farmer', 'youth', 'all'],
            benefits=[{'english': 'Basic crop price information', 'yoruba': 'Alaye idiyele oko ipilẹ'},
                      {'english': 'Community farming tips', 'yoruba': 'Awọn imọran oko agbegbe'}],
            sort_order=1
        ),
        SubscriptionPlan(
            name='basic', display_name_english='Farmer Pro', display_name_yoruba='Alamọja Agbe',
            description_english='Advanced features for active farmers',
            description_yoruba='Awọn ẹya to ga julọ fun awọn agbe ti nṣe',
            monthly_amount=2500, yearly_amount=25000, discount=17,
            features=core,
            limits={'priceAlerts': -1, 'apiCalls': 500, 'dataExports': 2, 'supportTickets': 3,
                    'trainingCourses': 5, 'marketplaceListings': 10, 'consultationHours': 2},
            target_audience=['farmer'],
            benefits=[{'english': 'Advanced price predictions', 'yoruba': 'Asọtẹlẹ idiyele'}],
            is_popular=True, sort_order=2, trial_enabled=True
        ),
        SubscriptionPlan(
            name='premium', display_name_english='Trader Premium', display_name_yoruba='Oniṣowo Pataki',
            description_english='Comprehensive tools for agricultural traders',
            description_yoruba='Awọn irinṣẹ kikun fun awọn oniṣowo ogbin',
            monthly_amount=5000, yearly_amount=50000, discount=17,
            features=trader,
            limits={'priceAlerts': -1, 'apiCalls': 1000, 'dataExports': -1, 'supportTickets': 5,
                    'trainingCourses': 10, 'marketplaceListings': 50, 'consultationHours': 5},
            target_audience=['trader', 'buyer'],
            benefits=[{'english': 'Market comparison dashboard', 'yoruba': 'Afiwe ọja'}],
            sort_order=3
        ),
        SubscriptionPlan(
            name='commercial', display_name_english='Commercial', display_name_yoruba='Iṣowo',
            description_english='Enterprise solutions for agricultural companies',
            description_yoruba='Awọn ojutu fun awọn ile-iṣẹ ogbin',
            monthly_amount=15000, yearly_amount=150000, discount=17,
            features=commercial,
            limits={'priceAlerts': -1, 'apiCalls': 10000, 'dataExports': -1, 'supportTickets': -1,
                    'trainingCourses': -1, 'marketplaceListings': -1, 'consultationHours': 10},
            target_audience=['trader', 'buyer', 'supplier'],
            benefits=[{'english': 'Dedicated account manager', 'yoruba': 'Alakoso akanṣe'}],
            sort_order=4
        ),
        SubscriptionPlan(
            name='enterprise', display_name_english='Enterprise', display_name_yoruba='Ile-iṣẹ Nla',
            description_english='Custom solutions for large organizations',
            description_yoruba='Awọn ojutu pataki fun awọn ajọ nla',
            monthly_amount=50000, yearly_amount=500000, discount=17,
            features=commercial + [feature('bulk_operations', 'Bulk operations and management')],
            limits={'priceAlerts': -1, 'apiCalls': -1, 'dataExports': -1, 'supportTickets': -1,
                    'trainingCourses': -1, 'marketplaceListings': -1, 'consultationHours': -1},
            target_audience=['all'],
            benefits=[{'english': 'SLA guarantees', 'yoruba': 'Idaniloju iṣẹ'}],
            sort_order=5
        )
    ]
    db.session.add_all(plans)
    db.session.commit()
    return plans

# --------------------------------------------------
# 2. USERS (admin first)
# --------------------------------------------------
def seed_users():
    print("👤 Seeding Users...")

    admin = User(
        email=ADMIN_EMAIL,
        phone='08030000001',
        first_name='System',
        last_name='Admin',
        role='admin',
        subscription_tier='enterprise',
        email_verified=True,
        phone_verified=True
    )
    admin.set_password(ADMIN_PASSWORD)
    db.session.add(admin)
    users = [admin]

    roles = ['farmer'] * 6 + ['trader', 'buyer', 'youth', 'youth', 'extension_officer']
    for i, role in enumerate(roles, start=2):
        first, last = fake.first_name(), fake.last_name()
        user = User(
            email=f"{first}.{last}{i}@example.com".lower(),
            phone=f"0803{i:07d}",
            first_name=first,
            last_name=last,
            role=role,
            subscription_tier=random.choice(['free', 'free', 'basic', 'premium']),
            address=fake.street_address(),
            farming_info={'farmSize': random.randint(1, 20), 'primaryCrops': random.sample(CROP_NAMES, 2)}
            if role == 'farmer' else {}
        )
        user.set_password('password123')
        db.session.add(user)
        users.append(user)

    db.session.commit()
    print(f"   Admin login: {ADMIN_EMAIL} / {ADMIN_PASSWORD}")
    return users

# --------------------------------------------------
# 3. CROP PRICES (30 days of history per crop/market)
# --------------------------------------------------
def seed_crop_prices(days=30):
    print("🌽 Seeding Crop Prices...")

    now = datetime.utcnow()
    count = 0
    for crop in CROP_NAMES:
        base, unit = BASE_PRICES[crop]
        for market in MARKETS:
            factor, lga = MARKET_FACTORS[market]
            price = base * factor
            drift = random.uniform(-0.01, 0.015)
            for day in range(days, -1, -1):
                price = max(price * (1 + drift + random.uniform(-0.02, 0.02)), 1)
                stamp = now - timedelta(days=day, hours=random.randint(0, 6))
                db.session.add(CropPrice(
                    crop_name=crop,
                    crop_name_yoruba=CROP_NAMES_YORUBA[crop],
                    market_name=market,
                    market_lga=lga,
                    price_value=round(price, 2),
                    price_unit=unit,
                    price_min=round(price * 0.9, 2),
                    price_max=round(price * 1.1, 2),
                    season=random.choice(SEASONS),
                    quality=random.choice(['premium', 'standard', 'standard']),
                    availability=random.choice(['abundant', 'moderate', 'scarce']),
                    trend_direction='rising' if drift > 0.003 else 'falling' if drift < -0.003 else 'stable',
                    trend_percentage=round(drift * 100 * days, 1),
                    source=random.choice(['market_survey', 'trader_report', 'government_data']),
                    last_updated=stamp,
                    created_at=stamp
                ))
                count += 1
    db.session.commit()
    print(f"   {count} price records")

# --------------------------------------------------
# 4. CONTENT (Tips, Training, Security)
# --------------------------------------------------
def seed_tips(count=20):
    print("💡 Seeding Farming Tips...")

    for _ in range(count):
        category = random.choice(TIP_CATEGORIES)
        crops = random.sample(CROP_NAMES, random.randint(1, 3))
        db.session.add(FarmingTip(
            title_english=fake.sentence(nb_words=6).rstrip('.'),
            title_yoruba=f"Imọran {CROP_NAMES_YORUBA[crops[0]]}",
            content_english=fake.paragraph(nb_sentences=5),
            content_yoruba=fake.paragraph(nb_sentences=3),
            category=category,
            target_crops=crops,
            difficulty=random.choice(['beginner', 'intermediate', 'advanced']),
            season=random.sample(SEASONS, 2),
            estimated_cost={'min': 0, 'max': random.randint(1, 20) * 1000, 'currency': 'NGN'},
            time_required_value=random.randint(1, 8),
            time_required_unit=random.choice(['hours', 'days']),
            steps=[{'step': n, 'instruction': fake.sentence()} for n in range(1, 4)],
            author={'name': fake.name(), 'title': 'Extension Officer', 'verified': True},
            tags=[category.replace('_', ' ')] + crops,
            likes=random.randint(0, 150),
            views=random.randint(0, 2000),
            effectiveness_rating=round(random.uniform(3, 5), 1),
            is_featured=random.random() < 0.2
        ))
    db.session.commit()


def seed_trainings(count=10):
    print("🎓 Seeding Youth Training Courses...")

    for category in random.sample(COURSE_CATEGORIES, count):
        paid = random.random() < 0.3
        db.session.add(YouthTraining(
            title_english=category.replace('_', ' ').title(),
            title_yoruba=f"Ẹkọ {category.replace('_', ' ')}",
            description_english=fake.paragraph(nb_sentences=4),
            description_yoruba=fake.paragraph(nb_sentences=2),
            category=category,
            level=random.choice(['absolute_beginner', 'beginner', 'intermediate']),
            duration_value=random.randint(2, 20),
            duration_unit='hours',
            learning_objectives=[fake.sentence() for _ in range(3)],
            modules=[{
                'title': f"Module {n}",
                'content': fake.paragraph(),
                'duration': random.randint(20, 90),
                'order': n
            } for n in range(1, random.randint(3, 6))],
            certification_available=random.random() < 0.6,
            certificate_name=f"Certificate in {category.replace('_', ' ').title()}",
            instructor={'name': fake.name(), 'qualification': 'B.Sc', 'experience': '5 years'},
            enrollments=random.randint(0, 300),
            rating_average=round(random.uniform(3, 5), 1),
            tags=[category],
            is_free=not paid,
            cost=random.choice([2000, 5000, 10000]) if paid else 0,
            target_audience=['rural_youth', 'students']
        ))
    db.session.commit()


def seed_security_reports(count=15):
    print("🚨 Seeding Security Reports...")

    for _ in range(count):
        db.session.add(SecurityReport(
            report_type=random.choice(REPORT_TYPES),
            title_english=fake.sentence(nb_words=5).rstrip('.'),
            description_english=fake.paragraph(nb_sentences=3),
            area=random.choice(REPORT_AREAS[:-1]),
            specific_location=fake.street_name(),
            occurred_at=fake.date_time_between(start_date='-60d', end_date='now'),
            severity=random.choice(['low', 'medium', 'high', 'critical']),
            status=random.choice(['reported', 'investigating', 'resolved']),
            reporter={'name': fake.name(), 'phone': f"0805{random.randint(1000000, 9999999)}", 'isAnonymous': False},
            damages={'estimatedValue': random.randint(0, 500) * 1000, 'currency': 'NGN'},
            is_public=random.random() < 0.7,
            verification_status=random.choice(['pending', 'verified'])
        ))
    db.session.commit()

# --------------------------------------------------
# RUNNER
# --------------------------------------------------
if __name__ == '__main__':
    with app.app_context():
        # Create tables first if they don't exist
        db.create_all()

        clear_data()

        seed_plans()
        seed_users()
        seed_crop_prices()
        seed_tips()
        seed_trainings()
        seed_security_reports()

        print("✅ Seeding complete.")
