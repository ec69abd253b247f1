import platform
import resource
import time
from collections import OrderedDict
from datetime import datetime, timedelta
from threading import Lock

from flask import request, g, current_app
from sqlalchemy import func, or_, case, inspect

from models import (
    db, User, Transaction, UsageTracking, SubscriptionPlan, CropPrice, YouthTraining,
    ProductListing, MarketplaceTransaction
)
from helpers import success_response, fail_response, error_response, get_json_body, paginate, apply_sort, log_activity
from security import protect, restrict_to, require_permission
from pricing import project_revenue

STARTED_AT = time.time()

TIMEFRAMES = {'week': 7, 'month': 30, 'year': 365}

# period -> (lookback days, bucket key)
REVENUE_PERIODS = {
    'day': (30, lambda d: (d.year, d.month, d.day)),
    'week': (12 * 7, lambda d: tuple(d.isocalendar()[:2])),
    'month': (12 * 30, lambda d: (d.year, d.month)),
    'year': (5 * 365, lambda d: (d.year,))
}
REVENUE_KEY_NAMES = {'day': ('year', 'month', 'day'), 'week': ('year', 'week'),
                     'month': ('year', 'month'), 'year': ('year',)}

USAGE_PERIODS = {
    'hour': (1, lambda d: (d.year, d.month, d.day, d.hour), ('year', 'month', 'day', 'hour')),
    'day': (30, lambda d: (d.year, d.month, d.day), ('year', 'month', 'day')),
    'week': (12 * 7, lambda d: tuple(d.isocalendar()[:2]), ('year', 'week'))
}

# Admin-editable user fields, keyed by their JSON path
USER_UPDATES = {
    'status': 'status',
    'role': 'role',
    'subscription.tier': 'subscription_tier',
    'subscription.status': 'subscription_status',
    'verification.email.isVerified': 'email_verified',
    'verification.phone.isVerified': 'phone_verified',
    'notes': 'notes'
}

USER_SORT_FIELDS = {'createdAt': 'created_at', 'lastLogin': 'last_login', 'email': 'email'}


class RequestStats:
    """Per-process request counters for the health endpoint."""

    def __init__(self):
        self._lock = Lock()
        self.reset()

    def reset(self):
        self.total = 0
        self.errors = 0
        self.elapsed = 0.0

    def record(self, status_code, elapsed):
        with self._lock:
            self.total += 1
            self.elapsed += elapsed
            if status_code >= 500:
                self.errors += 1

    @property
    def error_rate(self):
        return self.errors / self.total * 100 if self.total else 0

    @property
    def average_response_time(self):
        return self.elapsed / self.total * 1000 if self.total else 0


request_stats = RequestStats()


def since(days):
    return datetime.utcnow() - timedelta(days=days)


def bucket(rows, key, names):
    """Groups (created_at, amount) rows into ordered time buckets."""
    groups = OrderedDict()
    for created_at, amount in sorted(rows, key=lambda r: r[0]):
        groups.setdefault(key(created_at), []).append(amount or 0)
    return [{
        '_id': dict(zip(names, period)),
        'revenue': sum(values),
        'transactions': len(values),
        'averageValue': sum(values) / len(values)
    } for period, values in groups.items()]


def plan_prices():
    return {p.name: p.monthly_amount for p in SubscriptionPlan.query.filter_by(is_active=True).all()}


def current_mrr():
    prices = plan_prices()
    rows = db.session.query(User.subscription_tier, func.count(User.id)).filter(
        User.subscription_status == 'active', User.subscription_tier != 'free'
    ).group_by(User.subscription_tier).all()
    return sum(prices.get(tier, 0) * count for tier, count in rows)


def register_admin_routes(app):

    @app.before_request
    def start_request_timer():
        g.request_started = time.perf_counter()

    @app.after_request
    def record_request_stats(response):
        started = g.get('request_started')
        if started is not None and request.path.startswith('/api/'):
            request_stats.record(response.status_code, time.perf_counter() - started)
        return response

    # ============ Admin Dashboard Routes ============

    @app.route('/api/admin/dashboard', methods=['GET'])
    @protect
    @restrict_to('admin')
    def admin_dashboard():
        timeframe = request.args.get('timeframe', 'month')
        start = since(TIMEFRAMES[timeframe]) if timeframe in TIMEFRAMES else None

        try:
            by_role = db.session.query(
                User.role, func.count(User.id),
                func.sum(case((User.status == 'active', 1), else_=0))
            ).group_by(User.role).all()
            total_users = User.query.count()
            new_users = User.query.filter(User.created_at >= start).count() if start else total_users
            verified_users = User.query.filter(User.email_verified.is_(True)).count()

            revenue_query = db.session.query(
                Transaction.type, func.sum(Transaction.amount), func.count(Transaction.id), func.avg(Transaction.amount)
            ).filter(Transaction.status == 'successful')
            if start:
                revenue_query = revenue_query.filter(Transaction.created_at >= start)
            revenue_by_type = revenue_query.group_by(Transaction.type).all()
            total_revenue = db.session.query(func.coalesce(func.sum(Transaction.amount), 0)) \
                .filter(Transaction.status == 'successful').scalar()

            by_tier = db.session.query(
                User.subscription_tier, func.count(User.id),
                func.sum(case((User.subscription_status == 'active', 1), else_=0))
            ).group_by(User.subscription_tier).all()
            free_count = next((count for tier, count, _ in by_tier if tier == 'free'), 0)

            market_query = db.session.query(
                func.count(MarketplaceTransaction.id),
                func.sum(MarketplaceTransaction.total_amount),
                func.sum(MarketplaceTransaction.platform_commission),
                func.avg(MarketplaceTransaction.total_amount)
            ).filter(MarketplaceTransaction.status.in_(['completed', 'delivered']))
            if start:
                market_query = market_query.filter(MarketplaceTransaction.created_at >= start)
            market_count, market_volume, market_commissions, market_average = market_query.one()

            courses, enrollments, completions, paid_courses = db.session.query(
                func.count(YouthTraining.id),
                func.sum(YouthTraining.enrollments),
                func.sum(YouthTraining.completions),
                func.sum(case((YouthTraining.is_free.is_(False), 1), else_=0))
            ).one()

            crops_query = db.session.query(
                CropPrice.crop_name, func.count(CropPrice.id), func.avg(CropPrice.price_value)
            )
            if start:
                crops_query = crops_query.filter(CropPrice.last_updated >= start)
            top_crops = crops_query.group_by(CropPrice.crop_name) \
                .order_by(func.count(CropPrice.id).desc()).limit(5).all()
        except Exception as e:
            print(f"❌ Admin dashboard error: {e}")
            return error_response('Failed to fetch dashboard data', 500)

        markets_by_crop = {}
        for crop_name, market in db.session.query(CropPrice.crop_name, CropPrice.market_name).distinct():
            markets_by_crop.setdefault(crop_name, []).append(market)

        return success_response({
            'overview': {
                'users': {
                    'total': total_users,
                    'new': new_users,
                    'verified': verified_users,
                    'byRole': [{'_id': role, 'count': count, 'active': int(active or 0)}
                               for role, count, active in by_role]
                },
                'revenue': {
                    'total': float(total_revenue or 0),
                    'period': float(sum(r[1] or 0 for r in revenue_by_type)),
                    'mrr': current_mrr(),
                    'byType': [{
                        '_id': type_, 'totalRevenue': float(revenue or 0),
                        'totalTransactions': count, 'averageValue': float(average or 0)
                    } for type_, revenue, count, average in revenue_by_type]
                },
                'subscriptions': {
                    'byTier': [{'_id': tier, 'count': count, 'activeCount': int(active or 0)}
                               for tier, count, active in by_tier],
                    'conversionRate': (total_users - free_count) / total_users * 100 if total_users else 0
                },
                'marketplace': {
                    'totalTransactions': market_count or 0,
                    'totalVolume': float(market_volume or 0),
                    'totalCommissions': float(market_commissions or 0),
                    'averageOrderValue': float(market_average or 0)
                },
                'training': {
                    'totalCourses': courses or 0,
                    'totalEnrollments': int(enrollments or 0),
                    'totalCompletions': int(completions or 0),
                    'paidCourses': int(paid_courses or 0)
                },
                'topCrops': [{
                    '_id': crop_name, 'updates': updates, 'averagePrice': float(average or 0),
                    'markets': sorted(markets_by_crop.get(crop_name, []))
                } for crop_name, updates, average in top_crops],
                'systemHealth': {
                    'database': 'connected',
                    'uptime': time.time() - STARTED_AT,
                    'pythonVersion': platform.python_version(),
                    'environment': current_app.config.get('ENVIRONMENT', 'development')
                }
            },
            'timeframe': timeframe
        })

    # ============ User Management Routes ============

    @app.route('/api/admin/users', methods=['GET'])
    @protect
    @restrict_to('admin')
    def admin_list_users():
        args = request.args
        query = User.query
        if args.get('role'):
            query = query.filter(User.role == args['role'])
        if args.get('status'):
            query = query.filter(User.status == args['status'])
        if args.get('subscriptionTier'):
            query = query.filter(User.subscription_tier == args['subscriptionTier'])
        if 'verified' in args:
            query = query.filter(User.email_verified.is_(args['verified'] == 'true'))
        if args.get('search'):
            pattern = f"%{args['search']}%"
            query = query.filter(or_(
                User.first_name.ilike(pattern),
                User.last_name.ilike(pattern),
                User.email.ilike(pattern),
                User.phone.ilike(pattern)
            ))

        sort_by = USER_SORT_FIELDS.get(args.get('sortBy', 'createdAt'), 'created_at')
        query = apply_sort(query, User, sort_by, args.get('sortOrder', 'desc'))
        users, pagination = paginate(query, args.get('page', 1, type=int), args.get('limit', 20, type=int))

        return success_response({
            'users': [u.to_dict(include_private=True) for u in users],
            'pagination': pagination
        }, results=len(users))

    @app.route('/api/admin/users/<int:id>', methods=['GET'])
    @protect
    @restrict_to('admin')
    def admin_get_user(id):
        user = db.session.get(User, id)
        if not user:
            return fail_response('User not found', 404)

        recent_transactions = Transaction.query.filter_by(user_id=user.id) \
            .order_by(Transaction.created_at.desc()).limit(10).all()
        marketplace_activity = MarketplaceTransaction.query.filter(
            or_(MarketplaceTransaction.buyer_id == user.id, MarketplaceTransaction.seller_id == user.id)
        ).order_by(MarketplaceTransaction.created_at.desc()).limit(5).all()
        usage_stats = UsageTracking.query.filter_by(user_id=user.id) \
            .order_by(UsageTracking.created_at.desc()).limit(10).all()

        return success_response({
            'user': user.to_dict(include_private=True),
            'activity': {
                'recentTransactions': [t.to_dict() for t in recent_transactions],
                'marketplaceActivity': [m.to_dict() for m in marketplace_activity],
                'usageStats': [u.to_dict() for u in usage_stats]
            }
        })

    @app.route('/api/admin/users/<int:id>', methods=['PATCH'])
    @protect
    @restrict_to('admin')
    def admin_update_user(id):
        user = db.session.get(User, id)
        if not user:
            return fail_response('User not found', 404)

        data = get_json_body()
        changed = []
        try:
            for field, attr in USER_UPDATES.items():
                if field in data:
                    setattr(user, attr, data[field])
                    changed.append(field)
            db.session.commit()
        except ValueError as e:
            db.session.rollback()
            return fail_response(str(e))
        except Exception as e:
            db.session.rollback()
            print(f"❌ Admin update user error: {e}")
            return error_response('Failed to update user', 500)

        log_activity('UPDATE_USER', 'User', user.id, f"Admin updated: {', '.join(changed) or 'nothing'}")
        return success_response({'user': user.to_dict(include_private=True)}, message='User updated successfully')

    # ============ Revenue Routes ============

    @app.route('/api/admin/revenue', methods=['GET'])
    @protect
    @require_permission('canViewRevenue')
    def admin_revenue():
        period = request.args.get('period', 'month')
        if period not in REVENUE_PERIODS:
            return fail_response('period must be one of day, week, month, year')
        days, key = REVENUE_PERIODS[period]
        start = since(days)

        query = Transaction.query.filter(Transaction.status == 'successful', Transaction.created_at >= start)
        if request.args.get('type'):
            query = query.filter(Transaction.type == request.args['type'])
        time_series = bucket(query.with_entities(Transaction.created_at, Transaction.amount).all(),
                             key, REVENUE_KEY_NAMES[period])

        by_type = db.session.query(
            Transaction.type, func.sum(Transaction.amount), func.count(Transaction.id)
        ).filter(Transaction.status == 'successful', Transaction.created_at >= start) \
            .group_by(Transaction.type).all()
        total = sum(revenue or 0 for _, revenue, _ in by_type)

        top_customers = db.session.query(
            Transaction.user_id, func.sum(Transaction.amount), func.count(Transaction.id)
        ).filter(Transaction.status == 'successful', Transaction.created_at >= start) \
            .group_by(Transaction.user_id) \
            .order_by(func.sum(Transaction.amount).desc()).limit(10).all()
        customers = []
        for user_id, spent, count in top_customers:
            customer = db.session.get(User, user_id)
            customers.append({
                '_id': user_id,
                'totalSpent': float(spent or 0),
                'transactions': count,
                'user': customer.to_dict() if customer else None
            })

        return success_response({
            'revenue': {
                'timeSeries': time_series,
                'byType': [{
                    '_id': type_, 'revenue': float(revenue or 0), 'transactions': count,
                    'percentage': (revenue or 0) / total * 100 if total else 0
                } for type_, revenue, count in by_type],
                'topCustomers': customers,
                'projections': project_revenue([p['revenue'] for p in time_series]),
                'period': period
            }
        })

    # ============ Content Routes ============

    @app.route('/api/admin/content', methods=['GET'])
    @protect
    @restrict_to('admin')
    def admin_content():
        price_updates = db.session.query(
            CropPrice.crop_name, func.count(CropPrice.id), func.max(CropPrice.last_updated),
            func.avg(CropPrice.price_value)
        ).group_by(CropPrice.crop_name).order_by(func.count(CropPrice.id).desc()).all()

        markets_by_crop = {}
        for crop_name, market in db.session.query(CropPrice.crop_name, CropPrice.market_name).distinct():
            markets_by_crop.setdefault(crop_name, []).append(market)

        training = YouthTraining.query.order_by(YouthTraining.enrollments.desc()).limit(10).all()

        listing_stats = db.session.query(
            ProductListing.crop_name,
            func.count(ProductListing.id),
            func.sum(case((ProductListing.is_active.is_(True), 1), else_=0)),
            func.avg(ProductListing.price_per_unit),
            func.sum(ProductListing.views)
        ).group_by(ProductListing.crop_name).order_by(func.sum(ProductListing.views).desc()).all()

        return success_response({
            'content': {
                'priceUpdates': [{
                    '_id': crop_name,
                    'updates': updates,
                    'markets': sorted(markets_by_crop.get(crop_name, [])),
                    'lastUpdate': last.isoformat() if last else None,
                    'averagePrice': float(average or 0)
                } for crop_name, updates, last, average in price_updates],
                'trainingPerformance': [c.to_dict() for c in training],
                'listingStats': [{
                    '_id': crop_name,
                    'totalListings': total,
                    'activeListings': int(active or 0),
                    'averagePrice': float(average or 0),
                    'totalViews': int(views or 0)
                } for crop_name, total, active, average, views in listing_stats]
            }
        })

    # ============ Subscription Routes ============

    @app.route('/api/admin/subscriptions', methods=['GET'])
    @protect
    @restrict_to('admin')
    def admin_subscriptions():
        timeframe = request.args.get('timeframe', 'month')
        start = since(TIMEFRAMES[timeframe]) if timeframe in TIMEFRAMES else datetime(1970, 1, 1)

        distribution = db.session.query(
            User.subscription_tier,
            func.count(User.id),
            func.sum(case((User.subscription_status == 'active', 1), else_=0)),
            func.sum(case((User.subscription_start >= start, 1), else_=0))
        ).group_by(User.subscription_tier).all()

        churn = db.session.query(User.subscription_tier, func.count(User.id)).filter(
            User.subscription_status.in_(['cancelled', 'expired']),
            User.subscription_expires_at >= start
        ).group_by(User.subscription_tier).all()

        changes = db.session.query(
            Transaction.subscription_plan, func.count(Transaction.id), func.sum(Transaction.amount)
        ).filter(
            Transaction.type == 'subscription',
            Transaction.status == 'successful',
            Transaction.created_at >= start
        ).group_by(Transaction.subscription_plan).all()

        return success_response({
            'subscriptions': {
                'distribution': [{
                    '_id': tier, 'count': count, 'activeCount': int(active or 0), 'recentCount': int(recent or 0)
                } for tier, count, active, recent in distribution],
                'churn': [{'_id': tier, 'churnedUsers': count} for tier, count in churn],
                'changes': [{'_id': plan, 'newSubscriptions': count, 'revenue': float(revenue or 0)}
                            for plan, count, revenue in changes],
                'mrrTrend': [{'period': datetime.utcnow().strftime('%Y-%m'), 'mrr': current_mrr()}],
                'timeframe': timeframe
            }
        })

    # ============ System Monitoring Routes ============

    @app.route('/api/admin/system/health', methods=['GET'])
    @protect
    @restrict_to('admin')
    def admin_system_health():
        try:
            inspector = inspect(db.engine)
            tables = inspector.get_table_names()
            usage_total = db.session.query(func.coalesce(func.sum(UsageTracking.count), 0)) \
                .filter(UsageTracking.created_at >= since(30)).scalar()
        except Exception as e:
            print(f"❌ System health error: {e}")
            return error_response('Failed to fetch system health', 500)

        usage = resource.getrusage(resource.RUSAGE_SELF)
        return success_response({
            'systemHealth': {
                'server': {
                    'uptime': time.time() - STARTED_AT,
                    'memory': {'maxRss': usage.ru_maxrss},
                    'cpu': {'user': usage.ru_utime, 'system': usage.ru_stime},
                    'pythonVersion': platform.python_version(),
                    'platform': platform.system().lower(),
                    'environment': current_app.config.get('ENVIRONMENT', 'development')
                },
                'database': {
                    'status': 'connected',
                    'dialect': db.engine.dialect.name,
                    'tables': len(tables)
                },
                'api': {
                    'totalRequests': int(usage_total or 0),
                    'errorRate': request_stats.error_rate,
                    'averageResponseTime': request_stats.average_response_time
                }
            }
        })

    @app.route('/api/admin/system/usage', methods=['GET'])
    @protect
    @restrict_to('admin')
    def admin_system_usage():
        timeframe = request.args.get('timeframe', 'day')
        days, key, names = USAGE_PERIODS.get(timeframe, USAGE_PERIODS['week'])

        rows = UsageTracking.query.filter(UsageTracking.created_at >= since(days)) \
            .order_by(UsageTracking.created_at.asc()).all()

        stats = OrderedDict()
        for row in rows:
            entry = stats.setdefault(row.feature, {'usage': 0, 'users': set(), 'periods': OrderedDict()})
            entry['usage'] += row.count or 0
            entry['users'].add(row.user_id)
            period = key(row.created_at)
            entry['periods'][period] = entry['periods'].get(period, 0) + (row.count or 0)

        return success_response({
            'usage': {
                'stats': [{
                    '_id': feature,
                    'totalUsage': entry['usage'],
                    'uniqueUsers': len(entry['users']),
                    'periods': [{'period': dict(zip(names, p)), 'usage': u} for p, u in entry['periods'].items()]
                } for feature, entry in stats.items()],
                'timeframe': timeframe
            }
        })
