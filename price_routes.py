from collections import OrderedDict
from datetime import datetime, timedelta
from statistics import pstdev

from flask import request, jsonify, g

from models import db, CropPrice, iso
from helpers import get_json_body, log_activity
from security import protect, restrict_to
from pricing import calculate_trend, build_prediction
from realtime import emit_price_update

FEATURED_CROPS = ['yam', 'cassava', 'maize', 'tomatoes', 'beans']
FEATURED_MARKETS = ['Igbaja Local Market', 'Ilorin Central Market']


def group_prices(rows, key):
    """Groups rows (oldest first) by key(row), keeping insertion order."""
    groups = OrderedDict()
    for row in rows:
        groups.setdefault(key(row), []).append(row)
    return groups


def previous_price_for(crop_name, market_name, exclude_id=None):
    query = CropPrice.query.filter_by(crop_name=crop_name, market_name=market_name)
    if exclude_id:
        query = query.filter(CropPrice.id != exclude_id)
    previous = query.order_by(CropPrice.last_updated.desc()).first()
    return previous.price_value if previous else None


def apply_trend(price, exclude_id=None):
    previous = previous_price_for(price.crop_name, price.market_name, exclude_id)
    trend = calculate_trend(price.price_value, previous)
    price.trend_direction = trend['direction']
    price.trend_percentage = trend['percentage']


def register_price_routes(app):

    # ============ Crop Price Routes ============

    @app.route('/api/crop-prices', methods=['GET'])
    def get_crop_prices():
        try:
            query = CropPrice.query
            if request.args.get('cropName'):
                query = query.filter(CropPrice.crop_name == request.args['cropName'])
            if request.args.get('market'):
                query = query.filter(CropPrice.market_name == request.args['market'])
            if request.args.get('season'):
                query = query.filter(CropPrice.season == request.args['season'])
            if request.args.get('availability'):
                query = query.filter(CropPrice.availability == request.args['availability'])

            limit = request.args.get('limit', 50, type=int)
            prices = query.order_by(CropPrice.last_updated.desc()).limit(limit).all()
            return jsonify([p.to_dict() for p in prices]), 200
        except Exception as e:
            return jsonify({'message': str(e)}), 500

    @app.route('/api/crop-prices/featured', methods=['GET'])
    def get_featured_prices():
        try:
            prices = CropPrice.query.filter(
                CropPrice.crop_name.in_(FEATURED_CROPS),
                CropPrice.market_name.in_(FEATURED_MARKETS)
            ).order_by(CropPrice.last_updated.desc()).limit(10).all()
            return jsonify([p.to_dict() for p in prices]), 200
        except Exception as e:
            return jsonify({'message': str(e)}), 500

    @app.route('/api/crop-prices/analytics', methods=['GET'])
    def get_price_analytics():
        try:
            days = request.args.get('days', 30, type=int)
            query = CropPrice.query.filter(CropPrice.last_updated >= datetime.utcnow() - timedelta(days=days))
            if request.args.get('cropName'):
                query = query.filter(CropPrice.crop_name == request.args['cropName'])
            if request.args.get('market'):
                query = query.filter(CropPrice.market_name == request.args['market'])

            rows = query.order_by(CropPrice.last_updated.asc()).all()
            analytics = []
            for crop_name, items in group_prices(rows, lambda r: r.crop_name).items():
                values = [r.price_value for r in items]
                latest = items[-1]
                analytics.append({
                    '_id': crop_name,
                    'averagePrice': sum(values) / len(values),
                    'minPrice': min(values),
                    'maxPrice': max(values),
                    'priceVolatility': pstdev(values),
                    'totalRecords': len(values),
                    'markets': sorted({r.market_name for r in items}),
                    'latestPrice': latest.price_value,
                    'unit': latest.price_unit,
                    'cropNameYoruba': latest.crop_name_yoruba
                })
            analytics.sort(key=lambda a: a['averagePrice'], reverse=True)
            return jsonify(analytics), 200
        except Exception as e:
            return jsonify({'message': str(e)}), 500

    @app.route('/api/crop-prices/predictions', methods=['GET'])
    def get_price_predictions():
        crop_name = request.args.get('cropName')
        market = request.args.get('market')
        if not crop_name:
            return jsonify({'message': 'Crop name is required for predictions'}), 400

        try:
            query = CropPrice.query.filter(
                CropPrice.crop_name == crop_name,
                CropPrice.last_updated >= datetime.utcnow() - timedelta(days=30)
            )
            if market:
                query = query.filter(CropPrice.market_name == market)
            history = query.order_by(CropPrice.last_updated.asc()).all()
            return jsonify(build_prediction(crop_name, market, history)), 200
        except Exception as e:
            return jsonify({'message': str(e)}), 500

    @app.route('/api/crop-prices/market-analysis', methods=['GET'])
    def get_market_analysis():
        crop_name = request.args.get('cropName')
        if not crop_name:
            return jsonify({'message': 'Crop name is required for market analysis'}), 400

        try:
            rows = CropPrice.query.filter(
                CropPrice.crop_name == crop_name,
                CropPrice.last_updated >= datetime.utcnow() - timedelta(days=7)
            ).order_by(CropPrice.last_updated.asc()).all()

            analysis = []
            for market, items in group_prices(rows, lambda r: r.market_name).items():
                values = [r.price_value for r in items]
                latest = items[-1]
                analysis.append({
                    '_id': market,
                    'averagePrice': sum(values) / len(values),
                    'minPrice': min(values),
                    'maxPrice': max(values),
                    'latestPrice': latest.price_value,
                    'availability': latest.availability,
                    'quality': latest.quality,
                    'unit': latest.price_unit,
                    'lastUpdated': iso(latest.last_updated),
                    'priceCount': len(values)
                })
            analysis.sort(key=lambda a: a['averagePrice'])

            insights = {
                'bestMarket': analysis[0] if analysis else None,
                'mostExpensive': analysis[-1] if analysis else None,
                'averageAcrossMarkets': sum(a['averagePrice'] for a in analysis) / len(analysis) if analysis else None,
                'totalMarkets': len(analysis),
                'priceRange': {
                    'min': min((a['minPrice'] for a in analysis), default=None),
                    'max': max((a['maxPrice'] for a in analysis), default=None)
                }
            }
            return jsonify({
                'cropName': crop_name,
                'analysis': analysis,
                'insights': insights,
                'generatedAt': datetime.utcnow().isoformat()
            }), 200
        except Exception as e:
            return jsonify({'message': str(e)}), 500

    @app.route('/api/crop-prices/trends', methods=['GET'])
    def get_price_trends():
        try:
            days = request.args.get('days', 30, type=int)
            query = CropPrice.query.filter(CropPrice.last_updated >= datetime.utcnow() - timedelta(days=days))
            if request.args.get('cropName'):
                query = query.filter(CropPrice.crop_name == request.args['cropName'])
            trends = query.order_by(CropPrice.last_updated.asc()).all()
            return jsonify([p.to_dict() for p in trends]), 200
        except Exception as e:
            return jsonify({'message': str(e)}), 500

    @app.route('/api/crop-prices/markets/comparison', methods=['GET'])
    def get_markets_comparison():
        crop_name = request.args.get('cropName')
        if not crop_name:
            return jsonify({'message': 'Crop name is required'}), 400

        try:
            rows = CropPrice.query.filter_by(crop_name=crop_name).order_by(CropPrice.last_updated.asc()).all()
            comparison = []
            for market, items in group_prices(rows, lambda r: r.market_name).items():
                latest = items[-1]
                comparison.append({
                    '_id': market,
                    'averagePrice': sum(r.price_value for r in items) / len(items),
                    'latestPrice': latest.price_value,
                    'unit': latest.price_unit,
                    'lastUpdated': iso(latest.last_updated),
                    'availability': latest.availability
                })
            comparison.sort(key=lambda c: c['averagePrice'])
            return jsonify(comparison), 200
        except Exception as e:
            return jsonify({'message': str(e)}), 500

    @app.route('/api/crop-prices/<int:id>', methods=['GET'])
    def get_crop_price(id):
        price = db.session.get(CropPrice, id)
        if not price:
            return jsonify({'message': 'Crop price not found'}), 404
        return jsonify(price.to_dict()), 200

    @app.route('/api/crop-prices', methods=['POST'])
    @protect
    @restrict_to('admin')
    def create_crop_price():
        try:
            price = CropPrice()
            price.update_from_dict(get_json_body())
            if price.price_value is None:
                return jsonify({'message': 'pricePerUnit.value is required'}), 400
            if price.last_updated is None:
                price.last_updated = datetime.utcnow()
            apply_trend(price)
            db.session.add(price)
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            return jsonify({'message': str(e) or 'Failed to create crop price'}), 400

        g.user.add_contribution('priceReports')
        db.session.commit()
        log_activity('CREATE', 'CropPrice', price.id, f"{price.crop_name} at {price.market_name}: {price.price_value}")
        emit_price_update('new', price.to_dict())
        return jsonify(price.to_dict()), 201

    @app.route('/api/crop-prices/<int:id>', methods=['PUT'])
    @protect
    @restrict_to('admin')
    def update_crop_price(id):
        price = db.session.get(CropPrice, id)
        if not price:
            return jsonify({'message': 'Crop price not found'}), 404

        try:
            data = get_json_body()
            price.update_from_dict(data)
            price.last_updated = datetime.utcnow()
            if 'pricePerUnit' in data and 'trend' not in data:
                apply_trend(price, exclude_id=price.id)
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            return jsonify({'message': str(e) or 'Failed to update crop price'}), 400

        log_activity('UPDATE', 'CropPrice', price.id, f"{price.crop_name} at {price.market_name}: {price.price_value}")
        emit_price_update('update', price.to_dict())
        return jsonify(price.to_dict()), 200

    @app.route('/api/crop-prices/<int:id>', methods=['DELETE'])
    @protect
    @restrict_to('admin')
    def delete_crop_price(id):
        price = db.session.get(CropPrice, id)
        if not price:
            return jsonify({'message': 'Crop price not found'}), 404

        try:
            db.session.delete(price)
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            return jsonify({'message': str(e) or 'Failed to delete crop price'}), 400

        log_activity('DELETE', 'CropPrice', id, 'Crop price removed')
        emit_price_update('delete', {'_id': id})
        return '', 204
