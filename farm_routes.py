from collections import defaultdict
from datetime import datetime, timedelta

from flask import request, jsonify
from sqlalchemy import func

from models import db, Farm, Crop, Sensor, SensorData, Weather, Alert, parse_datetime
from helpers import get_json_body

SENSOR_PERIODS = {
    '1h': timedelta(hours=1),
    '24h': timedelta(hours=24),
    '7d': timedelta(days=7),
    '30d': timedelta(days=30)
}
YIELD_PERIODS = {'1month': timedelta(days=30), '6months': timedelta(days=182)}
FORECAST_HORIZONS = ['1_day', '3_day', '7_day']


def health_bucket(score):
    if score is None:
        return 'other'
    if score < 50:
        return 'poor'
    if score < 70:
        return 'fair'
    if score < 90:
        return 'good'
    return 'excellent'


def reading_trend(values):
    """Compares the mean of the later half of the readings with the earlier half."""
    half = len(values) // 2
    first, second = values[:half], values[half:]
    if not first:
        return 'stable'
    first_avg = sum(first) / len(first)
    second_avg = sum(second) / len(second)
    if second_avg > first_avg * 1.05:
        return 'increasing'
    if second_avg < first_avg * 0.95:
        return 'decreasing'
    return 'stable'


def count_by(query, column):
    return {key: count for key, count in query.with_entities(column, func.count()).group_by(column).all()}


def register_farm_routes(app):

    def not_found(label):
        return jsonify({'message': f'{label} not found'}), 404

    # ============ Farm Routes ============

    @app.route('/api/farms', methods=['GET'])
    def get_farms():
        try:
            farms = Farm.query.order_by(Farm.created_at.desc()).all()
            return jsonify([f.to_dict() for f in farms]), 200
        except Exception as e:
            return jsonify({'message': str(e)}), 500

    @app.route('/api/farms/<int:id>', methods=['GET'])
    def get_farm(id):
        farm = db.session.get(Farm, id)
        if not farm:
            return not_found('Farm')
        return jsonify(farm.to_dict()), 200

    @app.route('/api/farms', methods=['POST'])
    def create_farm():
        try:
            farm = Farm()
            farm.update_from_dict(get_json_body())
            db.session.add(farm)
            db.session.commit()
            return jsonify(farm.to_dict()), 201
        except Exception as e:
            db.session.rollback()
            return jsonify({'message': str(e)}), 400

    @app.route('/api/farms/<int:id>', methods=['PUT'])
    def update_farm(id):
        farm = db.session.get(Farm, id)
        if not farm:
            return not_found('Farm')
        try:
            farm.update_from_dict(get_json_body())
            db.session.commit()
            return jsonify(farm.to_dict()), 200
        except Exception as e:
            db.session.rollback()
            return jsonify({'message': str(e)}), 400

    @app.route('/api/farms/<int:id>', methods=['DELETE'])
    def delete_farm(id):
        farm = db.session.get(Farm, id)
        if not farm:
            return not_found('Farm')
        try:
            db.session.delete(farm)
            db.session.commit()
            return jsonify({'message': 'Farm deleted successfully'}), 200
        except Exception as e:
            db.session.rollback()
            return jsonify({'message': str(e)}), 500

    @app.route('/api/farms/<int:id>/stats', methods=['GET'])
    def get_farm_stats(id):
        farm = db.session.get(Farm, id)
        if not farm:
            return not_found('Farm')

        crops = farm.crops.all()
        sensors = farm.sensors.all()
        active_alerts = Alert.query.filter_by(farm_id=id, status='active').count()
        return jsonify({
            'totalCrops': len(crops),
            'activeSensors': len([s for s in sensors if s.status == 'active']),
            'activeAlerts': active_alerts,
            'totalArea': sum(c.area_value or 0 for c in crops),
            'healthyCrops': len([c for c in crops if (c.health_score or 0) > 80]),
            'harvestedCrops': len([c for c in crops if c.status == 'harvested'])
        }), 200

    # ============ Crop Routes ============

    @app.route('/api/crops', methods=['GET'])
    def get_crops():
        try:
            query = Crop.query
            if request.args.get('farm'):
                query = query.filter(Crop.farm_id == request.args.get('farm', type=int))
            if request.args.get('status'):
                query = query.filter(Crop.status == request.args['status'])
            if request.args.get('growthStage'):
                query = query.filter(Crop.growth_stage == request.args['growthStage'])
            crops = query.order_by(Crop.created_at.desc()).all()
            return jsonify([c.to_dict(include_farm=True) for c in crops]), 200
        except Exception as e:
            return jsonify({'message': str(e)}), 500

    @app.route('/api/crops/<int:id>', methods=['GET'])
    def get_crop(id):
        crop = db.session.get(Crop, id)
        if not crop:
            return not_found('Crop')
        return jsonify(crop.to_dict(include_farm=True)), 200

    @app.route('/api/crops', methods=['POST'])
    def create_crop():
        try:
            crop = Crop()
            crop.update_from_dict(get_json_body())
            if not db.session.get(Farm, crop.farm_id or 0):
                raise ValueError('farm: referenced farm does not exist')
            db.session.add(crop)
            db.session.commit()
            return jsonify(crop.to_dict(include_farm=True)), 201
        except Exception as e:
            db.session.rollback()
            return jsonify({'message': str(e)}), 400

    @app.route('/api/crops/<int:id>', methods=['PUT'])
    def update_crop(id):
        crop = db.session.get(Crop, id)
        if not crop:
            return not_found('Crop')
        try:
            crop.update_from_dict(get_json_body())
            db.session.commit()
            return jsonify(crop.to_dict(include_farm=True)), 200
        except Exception as e:
            db.session.rollback()
            return jsonify({'message': str(e)}), 400

    @app.route('/api/crops/<int:id>', methods=['DELETE'])
    def delete_crop(id):
        crop = db.session.get(Crop, id)
        if not crop:
            return not_found('Crop')
        db.session.delete(crop)
        db.session.commit()
        return jsonify({'message': 'Crop deleted successfully'}), 200

    @app.route('/api/crops/<int:id>/growth-stage', methods=['PUT'])
    def update_growth_stage(id):
        crop = db.session.get(Crop, id)
        if not crop:
            return not_found('Crop')
        data = get_json_body()
        try:
            crop.growth_stage = data.get('growthStage')
            if 'healthScore' in data:
                crop.health_score = data['healthScore']
            db.session.commit()
            return jsonify(crop.to_dict(include_farm=True)), 200
        except Exception as e:
            db.session.rollback()
            return jsonify({'message': str(e)}), 400

    @app.route('/api/crops/<int:id>/irrigation', methods=['POST'])
    def record_irrigation(id):
        crop = db.session.get(Crop, id)
        if not crop:
            return not_found('Crop')
        data = get_json_body()
        crop.last_watered = datetime.utcnow()
        if data.get('frequency'):
            crop.irrigation_frequency = data['frequency']
        db.session.commit()
        return jsonify(crop.to_dict(include_farm=True)), 200

    def add_application(id, attr):
        crop = db.session.get(Crop, id)
        if not crop:
            return not_found('Crop')
        entry = dict(get_json_body())
        entry['applicationDate'] = datetime.utcnow().isoformat()
        # Reassign so the JSON column registers the change
        setattr(crop, attr, list(getattr(crop, attr) or []) + [entry])
        db.session.commit()
        return jsonify(crop.to_dict(include_farm=True)), 200

    @app.route('/api/crops/<int:id>/fertilizers', methods=['POST'])
    def add_fertilizer(id):
        return add_application(id, 'fertilizers')

    @app.route('/api/crops/<int:id>/pesticides', methods=['POST'])
    def add_pesticide(id):
        return add_application(id, 'pesticides')

    # ============ Sensor Routes ============

    @app.route('/api/sensors', methods=['GET'])
    def get_sensors():
        try:
            query = Sensor.query
            if request.args.get('farm'):
                query = query.filter(Sensor.farm_id == request.args.get('farm', type=int))
            if request.args.get('type'):
                query = query.filter(Sensor.type == request.args['type'])
            if request.args.get('status'):
                query = query.filter(Sensor.status == request.args['status'])
            sensors = query.order_by(Sensor.created_at.desc()).all()
            return jsonify([s.to_dict(include_farm=True) for s in sensors]), 200
        except Exception as e:
            return jsonify({'message': str(e)}), 500

    @app.route('/api/sensors/<int:id>', methods=['GET'])
    def get_sensor(id):
        sensor = db.session.get(Sensor, id)
        if not sensor:
            return not_found('Sensor')
        return jsonify(sensor.to_dict(include_farm=True)), 200

    @app.route('/api/sensors', methods=['POST'])
    def create_sensor():
        try:
            sensor = Sensor()
            sensor.update_from_dict(get_json_body())
            db.session.add(sensor)
            db.session.commit()
            return jsonify(sensor.to_dict(include_farm=True)), 201
        except Exception as e:
            db.session.rollback()
            return jsonify({'message': str(e)}), 400

    @app.route('/api/sensors/<int:id>', methods=['PUT'])
    def update_sensor(id):
        sensor = db.session.get(Sensor, id)
        if not sensor:
            return not_found('Sensor')
        try:
            sensor.update_from_dict(get_json_body())
            db.session.commit()
            return jsonify(sensor.to_dict(include_farm=True)), 200
        except Exception as e:
            db.session.rollback()
            return jsonify({'message': str(e)}), 400

    @app.route('/api/sensors/<int:id>', methods=['DELETE'])
    def delete_sensor(id):
        sensor = db.session.get(Sensor, id)
        if not sensor:
            return not_found('Sensor')
        SensorData.query.filter_by(sensor_id=id).delete()
        db.session.delete(sensor)
        db.session.commit()
        return jsonify({'message': 'Sensor and all its data deleted successfully'}), 200

    @app.route('/api/sensors/<int:id>/data', methods=['GET'])
    def get_sensor_data(id):
        query = SensorData.query.filter_by(sensor_id=id)
        if request.args.get('from'):
            query = query.filter(SensorData.timestamp >= parse_datetime(request.args['from']))
        if request.args.get('to'):
            query = query.filter(SensorData.timestamp <= parse_datetime(request.args['to']))
        limit = request.args.get('limit', 100, type=int)
        readings = query.order_by(SensorData.timestamp.desc()).limit(limit).all()
        return jsonify([r.to_dict() for r in readings]), 200

    @app.route('/api/sensors/<int:id>/data', methods=['POST'])
    def add_sensor_reading(id):
        sensor = db.session.get(Sensor, id)
        if not sensor:
            return not_found('Sensor')

        data = get_json_body()
        try:
            reading = SensorData(
                sensor_id=id,
                value=data.get('value'),
                unit=data.get('unit'),
                quality=data.get('quality') or 'good',
                timestamp=parse_datetime(data['timestamp']) if data.get('timestamp') else datetime.utcnow()
            )
            db.session.add(reading)
            sensor.last_reading = {
                'value': reading.value,
                'unit': reading.unit,
                'timestamp': reading.timestamp.isoformat()
            }
            db.session.commit()
            return jsonify(reading.to_dict()), 201
        except Exception as e:
            db.session.rollback()
            return jsonify({'message': str(e)}), 400

    @app.route('/api/sensors/<int:id>/analytics', methods=['GET'])
    def get_sensor_analytics(id):
        period = SENSOR_PERIODS.get(request.args.get('period', '24h'), SENSOR_PERIODS['24h'])
        readings = SensorData.query.filter(
            SensorData.sensor_id == id,
            SensorData.timestamp >= datetime.utcnow() - period
        ).order_by(SensorData.timestamp.asc()).all()

        if not readings:
            return jsonify({'average': 0, 'min': 0, 'max': 0, 'latest': 0, 'trend': 'stable', 'dataPoints': []}), 200

        values = [r.value for r in readings]
        return jsonify({
            'average': round(sum(values) / len(values), 2),
            'min': min(values),
            'max': max(values),
            'latest': values[-1],
            'trend': reading_trend(values),
            'dataPoints': [{'timestamp': r.timestamp.isoformat(), 'value': r.value, 'quality': r.quality}
                           for r in readings]
        }), 200

    # ============ Weather Routes ============

    @app.route('/api/weather', methods=['GET'])
    def get_weather():
        query = Weather.query
        if request.args.get('farm'):
            query = query.filter(Weather.farm_id == request.args.get('farm', type=int))
        if request.args.get('forecast'):
            query = query.filter(Weather.forecast == request.args['forecast'])
        limit = request.args.get('limit', 10, type=int)
        records = query.order_by(Weather.date.desc()).limit(limit).all()
        return jsonify([w.to_dict() for w in records]), 200

    @app.route('/api/weather/<int:id>', methods=['GET'])
    def get_weather_record(id):
        weather = db.session.get(Weather, id)
        if not weather:
            return not_found('Weather data')
        return jsonify(weather.to_dict()), 200

    @app.route('/api/weather', methods=['POST'])
    def create_weather():
        try:
            weather = Weather()
            weather.update_from_dict(get_json_body())
            db.session.add(weather)
            db.session.commit()
            return jsonify(weather.to_dict()), 201
        except Exception as e:
            db.session.rollback()
            return jsonify({'message': str(e)}), 400

    @app.route('/api/weather/<int:id>', methods=['PUT'])
    def update_weather(id):
        weather = db.session.get(Weather, id)
        if not weather:
            return not_found('Weather data')
        try:
            weather.update_from_dict(get_json_body())
            db.session.commit()
            return jsonify(weather.to_dict()), 200
        except Exception as e:
            db.session.rollback()
            return jsonify({'message': str(e)}), 400

    @app.route('/api/weather/<int:id>', methods=['DELETE'])
    def delete_weather(id):
        weather = db.session.get(Weather, id)
        if not weather:
            return not_found('Weather data')
        db.session.delete(weather)
        db.session.commit()
        return jsonify({'message': 'Weather data deleted successfully'}), 200

    @app.route('/api/weather/farm/<int:farm_id>/current', methods=['GET'])
    def get_current_weather(farm_id):
        weather = Weather.query.filter_by(farm_id=farm_id, forecast='current') \
            .order_by(Weather.date.desc()).first()
        if not weather:
            return not_found('Current weather data')
        return jsonify(weather.to_dict()), 200

    @app.route('/api/weather/farm/<int:farm_id>/forecast', methods=['GET'])
    def get_weather_forecast(farm_id):
        days = request.args.get('days', 7, type=int)
        forecast = Weather.query.filter(
            Weather.farm_id == farm_id,
            Weather.forecast.in_(FORECAST_HORIZONS)
        ).order_by(Weather.date.asc()).limit(days).all()
        return jsonify([w.to_dict() for w in forecast]), 200

    # ============ Alert Routes ============

    @app.route('/api/alerts', methods=['GET'])
    def get_alerts():
        query = Alert.query
        if request.args.get('farm'):
            query = query.filter(Alert.farm_id == request.args.get('farm', type=int))
        for arg, column in (('status', Alert.status), ('severity', Alert.severity), ('type', Alert.type)):
            if request.args.get(arg):
                query = query.filter(column == request.args[arg])
        limit = request.args.get('limit', 50, type=int)
        alerts = query.order_by(Alert.created_at.desc()).limit(limit).all()
        return jsonify([a.to_dict() for a in alerts]), 200

    @app.route('/api/alerts/stats/summary', methods=['GET'])
    def get_alert_summary():
        query = Alert.query
        if request.args.get('farm'):
            query = query.filter(Alert.farm_id == request.args.get('farm', type=int))
        active = query.filter(Alert.status == 'active')

        return jsonify({
            'total': query.count(),
            'active': active.count(),
            'critical': active.filter(Alert.severity == 'critical').count(),
            'resolved': query.filter(Alert.status == 'resolved').count(),
            'byType': count_by(query, Alert.type),
            'bySeverity': count_by(active, Alert.severity)
        }), 200

    @app.route('/api/alerts/<int:id>', methods=['GET'])
    def get_alert(id):
        alert = db.session.get(Alert, id)
        if not alert:
            return not_found('Alert')
        return jsonify(alert.to_dict()), 200

    @app.route('/api/alerts', methods=['POST'])
    def create_alert():
        try:
            alert = Alert()
            alert.update_from_dict(get_json_body())
            db.session.add(alert)
            db.session.commit()
            return jsonify(alert.to_dict()), 201
        except Exception as e:
            db.session.rollback()
            return jsonify({'message': str(e)}), 400

    @app.route('/api/alerts/<int:id>', methods=['PUT'])
    def update_alert(id):
        alert = db.session.get(Alert, id)
        if not alert:
            return not_found('Alert')
        try:
            alert.update_from_dict(get_json_body())
            db.session.commit()
            return jsonify(alert.to_dict()), 200
        except Exception as e:
            db.session.rollback()
            return jsonify({'message': str(e)}), 400

    @app.route('/api/alerts/<int:id>/acknowledge', methods=['PUT'])
    def acknowledge_alert(id):
        alert = db.session.get(Alert, id)
        if not alert:
            return not_found('Alert')
        alert.status = 'acknowledged'
        alert.acknowledged_at = datetime.utcnow()
        alert.acknowledged_by = get_json_body().get('acknowledgedBy')
        db.session.commit()
        return jsonify(alert.to_dict()), 200

    @app.route('/api/alerts/<int:id>/resolve', methods=['PUT'])
    def resolve_alert(id):
        alert = db.session.get(Alert, id)
        if not alert:
            return not_found('Alert')
        action = get_json_body().get('actionTaken') or {}
        alert.status = 'resolved'
        alert.resolved_at = datetime.utcnow()
        alert.action_taken = {
            'description': action.get('description'),
            'timestamp': datetime.utcnow().isoformat(),
            'takenBy': action.get('takenBy')
        }
        db.session.commit()
        return jsonify(alert.to_dict()), 200

    @app.route('/api/alerts/<int:id>', methods=['DELETE'])
    def delete_alert(id):
        alert = db.session.get(Alert, id)
        if not alert:
            return not_found('Alert')
        db.session.delete(alert)
        db.session.commit()
        return jsonify({'message': 'Alert deleted successfully'}), 200

    # ============ Farm Analytics Routes ============

    @app.route('/api/analytics/dashboard', methods=['GET'])
    def get_farm_dashboard():
        farm_id = request.args.get('farm', type=int)
        crops = Crop.query
        sensors = Sensor.query
        alerts = Alert.query.filter_by(status='active')
        if farm_id:
            crops = crops.filter_by(farm_id=farm_id)
            sensors = sensors.filter_by(farm_id=farm_id)
            alerts = alerts.filter_by(farm_id=farm_id)

        crop_health = defaultdict(int)
        for (score,) in crops.with_entities(Crop.health_score).all():
            crop_health[health_bucket(score)] += 1

        readings = db.session.query(Sensor.type, SensorData.value) \
            .join(Sensor, SensorData.sensor_id == Sensor.id) \
            .filter(SensorData.timestamp >= datetime.utcnow() - timedelta(days=1))
        if farm_id:
            readings = readings.filter(Sensor.farm_id == farm_id)
        by_type = defaultdict(list)
        for sensor_type, value in readings.order_by(SensorData.timestamp.asc()).all():
            by_type[sensor_type].append(value)

        return jsonify({
            'overview': {
                'totalFarms': 1 if farm_id else Farm.query.count(),
                'totalCrops': crops.count(),
                'totalSensors': sensors.count(),
                'activeAlerts': alerts.count()
            },
            'cropHealth': dict(crop_health),
            'growthStages': count_by(crops, Crop.growth_stage),
            'sensorReadings': {
                sensor_type: {
                    'average': round(sum(values) / len(values), 2),
                    'latest': values[-1],
                    'readingsCount': len(values)
                } for sensor_type, values in by_type.items()
            },
            'alertSeverity': count_by(alerts, Alert.severity)
        }), 200

    @app.route('/api/analytics/yield', methods=['GET'])
    def get_yield_analytics():
        farm_id = request.args.get('farm', type=int)
        period = YIELD_PERIODS.get(request.args.get('period'), timedelta(days=365))
        query = Crop.query.filter(
            Crop.status == 'harvested',
            Crop.actual_harvest_date >= datetime.utcnow() - period
        )
        if farm_id:
            query = query.filter(Crop.farm_id == farm_id)

        groups = defaultdict(list)
        for crop in query.all():
            key = (crop.actual_harvest_date.year, crop.actual_harvest_date.month, crop.name)
            groups[key].append((crop.actual_yield or {}).get('value') or 0)

        return jsonify([{
            '_id': {'month': month, 'year': year, 'cropName': name},
            'totalYield': sum(values),
            'avgYield': sum(values) / len(values),
            'count': len(values)
        } for (year, month, name), values in sorted(groups.items())]), 200

    @app.route('/api/analytics/weather-impact', methods=['GET'])
    def get_weather_impact():
        farm_id = request.args.get('farm', type=int)
        query = Weather.query
        if farm_id:
            query = query.filter(Weather.farm_id == farm_id)

        groups = defaultdict(list)
        for record in query.all():
            groups[record.conditions].append(record)

        impact = []
        for conditions, records in groups.items():
            precipitation = [(r.precipitation or {}).get('amount') or 0 for r in records]
            impact.append({
                '_id': conditions,
                'avgTemperature': sum(r.temperature_current for r in records) / len(records),
                'avgHumidity': sum(r.humidity for r in records) / len(records),
                'avgPrecipitation': sum(precipitation) / len(precipitation),
                'count': len(records)
            })
        return jsonify(impact), 200

    @app.route('/api/analytics/resource-usage', methods=['GET'])
    def get_resource_usage():
        farm_id = request.args.get('farm', type=int)
        query = Crop.query
        if farm_id:
            query = query.filter(Crop.farm_id == farm_id)

        fertilizers = defaultdict(int)
        for crop in query.all():
            for application in crop.fertilizers or []:
                fertilizers[application.get('type') or 'unknown'] += 1

        return jsonify({
            'irrigation': count_by(query, Crop.irrigation_type),
            'fertilizers': dict(fertilizers)
        }), 200

    @app.route('/api/analytics/trends', methods=['GET'])
    def get_farm_trends():
        farm_id = request.args.get('farm', type=int)
        metric = request.args.get('metric', 'health')
        since = datetime.utcnow() - timedelta(days=30)

        if metric == 'health':
            query = Crop.query.filter(Crop.updated_at >= since)
            if farm_id:
                query = query.filter(Crop.farm_id == farm_id)
            days = defaultdict(list)
            for crop in query.all():
                days[crop.updated_at.strftime('%Y-%m-%d')].append(crop.health_score or 0)
            trends = [{
                '_id': {'day': day},
                'avgHealth': sum(scores) / len(scores),
                'cropCount': len(scores)
            } for day, scores in sorted(days.items())]
        elif metric == 'alerts':
            query = Alert.query.filter(Alert.created_at >= since)
            if farm_id:
                query = query.filter(Alert.farm_id == farm_id)
            counts = defaultdict(int)
            for alert in query.all():
                counts[(alert.created_at.strftime('%Y-%m-%d'), alert.severity)] += 1
            trends = [{'_id': {'day': day, 'severity': severity}, 'count': count}
                      for (day, severity), count in sorted(counts.items())]
        else:
            trends = []

        return jsonify(trends), 200
