from farm_routes import health_bucket, reading_trend

NEW_FARM = {
    'name': 'Oke-Oyi Demo Farm',
    'location': {'address': 'Oke-Oyi, Kwara', 'coordinates': {'lat': 8.38, 'lng': 4.88}},
    'size': {'value': 12, 'unit': 'hectares'},
    'owner': 'Kunle Ade',
    'farmType': 'mixed'
}


def test_health_buckets():
    assert health_bucket(None) == 'other'
    assert health_bucket(40) == 'poor'
    assert health_bucket(69) == 'fair'
    assert health_bucket(85) == 'good'
    assert health_bucket(95) == 'excellent'


def test_reading_trend():
    assert reading_trend([20]) == 'stable'
    assert reading_trend([20, 20, 25, 25]) == 'increasing'
    assert reading_trend([30, 30, 20, 20]) == 'decreasing'
    assert reading_trend([20, 20.5, 20.2, 20.4]) == 'stable'


def test_farm_lifecycle(client):
    response = client.post('/api/farms', json=NEW_FARM)
    farm = response.get_json()
    assert response.status_code == 201

    stats = client.get(f"/api/farms/{farm['id']}/stats").get_json()
    assert stats['totalCrops'] == 0
    assert stats['activeAlerts'] == 0

    assert client.delete(f"/api/farms/{farm['id']}").status_code == 200
    missing = client.get(f"/api/farms/{farm['id']}")
    assert missing.status_code == 404
    assert missing.get_json()['message'] == 'Farm not found'


def test_farm_requires_name(client):
    response = client.post('/api/farms', json={'owner': 'Nobody'})
    assert response.status_code == 400


def test_sensor_reading_updates_last_reading(client):
    farm_id = client.post('/api/farms', json=NEW_FARM).get_json()['id']
    sensor = client.post('/api/sensors', json={
        'sensorId': 'SM-001', 'name': 'Soil sensor', 'type': 'soil_moisture', 'farm': farm_id
    }).get_json()

    response = client.post(f"/api/sensors/{sensor['id']}/data", json={'value': 31.5, 'unit': '%'})
    assert response.status_code == 201

    readings = client.get(f"/api/sensors/{sensor['id']}/data").get_json()
    assert len(readings) == 1
    assert client.get(f"/api/sensors/{sensor['id']}").get_json()['lastReading']['value'] == 31.5
