from models import db, FarmingTip, SecurityReport

NEW_TIP = {
    'title': {'english': 'Mulch your yam heaps', 'yoruba': 'Bo ebe isu'},
    'content': {'english': 'Dry grass keeps the soil moist', 'yoruba': 'Koriko gbigbe'},
    'category': 'soil_preparation',
    'targetCrops': ['yam'],
    'season': ['dry_season'],
    'timeRequired': {'value': 2, 'unit': 'hours'},
    'tags': ['mulching', 'moisture']
}

NEW_REPORT = {
    'reportType': 'farm_theft',
    'title': {'english': 'Yam barn broken into'},
    'description': {'english': 'Twenty tubers taken overnight'},
    'location': {'area': 'Igbaja Town', 'specificLocation': 'Oja Oba road'},
    'severity': 'high'
}


def test_create_and_filter_tips(client):
    response = client.post('/api/farming-tips', json=NEW_TIP)
    assert response.status_code == 201
    client.post('/api/farming-tips', json=dict(NEW_TIP, targetCrops=['maize'], season=['wet_season']))

    tips = client.get('/api/farming-tips?targetCrops=yam').get_json()
    assert len(tips) == 1
    assert tips[0]['title']['english'] == 'Mulch your yam heaps'

    assert len(client.get('/api/farming-tips?season=wet_season').get_json()) == 1


def test_tip_with_unknown_category_is_rejected(client):
    response = client.post('/api/farming-tips', json=dict(NEW_TIP, category='astrology'))
    assert response.status_code == 400
    assert FarmingTip.query.count() == 0


def test_tip_search_matches_tags(client):
    client.post('/api/farming-tips', json=NEW_TIP)
    assert len(client.get('/api/farming-tips/search?q=MULCHING').get_json()) == 1
    assert client.get('/api/farming-tips/search?q=locust').get_json() == []
    assert client.get('/api/farming-tips/search').status_code == 400


def test_viewing_and_liking_a_tip(client):
    tip_id = client.post('/api/farming-tips', json=NEW_TIP).get_json()['id']
    assert client.get(f'/api/farming-tips/{tip_id}').get_json()['views'] == 1
    assert client.put(f'/api/farming-tips/{tip_id}/like').get_json()['likes'] == 1
    assert client.get('/api/farming-tips/999').status_code == 404


def test_security_reports_are_private_by_default(client):
    response = client.post('/api/security-reports', json=NEW_REPORT)
    assert response.status_code == 201
    report = db.session.get(SecurityReport, response.get_json()['reportId'])
    assert report.is_public is False
    assert report.occurred_at is not None

    assert client.get('/api/security-reports').get_json() == []

    client.post('/api/security-reports', json=dict(NEW_REPORT, isPublic=True))
    public = client.get('/api/security-reports?location=Igbaja%20Town').get_json()
    assert len(public) == 1


def test_security_report_stats(client):
    client.post('/api/security-reports', json=NEW_REPORT)
    client.post('/api/security-reports', json=dict(NEW_REPORT, reportType='crop_vandalism', severity='critical'))

    stats = client.get('/api/security-reports/stats').get_json()
    assert stats['overview']['total'] == 2
    assert stats['overview']['critical'] == 1
    assert stats['overview']['thisMonth'] == 2


def test_security_report_requires_fields(client):
    response = client.post('/api/security-reports', json={'reportType': 'farm_theft'})
    assert response.status_code == 400
