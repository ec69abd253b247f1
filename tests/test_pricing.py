from datetime import datetime, timedelta

import pytest

from pricing import (
    calculate_trend, predict_price, build_prediction, linear_trend,
    project_revenue, market_recommendations, forecast_prices, market_score
)


def points(values):
    return [{'value': v, 'unit': 'per bag', 'cropNameYoruba': 'Agbado'} for v in values]


def test_trend_needs_more_than_two_percent():
    assert calculate_trend(102, 100) == {'direction': 'stable', 'percentage': 2.0}
    assert calculate_trend(103, 100)['direction'] == 'rising'
    assert calculate_trend(90, 100) == {'direction': 'falling', 'percentage': -10.0}


def test_trend_without_previous_price_is_stable():
    assert calculate_trend(500, None) == {'direction': 'stable', 'percentage': 0}
    assert calculate_trend(500, 0) == {'direction': 'stable', 'percentage': 0}


def test_predict_price_uses_last_five_points():
    assert predict_price([100, 100]) is None
    assert predict_price([100, 100, 100, 100, 100]) == 100
    # mean 120 plus 30% of the 40 rise
    assert predict_price([1, 100, 110, 120, 130, 140]) == 132


def test_prediction_with_too_little_history():
    result = build_prediction('maize', None, points([100, 110]))
    assert result['prediction'] is None
    assert result['confidence'] == 'low'
    assert result['market'] == 'All markets'


def test_prediction_confidence_grows_with_history():
    medium = build_prediction('maize', 'Offa Market', points([100, 105, 110, 115]))
    assert medium['confidence'] == 'medium'
    assert medium['market'] == 'Offa Market'
    assert medium['historicalDataPoints'] == 4

    history = [100 + i * 10 for i in range(12)]
    high = build_prediction('maize', None, points(history))
    assert high['confidence'] == 'high'
    assert high['currentPrice'] == 210
    assert high['predictedPrice'] == predict_price(history)
    assert high['unit'] == 'per bag'
    assert high['bounds']['lower'] <= high['bounds']['upper']


def test_linear_trend_slope():
    trend = linear_trend([10, 20, 30, 40])
    assert trend['slope'] == pytest.approx(10)
    assert trend['direction'] == 'rising'
    assert linear_trend([5])['slope'] == 0


def test_project_revenue():
    assert project_revenue([100, 200]) == []
    projection = project_revenue([100, 200, 300])
    assert len(projection) == 6
    assert projection[0]['projectedRevenue'] == pytest.approx(400)
    assert projection[0]['confidence'] == pytest.approx(0.8)
    assert projection[-1]['confidence'] == pytest.approx(0.3)


def test_market_recommendations():
    comparison = [
        {'_id': 'Offa Market', 'avgPrice': 700, 'availability': 'abundant'},
        {'_id': 'Lagos Wholesale Market', 'avgPrice': 1000, 'availability': 'scarce'},
    ]
    recommendations = market_recommendations(comparison)
    assert recommendations[0] == 'Best prices found at Offa Market with average ₦700'
    assert any('20%+ lower' in r for r in recommendations)
    assert recommendations[-1] == 'High supply available at: Offa Market'
    assert market_recommendations(comparison[:1]) == []


def test_forecast_on_flat_history():
    today = datetime(2024, 6, 1)
    dates = [today - timedelta(days=14 - i) for i in range(14)]
    predictions, factors = forecast_prices([1000] * 14, dates, days=7, today=today)

    assert [p['daysAhead'] for p in predictions] == list(range(1, 8))
    assert predictions[0]['date'] == (today + timedelta(days=1)).isoformat()
    # No volatility, so the band collapses onto the prediction
    assert all(p['upperBound'] == p['lowerBound'] == p['predictedPrice'] for p in predictions)
    assert predictions[0]['confidence'] == pytest.approx(22.4)
    assert factors['shortTermTrend'] == 'stable'
    assert factors['historicalDataPoints'] == 14


def test_forecast_follows_rising_history():
    today = datetime(2024, 1, 1)
    prices = [1000 + 50 * i for i in range(20)]
    dates = [today - timedelta(days=20 - i) for i in range(20)]
    predictions, factors = forecast_prices(prices, dates, today=today)
    assert factors['shortTermTrend'] == 'rising'
    assert factors['trendStrength'] == pytest.approx(50)
    assert predictions[0]['upperBound'] > predictions[0]['lowerBound']


def test_market_score_weights():
    assert market_score(10000, 'abundant', 'premium') == pytest.approx(1.56)
    assert market_score(10000, 'moderate', 'standard') == pytest.approx(1.0)
    assert market_score(10000, 'scarce', 'low') == pytest.approx(0.56)
