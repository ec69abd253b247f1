"""Price arithmetic shared by the crop-price, premium and admin routes."""
import math
from datetime import datetime, timedelta
from statistics import pstdev

AVAILABILITY_FACTORS = {'abundant': 1.2, 'moderate': 1.0}
QUALITY_FACTORS = {'premium': 1.3, 'standard': 1.0}


def calculate_trend(current_price, previous_price):
    if not previous_price:
        return {'direction': 'stable', 'percentage': 0}

    change = (current_price - previous_price) / previous_price * 100
    direction = 'stable'
    if change > 2:
        direction = 'rising'
    elif change < -2:
        direction = 'falling'
    return {'direction': direction, 'percentage': round(change, 2)}


def predict_price(prices):
    """Conservative 7-day estimate from the last five observations."""
    if len(prices) < 3:
        return None
    recent = prices[-5:]
    average = sum(recent) / len(recent)
    trend = recent[-1] - recent[0]
    return round(average + trend * 0.3)


def build_prediction(crop_name, market, history):
    """
    history: CropPrice rows (or dicts with 'value', 'unit', 'cropNameYoruba')
    ordered oldest first.
    """
    points = [_point(item) for item in history]
    market_label = market or 'All markets'
    if len(points) < 3:
        return {
            'cropName': crop_name,
            'market': market_label,
            'prediction': None,
            'confidence': 'low',
            'message': 'Insufficient historical data for prediction'
        }

    prices = [p['value'] for p in points]
    predicted = predict_price(prices)
    current = prices[-1]
    window = prices[-5:]
    lower = min(min(window), predicted)
    upper = max(max(window), predicted)

    return {
        'cropName': crop_name,
        'cropNameYoruba': points[0].get('cropNameYoruba'),
        'market': market_label,
        'currentPrice': current,
        'predictedPrice': predicted,
        'trend': calculate_trend(predicted, current),
        'confidence': 'high' if len(points) > 10 else 'medium',
        'predictionPeriod': '7 days',
        'unit': points[0].get('unit'),
        'historicalDataPoints': len(points),
        'bounds': {'lower': lower, 'upper': upper}
    }


def _point(item):
    if isinstance(item, dict):
        return item
    return {
        'value': item.price_value,
        'unit': item.price_unit,
        'cropNameYoruba': item.crop_name_yoruba,
        'date': item.last_updated
    }


# --- FORECASTING ---

def moving_average(prices, period):
    window = prices[-period:]
    if not window:
        return 0
    return sum(window) / min(period, len(prices))


def linear_trend(values):
    n = len(values)
    if n < 2:
        return {'slope': 0, 'intercept': values[0] if values else 0, 'direction': 'stable'}

    sum_x = sum(range(n))
    sum_y = sum(values)
    sum_xy = sum(i * y for i, y in enumerate(values))
    sum_xx = sum(i * i for i in range(n))

    slope = (n * sum_xy - sum_x * sum_y) / (n * sum_xx - sum_x * sum_x)
    intercept = (sum_y - slope * sum_x) / n
    direction = 'stable'
    if slope > 0.1:
        direction = 'rising'
    elif slope < -0.1:
        direction = 'falling'
    return {'slope': slope, 'intercept': intercept, 'direction': direction}


def volatility(prices):
    return pstdev(prices) if prices else 0


def seasonal_factor(dates, prices):
    if not prices:
        return 0
    weighted = [
        math.sin(date.timetuple().tm_yday * 2 * math.pi / 365) * price
        for date, price in zip(dates, prices)
    ]
    return sum(weighted) / len(weighted)


def forecast_confidence(data_points, vol):
    base = min(data_points / 50 * 0.8, 0.8)
    penalty = min(vol / 1000 * 0.3, 0.3)
    return max(base - penalty, 0.2) * 100


def forecast_prices(prices, dates, days=7, today=None):
    """Day-by-day forecast blending linear trend, a seasonal sinusoid and the short moving average."""
    today = today or datetime.utcnow()
    short_ma = moving_average(prices[-7:], 7)
    trend = linear_trend(prices[-14:])
    seasonal = seasonal_factor(dates, prices)
    vol = volatility(prices[-14:])
    confidence = forecast_confidence(len(prices), vol)

    predictions = []
    last_price = prices[-1]
    for i in range(1, days + 1):
        predicted = last_price + trend['slope'] * i + seasonal * math.sin(i * math.pi / 30)
        predicted = predicted * 0.7 + short_ma * 0.3
        predictions.append({
            'date': (today + timedelta(days=i)).isoformat(),
            'predictedPrice': round(predicted),
            'upperBound': round(predicted + vol * 1.96),
            'lowerBound': round(predicted - vol * 1.96),
            'confidence': confidence,
            'daysAhead': i
        })
        last_price = predicted

    return predictions, {
        'shortTermTrend': trend['direction'],
        'trendStrength': abs(trend['slope']),
        'volatility': volatility(prices),
        'seasonalFactor': seasonal,
        'historicalDataPoints': len(prices)
    }


# --- MARKET & REVENUE ---

def market_score(avg_price, availability, quality):
    return (avg_price / 10000) * AVAILABILITY_FACTORS.get(availability, 0.8) * QUALITY_FACTORS.get(quality, 0.7)


def market_recommendations(comparison):
    """comparison: market summaries sorted by avgPrice ascending."""
    recommendations = []
    if len(comparison) > 1:
        best, worst = comparison[0], comparison[-1]
        recommendations.append(f"Best prices found at {best['_id']} with average ₦{round(best['avgPrice'])}")
        if best['avgPrice'] < worst['avgPrice'] * 0.8:
            recommendations.append(f"Consider {best['_id']} - prices are 20%+ lower than {worst['_id']}")
        abundant = [m['_id'] for m in comparison if m.get('availability') == 'abundant']
        if abundant:
            recommendations.append(f"High supply available at: {', '.join(abundant)}")
    return recommendations


def project_revenue(revenues, periods=6):
    if len(revenues) < 3:
        return []
    slope = linear_trend(revenues)['slope']
    return [
        {
            'period': i,
            'projectedRevenue': max(0, revenues[-1] + slope * i),
            'confidence': max(0.3, 0.9 - i * 0.1)
        }
        for i in range(1, periods + 1)
    ]
