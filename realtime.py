from datetime import datetime

from flask import request
from flask_socketio import SocketIO, join_room

socketio = SocketIO()

PRICE_ROOM = 'priceUpdates'


def alert_room(crop_name, market):
    return f"alerts_{crop_name}_{market}"


def emit_price_update(change_type, data):
    """change_type: new, update or delete."""
    try:
        socketio.emit('priceUpdate', {'type': change_type, 'data': data}, to=PRICE_ROOM)
    except Exception as e:
        print(f"❌ Socket emit error: {e}")


def emit_alerts_processed(results):
    socketio.emit('priceAlertsProcessed', {
        'timestamp': datetime.utcnow().isoformat(),
        'processed': len(results),
        'successful': len([r for r in results if r.get('success')])
    })


@socketio.on('connect')
def handle_connect():
    print(f"👤 User connected: {request.sid}")


@socketio.on('joinPriceUpdates')
def handle_join_price_updates(data=None):
    join_room(PRICE_ROOM)
    print(f"📊 User {request.sid} joined price updates")


@socketio.on('subscribeToPriceAlerts')
def handle_subscribe_alerts(data=None):
    data = data or {}
    crop_name, market = data.get('cropName'), data.get('market')
    join_room(alert_room(crop_name, market))
    print(f"🔔 User {request.sid} subscribed to alerts for {crop_name} in {market}")


@socketio.on('disconnect')
def handle_disconnect(*args):
    print(f"👋 User disconnected: {request.sid}")
