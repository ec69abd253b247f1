from flask import Flask, request, jsonify, send_from_directory
from flask_cors import CORS
from flask_jwt_extended import JWTManager
from werkzeug.exceptions import HTTPException
from datetime import datetime
import logging
import os

from config import config
from models import db
from security import jwt_error_handlers
from notifications import mail
from realtime import socketio
from scheduler import start_scheduler
from auth_routes import register_auth_routes
from price_routes import register_price_routes
from content_routes import register_content_routes
from farm_routes import register_farm_routes
from payment_routes import register_payment_routes
from premium_routes import register_premium_routes
from marketplace_routes import register_marketplace_routes
from training_routes import register_training_routes
from admin_routes import register_admin_routes
from notification_routes import register_notification_routes


def create_app(config_name='development'):
    app = Flask(__name__)
    app.config.from_object(config.get(config_name, config['default']))

    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    # Initialize extensions
    db.init_app(app)
    mail.init_app(app)
    socketio.init_app(app, cors_allowed_origins=app.config['CORS_ORIGINS'])

    CORS(app,
     resources={r"/api/*": {"origins": app.config['CORS_ORIGINS']}},
     supports_credentials=True,
     allow_headers=["Content-Type", "Authorization"],
     methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"])

    jwt = JWTManager(app)
    jwt_error_handlers(jwt)

    # Preflight (OPTIONS) requests never reach the auth decorators
    @app.before_request
    def handle_preflight():
        if request.method == "OPTIONS":
            res = jsonify({'status': 'ok'})
            res.headers.add("Access-Control-Allow-Origin", request.headers.get("Origin"))
            res.headers.add("Access-Control-Allow-Methods", "GET,POST,PUT,PATCH,DELETE,OPTIONS")
            res.headers.add("Access-Control-Allow-Headers", "Content-Type,Authorization")
            res.headers.add("Access-Control-Allow-Credentials", "true")
            return res, 200

    try:
        os.makedirs(app.config['UPLOAD_FOLDER'], exist_ok=True)
        print(f"📁 Verified Upload folder at: {app.config['UPLOAD_FOLDER']}")
    except Exception as e:
        print(f"❌ Error creating upload folder: {e}")

    # ============ Static File Serving (Images) ============
    @app.route('/static/uploads/<path:filename>')
    def uploaded_file(filename):
        return send_from_directory(app.config['UPLOAD_FOLDER'], filename)

    # ============ Health Routes ============

    @app.route('/api/health', methods=['GET'])
    def health_check():
        return jsonify({
            'status': 'OK',
            'message': 'Igbaja AgriTech API is running',
            'timestamp': datetime.utcnow().isoformat(),
            'environment': app.config.get('ENVIRONMENT', 'development')
        }), 200

    register_auth_routes(app)
    register_price_routes(app)
    register_content_routes(app)
    register_farm_routes(app)
    register_payment_routes(app)
    register_premium_routes(app)
    register_marketplace_routes(app)
    register_training_routes(app)
    register_admin_routes(app)
    register_notification_routes(app)

    # ============ Error Handlers ============

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({'message': 'API endpoint not found'}), 404

    @app.errorhandler(ValueError)
    def bad_value(e):
        db.session.rollback()
        return jsonify({'status': 'fail', 'message': str(e)}), 400

    @app.errorhandler(Exception)
    def server_error(e):
        if isinstance(e, HTTPException):
            return jsonify({'message': e.description}), e.code
        db.session.rollback()
        app.logger.error("Unhandled error: %s", e, exc_info=True)
        return jsonify({
            'message': 'Something went wrong!',
            'error': None if app.config.get('ENVIRONMENT') == 'production' else str(e)
        }), 500

    # Initialize DB tables if they don't exist
    with app.app_context():
        db.create_all()

    if app.config.get('SCHEDULER_ENABLED'):
        start_scheduler(app)

    return app

if __name__ == '__main__':
    app = create_app(os.environ.get('FLASK_ENV') or 'development')
    port = int(os.environ.get('PORT') or 5000)
    print(f"🚀 Server running on port {port}")
    socketio.run(app, host='0.0.0.0', port=port, debug=app.config.get('DEBUG', False),
                 allow_unsafe_werkzeug=True)
