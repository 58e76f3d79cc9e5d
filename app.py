"""Flask application for the POS catalog sync backend."""
import logging
import os

from flask import Flask, jsonify
from flask_cors import CORS
from flask_jwt_extended import JWTManager

from config import config
from database import init_database
from logging_config import setup_app_logging
from pos_sync_api import pos_sync_bp


def create_app(config_name=None):
    """Create and configure the Flask app."""
    config_name = config_name or os.getenv('FLASK_ENV', 'development')
    config_class = config.get(config_name, config['default'])

    app = Flask(__name__)
    app.config.from_object(config_class)
    app.config['POS_SYNC_CONFIG'] = config_class

    CORS(app,
         origins=os.getenv('CORS_ORIGINS', 'http://localhost:3000').split(','),
         supports_credentials=True,
         allow_headers=["Content-Type", "Authorization"],
         methods=["GET", "POST", "DELETE", "OPTIONS"])

    JWTManager(app)

    if not app.config.get('TESTING'):
        level = getattr(logging, str(config_class.LOG_LEVEL).upper(), logging.INFO)
        setup_app_logging(app, config_class.LOG_PATH, level=level)

    # In production, assume the tables exist
    create_tables = config_name != 'production'
    init_database(config_class.DATABASE_URL, create_tables=create_tables)
    app.logger.info(f"Database initialized (create_tables={create_tables})")

    app.register_blueprint(pos_sync_bp)

    @app.route('/health')
    def health():
        from database import db_manager
        status = db_manager.health_check()
        code = 200 if status.get('status') == 'healthy' else 503
        return jsonify(status), code

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({'error': 'Not found'}), 404

    @app.errorhandler(500)
    def internal_error(error):
        app.logger.error(f"Internal server error: {error}")
        return jsonify({'error': 'Internal server error'}), 500

    return app


if __name__ == "__main__":
    create_app().run(debug=True, port=int(os.getenv('PORT', '3560')))
