from flask import Flask, jsonify
from flask_cors import CORS
from sqlalchemy.exc import IntegrityError
from dotenv import load_dotenv
from extensions import db, jwt, mail
from config import Config
from routes import automation_bp, project_bp, drip_bp
import models  # noqa: F401  register models before create_all
import logging

load_dotenv()

logger = logging.getLogger("automation")


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)

    logging.basicConfig(
        level=getattr(logging, str(app.config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    logger.info(f"[OK] Database URI: {app.config.get('SQLALCHEMY_DATABASE_URI')}")

    CORS(app, origins=app.config.get('CORS_ORIGINS'), supports_credentials=True)

    db.init_app(app)
    jwt.init_app(app)
    mail.init_app(app)

    app.register_blueprint(automation_bp)
    app.register_blueprint(project_bp)
    app.register_blueprint(drip_bp)

    @app.errorhandler(IntegrityError)
    def handle_integrity_error(e):
        db.session.rollback()
        logger.error(f"[FAIL] Database Integrity Error: {e.orig}")
        return jsonify({"error": "Database integrity error", "message": str(e.orig)}), 400

    @app.errorhandler(400)
    def handle_bad_request(e):
        return jsonify({"error": "Bad request", "message": getattr(e, 'description', str(e))}), 400

    @app.errorhandler(404)
    def handle_not_found(e):
        return jsonify({"error": "Not found", "message": "The requested resource does not exist."}), 404

    @app.errorhandler(405)
    def handle_method_not_allowed(e):
        return jsonify({"error": "Method not allowed", "message": "The method is not allowed for the requested URL."}), 405

    with app.app_context():
        db.create_all()

    return app


if __name__ == "__main__":
    from scheduler import start_scheduler

    app = create_app()
    start_scheduler(app)
    # The reloader would start a second scheduler in the child process
    app.run(host="0.0.0.0", port=5000, debug=True, use_reloader=False)
