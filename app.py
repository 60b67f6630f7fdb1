from flask import Flask, jsonify
import logging
import sys

from api.routes import bp
from api.services import Services, build_services
from lib.config import get_settings

logger = logging.getLogger(__name__)


def configure_logging(level: str = 'INFO') -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stdout,
        force=True  # Ensure our config takes precedence
    )


def create_app(services: Services = None) -> Flask:
    app = Flask(__name__)
    if services is None:
        settings = get_settings()
        configure_logging(settings.log_level)
        services = build_services(settings)
    app.config['SERVICES'] = services
    app.register_blueprint(bp)

    @app.route("/test", methods=['GET'])
    def test():
        """Test endpoint to verify server is running"""
        return jsonify({
            "status": "ok",
            "message": "Server is running"
        })

    return app


if __name__ == "__main__":
    app = create_app()
    logger.info("Starting Flask server...")
    app.run(debug=True, port=8000)
