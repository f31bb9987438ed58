from app.api.booking.bookings import bookings_bp
from app.api.communication.notifications import notifications_bp
from app.api.coupons.coupons import coupons_bp
from app.api.settings.settings import settings_bp
from flask import Flask
from flask_cors import CORS
from dotenv import load_dotenv
from flasgger import Swagger
from swagger__config import SWAGGER_CONFIG, SWAGGER_TEMPLATE
import json
import os

load_dotenv()
from app.config import Config  # noqa: E402
from app.errors import register_error_handlers  # noqa: E402
from app.extensions import db  # noqa: E402
from app.scheduler import get_scheduler, init_scheduler  # noqa: E402
from app.services.notification_channels import ChannelRegistry  # noqa: E402
from app.services.reminders import ReminderScanner  # noqa: E402
from app.services.slot_allocator import ReservationGate  # noqa: E402


def create_app(config=None):
    app = Flask(__name__)
    try:
        app.config.from_object(config or Config())
        app.logger.info(f"Config loaded: {len(app.config)} items")

        CORS(app)
        db.init_app(app)

        # Determine host based on environment
        host = os.environ.get("API_HOST", "127.0.0.1:5000")
        swagger_template = SWAGGER_TEMPLATE.copy()
        swagger_template["host"] = host
        Swagger(app, config=SWAGGER_CONFIG, template=swagger_template)

        register_error_handlers(app)

        app.extensions["reservation_gate"] = ReservationGate(
            app.config["RESERVATION_LOCK_TIMEOUT"]
        )
        channels = ChannelRegistry.from_config(app.config, app.logger)
        app.extensions["notification_channels"] = channels
        app.logger.info(f"Notification channels: {channels.names() or 'none'}")

        scanner = ReminderScanner(
            channels,
            scan_window_minutes=app.config["REMINDER_SCAN_WINDOW_MINUTES"],
            max_attempts=app.config["NOTIFY_MAX_ATTEMPTS"],
            backoff_seconds=app.config["NOTIFY_BACKOFF_SECONDS"],
        )
        init_scheduler(app, scanner)

        blueprints = [
            bookings_bp,
            coupons_bp,
            settings_bp,
            notifications_bp,
        ]

        for bp in blueprints:
            app.register_blueprint(bp)
            app.logger.debug(f"  {bp.name} registered")

        @app.route("/")
        def home():
            """
            Root endpoint - API status
            ---
            tags:
              - Utility
            responses:
              200:
                description: API is running
                schema:
                  type: object
                  properties:
                    status:
                      type: string
                    message:
                      type: string
            """
            return {"status": "ok", "message": "Booking core is running!"}, 200

        @app.cli.command("init-db")
        def init_db_command():
            """Create all tables."""
            db.create_all()
            print("Database tables created")

        @app.cli.command("run-reminder-scan")
        def run_reminder_scan_command():
            """Run one reminder scan cycle and print its report."""
            report = get_scheduler(app).run_once_now()
            if report is None:
                print("A reminder scan is already running; nothing done")
                return
            print(json.dumps(report.to_dict(), indent=2))

        app.logger.info(f"Total routes registered: {len(list(app.url_map.iter_rules()))}")

    except Exception as e:
        app.logger.error(f"Error during app creation: {e}")
        raise

    return app


app = create_app()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    app.run(
        host="0.0.0.0", port=port, debug=os.environ.get("FLASK_ENV") != "production"
    )
