import os
import logging

from flask import Flask, jsonify
from flask_mail import Mail

from config import Config
from db_init import init_schema
from errors import register_error_handlers
from tasks.scheduler import register_scheduler

# ---- Import Blueprints ----
from routes.academic import bp as academic_bp
from routes.admin import bp as admin_bp
from routes.analytics import bp as analytics_bp
from routes.auth import bp as auth_bp
from routes.books import bp as books_bp
from routes.catalog import bp as catalog_bp
from routes.loans import bp as loans_bp
from routes.penalties import bp as penalties_bp
from routes.profile import bp as profile_bp
from routes.reading_room import bp as reading_room_bp
from routes.reservations import bp as reservations_bp
from routes.users import bp as users_bp

mail = Mail()


def create_app(overrides=None):
    # Basic logging – change to ERROR if you want almost no output
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    logging.getLogger("waitress.queue").setLevel(logging.ERROR)

    app = Flask(__name__)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)
    testing = app.config.get("TESTING", False)

    if Config.FILE_SERVER_MOCK:
        os.makedirs(app.config["LOCAL_UPLOAD_FOLDER"], exist_ok=True)

    # Initialize MySQL schema
    if not testing:
        init_schema()

    # Ensure MAIL_DEFAULT_SENDER has proper value
    sender = app.config.get("MAIL_DEFAULT_SENDER")
    if not sender or (isinstance(sender, tuple) and not sender[1]):
        app.config["MAIL_DEFAULT_SENDER"] = f"{Config.LIBRARY_NAME} <{app.config.get('MAIL_USERNAME')}>"

    # Initialize Flask-Mail
    mail.init_app(app)

    # Mail config log (non-sensitive)
    app.logger.info("Mail configuration loaded:")
    app.logger.info("  MAIL_SERVER = %s", app.config.get("MAIL_SERVER"))
    app.logger.info("  MAIL_PORT = %s", app.config.get("MAIL_PORT"))
    app.logger.info("  MAIL_USE_TLS = %s", app.config.get("MAIL_USE_TLS"))
    app.logger.info("  MAIL_USERNAME = %s", app.config.get("MAIL_USERNAME"))
    app.logger.info("  MAIL_DEFAULT_SENDER = %s", app.config.get("MAIL_DEFAULT_SENDER"))

    register_error_handlers(app)

    # -------------------------
    # Register blueprints
    # -------------------------

    # 🔐 Auth
    app.register_blueprint(auth_bp)

    # 📚 Catalogue (public) and cataloguing
    app.register_blueprint(catalog_bp)
    app.register_blueprint(books_bp)
    app.register_blueprint(academic_bp)

    # 🔄 Circulation
    app.register_blueprint(loans_bp)
    app.register_blueprint(reservations_bp)
    app.register_blueprint(penalties_bp)
    app.register_blueprint(reading_room_bp)

    # 👥 Patrons
    app.register_blueprint(users_bp)
    app.register_blueprint(profile_bp)

    # 📊 Analytics + ⚙️ Admin
    app.register_blueprint(analytics_bp)
    app.register_blueprint(admin_bp)

    @app.route("/api/health")
    def health():
        return jsonify(status="ok", library=Config.LIBRARY_NAME)

    # Start scheduler
    if not testing:
        register_scheduler(app, mail)

    return app


if __name__ == "__main__":
    app = create_app()

    use_waitress = os.getenv("USE_WAITRESS", "false").strip().lower() == "true"
    port = int(os.getenv("PORT", "5000"))
    if use_waitress:
        from waitress import serve

        app.logger.info("Starting server with Waitress")
        serve(app, host="0.0.0.0", port=port)
    else:
        app.logger.info("Starting server with Flask dev server")
        app.run(debug=False, host="0.0.0.0", port=port)
