import os
import logging

import click
from flask import Flask, jsonify
from flask.cli import with_appcontext

from config import Config
from models import db, User
from errors import register_error_handlers
from audit import AuditWriter
from request_context import jwt
from auth_views import auth_bp
from document_views import documents_bp
from log_views import logs_bp
from user_views import users_bp

logger = logging.getLogger(__name__)


# ==========================================================
# ⚙️ APP SETUP
# ==========================================================
def create_app(config_object=Config, **overrides):
    app = Flask(__name__)
    app.config.from_object(config_object)
    app.config.update(overrides)

    logging.basicConfig(
        level=app.config["LOG_LEVEL"],
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    if not app.config.get("ENCRYPTION_KEY_B64"):
        raise RuntimeError("ENCRYPTION_KEY_B64 not set in .env; generate one with base64.b64encode(os.urandom(32))")
    os.makedirs(app.config["UPLOAD_FOLDER"], exist_ok=True)

    db.init_app(app)
    jwt.init_app(app)
    AuditWriter(app)
    register_error_handlers(app)

    app.register_blueprint(auth_bp)
    app.register_blueprint(documents_bp)
    app.register_blueprint(logs_bp)
    app.register_blueprint(users_bp)

    @app.route("/api/health")
    def health():
        return jsonify({"success": True, "status": "ok"})

    app.cli.add_command(make_admin)

    with app.app_context():
        db.create_all()

    logger.info("Document service ready (upload folder %s)", app.config["UPLOAD_FOLDER"])
    return app


@click.command("make-admin")
@click.argument("email")
@with_appcontext
def make_admin(email):
    """Grant the admin role to an existing user."""
    user = User.query.filter_by(email=email.strip().lower()).first()
    if not user:
        raise click.ClickException(f"No user with email {email}")
    user.role = "admin"
    db.session.commit()
    click.echo(f"{user.email} is now an admin")


if __name__ == "__main__":
    create_app().run(host="0.0.0.0", port=8080, debug=True)
