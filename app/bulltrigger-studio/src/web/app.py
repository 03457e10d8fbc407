from __future__ import annotations

from flask import Flask

from core.config import Config
from core.db import init_db, init_engine
from core.seed import seed_defaults
from web.views import bp as strategies_bp


def create_app() -> Flask:
    app = Flask(__name__)
    app.config.from_object(Config)

    init_engine(app.config["SQLALCHEMY_DATABASE_URI"])
    init_db()
    if app.config.get("SEED_DEFAULT_STRATEGIES"):
        seed_defaults()

    app.register_blueprint(strategies_bp)

    return app
