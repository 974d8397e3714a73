from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_cors import CORS

db = SQLAlchemy()
migrate = Migrate()

def create_app(testing: bool=False, config: dict | None=None):
    app = Flask(__name__)
    from .config import Config, TestConfig
    app.config.from_object(TestConfig if testing else Config)
    if config:
        app.config.update(config)
    app.logger.setLevel(app.config["LOG_LEVEL"])

    CORS(app)
    db.init_app(app)
    migrate.init_app(app, db)

    from . import models  # noqa: F401
    from .notifications import DatabaseNotificationSink
    app.extensions.setdefault("notification_sink", DatabaseNotificationSink())

    from .routes import bp as main_bp
    from .api import api as api_bp
    from .commands import register_commands
    app.register_blueprint(main_bp)
    app.register_blueprint(api_bp, url_prefix="/api")
    register_commands(app)

    return app
