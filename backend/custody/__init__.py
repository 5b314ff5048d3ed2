from flask import Flask
from werkzeug.exceptions import HTTPException
from flask_jwt_extended import JWTManager
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool
from sqlalchemy.orm import sessionmaker, scoped_session
from dotenv import load_dotenv
from typing import Optional, Dict, Any
import logging
import os

from .config.settings import load_settings

load_dotenv()

db_engine = None
SessionLocal = None
jwt = JWTManager()


def _build_engine(db_url: str):
    if db_url.endswith(':memory:'):
        # one connection shared by every session, or each would see an empty database
        return create_engine(
            db_url,
            future=True,
            connect_args={'check_same_thread': False},
            poolclass=StaticPool,
        )
    return create_engine(db_url, future=True, pool_pre_ping=True)


def _register_blueprints(app: Flask):
    from .routes.iam import iam_bp
    from .routes.assets import assets_bp
    from .routes.tickets import tickets_bp
    from .routes.repairs import rpr_bp
    from .routes.maintenance import pm_bp
    from .routes.jobs import jobs_bp
    app.register_blueprint(iam_bp, url_prefix='/iam')
    app.register_blueprint(assets_bp, url_prefix='/assets')
    app.register_blueprint(tickets_bp, url_prefix='/tickets')
    app.register_blueprint(rpr_bp, url_prefix='/repairs')
    app.register_blueprint(pm_bp, url_prefix='/maintenance')
    app.register_blueprint(jobs_bp, url_prefix='/jobs')


def _register_error_handlers(app: Flask):
    # Every response body for a failed request: {"error": {status, title, detail[, kind, context]}}
    @app.errorhandler(Exception)
    def handle_errors(e):  # type: ignore
        if SessionLocal is not None:
            SessionLocal.rollback()
        if isinstance(e, HTTPException):
            error = {'status': e.code, 'title': e.name, 'detail': e.description}
            kind = getattr(e, 'kind', None)
            if kind:
                error['kind'] = kind
                error['context'] = getattr(e, 'context', {}) or {}
            return {'error': error}, e.code
        app.logger.exception('Unhandled exception')
        return {
            'error': {
                'status': 500,
                'title': 'Internal Server Error',
                'detail': 'Unexpected error'
            }
        }, 500


def create_app(config: Optional[Dict[str, Any]] = None):
    global db_engine, SessionLocal
    app = Flask(__name__)

    app.config['JWT_SECRET_KEY'] = os.getenv('JWT_SECRET_KEY', 'dev-secret')
    app.config['DATABASE_URL'] = os.getenv('DATABASE_URL', 'sqlite:///dev.db')
    app.config.update(load_settings(os.environ))
    if config:
        # allow tests or callers to override default config values
        app.config.update(config)

    logging.getLogger('custody').setLevel(app.config['LOG_LEVEL'])

    db_engine = _build_engine(app.config['DATABASE_URL'])
    SessionLocal = scoped_session(sessionmaker(bind=db_engine, expire_on_commit=False, autoflush=False))

    jwt.init_app(app)

    # Register every mapped class before relationships are configured
    from .models import authz, audit, asset, service_ticket, repair_order, shipment, maintenance  # noqa: F401

    _register_blueprints(app)
    _register_error_handlers(app)

    @app.route('/healthz')
    def health():
        return {'status': 'ok'}

    return app


def get_db():
    return SessionLocal()
