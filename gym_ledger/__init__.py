import logging

from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

from .config import config

# Initialize extensions
db = SQLAlchemy()
migrate = Migrate()


def create_app(config_name=None):
    """Application factory"""
    import os
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'development')

    app = Flask(__name__)
    app.config.from_object(config[config_name])

    logging.basicConfig(
        level=getattr(logging, str(app.config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )

    # Initialize extensions with app
    db.init_app(app)
    migrate.init_app(app, db)

    from .models import listeners
    listeners.register_all_listeners()

    from .services import init_engine
    init_engine(app)

    # Register blueprints
    from .routes.api import api_bp
    from .routes.memberships import memberships_bp
    from .routes.payments import payments_bp
    from .routes.trainers import trainers_bp

    app.register_blueprint(api_bp, url_prefix='/api')
    app.register_blueprint(memberships_bp, url_prefix='/memberships')
    app.register_blueprint(payments_bp)
    app.register_blueprint(trainers_bp)

    # Register error handlers
    register_error_handlers(app)

    # Register CLI commands
    register_cli_commands(app)

    return app


def register_error_handlers(app):
    """Register JSON error handlers"""
    from flask import jsonify
    from .engine.errors import (
        ConflictError, InvalidTransition, LedgerError, NotFound, PartiallyApplied,
        StoreError, TransitionFailed,
    )

    def status_for(error):
        if isinstance(error, NotFound):
            return 404
        if isinstance(error, (InvalidTransition, ConflictError, TransitionFailed)):
            return 409
        if isinstance(error, PartiallyApplied):
            return 500
        if isinstance(error, StoreError):
            return 503 if error.retryable else 502
        return 400

    @app.errorhandler(LedgerError)
    def ledger_error(error):
        status = status_for(error)
        if status >= 500:
            app.logger.error(f"{error.error_code}: {error.message}")
        return jsonify(error.to_dict()), status

    @app.errorhandler(404)
    def not_found_error(error):
        return jsonify({'error': 'Not found', 'code': 'not_found'}), 404

    @app.errorhandler(500)
    def internal_error(error):
        db.session.rollback()
        return jsonify({'error': 'Internal server error', 'code': 'internal_error'}), 500


def register_cli_commands(app):
    """Register CLI commands"""
    import click

    @app.cli.command('init-db')
    def init_db():
        """Create all ledger tables"""
        from . import models  # noqa: F401
        db.create_all()
        click.echo('Database initialized successfully!')

    @app.cli.command('seed-packages')
    def seed_packages():
        """Insert the default membership packages"""
        from .models.package import MembershipPackage

        # (name, package_type, duration_days, price, pt_sessions_included, transfer_fee)
        packages_data = [
            ('شهري', 'basic', 30, 300, 0, 50),
            ('3 شهور', 'basic', 90, 800, 0, 100),
            ('6 شهور', 'premium', 180, 1500, 0, 150),
            ('سنوي', 'premium', 365, 2800, 0, 200),
            ('تدريب شخصي - 12 جلسة', 'personal_training', 30, 1200, 12, 100),
            ('تدريب شخصي - 24 جلسة', 'personal_training', 60, 2200, 24, 150),
        ]

        for name, package_type, days, price, sessions, fee in packages_data:
            if not MembershipPackage.query.filter_by(name=name).first():
                package = MembershipPackage(
                    name=name,
                    package_type=package_type,
                    duration_days=days,
                    price=price,
                    pt_sessions_included=sessions,
                    transfer_fee=fee,
                )
                db.session.add(package)
                click.echo(f'Created package: {name}')

        db.session.commit()
        click.echo('Packages seeded successfully!')
