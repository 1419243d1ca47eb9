import logging
import os

import click
from flask import Flask
from flask_wtf.csrf import CSRFProtect

from admin import admin_bp, check_subscriptions
from academics import academics_bp
from auth import auth_bp
from bulletins import bulletins_bp
from config import INSTANCE_PATH, get_config
from dashboards import dashboards_bp
from documents import documents_bp
from errors import register_error_handlers
from fees import check_fees, fees_bp
from health import health_bp
from models import School, User, db
from notifications import notifications_bp, process_queue
from security import init_security
from subscriptions import subscriptions_bp
from sync import sync_bp
from tenancy import forget_current_user

log = logging.getLogger("educafric")

csrf = CSRFProtect()

API_BLUEPRINTS = (
    auth_bp,
    admin_bp,
    academics_bp,
    bulletins_bp,
    documents_bp,
    fees_bp,
    notifications_bp,
    subscriptions_bp,
    sync_bp,
    dashboards_bp,
)


def configure_logging(app):
    level = getattr(logging, str(app.config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO)
    logging.basicConfig(level=level, format='%(asctime)s %(levelname)s [%(name)s] %(message)s')
    logging.getLogger("educafric").setLevel(level)


def ensure_site_admin(app):
    """Create the platform administrator account on first start"""
    username = app.config['SITE_ADMIN_USERNAME']
    if User.query.filter_by(username=username).first() is not None:
        return None
    admin = User(username=username, role='SiteAdmin', first_name='Site', last_name='Admin',
                 password_change_required=True)
    admin.set_password(app.config['SITE_ADMIN_PASSWORD'])
    db.session.add(admin)
    db.session.commit()
    log.info("Site administrator %s created", username)
    return admin


def ensure_sandbox_school(app):
    """Demo school with unlimited access, shared by sales demos and QA"""
    school = School.query.filter_by(is_sandbox=True).first()
    if school is not None:
        return school
    school = School(name="EducAfric Sandbox", language="fr", matricule_prefix="SBX", is_sandbox=True,
                    offline_enabled=True, plan_id="ecole_privee", subscription_status="premium")
    db.session.add(school)
    db.session.commit()
    log.info("Sandbox school %s created", school.id)
    return school


def register_commands(app):
    @app.cli.command('init-db')
    def init_db_command():
        """Create the tables, the site administrator and the sandbox school"""
        db.create_all()
        ensure_site_admin(app)
        ensure_sandbox_school(app)
        click.echo('Database initialized.')

    @app.cli.command('check-subscriptions')
    def check_subscriptions_command():
        """Expire lapsed school subscriptions and send due notices"""
        click.echo(f'Subscriptions checked: {check_subscriptions()}')

    @app.cli.command('check-fees')
    def check_fees_command():
        """Flag overdue fees and send payment reminders"""
        click.echo(f'Fees checked: {check_fees()}')

    @app.cli.command('process-notifications')
    @click.option('--limit', default=50, show_default=True, help='Maximum entries to deliver.')
    def process_notifications_command(limit):
        """Deliver pending notifications"""
        click.echo(f'Notifications processed: {process_queue(limit=limit)}')


def create_app(config_object=None):
    app = Flask(__name__, instance_path=INSTANCE_PATH)
    config_object = config_object or get_config()
    app.config.from_object(config_object)
    config_object.init_app(app)
    configure_logging(app)

    db.init_app(app)
    csrf.init_app(app)
    init_security(app)
    register_error_handlers(app)
    app.before_request(forget_current_user)

    # JSON API clients authenticate with a session cookie or a bearer token
    for blueprint in API_BLUEPRINTS:
        csrf.exempt(blueprint)
        app.register_blueprint(blueprint)
    app.register_blueprint(health_bp)

    register_commands(app)

    if not app.config.get('TESTING'):
        with app.app_context():
            db.create_all()
            ensure_site_admin(app)
            ensure_sandbox_school(app)

    log.info("EducAfric started (%s)", os.environ.get('EDUCAFRIC_ENV', 'development'))
    return app
