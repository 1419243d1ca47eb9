import logging
from datetime import datetime

from flask import Blueprint, jsonify
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from models import db

log = logging.getLogger("educafric.health")

health_bp = Blueprint('health', __name__)


@health_bp.route('/health')
def health_check():
    """Health check endpoint for Render"""
    try:
        db.session.execute(text('SELECT 1'))
        database = 'ok'
    except SQLAlchemyError:
        log.exception("Database unreachable")
        db.session.rollback()
        database = 'unavailable'
    return jsonify({
        'status': 'ok' if database == 'ok' else 'degraded',
        'service': 'educafric',
        'database': database,
        'timestamp': datetime.utcnow().isoformat(),
    }), 200 if database == 'ok' else 503
