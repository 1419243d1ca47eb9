import logging

from flask import jsonify
from flask_limiter.errors import RateLimitExceeded
from werkzeug.exceptions import HTTPException

from models import db

log = logging.getLogger("educafric.errors")


class EducafricError(Exception):
    """Base error rendered as a JSON response"""
    status_code = 400

    def __init__(self, message, status_code=None, **extra):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.extra = extra

    def to_dict(self):
        payload = {'success': False, 'message': self.message}
        payload.update(self.extra)
        return payload


class NotFound(EducafricError):
    status_code = 404


class PermissionDenied(EducafricError):
    status_code = 403


class ValidationFailed(EducafricError):
    status_code = 400

    def __init__(self, message='Validation failed', errors=None, **extra):
        super().__init__(message, errors=errors or {}, **extra)


class Conflict(EducafricError):
    status_code = 409


class PremiumRequired(EducafricError):
    status_code = 403

    def __init__(self, message, **details):
        super().__init__(message, error='PREMIUM_REQUIRED', **details)


class LimitReached(EducafricError):
    status_code = 403

    def __init__(self, message, **details):
        super().__init__(message, error='FREEMIUM_LIMIT_REACHED', **details)


def register_error_handlers(app):
    @app.errorhandler(EducafricError)
    def handle_educafric_error(error):
        db.session.rollback()
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(RateLimitExceeded)
    def handle_rate_limit(error):
        db.session.rollback()
        return jsonify({'success': False, 'message': 'Too many requests. Please try again later.',
                        'limit': str(error.description)}), 429

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        return jsonify({'success': False, 'message': error.description}), error.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        db.session.rollback()
        log.exception("Unhandled error: %s", error)
        return jsonify({'success': False, 'message': 'Internal server error'}), 500
