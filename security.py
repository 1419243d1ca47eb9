from datetime import datetime, timedelta

from flask import current_app
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from jose import JWTError, jwt
from werkzeug.middleware.proxy_fix import ProxyFix

# Keyed on the peer address; behind a proxy, PROXY_FIX makes that the real client
limiter = Limiter(key_func=get_remote_address)


def add_security_headers(response):
    """Add security headers to response"""
    # Content Security Policy
    response.headers['Content-Security-Policy'] = (
        "default-src 'self'; "
        "img-src 'self' data:; "
        "frame-ancestors 'none'; "
        "form-action 'self'"
    )

    # Other security headers
    response.headers['X-Frame-Options'] = 'SAMEORIGIN'
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['Referrer-Policy'] = 'same-origin'
    response.headers['Permissions-Policy'] = 'geolocation=(), microphone=(), camera=()'

    # PDFs and API payloads carry pupil data, never cache them
    if (response.mimetype or '').startswith('image/'):
        response.headers['Cache-Control'] = 'public, max-age=31536000'
    else:
        response.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, max-age=0'

    return response


def init_security(app):
    """Initialize security features for the Flask app"""
    if app.config.get('PROXY_FIX'):
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=app.config['PROXY_FIX'], x_proto=1, x_host=1)
    limiter.init_app(app)
    app.after_request(add_security_headers)


def create_access_token(user):
    """Signed bearer token for mobile and offline clients"""
    now = datetime.utcnow()
    claims = {
        'sub': str(user.id),
        'role': user.role,
        'school_id': user.school_id,
        'iat': now,
        'exp': now + timedelta(minutes=current_app.config['JWT_EXPIRES_MINUTES']),
    }
    return jwt.encode(claims, current_app.config['JWT_SECRET_KEY'],
                      algorithm=current_app.config['JWT_ALGORITHM'])


def decode_access_token(token):
    """Return the token claims, or None when the token is invalid or expired"""
    try:
        return jwt.decode(token, current_app.config['JWT_SECRET_KEY'],
                          algorithms=[current_app.config['JWT_ALGORITHM']])
    except JWTError:
        return None

