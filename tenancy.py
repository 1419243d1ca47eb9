"""
Authentication decorators and school-scoped data access.

Every school-scoped read goes through ``school_query`` or ``get_school_object``
so that ids from another school answer 404 instead of leaking data.
"""
from functools import wraps

from flask import g, request, session

from errors import NotFound, PermissionDenied
from models import School, User, db
from security import decode_access_token


def _user_from_bearer():
    header = request.headers.get('Authorization', '')
    if not header.startswith('Bearer '):
        return None
    claims = decode_access_token(header[7:].strip())
    if not claims:
        return None
    try:
        user_id = int(claims.get('sub'))
    except (TypeError, ValueError):
        return None
    return db.session.get(User, user_id)


def get_current_user():
    if 'current_user' in g:
        return g.current_user
    user = None
    if session.get('user_id'):
        user = db.session.get(User, session['user_id'])
    if user is None:
        user = _user_from_bearer()
    g.current_user = user
    return user


def forget_current_user():
    """Resolve the caller again on every request"""
    g.pop('current_user', None)


def validate_tenant_access(user):
    """Raise when the user or their school may not use the platform"""
    if not user.is_active:
        raise PermissionDenied('Account is inactive. Please contact support.')
    if user.role == 'SiteAdmin' or user.school_id is None:
        return
    school = db.session.get(School, user.school_id)
    if school is None or not school.is_active:
        raise PermissionDenied('School account is inactive. Please contact support.')
    if school.is_blocked:
        raise PermissionDenied('School account is suspended. Please contact support.')


def login_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user = get_current_user()
        if user is None:
            raise PermissionDenied('Authentication required', status_code=401)
        validate_tenant_access(user)
        return f(*args, **kwargs)
    return decorated_function


def roles_required(*roles):
    """Restrict a view to the given roles. SiteAdmin passes every check."""
    def decorator(f):
        @wraps(f)
        @login_required
        def decorated_function(*args, **kwargs):
            user = get_current_user()
            if user.role != 'SiteAdmin' and user.role not in roles:
                raise PermissionDenied('Access denied for role %s' % user.role)
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def get_current_school_id():
    """School id of the caller; SiteAdmin may act on a school passed as ?school_id="""
    user = get_current_user()
    if user is None:
        return None
    if user.role == 'SiteAdmin':
        school_id = request.args.get('school_id', type=int)
        if school_id is None and request.is_json:
            school_id = (request.get_json(silent=True) or {}).get('school_id')
        return school_id
    return user.school_id


def require_school_id():
    school_id = get_current_school_id()
    if not school_id:
        raise PermissionDenied('Access denied. No school context.')
    return school_id


def school_query(model):
    """Query filtered to the caller's school"""
    return model.query.filter_by(school_id=require_school_id())


def get_school_object(model, object_id):
    obj = db.session.get(model, object_id)
    if obj is None or obj.school_id != require_school_id():
        raise NotFound(f'{model.__name__} not found')
    return obj


def get_school_user(user_id, role=None):
    user = db.session.get(User, user_id)
    if user is None or user.school_id != require_school_id() or (role and user.role != role):
        raise NotFound(f'{role or "User"} not found')
    return user
