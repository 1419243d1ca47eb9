import logging
from datetime import datetime

from flask import Blueprint, g, jsonify, session

from errors import PermissionDenied, ValidationFailed
from forms import ChangePasswordForm, LoginForm, load_form
from models import School, User, db
from security import create_access_token
from subscriptions import get_access, has_offline_access, serialize_access
from tenancy import get_current_user, login_required, validate_tenant_access

log = logging.getLogger("educafric.auth")

auth_bp = Blueprint('auth', __name__, url_prefix='/api/auth')


def user_profile(user):
    school = db.session.get(School, user.school_id) if user.school_id else None
    return {
        'user': user.to_dict(),
        'school': school.to_dict() if school else None,
        'subscription': serialize_access(get_access(user)),
        'offline_access': has_offline_access(user),
    }


@auth_bp.route('/login', methods=['POST'])
def login():
    form = load_form(LoginForm)
    user = User.query.filter_by(username=form.username.data.strip()).first()
    if user is None or not user.check_password(form.password.data):
        log.warning("Failed login for %r", form.username.data)
        raise PermissionDenied('Invalid username or password', status_code=401)
    validate_tenant_access(user)

    session.clear()
    session['user_id'] = user.id
    session['user_role'] = user.role
    session['school_id'] = user.school_id
    session.permanent = True
    g.current_user = user

    user.last_login_at = datetime.utcnow()
    db.session.commit()
    log.info("User %s (%s) logged in", user.id, user.role)
    return jsonify({
        'success': True,
        'token': create_access_token(user),
        'password_change_required': bool(user.password_change_required),
        **user_profile(user),
    })


@auth_bp.route('/logout', methods=['POST'])
def logout():
    session.clear()
    g.pop('current_user', None)
    return jsonify({'success': True, 'message': 'You have been logged out successfully'})


@auth_bp.route('/me', methods=['GET'])
@login_required
def me():
    return jsonify({'success': True, **user_profile(get_current_user())})


@auth_bp.route('/change-password', methods=['POST'])
@login_required
def change_password():
    user = get_current_user()
    form = load_form(ChangePasswordForm)
    if not user.check_password(form.current_password.data):
        raise ValidationFailed('Current password is incorrect',
                               errors={'current_password': ['Current password is incorrect']})
    user.set_password(form.new_password.data)
    user.password_change_required = False
    db.session.commit()
    log.info("User %s changed their password", user.id)
    return jsonify({'success': True, 'message': 'Password updated successfully'})
