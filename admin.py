"""
Site administration: schools, their Director accounts, subscriptions and
subscription notices. Every route requires the SiteAdmin role.
"""
import logging
from datetime import datetime, timedelta

from flask import Blueprint, current_app, jsonify, request

from errors import Conflict, NotFound, ValidationFailed
from forms import ActivatePlanForm, PersonForm, ResetCredentialsForm, SchoolForm, load_form
from models import (AssignedFee, Attendance, Bulletin, BulletinVerification, BulletinVerificationLog,
                    DeviceToken, Enrollment, FeeAuditLog, FeeReceipt, FeeStructure, Grade, Homework,
                    Notification, NotificationLog, NotificationQueue, ParentStudent, Payment, PaymentItem, School,
                    SchoolClass, Subject, Subscription, SyncAction, TimetableSlot, User, db)
from notifications import notify, render_message
from subscriptions import activate_school_plan, expire_lapsed_schools
from tenancy import get_current_user, roles_required

log = logging.getLogger("educafric.admin")

admin_bp = Blueprint('admin', __name__, url_prefix='/api/admin')


def _get_school(school_id):
    school = db.session.get(School, school_id)
    if school is None:
        raise NotFound('School not found')
    return school


def school_directors(school):
    return User.query.filter_by(school_id=school.id, role='Director').all()


def school_summary(school):
    subscription = (Subscription.query.filter_by(owner_type='school', school_id=school.id, is_active=True)
                    .order_by(Subscription.created_at.desc()).first())
    notifications = (NotificationLog.query.filter_by(school_id=school.id)
                     .order_by(NotificationLog.sent_at.desc()).limit(3).all())
    director = User.query.filter_by(school_id=school.id, role='Director').first()
    return {
        **school.to_dict(),
        'director': director.to_dict() if director else None,
        'subscription': subscription.to_dict() if subscription else None,
        'notifications': [n.to_dict() for n in notifications],
        'days_remaining': school.days_remaining(current_app.config['TRIAL_DAYS']),
        'needs_notification': school.needs_notification(),
        'student_count': User.query.filter_by(school_id=school.id, role='Student').count(),
    }


def create_school(form, created_by):
    """Create a school on a trial with its Director account"""
    if User.query.filter_by(username=form.director_username.data).first():
        raise Conflict(f'Username "{form.director_username.data}" already exists! '
                       'Please choose a different username.')
    now = datetime.utcnow()
    trial_end = now + timedelta(days=current_app.config['TRIAL_DAYS'])
    school = School(
        name=form.school_name.data.strip(),
        address=form.address.data or None,
        phone=form.phone.data or None,
        email=form.email.data or None,
        language=form.language.data or 'fr',
        matricule_prefix=form.matricule_prefix.data or 'EDU',
        is_sandbox=form.is_sandbox.data,
        is_active=True,
        plan_id='ecole_publique',
        subscription_status='trial',
        trial_start_date=now,
        subscription_end_date=trial_end,
    )
    db.session.add(school)
    db.session.flush()

    director = User(
        username=form.director_username.data,
        role='Director',
        school_id=school.id,
        first_name=form.director_first_name.data or '',
        last_name=form.director_last_name.data or '',
        email=form.director_email.data or None,
        phone=form.director_phone.data or None,
        language=school.language,
        password_change_required=True,
    )
    director.set_password(form.director_password.data)
    db.session.add(director)

    db.session.add(Subscription(
        owner_type='school',
        school_id=school.id,
        plan_id='ecole_publique',
        start_date=now,
        end_date=trial_end,
        amount_paid=0,
        created_by=created_by,
        notes=f"Initial {current_app.config['TRIAL_DAYS']}-day trial subscription",
    ))
    return school, director


def delete_school_data(school):
    """Remove a school and everything that belongs to it"""
    school_id = school.id
    user_ids = [uid for (uid,) in db.session.query(User.id).filter_by(school_id=school_id)]
    class_ids = [cid for (cid,) in db.session.query(SchoolClass.id).filter_by(school_id=school_id)]
    verification_ids = [vid for (vid,) in db.session.query(BulletinVerification.id).filter_by(school_id=school_id)]
    payment_ids = [pid for (pid,) in db.session.query(Payment.id).filter_by(school_id=school_id)]

    def delete(query):
        query.delete(synchronize_session=False)

    if verification_ids:
        delete(BulletinVerificationLog.query.filter(BulletinVerificationLog.verification_id.in_(verification_ids)))
    delete(BulletinVerification.query.filter_by(school_id=school_id))
    delete(Bulletin.query.filter_by(school_id=school_id))
    if payment_ids:
        delete(PaymentItem.query.filter(PaymentItem.payment_id.in_(payment_ids)))
    for model in (FeeReceipt, FeeAuditLog, Payment, AssignedFee, FeeStructure, Grade, Attendance, Homework,
                  TimetableSlot, Subject, NotificationQueue, NotificationLog):
        delete(model.query.filter_by(school_id=school_id))
    if class_ids:
        delete(Enrollment.query.filter(Enrollment.class_id.in_(class_ids)))
    if user_ids:
        delete(Enrollment.query.filter(Enrollment.student_id.in_(user_ids)))
        delete(ParentStudent.query.filter(db.or_(ParentStudent.parent_id.in_(user_ids),
                                                 ParentStudent.student_id.in_(user_ids))))
        delete(NotificationQueue.query.filter(NotificationQueue.recipient_id.in_(user_ids)))
        for model in (Notification, DeviceToken, SyncAction):
            delete(model.query.filter(model.user_id.in_(user_ids)))
        delete(Subscription.query.filter(Subscription.user_id.in_(user_ids)))
    delete(Subscription.query.filter_by(school_id=school_id))
    delete(SchoolClass.query.filter_by(school_id=school_id))
    delete(User.query.filter_by(school_id=school_id))
    delete(School.query.filter_by(id=school_id))


def send_subscription_notice(school):
    """Log an expiry notice, or a reminder when 1 to 7 days remain (once a day)"""
    days_remaining = school.days_remaining(current_app.config['TRIAL_DAYS'])
    if school.is_subscription_expired():
        template = 'subscription_expired'
        days_remaining = 0
    elif school.needs_notification():
        template = 'subscription_reminder'
    else:
        return None

    _, message = render_message(template, school.language or 'fr', school_name=school.name,
                                days_remaining=days_remaining)
    entry = NotificationLog(school_id=school.id, notification_type=template, message=message,
                            days_remaining=days_remaining)
    db.session.add(entry)
    for director in school_directors(school):
        notify(director, template, school_id=school.id, school_name=school.name, days_remaining=days_remaining)
    school.last_notification_sent = datetime.utcnow()
    log.info("Sent %s to school %s (%s days remaining)", template, school.id, days_remaining)
    return entry


def check_subscriptions():
    """Expire lapsed schools, then send the notices that are due"""
    expired = expire_lapsed_schools()
    sent = []
    for school in expired:
        entry = send_subscription_notice(school)
        if entry is not None:
            sent.append(entry)
    for school in School.query.filter(School.subscription_status.in_(('trial', 'premium'))).all():
        if school.needs_notification():
            sent.append(send_subscription_notice(school))
    db.session.commit()
    return {'expired': len(expired), 'notices': len(sent)}


@admin_bp.route('/schools', methods=['GET'])
@roles_required('SiteAdmin')
def list_schools():
    schools = School.query.order_by(School.created_at.desc()).all()
    return jsonify({'success': True, 'schools': [school_summary(s) for s in schools]})


@admin_bp.route('/schools', methods=['POST'])
@roles_required('SiteAdmin')
def create_school_route():
    form = load_form(SchoolForm)
    try:
        school, director = create_school(form, get_current_user().username)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    log.info("School %s created with Director %s", school.id, director.username)
    return jsonify({'success': True, 'school': school_summary(school), 'director': director.to_dict()}), 201


@admin_bp.route('/schools/<int:school_id>', methods=['GET'])
@roles_required('SiteAdmin')
def get_school(school_id):
    return jsonify({'success': True, 'school': school_summary(_get_school(school_id))})


@admin_bp.route('/schools/<int:school_id>/block', methods=['POST'])
@roles_required('SiteAdmin')
def block_school(school_id):
    school = _get_school(school_id)
    school.is_blocked = True
    db.session.commit()
    log.warning("School %s blocked", school.id)
    return jsonify({'success': True, 'message': f'School "{school.name}" has been blocked!'})


@admin_bp.route('/schools/<int:school_id>/unblock', methods=['POST'])
@roles_required('SiteAdmin')
def unblock_school(school_id):
    school = _get_school(school_id)
    school.is_blocked = False
    db.session.commit()
    log.info("School %s unblocked", school.id)
    return jsonify({'success': True, 'message': f'School "{school.name}" has been unblocked!'})


@admin_bp.route('/schools/<int:school_id>', methods=['DELETE'])
@roles_required('SiteAdmin')
def delete_school(school_id):
    school = _get_school(school_id)
    name = school.name
    try:
        delete_school_data(school)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    log.warning("School %s (%s) deleted with all its data", school_id, name)
    return jsonify({'success': True, 'message': f'School "{name}" and all associated data deleted successfully!'})


@admin_bp.route('/schools/<int:school_id>/reset-credentials', methods=['POST'])
@roles_required('SiteAdmin')
def reset_credentials(school_id):
    school = _get_school(school_id)
    form = load_form(ResetCredentialsForm)
    director = User.query.filter_by(school_id=school.id, role='Director').first()
    taken = User.query.filter_by(username=form.new_username.data).first()
    if taken is not None and taken is not director:
        raise Conflict(f'Username "{form.new_username.data}" already exists')
    if director is None:
        director = User(role='Director', school_id=school.id, language=school.language)
        db.session.add(director)
    director.username = form.new_username.data
    director.set_password(form.new_password.data)
    director.password_change_required = True
    director.is_active = True
    db.session.commit()
    log.info("Director credentials reset for school %s", school.id)
    return jsonify({'success': True, 'director': director.to_dict()})


@admin_bp.route('/schools/<int:school_id>/plan', methods=['POST'])
@roles_required('SiteAdmin')
def activate_plan(school_id):
    school = _get_school(school_id)
    form = load_form(ActivatePlanForm)
    try:
        subscription = activate_school_plan(school, form.plan_id.data, amount_paid=form.amount_paid.data,
                                            payment_method=form.payment_method.data or None,
                                            payment_reference=form.payment_reference.data or None,
                                            created_by=get_current_user().username, notes=form.notes.data or None)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return jsonify({'success': True, 'school': school_summary(school), 'subscription': subscription.to_dict()})


@admin_bp.route('/schools/<int:school_id>/commercial', methods=['POST'])
@roles_required('SiteAdmin')
def assign_commercial(school_id):
    school = _get_school(school_id)
    commercial_id = (request.get_json(silent=True) or {}).get('commercial_id')
    if commercial_id is not None:
        commercial = db.session.get(User, commercial_id)
        if commercial is None or commercial.role != 'Commercial':
            raise NotFound('Commercial not found')
    school.commercial_id = commercial_id
    db.session.commit()
    return jsonify({'success': True, 'school': school.to_dict(), 'commercial_id': commercial_id})


@admin_bp.route('/schools/<int:school_id>/notify', methods=['POST'])
@roles_required('SiteAdmin')
def send_notification(school_id):
    school = _get_school(school_id)
    entry = send_subscription_notice(school)
    if entry is None:
        raise Conflict('No notice is due: reminders go out once a day when 1 to 7 days remain',
                       days_remaining=school.days_remaining(current_app.config['TRIAL_DAYS']))
    db.session.commit()
    return jsonify({'success': True, 'notification': entry.to_dict()})


@admin_bp.route('/users', methods=['POST'])
@roles_required('SiteAdmin')
def create_platform_user():
    """Accounts outside any school: freelance tutors and sales staff"""
    payload = request.get_json(silent=True) or {}
    role = payload.get('role')
    if role not in ('Freelancer', 'Commercial'):
        raise ValidationFailed(errors={'role': ['Choose Freelancer or Commercial']})
    form = load_form(PersonForm, payload)
    if not form.username.data or not form.password.data:
        raise ValidationFailed(errors={'username': ['Username and password are required']})
    if User.query.filter_by(username=form.username.data).first():
        raise Conflict(f'Username "{form.username.data}" already exists')
    user = User(username=form.username.data, role=role, first_name=form.first_name.data,
                last_name=form.last_name.data, email=form.email.data or None, phone=form.phone.data or None,
                language=form.language.data or 'fr')
    user.set_password(form.password.data)
    db.session.add(user)
    db.session.commit()
    return jsonify({'success': True, 'user': user.to_dict()}), 201
