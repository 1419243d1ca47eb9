from datetime import date

from flask import Blueprint, jsonify
from sqlalchemy import func

from academics import current_academic_year, student_class
from fees import fee_stats
from models import (AssignedFee, Attendance, Bulletin, Grade, Homework, ParentStudent, Payment, School,
                    SchoolClass, Subject, Subscription, User, db)
from subscriptions import FREEMIUM_LIMITS, check_limit, get_access, has_offline_access, serialize_access
from tenancy import get_current_user, login_required

dashboards_bp = Blueprint('dashboards', __name__, url_prefix='/api/dashboard')


def current_term(today=None):
    today = today or date.today()
    if today.month >= 9:
        return 'T1'
    if today.month <= 3:
        return 'T2'
    return 'T3'


def latest_released_bulletin(student):
    bulletin = (Bulletin.query
                .filter(Bulletin.student_id == student.id, Bulletin.status.in_(('approved', 'sent')))
                .order_by(Bulletin.academic_year.desc(), Bulletin.term.desc())
                .first())
    return bulletin.to_dict() if bulletin else None


def attendance_rate(student):
    total = Attendance.query.filter_by(student_id=student.id).count()
    if not total:
        return None
    present = (Attendance.query.filter(Attendance.student_id == student.id,
                                       Attendance.status.in_(('present', 'late')))
               .count())
    return round(present / total * 100, 1)


def homework_due(school_class, today=None):
    if school_class is None:
        return []
    today = today or date.today()
    homework = (Homework.query
                .filter(Homework.class_id == school_class.id, Homework.status == 'active',
                        Homework.due_date >= today)
                .order_by(Homework.due_date)
                .limit(10)
                .all())
    return [h.to_dict() for h in homework]


def director_dashboard(user):
    school_id = user.school_id
    bulletins = dict(db.session.query(Bulletin.status, func.count(Bulletin.id))
                     .filter(Bulletin.school_id == school_id).group_by(Bulletin.status).all())
    return {
        'counts': {
            'students': User.query.filter_by(school_id=school_id, role='Student').count(),
            'teachers': User.query.filter_by(school_id=school_id, role='Teacher').count(),
            'parents': User.query.filter_by(school_id=school_id, role='Parent').count(),
            'classes': SchoolClass.query.filter_by(school_id=school_id,
                                                   academic_year=current_academic_year()).count(),
        },
        'fees': fee_stats(school_id),
        'bulletins': {status: bulletins.get(status, 0) for status in ('draft', 'submitted', 'approved', 'sent')},
        'subscription': serialize_access(get_access(user)),
        'usage': {resource: check_limit(user, resource) for resource in FREEMIUM_LIMITS},
        'offline_access': has_offline_access(user),
    }


def teacher_dashboard(user):
    subjects = Subject.query.filter_by(school_id=user.school_id, teacher_id=user.id).all()
    class_ids = sorted({s.class_id for s in subjects} | {
        c.id for c in SchoolClass.query.filter_by(school_id=user.school_id, head_teacher_id=user.id)})
    classes = SchoolClass.query.filter(SchoolClass.id.in_(class_ids or [-1])).all()
    term, year = current_term(), current_academic_year()
    grades_entered = Grade.query.filter_by(teacher_id=user.id, term=term, academic_year=year).count()
    pending = (Bulletin.query
               .filter(Bulletin.class_id.in_(class_ids or [-1]), Bulletin.status.in_(('draft', 'submitted')))
               .count())
    return {
        'classes': [c.to_dict() for c in classes],
        'subjects': [s.to_dict() for s in subjects],
        'term': term,
        'academic_year': year,
        'grades_entered': grades_entered,
        'pending_bulletins': pending,
        'offline_access': has_offline_access(user),
    }


def parent_dashboard(user):
    children = []
    for link in ParentStudent.query.filter_by(parent_id=user.id).all():
        child = link.student
        school_class = student_class(child)
        balance = (db.session.query(func.coalesce(func.sum(AssignedFee.balance_amount), 0))
                   .filter(AssignedFee.student_id == child.id).scalar())
        children.append({
            'student': child.to_dict(),
            'class': school_class.to_dict() if school_class else None,
            'latest_bulletin': latest_released_bulletin(child),
            'fee_balance': int(balance or 0),
            'attendance_rate': attendance_rate(child),
        })
    return {'children': children, 'subscription': serialize_access(get_access(user))}


def student_dashboard(user):
    school_class = student_class(user)
    return {
        'class': school_class.to_dict() if school_class else None,
        'latest_bulletin': latest_released_bulletin(user),
        'attendance_rate': attendance_rate(user),
        'homework_due': homework_due(school_class),
    }


def freelancer_dashboard(user):
    access = get_access(user)
    subscription = (Subscription.query.filter_by(user_id=user.id, owner_type='freelancer', is_active=True)
                    .order_by(Subscription.created_at.desc()).first())
    return {
        'subscription': serialize_access(access),
        'current_subscription': subscription.to_dict() if subscription else None,
        'limits': access['limits'],
    }


def commercial_dashboard(user):
    schools = School.query.filter_by(commercial_id=user.id).order_by(School.name).all()
    return {
        'schools': [{**s.to_dict(), 'days_remaining': s.days_remaining()} for s in schools],
        'by_status': {status: sum(1 for s in schools if s.subscription_status == status)
                      for status in ('trial', 'premium', 'freemium', 'expired')},
    }


def site_admin_dashboard(user):
    return {
        'schools': School.query.count(),
        'blocked_schools': School.query.filter_by(is_blocked=True).count(),
        'schools_by_status': dict(db.session.query(School.subscription_status, func.count(School.id))
                                  .group_by(School.subscription_status).all()),
        'users_by_role': dict(db.session.query(User.role, func.count(User.id)).group_by(User.role).all()),
        'payments_total': int(db.session.query(func.coalesce(func.sum(Payment.amount), 0)).scalar() or 0),
        'bulletins_sent': Bulletin.query.filter_by(status='sent').count(),
    }


DASHBOARDS = {
    'SiteAdmin': site_admin_dashboard,
    'Director': director_dashboard,
    'Teacher': teacher_dashboard,
    'Parent': parent_dashboard,
    'Student': student_dashboard,
    'Freelancer': freelancer_dashboard,
    'Commercial': commercial_dashboard,
}


@dashboards_bp.route('', methods=['GET'])
@login_required
def dashboard():
    user = get_current_user()
    return jsonify({'success': True, 'role': user.role, 'dashboard': DASHBOARDS[user.role](user)})
