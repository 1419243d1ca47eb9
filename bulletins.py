"""
Bulletins (report cards): computation from grades, the approval workflow and
public authenticity checks.

Workflow::

    draft -> submitted -> approved -> sent
               |
               +-> draft (rejected, with a reason)

Approving a bulletin issues a verification record whose hash covers the
bulletin content. The public verify endpoint reports ``tampered`` when the
stored content no longer matches that hash.
"""
import hashlib
import hmac
import json
import logging
import secrets
import uuid
from datetime import date, datetime, timedelta

from flask import Blueprint, current_app, jsonify, request

from academics import class_students
from errors import Conflict, NotFound, PermissionDenied, ValidationFailed
from forms import BulletinCommentsForm, BulletinGenerateForm, RejectForm, load_form
from grading import (annual_average, appreciation, class_statistics, rank, round2, subject_average,
                     term_average)
from models import (Attendance, Bulletin, BulletinVerification, BulletinVerificationLog, Grade,
                    ParentStudent, SchoolClass, db)
from notifications import notify, parents_of
from security import limiter
from subscriptions import feature_required
from tenancy import get_current_user, get_school_object, login_required, roles_required, school_query

log = logging.getLogger("educafric.bulletins")

bulletins_bp = Blueprint('bulletins', __name__, url_prefix='/api/bulletins')

TRANSITIONS = {
    'submit': ('draft', 'submitted'),
    'approve': ('submitted', 'approved'),
    'send': ('approved', 'sent'),
    'reject': ('submitted', 'draft'),
}
SHORT_CODE_ALPHABET = 'ABCDEFGHJKLMNPQRSTUVWXYZ23456789'


def term_date_range(term, academic_year):
    """Calendar span of a term: T1 Sept-Dec, T2 Jan-Mar, T3 Apr-Aug"""
    start_year, end_year = (int(y) for y in academic_year.split('-'))
    if term == 'T1':
        return date(start_year, 9, 1), date(start_year, 12, 31)
    if term == 'T2':
        return date(end_year, 1, 1), date(end_year, 3, 31)
    return date(end_year, 4, 1), date(end_year, 8, 31)


def _term_marks(school_class, term, academic_year):
    marks = {}
    grades = Grade.query.filter_by(class_id=school_class.id, term=term, academic_year=academic_year).all()
    for grade in grades:
        marks.setdefault((grade.student_id, grade.subject_id), {})[grade.exam_type] = grade.value
    return marks


def _term_averages(students, subjects, marks):
    """Per student: ({subject_id: average}, term average)"""
    result = {}
    for student in students:
        by_subject = {}
        for subject in subjects:
            components = marks.get((student.id, subject.id), {})
            by_subject[subject.id] = subject_average(components.get('CC'), components.get('EXAM'))
        average = term_average([(by_subject[s.id], s.coefficient) for s in subjects])
        result[student.id] = (by_subject, average)
    return result


def compute_class_results(school_class, term, academic_year, language='fr'):
    """Full bulletin content for every enrolled student of a class and term"""
    students = class_students(school_class)
    subjects = sorted(school_class.subjects, key=lambda s: s.name)
    marks = _term_marks(school_class, term, academic_year)
    averages = _term_averages(students, subjects, marks)

    subject_ranks = {
        subject.id: rank({student.id: averages[student.id][0][subject.id] for student in students})
        for subject in subjects
    }
    general = {student_id: avg for student_id, (_, avg) in averages.items()}
    general_ranks = rank(general)
    stats = class_statistics(list(general.values()))

    annual = {}
    if term == 'T3':
        previous = {t: _term_averages(students, subjects, _term_marks(school_class, t, academic_year))
                    for t in ('T1', 'T2')}
        for student in students:
            annual[student.id] = annual_average({
                'T1': previous['T1'][student.id][1],
                'T2': previous['T2'][student.id][1],
                'T3': general[student.id],
            })

    start, end = term_date_range(term, academic_year)
    results = {}
    for student in students:
        by_subject, average = averages[student.id]
        subject_results = []
        total_points = 0.0
        total_coefficients = 0
        for subject in subjects:
            components = marks.get((student.id, subject.id), {})
            subject_avg = by_subject[subject.id]
            points = round2(subject_avg * subject.coefficient) if subject_avg is not None else None
            if subject_avg is not None:
                total_points += points
                total_coefficients += subject.coefficient
            subject_results.append({
                'subject_id': subject.id,
                'subject_name': subject.name,
                'teacher_name': subject.teacher.full_name if subject.teacher else None,
                'coefficient': subject.coefficient,
                'cc': components.get('CC'),
                'exam': components.get('EXAM'),
                'average': subject_avg,
                'points': points,
                'rank': subject_ranks[subject.id].get(student.id),
                'appreciation': appreciation(subject_avg, language),
            })
        absences = (Attendance.query
                    .filter(Attendance.student_id == student.id, Attendance.class_id == school_class.id,
                            Attendance.status == 'absent', Attendance.date >= start, Attendance.date <= end)
                    .count())
        results[student.id] = {
            'subject_results': subject_results,
            'general_average': average,
            'annual_average': annual.get(student.id),
            'total_points': round2(total_points),
            'total_coefficients': total_coefficients,
            'class_rank': general_ranks.get(student.id),
            'class_size': len(students),
            'class_min': stats['min'],
            'class_max': stats['max'],
            'class_mean': stats['mean'],
            'appreciation': appreciation(average, language),
            'absences': absences,
        }
    return results


def generate_bulletins(user, school_class, term, academic_year, student_ids=None):
    """Create or refresh draft bulletins; bulletins past draft are skipped"""
    language = school_class.school.language or 'fr'
    results = compute_class_results(school_class, term, academic_year, language)
    summary = {'created': [], 'updated': [], 'skipped': []}

    for student_id, content in results.items():
        if student_ids is not None and student_id not in student_ids:
            continue
        bulletin = Bulletin.query.filter_by(student_id=student_id, class_id=school_class.id, term=term,
                                            academic_year=academic_year).first()
        if bulletin is not None and bulletin.status != 'draft':
            summary['skipped'].append({'id': bulletin.id, 'student_id': student_id, 'status': bulletin.status})
            continue
        if bulletin is None:
            bulletin = Bulletin(school_id=school_class.school_id, student_id=student_id, class_id=school_class.id,
                                term=term, academic_year=academic_year, status='draft', created_by=user.id)
            db.session.add(bulletin)
            bucket = summary['created']
        else:
            bucket = summary['updated']
        for key, value in content.items():
            setattr(bulletin, key, value)
        bulletin.updated_at = datetime.utcnow()
        db.session.flush()
        bucket.append(bulletin.id)

    log.info("Bulletins for class %s %s %s: %d created, %d updated, %d skipped", school_class.id, term,
             academic_year, len(summary['created']), len(summary['updated']), len(summary['skipped']))
    return summary


def content_hash(bulletin):
    """Salted SHA-256 over the canonical JSON of the bulletin's essential content"""
    content = {
        'student_id': bulletin.student_id,
        'matricule': bulletin.student.matricule if bulletin.student else None,
        'class_id': bulletin.class_id,
        'term': bulletin.term,
        'academic_year': bulletin.academic_year,
        'general_average': bulletin.general_average,
        'annual_average': bulletin.annual_average,
        'class_rank': bulletin.class_rank,
        'class_size': bulletin.class_size,
        'subject_results': [
            {k: r.get(k) for k in ('subject_id', 'coefficient', 'cc', 'exam', 'average')}
            for r in (bulletin.subject_results or [])
        ],
    }
    canonical = json.dumps(content, sort_keys=True, separators=(',', ':'))
    salt = current_app.config['SIGNATURE_SALT'].encode('utf-8')
    return hmac.new(salt, canonical.encode('utf-8'), hashlib.sha256).hexdigest()


def _new_short_code():
    while True:
        code = ''.join(secrets.choice(SHORT_CODE_ALPHABET) for _ in range(8))
        if BulletinVerification.query.filter_by(short_code=code).first() is None:
            return code


def issue_verification(bulletin, user):
    verification = bulletin.verification
    if verification is None:
        verification = BulletinVerification(bulletin_id=bulletin.id, school_id=bulletin.school_id,
                                            verification_code=uuid.uuid4().hex, short_code=_new_short_code())
        db.session.add(verification)
    verification.verification_hash = content_hash(bulletin)
    verification.student_name = bulletin.student.full_name
    verification.student_matricule = bulletin.student.matricule
    verification.class_name = bulletin.school_class.name
    verification.school_name = bulletin.school.name
    verification.term = bulletin.term
    verification.academic_year = bulletin.academic_year
    verification.general_average = (f"{bulletin.general_average:.2f}"
                                    if bulletin.general_average is not None else None)
    verification.class_rank = bulletin.class_rank
    verification.total_students = bulletin.class_size
    verification.is_active = True
    verification.issued_by = user.id
    verification.issued_at = datetime.utcnow()
    valid_days = current_app.config.get('VERIFICATION_VALID_DAYS') or 0
    verification.expires_at = verification.issued_at + timedelta(days=valid_days) if valid_days else None
    return verification


def verification_url(verification):
    base_url = current_app.config['BASE_URL'].rstrip('/')
    return f"{base_url}/verify?code={verification.verification_code}"


def _notify_parents(bulletin):
    average = bulletin.general_average
    if average is not None and average >= 16:
        template = 'bulletin_excellent'
    elif average is not None and average < 10:
        template = 'bulletin_needs_improvement'
    else:
        template = 'bulletin_available'
    parents = parents_of(bulletin.student)
    for parent in parents:
        notify(parent, template, school_id=bulletin.school_id,
               student_name=bulletin.student.full_name,
               term=bulletin.term,
               academic_year=bulletin.academic_year,
               average=f"{average:.2f}" if average is not None else '-',
               rank=bulletin.class_rank or '-',
               class_size=bulletin.class_size or '-',
               appreciation=bulletin.appreciation)
    return len(parents)


def transition(bulletin, action, user, reason=None):
    source, target = TRANSITIONS[action]
    if bulletin.status != source:
        raise Conflict(f'Cannot {action} a bulletin in status {bulletin.status}',
                       current_status=bulletin.status)
    now = datetime.utcnow()
    if action == 'submit':
        bulletin.submitted_at = now
        bulletin.rejection_reason = None
    elif action == 'approve':
        bulletin.approved_by = user.id
        bulletin.approved_at = now
        db.session.flush()
        issue_verification(bulletin, user)
    elif action == 'send':
        bulletin.sent_at = now
        _notify_parents(bulletin)
    elif action == 'reject':
        bulletin.rejection_reason = reason
        bulletin.submitted_at = None
    bulletin.status = target
    log.info("Bulletin %s %s -> %s by user %s", bulletin.id, source, target, user.id)
    return bulletin


def can_read_bulletin(user, bulletin):
    """School staff read everything in their school; families read released bulletins only"""
    if user.role == 'SiteAdmin':
        return True
    if user.role in ('Director', 'Teacher'):
        return bulletin.school_id == user.school_id
    if not bulletin.is_released:
        return False
    if user.role == 'Student':
        return bulletin.student_id == user.id
    if user.role == 'Parent':
        return ParentStudent.query.filter_by(parent_id=user.id, student_id=bulletin.student_id).first() is not None
    return False


def get_readable_bulletin(bulletin_id):
    bulletin = db.session.get(Bulletin, bulletin_id)
    if bulletin is None or not can_read_bulletin(get_current_user(), bulletin):
        raise NotFound('Bulletin not found')
    return bulletin


def verify_code(code, ip_address=None, user_agent=None, access_type='web'):
    """Check a verification or short code; returns (result, verification)"""
    code = (code or '').strip()
    verification = None
    if code:
        verification = (BulletinVerification.query.filter_by(verification_code=code.lower()).first()
                        or BulletinVerification.query.filter_by(short_code=code.upper()).first())

    if verification is None:
        result = 'invalid_code'
    elif not verification.is_active:
        result = 'deactivated'
    elif verification.expires_at is not None and verification.expires_at < datetime.utcnow():
        result = 'expired'
    elif verification.bulletin is None or not hmac.compare_digest(content_hash(verification.bulletin),
                                                                  verification.verification_hash):
        result = 'tampered'
    else:
        result = 'valid'
        verification.verification_count = (verification.verification_count or 0) + 1
        verification.last_verified_at = datetime.utcnow()
        verification.last_verified_ip = ip_address

    db.session.add(BulletinVerificationLog(
        verification_id=verification.id if verification else None,
        access_type=access_type,
        access_result=result,
        ip_address=ip_address,
        user_agent=(user_agent or '')[:300] or None,
    ))
    db.session.commit()
    if result != 'valid':
        log.warning("Bulletin verification %s for code %r from %s", result, code[:40], ip_address)
    return result, verification


@bulletins_bp.route('/generate', methods=['POST'])
@roles_required('Director', 'Teacher')
@feature_required('bulletins')
def generate():
    form = load_form(BulletinGenerateForm)
    school_class = get_school_object(SchoolClass, form.class_id.data)
    if form.academic_year.data != school_class.academic_year:
        raise ValidationFailed(errors={'academic_year': ['Class belongs to another academic year']})
    try:
        summary = generate_bulletins(get_current_user(), school_class, form.term.data, form.academic_year.data)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return jsonify({'success': True, **summary})


@bulletins_bp.route('', methods=['GET'])
@roles_required('Director', 'Teacher')
def list_bulletins():
    query = school_query(Bulletin)
    if request.args.get('class_id'):
        query = query.filter_by(class_id=request.args.get('class_id', type=int))
    for arg in ('term', 'academic_year', 'status'):
        if request.args.get(arg):
            query = query.filter_by(**{arg: request.args[arg]})
    bulletins = query.order_by(Bulletin.class_id, Bulletin.class_rank.is_(None), Bulletin.class_rank).all()
    return jsonify({'success': True, 'bulletins': [b.to_dict() for b in bulletins]})


@bulletins_bp.route('/mine', methods=['GET'])
@roles_required('Parent', 'Student')
def my_bulletins():
    user = get_current_user()
    if user.role == 'Student':
        student_ids = [user.id]
    else:
        student_ids = [link.student_id for link in ParentStudent.query.filter_by(parent_id=user.id).all()]
    bulletins = (Bulletin.query
                 .filter(Bulletin.student_id.in_(student_ids or [-1]), Bulletin.status.in_(('approved', 'sent')))
                 .order_by(Bulletin.academic_year.desc(), Bulletin.term.desc())
                 .all())
    return jsonify({'success': True, 'bulletins': [b.to_dict() for b in bulletins]})


@bulletins_bp.route('/<int:bulletin_id>', methods=['GET'])
@login_required
def get_bulletin(bulletin_id):
    bulletin = get_readable_bulletin(bulletin_id)
    data = bulletin.to_dict()
    if bulletin.verification is not None and bulletin.verification.is_active:
        data['verification'] = {
            'short_code': bulletin.verification.short_code,
            'url': verification_url(bulletin.verification),
        }
    return jsonify({'success': True, 'bulletin': data})


@bulletins_bp.route('/<int:bulletin_id>/comments', methods=['PUT'])
@roles_required('Director', 'Teacher')
def update_comments(bulletin_id):
    bulletin = get_school_object(Bulletin, bulletin_id)
    if bulletin.status != 'draft':
        raise Conflict('Only draft bulletins can be edited', current_status=bulletin.status)
    payload = request.get_json(silent=True) or {}
    form = load_form(BulletinCommentsForm)
    if 'teacher_comments' in payload:
        bulletin.teacher_comments = form.teacher_comments.data or None
    if 'director_comments' in payload:
        if get_current_user().role == 'Teacher':
            raise PermissionDenied('Only the director writes director comments')
        bulletin.director_comments = form.director_comments.data or None
    db.session.commit()
    return jsonify({'success': True, 'bulletin': bulletin.to_dict()})


def _apply(bulletin_id, action, reason=None):
    bulletin = get_school_object(Bulletin, bulletin_id)
    try:
        transition(bulletin, action, get_current_user(), reason)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return jsonify({'success': True, 'bulletin': bulletin.to_dict()})


@bulletins_bp.route('/<int:bulletin_id>/submit', methods=['POST'])
@roles_required('Director', 'Teacher')
def submit(bulletin_id):
    return _apply(bulletin_id, 'submit')


@bulletins_bp.route('/<int:bulletin_id>/approve', methods=['POST'])
@roles_required('Director')
@feature_required('bulletins')
def approve(bulletin_id):
    return _apply(bulletin_id, 'approve')


@bulletins_bp.route('/<int:bulletin_id>/send', methods=['POST'])
@roles_required('Director')
@feature_required('bulletins')
def send(bulletin_id):
    return _apply(bulletin_id, 'send')


@bulletins_bp.route('/<int:bulletin_id>/reject', methods=['POST'])
@roles_required('Director')
def reject(bulletin_id):
    form = load_form(RejectForm)
    return _apply(bulletin_id, 'reject', form.reason.data)


@bulletins_bp.route('/<int:bulletin_id>/verification/deactivate', methods=['POST'])
@roles_required('Director')
def deactivate_verification(bulletin_id):
    bulletin = get_school_object(Bulletin, bulletin_id)
    if bulletin.verification is None:
        raise NotFound('Bulletin has no verification record')
    bulletin.verification.is_active = False
    db.session.commit()
    return jsonify({'success': True})


def verification_rate_limit():
    return f"{current_app.config['VERIFICATION_RATE_LIMIT']} per hour"


def _log_rate_limited(request_limit):
    db.session.add(BulletinVerificationLog(access_type='web', access_result='rate_limited',
                                           ip_address=request.remote_addr))
    db.session.commit()
    log.warning("Bulletin verification rate limit hit by %s", request.remote_addr)


@bulletins_bp.route('/verify', methods=['GET', 'POST'])
@limiter.limit(verification_rate_limit, on_breach=_log_rate_limited)
def verify():
    """Public authenticity check by verification code or short code"""
    ip_address = request.remote_addr

    payload = (request.get_json(silent=True) or {}) if request.method == 'POST' else {}
    code = request.args.get('code') or payload.get('code') or payload.get('short_code')
    access_type = 'qr' if request.args.get('source') == 'qr' else 'web'
    result, verification = verify_code(code, ip_address, request.headers.get('User-Agent'), access_type)

    if result == 'invalid_code':
        return jsonify({'success': False, 'valid': False, 'result': result,
                        'message': 'Verification code not found'}), 404

    response = {'success': True, 'valid': result == 'valid', 'result': result}
    if result == 'valid':
        response['bulletin'] = {
            'student_name': verification.student_name,
            'matricule': verification.student_matricule,
            'class_name': verification.class_name,
            'school_name': verification.school_name,
            'term': verification.term,
            'academic_year': verification.academic_year,
            'general_average': verification.general_average,
            'class_rank': verification.class_rank,
            'total_students': verification.total_students,
            'issued_at': verification.issued_at.isoformat() if verification.issued_at else None,
            'verification_count': verification.verification_count,
        }
    return jsonify(response)
