"""
School data entry: classes, subjects, people, grades, attendance, homework
and timetable slots. All queries are scoped to the caller's school.

The save_* and mark_* helpers are shared with the offline sync endpoints and
return ``(record, updated)``.
"""
import logging
import secrets
from datetime import date, datetime

from flask import Blueprint, jsonify, request

from errors import Conflict, NotFound, PermissionDenied, ValidationFailed
from forms import (AttendanceForm, AttendanceUpdateForm, ClassForm, GradeForm, GradeUpdateForm,
                   HomeworkForm, ParentForm, PersonForm, SchoolSettingsForm, StudentForm, SubjectForm,
                   TimetableSlotForm, id_list, load_form)
from grading import check_mark
from models import (AssignedFee, Attendance, Bulletin, BulletinVerification, BulletinVerificationLog, DeviceToken,
                    Enrollment, Grade, Homework, Notification, NotificationQueue, ParentStudent, Payment, School,
                    SchoolClass, Subject, Subscription, SyncAction, TimetableSlot, User, db)
from notifications import notify, parents_of
from subscriptions import filter_fictitious, freemium_limit, is_sandbox_school
from tenancy import (get_current_user, get_school_object, get_school_user, require_school_id,
                     roles_required, school_query)

log = logging.getLogger("educafric.academics")

academics_bp = Blueprint('academics', __name__, url_prefix='/api')


def current_academic_year(today=None):
    """School years start in September: 2025-2026 runs Sept 2025 to Aug 2026"""
    today = today or date.today()
    start = today.year if today.month >= 9 else today.year - 1
    return f"{start}-{start + 1}"


def generate_matricule(school, year=None):
    """Next sequential matricule for the school, e.g. EDU2025-0001"""
    year = year or date.today().year
    prefix = f"{school.matricule_prefix or 'EDU'}{year}-"
    existing = (User.query.with_entities(User.matricule)
                .filter(User.school_id == school.id, User.matricule.like(prefix + '%'))
                .all())
    numbers = set()
    for (matricule,) in existing:
        tail = matricule[len(prefix):]
        if tail.isdigit():
            numbers.add(int(tail))
    next_number = max(numbers) + 1 if numbers else 1
    return f"{prefix}{next_number:04d}"


def unique_username(base):
    base = ''.join(c for c in base.lower() if c.isalnum() or c in '._-') or 'user'
    candidate = base
    while User.query.filter_by(username=candidate).first() is not None:
        candidate = f"{base}{secrets.randbelow(9000) + 1000}"
    return candidate


def student_class(student, academic_year=None):
    query = Enrollment.query.filter_by(student_id=student.id)
    if academic_year:
        query = query.filter_by(academic_year=academic_year)
    enrollment = query.order_by(Enrollment.academic_year.desc()).first()
    return enrollment.school_class if enrollment else None


def class_students(school_class):
    return (User.query.join(Enrollment, Enrollment.student_id == User.id)
            .filter(Enrollment.class_id == school_class.id, User.role == 'Student', User.is_active.is_(True))
            .order_by(User.last_name, User.first_name)
            .all())


def _check_teaches(user, subject):
    if user.role == 'Teacher' and subject.teacher_id != user.id:
        raise PermissionDenied('You can only enter data for subjects you teach')


def _grade_context(school_id, student_id, class_id, subject_id):
    school_class = get_school_object(SchoolClass, class_id)
    subject = get_school_object(Subject, subject_id)
    student = get_school_user(student_id, 'Student')
    if subject.class_id != school_class.id:
        raise ValidationFailed(errors={'subject_id': ['Subject does not belong to this class']})
    return student, school_class, subject


def _check_bulletin_open(student_id, class_id, term, academic_year):
    bulletin = Bulletin.query.filter_by(student_id=student_id, class_id=class_id, term=term,
                                        academic_year=academic_year).first()
    if bulletin is not None and bulletin.status != 'draft':
        raise Conflict(f'Bulletin already {bulletin.status}; grades for this term are locked')


def save_grade(user, school_id, data, grade=None):
    """Create or update a grade keyed by student, class, subject, term, year and exam type"""
    if grade is not None:
        form = load_form(GradeUpdateForm, data)
        subject = get_school_object(Subject, grade.subject_id)
        _check_teaches(user, subject)
        _check_bulletin_open(grade.student_id, grade.class_id, grade.term, grade.academic_year)
        if form.value.data is not None:
            check_mark(form.value.data)
            grade.value = form.value.data
        if 'comment' in data:
            grade.comment = form.comment.data or None
        grade.updated_at = datetime.utcnow()
        return grade, True

    form = load_form(GradeForm, data)
    student, school_class, subject = _grade_context(school_id, form.student_id.data, form.class_id.data,
                                                    form.subject_id.data)
    _check_teaches(user, subject)
    check_mark(form.value.data)
    exam_type = form.exam_type.data or 'CC'

    _check_bulletin_open(student.id, school_class.id, form.term.data, form.academic_year.data)

    grade = Grade.query.filter_by(student_id=student.id, class_id=school_class.id, subject_id=subject.id,
                                  term=form.term.data, academic_year=form.academic_year.data,
                                  exam_type=exam_type).first()
    updated = grade is not None
    if grade is None:
        grade = Grade(school_id=school_id, student_id=student.id, class_id=school_class.id,
                      subject_id=subject.id, term=form.term.data, academic_year=form.academic_year.data,
                      exam_type=exam_type)
        db.session.add(grade)
    grade.value = form.value.data
    grade.comment = form.comment.data or None
    grade.teacher_id = user.id if user.role == 'Teacher' else (subject.teacher_id or user.id)
    return grade, updated


def mark_attendance(user, school_id, data, record=None):
    """Create or update attendance for a student, class and day"""
    if record is not None:
        form = load_form(AttendanceUpdateForm, data)
        previous = record.status
        if form.status.data:
            record.status = form.status.data
        if 'notes' in data:
            record.notes = form.notes.data or None
        record.marked_by = user.id
        _notify_absence(record, previous)
        return record, True

    form = load_form(AttendanceForm, data)
    school_class = get_school_object(SchoolClass, form.class_id.data)
    student = get_school_user(form.student_id.data, 'Student')
    record = Attendance.query.filter_by(student_id=student.id, class_id=school_class.id,
                                        date=form.date.data).first()
    updated = record is not None
    previous = record.status if record else None
    if record is None:
        record = Attendance(school_id=school_id, student_id=student.id, class_id=school_class.id,
                            date=form.date.data)
        db.session.add(record)
    record.status = form.status.data
    record.notes = form.notes.data or None
    record.marked_by = user.id
    if record.status in ('present', 'late') and record.time_in is None:
        record.time_in = datetime.utcnow()
    _notify_absence(record, previous)
    return record, updated


def _notify_absence(record, previous_status):
    if record.status != 'absent' or previous_status == 'absent':
        return
    student = db.session.get(User, record.student_id)
    school_class = db.session.get(SchoolClass, record.class_id)
    for parent in parents_of(student):
        notify(parent, 'attendance_absence', school_id=record.school_id, student_name=student.full_name,
               date=record.date.strftime('%d/%m/%Y'), class_name=school_class.name)


def save_homework(user, school_id, data, homework=None):
    """Create or update homework; creation is keyed by title, class, subject and due date"""
    if homework is not None:
        data = {**homework.to_dict(), **data}
    form = load_form(HomeworkForm, data)
    school_class = get_school_object(SchoolClass, form.class_id.data)
    subject = get_school_object(Subject, form.subject_id.data)
    if subject.class_id != school_class.id:
        raise ValidationFailed(errors={'subject_id': ['Subject does not belong to this class']})
    _check_teaches(user, subject)

    updated = homework is not None
    if homework is None:
        homework = Homework.query.filter_by(school_id=school_id, title=form.title.data, class_id=school_class.id,
                                            subject_id=subject.id, due_date=form.due_date.data).first()
        updated = homework is not None
        if homework is None:
            homework = Homework(school_id=school_id, teacher_id=user.id)
            db.session.add(homework)
    homework.title = form.title.data
    homework.class_id = school_class.id
    homework.subject_id = subject.id
    homework.description = form.description.data or None
    homework.instructions = form.instructions.data or None
    homework.due_date = form.due_date.data
    homework.priority = form.priority.data or 'medium'
    homework.status = form.status.data or 'active'
    return homework, updated


def remove_grade(user, grade):
    _check_teaches(user, get_school_object(Subject, grade.subject_id))
    _check_bulletin_open(grade.student_id, grade.class_id, grade.term, grade.academic_year)
    db.session.delete(grade)


def remove_homework(user, homework):
    _check_teaches(user, get_school_object(Subject, homework.subject_id))
    db.session.delete(homework)


def _check_slot_overlap(slot_data, exclude_id=None):
    query = TimetableSlot.query.filter_by(school_id=slot_data['school_id'], day_of_week=slot_data['day_of_week'])
    if exclude_id:
        query = query.filter(TimetableSlot.id != exclude_id)
    for other in query.all():
        overlaps = other.start_time < slot_data['end_time'] and slot_data['start_time'] < other.end_time
        if not overlaps:
            continue
        if other.class_id == slot_data['class_id']:
            raise Conflict('The class already has a lesson at this time', slot_id=other.id)
        if slot_data['teacher_id'] and other.teacher_id == slot_data['teacher_id']:
            raise Conflict('The teacher already teaches at this time', slot_id=other.id)


def _create_person(school, role, form, extra=None):
    if form.username.data and User.query.filter_by(username=form.username.data).first():
        raise Conflict(f'Username "{form.username.data}" already exists')
    user = User(
        school_id=school.id,
        role=role,
        first_name=form.first_name.data.strip(),
        last_name=form.last_name.data.strip(),
        email=form.email.data or None,
        phone=form.phone.data or None,
        language=form.language.data or school.language or 'fr',
        **(extra or {})
    )
    base = form.username.data or (extra or {}).get('matricule') or f"{user.first_name}.{user.last_name}"
    user.username = form.username.data or unique_username(base)
    temporary_password = None
    if form.password.data:
        user.set_password(form.password.data)
    else:
        temporary_password = secrets.token_urlsafe(6)
        user.set_password(temporary_password)
        user.password_change_required = True
    db.session.add(user)
    return user, temporary_password


def _people_listing(role):
    school = db.session.get(School, require_school_id())
    users = school_query(User).filter_by(role=role).order_by(User.last_name, User.first_name).all()
    return filter_fictitious([u.to_dict() for u in users], school)


# School settings

@academics_bp.route('/school', methods=['GET'])
@roles_required('Director', 'Teacher', 'Commercial')
def get_school():
    school = db.session.get(School, require_school_id())
    if school is None:
        raise NotFound('School not found')
    return jsonify({'success': True, 'school': school.to_dict(), 'sandbox': is_sandbox_school(school)})


@academics_bp.route('/school', methods=['PUT'])
@roles_required('Director')
def update_school():
    school = db.session.get(School, require_school_id())
    if school is None:
        raise NotFound('School not found')
    payload = request.get_json(silent=True) or {}
    form = load_form(SchoolSettingsForm)
    for field in ('name', 'address', 'phone', 'email', 'language'):
        if field in payload:
            setattr(school, field, getattr(form, field).data or None)
    if 'offline_enabled' in payload:
        school.offline_enabled = form.offline_enabled.data
    db.session.commit()
    return jsonify({'success': True, 'school': school.to_dict()})


# Classes

@academics_bp.route('/classes', methods=['GET'])
@roles_required('Director', 'Teacher')
def list_classes():
    query = school_query(SchoolClass)
    if request.args.get('academic_year'):
        query = query.filter_by(academic_year=request.args['academic_year'])
    classes = query.order_by(SchoolClass.name).all()
    result = []
    for school_class in classes:
        item = school_class.to_dict()
        item['student_count'] = Enrollment.query.filter_by(class_id=school_class.id).count()
        result.append(item)
    return jsonify({'success': True, 'classes': result})


@academics_bp.route('/classes', methods=['POST'])
@roles_required('Director')
@freemium_limit('classes')
def create_class():
    school_id = require_school_id()
    form = load_form(ClassForm)
    if form.head_teacher_id.data:
        get_school_user(form.head_teacher_id.data, 'Teacher')
    if school_query(SchoolClass).filter_by(name=form.name.data, academic_year=form.academic_year.data).first():
        raise Conflict(f'Class "{form.name.data}" already exists for {form.academic_year.data}')
    school_class = SchoolClass(school_id=school_id, name=form.name.data, level=form.level.data or None,
                               academic_year=form.academic_year.data, head_teacher_id=form.head_teacher_id.data)
    db.session.add(school_class)
    db.session.commit()
    log.info("Class %s created in school %s", school_class.name, school_id)
    return jsonify({'success': True, 'class': school_class.to_dict()}), 201


@academics_bp.route('/classes/<int:class_id>', methods=['GET'])
@roles_required('Director', 'Teacher')
def get_class(class_id):
    school_class = get_school_object(SchoolClass, class_id)
    data = school_class.to_dict()
    data['students'] = [s.to_dict() for s in class_students(school_class)]
    data['subjects'] = [s.to_dict() for s in school_class.subjects]
    return jsonify({'success': True, 'class': data})


@academics_bp.route('/classes/<int:class_id>', methods=['PUT'])
@roles_required('Director')
def update_class(class_id):
    school_class = get_school_object(SchoolClass, class_id)
    form = load_form(ClassForm, {**school_class.to_dict(), **(request.get_json(silent=True) or {})})
    if form.head_teacher_id.data:
        get_school_user(form.head_teacher_id.data, 'Teacher')
    school_class.name = form.name.data
    school_class.level = form.level.data or None
    school_class.academic_year = form.academic_year.data
    school_class.head_teacher_id = form.head_teacher_id.data
    db.session.commit()
    return jsonify({'success': True, 'class': school_class.to_dict()})


@academics_bp.route('/classes/<int:class_id>', methods=['DELETE'])
@roles_required('Director')
def delete_class(class_id):
    school_class = get_school_object(SchoolClass, class_id)
    if Enrollment.query.filter_by(class_id=class_id).first() or Grade.query.filter_by(class_id=class_id).first():
        raise Conflict('Class still has students or grades')
    TimetableSlot.query.filter_by(class_id=class_id).delete()
    Homework.query.filter_by(class_id=class_id).delete()
    Subject.query.filter_by(class_id=class_id).delete()
    db.session.delete(school_class)
    db.session.commit()
    return jsonify({'success': True})


# Subjects

@academics_bp.route('/subjects', methods=['GET'])
@roles_required('Director', 'Teacher')
def list_subjects():
    query = school_query(Subject)
    if request.args.get('class_id'):
        query = query.filter_by(class_id=request.args.get('class_id', type=int))
    if get_current_user().role == 'Teacher' and request.args.get('mine') in ('1', 'true'):
        query = query.filter_by(teacher_id=get_current_user().id)
    return jsonify({'success': True, 'subjects': [s.to_dict() for s in query.order_by(Subject.name).all()]})


@academics_bp.route('/subjects', methods=['POST'])
@roles_required('Director')
def create_subject():
    school_id = require_school_id()
    form = load_form(SubjectForm)
    school_class = get_school_object(SchoolClass, form.class_id.data)
    if form.teacher_id.data:
        get_school_user(form.teacher_id.data, 'Teacher')
    subject = Subject(school_id=school_id, class_id=school_class.id, name=form.name.data,
                      code=form.code.data or None, coefficient=form.coefficient.data or 1,
                      teacher_id=form.teacher_id.data)
    db.session.add(subject)
    db.session.commit()
    return jsonify({'success': True, 'subject': subject.to_dict()}), 201


@academics_bp.route('/subjects/<int:subject_id>', methods=['PUT'])
@roles_required('Director')
def update_subject(subject_id):
    subject = get_school_object(Subject, subject_id)
    form = load_form(SubjectForm, {**subject.to_dict(), **(request.get_json(silent=True) or {})})
    get_school_object(SchoolClass, form.class_id.data)
    if form.teacher_id.data:
        get_school_user(form.teacher_id.data, 'Teacher')
    subject.name = form.name.data
    subject.code = form.code.data or None
    subject.coefficient = form.coefficient.data or 1
    subject.class_id = form.class_id.data
    subject.teacher_id = form.teacher_id.data
    db.session.commit()
    return jsonify({'success': True, 'subject': subject.to_dict()})


@academics_bp.route('/subjects/<int:subject_id>', methods=['DELETE'])
@roles_required('Director')
def delete_subject(subject_id):
    subject = get_school_object(Subject, subject_id)
    if Grade.query.filter_by(subject_id=subject_id).first():
        raise Conflict('Subject already has grades')
    TimetableSlot.query.filter_by(subject_id=subject_id).delete()
    Homework.query.filter_by(subject_id=subject_id).delete()
    db.session.delete(subject)
    db.session.commit()
    return jsonify({'success': True})


# Students

@academics_bp.route('/students', methods=['GET'])
@roles_required('Director', 'Teacher')
def list_students():
    school = db.session.get(School, require_school_id())
    if request.args.get('class_id'):
        school_class = get_school_object(SchoolClass, request.args.get('class_id', type=int))
        students = class_students(school_class)
    else:
        students = school_query(User).filter_by(role='Student').order_by(User.last_name, User.first_name).all()
    return jsonify({'success': True, 'students': filter_fictitious([s.to_dict() for s in students], school)})


@academics_bp.route('/students', methods=['POST'])
@roles_required('Director')
@freemium_limit('students')
def create_student():
    school = db.session.get(School, require_school_id())
    form = load_form(StudentForm)
    school_class = get_school_object(SchoolClass, form.class_id.data) if form.class_id.data else None

    matricule = form.matricule.data or generate_matricule(school)
    if User.query.filter_by(school_id=school.id, matricule=matricule).first():
        raise Conflict(f'Matricule {matricule} already exists')

    try:
        student, temporary_password = _create_person(school, 'Student', form, extra={
            'matricule': matricule,
            'gender': form.gender.data or None,
            'date_of_birth': form.date_of_birth.data,
        })
        db.session.flush()
        if school_class is not None:
            db.session.add(Enrollment(student_id=student.id, class_id=school_class.id,
                                      academic_year=school_class.academic_year))
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    log.info("Student %s (%s) created in school %s", student.id, matricule, school.id)
    response = {'success': True, 'student': student.to_dict()}
    if temporary_password:
        response['temporary_password'] = temporary_password
    return jsonify(response), 201


@academics_bp.route('/students/<int:student_id>', methods=['GET'])
@roles_required('Director', 'Teacher')
def get_student(student_id):
    student = get_school_user(student_id, 'Student')
    data = student.to_dict()
    school_class = student_class(student)
    data['class'] = school_class.to_dict() if school_class else None
    data['parents'] = [p.to_dict() for p in parents_of(student)]
    return jsonify({'success': True, 'student': data})


@academics_bp.route('/students/<int:student_id>', methods=['PUT'])
@roles_required('Director')
def update_student(student_id):
    student = get_school_user(student_id, 'Student')
    payload = request.get_json(silent=True) or {}
    form = load_form(StudentForm, {**student.to_dict(), 'username': None, **payload})
    for field in ('first_name', 'last_name', 'email', 'phone', 'gender', 'language'):
        if field in payload:
            setattr(student, field, getattr(form, field).data or None)
    if 'date_of_birth' in payload:
        student.date_of_birth = form.date_of_birth.data
    if 'matricule' in payload and form.matricule.data != student.matricule:
        if User.query.filter_by(school_id=student.school_id, matricule=form.matricule.data).first():
            raise Conflict(f'Matricule {form.matricule.data} already exists')
        student.matricule = form.matricule.data
    if 'is_active' in payload:
        student.is_active = bool(payload['is_active'])
    if form.class_id.data and 'class_id' in payload:
        school_class = get_school_object(SchoolClass, form.class_id.data)
        enrollment = Enrollment.query.filter_by(student_id=student.id,
                                                academic_year=school_class.academic_year).first()
        if enrollment is None:
            db.session.add(Enrollment(student_id=student.id, class_id=school_class.id,
                                      academic_year=school_class.academic_year))
        else:
            enrollment.class_id = school_class.id
    db.session.commit()
    return jsonify({'success': True, 'student': student.to_dict()})


def delete_student_records(student):
    """Remove everything hanging off a student who has no payments"""
    def delete(query):
        query.delete(synchronize_session=False)

    bulletin_ids = [bid for (bid,) in db.session.query(Bulletin.id).filter_by(student_id=student.id)]
    if bulletin_ids:
        verification_ids = [vid for (vid,) in db.session.query(BulletinVerification.id)
                            .filter(BulletinVerification.bulletin_id.in_(bulletin_ids))]
        if verification_ids:
            delete(BulletinVerificationLog.query.filter(BulletinVerificationLog.verification_id.in_(verification_ids)))
            delete(BulletinVerification.query.filter(BulletinVerification.id.in_(verification_ids)))
    for model in (Bulletin, Grade, Attendance, Enrollment, AssignedFee, ParentStudent):
        delete(model.query.filter_by(student_id=student.id))
    delete(NotificationQueue.query.filter_by(recipient_id=student.id))
    for model in (Notification, DeviceToken, SyncAction, Subscription):
        delete(model.query.filter_by(user_id=student.id))


@academics_bp.route('/students/<int:student_id>', methods=['DELETE'])
@roles_required('Director')
def delete_student(student_id):
    student = get_school_user(student_id, 'Student')
    if Payment.query.filter_by(student_id=student.id).first():
        raise Conflict('Student has payment records; deactivate the account instead')
    try:
        delete_student_records(student)
        db.session.delete(student)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return jsonify({'success': True})


# Teachers

@academics_bp.route('/teachers', methods=['GET'])
@roles_required('Director')
def list_teachers():
    return jsonify({'success': True, 'teachers': _people_listing('Teacher')})


@academics_bp.route('/teachers', methods=['POST'])
@roles_required('Director')
@freemium_limit('teachers')
def create_teacher():
    school = db.session.get(School, require_school_id())
    form = load_form(PersonForm)
    teacher, temporary_password = _create_person(school, 'Teacher', form)
    db.session.commit()
    response = {'success': True, 'teacher': teacher.to_dict()}
    if temporary_password:
        response['temporary_password'] = temporary_password
    return jsonify(response), 201


@academics_bp.route('/teachers/<int:teacher_id>', methods=['PUT'])
@roles_required('Director')
def update_teacher(teacher_id):
    teacher = get_school_user(teacher_id, 'Teacher')
    payload = request.get_json(silent=True) or {}
    form = load_form(PersonForm, {**teacher.to_dict(), 'username': None, **payload})
    for field in ('first_name', 'last_name', 'email', 'phone', 'language'):
        if field in payload:
            setattr(teacher, field, getattr(form, field).data or None)
    if 'is_active' in payload:
        teacher.is_active = bool(payload['is_active'])
    db.session.commit()
    return jsonify({'success': True, 'teacher': teacher.to_dict()})


@academics_bp.route('/teachers/<int:teacher_id>', methods=['DELETE'])
@roles_required('Director')
def delete_teacher(teacher_id):
    teacher = get_school_user(teacher_id, 'Teacher')
    Subject.query.filter_by(teacher_id=teacher.id).update({'teacher_id': None})
    TimetableSlot.query.filter_by(teacher_id=teacher.id).update({'teacher_id': None})
    SchoolClass.query.filter_by(head_teacher_id=teacher.id).update({'head_teacher_id': None})
    # Keep grade history, deactivate instead of deleting when grades exist
    if Grade.query.filter_by(teacher_id=teacher.id).first():
        teacher.is_active = False
    else:
        db.session.delete(teacher)
    db.session.commit()
    return jsonify({'success': True})


# Parents

@academics_bp.route('/parents', methods=['GET'])
@roles_required('Director')
def list_parents():
    parents = _people_listing('Parent')
    for parent in parents:
        links = ParentStudent.query.filter_by(parent_id=parent['id']).all()
        parent['children'] = [link.student_id for link in links]
    return jsonify({'success': True, 'parents': parents})


def _link_children(parent, student_ids, relationship='parent'):
    linked = []
    for student_id in student_ids:
        student = get_school_user(student_id, 'Student')
        if ParentStudent.query.filter_by(parent_id=parent.id, student_id=student.id).first() is None:
            db.session.add(ParentStudent(parent_id=parent.id, student_id=student.id, relationship=relationship))
        linked.append(student.id)
    return linked


@academics_bp.route('/parents', methods=['POST'])
@roles_required('Director')
@freemium_limit('parents')
def create_parent():
    school = db.session.get(School, require_school_id())
    form = load_form(ParentForm)
    student_ids = id_list('student_ids')
    try:
        parent, temporary_password = _create_person(school, 'Parent', form)
        db.session.flush()
        children = _link_children(parent, student_ids, form.relationship.data or 'parent')
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    response = {'success': True, 'parent': parent.to_dict(), 'children': children}
    if temporary_password:
        response['temporary_password'] = temporary_password
    return jsonify(response), 201


@academics_bp.route('/parents/<int:parent_id>/children', methods=['POST'])
@roles_required('Director')
def link_children(parent_id):
    parent = get_school_user(parent_id, 'Parent')
    children = _link_children(parent, id_list('student_ids'),
                              (request.get_json(silent=True) or {}).get('relationship') or 'parent')
    db.session.commit()
    return jsonify({'success': True, 'children': children})


# Grades

@academics_bp.route('/grades', methods=['GET'])
@roles_required('Director', 'Teacher')
def list_grades():
    query = school_query(Grade)
    for arg in ('class_id', 'subject_id', 'student_id'):
        if request.args.get(arg):
            query = query.filter_by(**{arg: request.args.get(arg, type=int)})
    for arg in ('term', 'academic_year', 'exam_type'):
        if request.args.get(arg):
            query = query.filter_by(**{arg: request.args[arg]})
    grades = query.order_by(Grade.student_id, Grade.subject_id, Grade.exam_type).all()
    return jsonify({'success': True, 'grades': [g.to_dict() for g in grades]})


@academics_bp.route('/grades', methods=['POST'])
@roles_required('Director', 'Teacher')
def enter_grade():
    grade, updated = save_grade(get_current_user(), require_school_id(), request.get_json(silent=True) or {})
    db.session.commit()
    return jsonify({'success': True, 'grade': grade.to_dict(), 'updated': updated}), 200 if updated else 201


@academics_bp.route('/grades/<int:grade_id>', methods=['DELETE'])
@roles_required('Director', 'Teacher')
def delete_grade(grade_id):
    remove_grade(get_current_user(), get_school_object(Grade, grade_id))
    db.session.commit()
    return jsonify({'success': True})


# Attendance

@academics_bp.route('/attendance', methods=['GET'])
@roles_required('Director', 'Teacher')
def list_attendance():
    query = school_query(Attendance)
    if request.args.get('class_id'):
        query = query.filter_by(class_id=request.args.get('class_id', type=int))
    if request.args.get('student_id'):
        query = query.filter_by(student_id=request.args.get('student_id', type=int))
    if request.args.get('date'):
        try:
            query = query.filter_by(date=datetime.strptime(request.args['date'], '%Y-%m-%d').date())
        except ValueError:
            raise ValidationFailed(errors={'date': ['Use YYYY-MM-DD']})
    records = query.order_by(Attendance.date.desc(), Attendance.student_id).all()
    return jsonify({'success': True, 'attendance': [r.to_dict() for r in records]})


@academics_bp.route('/attendance', methods=['POST'])
@roles_required('Director', 'Teacher')
def record_attendance():
    """Mark one record, or a whole class with {"records": [...]}"""
    user = get_current_user()
    school_id = require_school_id()
    payload = request.get_json(silent=True) or {}
    items = payload.get('records') if isinstance(payload.get('records'), list) else [payload]
    results = []
    try:
        for item in items:
            record, updated = mark_attendance(user, school_id, item)
            db.session.flush()
            results.append({**record.to_dict(), 'updated': updated})
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    if 'records' in payload:
        return jsonify({'success': True, 'attendance': results})
    return jsonify({'success': True, 'attendance': results[0], 'updated': results[0]['updated']})


# Homework

@academics_bp.route('/homework', methods=['GET'])
@roles_required('Director', 'Teacher', 'Student', 'Parent')
def list_homework():
    user = get_current_user()
    query = school_query(Homework)
    if user.role == 'Student':
        school_class = student_class(user)
        query = query.filter_by(class_id=school_class.id if school_class else -1)
    elif user.role == 'Parent':
        class_ids = [c.id for c in (student_class(s) for s in _children(user)) if c]
        query = query.filter(Homework.class_id.in_(class_ids or [-1]))
    elif request.args.get('class_id'):
        query = query.filter_by(class_id=request.args.get('class_id', type=int))
    homework = query.order_by(Homework.due_date.desc(), Homework.id.desc()).all()
    return jsonify({'success': True, 'homework': [h.to_dict() for h in homework]})


@academics_bp.route('/homework', methods=['POST'])
@roles_required('Director', 'Teacher')
def create_homework():
    homework, updated = save_homework(get_current_user(), require_school_id(), request.get_json(silent=True) or {})
    db.session.commit()
    return jsonify({'success': True, 'homework': homework.to_dict(), 'updated': updated}), 200 if updated else 201


@academics_bp.route('/homework/<int:homework_id>', methods=['PUT'])
@roles_required('Director', 'Teacher')
def update_homework(homework_id):
    homework = get_school_object(Homework, homework_id)
    homework, _ = save_homework(get_current_user(), require_school_id(), request.get_json(silent=True) or {},
                                homework)
    db.session.commit()
    return jsonify({'success': True, 'homework': homework.to_dict()})


@academics_bp.route('/homework/<int:homework_id>', methods=['DELETE'])
@roles_required('Director', 'Teacher')
def delete_homework(homework_id):
    remove_homework(get_current_user(), get_school_object(Homework, homework_id))
    db.session.commit()
    return jsonify({'success': True})


# Timetable

@academics_bp.route('/timetable', methods=['GET'])
@roles_required('Director', 'Teacher', 'Student', 'Parent')
def list_timetable():
    user = get_current_user()
    query = school_query(TimetableSlot)
    if user.role == 'Student':
        school_class = student_class(user)
        query = query.filter_by(class_id=school_class.id if school_class else -1)
    elif request.args.get('class_id'):
        query = query.filter_by(class_id=request.args.get('class_id', type=int))
    elif request.args.get('teacher_id'):
        query = query.filter_by(teacher_id=request.args.get('teacher_id', type=int))
    elif user.role == 'Teacher':
        query = query.filter_by(teacher_id=user.id)
    slots = query.order_by(TimetableSlot.day_of_week, TimetableSlot.start_time).all()
    return jsonify({'success': True, 'timetable': [s.to_dict() for s in slots]})


def _slot_from_form(school_id, form, slot=None):
    school_class = get_school_object(SchoolClass, form.class_id.data)
    subject = get_school_object(Subject, form.subject_id.data)
    if subject.class_id != school_class.id:
        raise ValidationFailed(errors={'subject_id': ['Subject does not belong to this class']})
    teacher_id = form.teacher_id.data or subject.teacher_id
    if teacher_id:
        get_school_user(teacher_id, 'Teacher')
    slot_data = {
        'school_id': school_id,
        'class_id': school_class.id,
        'subject_id': subject.id,
        'teacher_id': teacher_id,
        'day_of_week': form.day_of_week.data,
        'start_time': form.start_time.data,
        'end_time': form.end_time.data,
        'room': form.room.data or None,
    }
    _check_slot_overlap(slot_data, exclude_id=slot.id if slot else None)
    if slot is None:
        slot = TimetableSlot()
        db.session.add(slot)
    for key, value in slot_data.items():
        setattr(slot, key, value)
    return slot


@academics_bp.route('/timetable', methods=['POST'])
@roles_required('Director')
def create_slot():
    slot = _slot_from_form(require_school_id(), load_form(TimetableSlotForm))
    db.session.commit()
    return jsonify({'success': True, 'slot': slot.to_dict()}), 201


@academics_bp.route('/timetable/<int:slot_id>', methods=['PUT'])
@roles_required('Director')
def update_slot(slot_id):
    slot = get_school_object(TimetableSlot, slot_id)
    form = load_form(TimetableSlotForm, {**slot.to_dict(), **(request.get_json(silent=True) or {})})
    slot = _slot_from_form(require_school_id(), form, slot)
    db.session.commit()
    return jsonify({'success': True, 'slot': slot.to_dict()})


@academics_bp.route('/timetable/<int:slot_id>', methods=['DELETE'])
@roles_required('Director')
def delete_slot(slot_id):
    db.session.delete(get_school_object(TimetableSlot, slot_id))
    db.session.commit()
    return jsonify({'success': True})


def _children(parent):
    return [link.student for link in ParentStudent.query.filter_by(parent_id=parent.id).all()]
