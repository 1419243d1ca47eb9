from datetime import datetime, timedelta

import bcrypt
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

ROLES = ('SiteAdmin', 'Director', 'Teacher', 'Student', 'Parent', 'Freelancer', 'Commercial')
SCHOOL_ROLES = ('Director', 'Teacher', 'Commercial')
TERMS = ('T1', 'T2', 'T3')
EXAM_TYPES = ('CC', 'EXAM')
ATTENDANCE_STATUSES = ('present', 'absent', 'late', 'excused')
BULLETIN_STATUSES = ('draft', 'submitted', 'approved', 'sent')
FEE_OPEN_STATUSES = ('pending', 'partial', 'overdue')


class School(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    address = db.Column(db.String(500))
    phone = db.Column(db.String(50))
    email = db.Column(db.String(120))
    language = db.Column(db.String(2), default='fr')  # fr or en, drives bulletin labels
    matricule_prefix = db.Column(db.String(10), default='EDU')
    is_sandbox = db.Column(db.Boolean, default=False)
    is_active = db.Column(db.Boolean, default=True)
    is_blocked = db.Column(db.Boolean, default=False)
    offline_enabled = db.Column(db.Boolean, default=False)
    plan_id = db.Column(db.String(50), default='freemium')
    subscription_status = db.Column(db.String(20), default='freemium')  # freemium, trial, premium, expired
    trial_start_date = db.Column(db.DateTime)
    subscription_end_date = db.Column(db.DateTime)
    last_notification_sent = db.Column(db.DateTime)
    commercial_id = db.Column(db.Integer, db.ForeignKey('user.id', use_alter=True, name='fk_school_commercial'))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def days_remaining(self, trial_days=30):
        """Days left on the trial or the paid period"""
        now = datetime.utcnow()
        if self.subscription_status == 'trial':
            start = self.trial_start_date or now
            end = self.subscription_end_date or start + timedelta(days=trial_days)
            return max(0, (end - now).days)
        if self.subscription_status == 'premium':
            if self.subscription_end_date is None:
                return None  # No expiration
            return max(0, (self.subscription_end_date - now).days)
        return 0

    def is_subscription_expired(self):
        if self.subscription_status not in ('trial', 'premium'):
            return self.subscription_status == 'expired'
        if self.subscription_end_date is None:
            return False
        return self.subscription_end_date <= datetime.utcnow()

    def needs_notification(self):
        """Remind once per day when 7 days or less remain"""
        if self.subscription_status not in ('trial', 'premium'):
            return False
        days_left = self.days_remaining()
        if days_left is None or days_left <= 0 or days_left > 7:
            return False
        if not self.last_notification_sent:
            return True
        return self.last_notification_sent.date() != datetime.utcnow().date()

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'address': self.address,
            'phone': self.phone,
            'email': self.email,
            'language': self.language,
            'is_sandbox': self.is_sandbox,
            'is_active': self.is_active,
            'is_blocked': self.is_blocked,
            'offline_enabled': self.offline_enabled,
            'plan_id': self.plan_id,
            'subscription_status': self.subscription_status,
            'subscription_end_date': self.subscription_end_date.isoformat() if self.subscription_end_date else None,
        }


class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), nullable=False, unique=True)
    email = db.Column(db.String(120))
    phone = db.Column(db.String(50))
    password_hash = db.Column(db.String(128), nullable=False)
    role = db.Column(db.String(20), nullable=False)
    first_name = db.Column(db.String(100), nullable=False, default='')
    last_name = db.Column(db.String(100), nullable=False, default='')
    matricule = db.Column(db.String(40))
    gender = db.Column(db.String(10))
    date_of_birth = db.Column(db.Date)
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=True)
    language = db.Column(db.String(2), default='fr')
    is_active = db.Column(db.Boolean, default=True)
    password_change_required = db.Column(db.Boolean, default=False)
    last_login_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    school = db.relationship('School', foreign_keys=[school_id], backref='users')

    __table_args__ = (db.UniqueConstraint('school_id', 'matricule', name='unique_school_matricule'),)

    def set_password(self, password):
        self.password_hash = bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')

    def check_password(self, password):
        if not password or not self.password_hash:
            return False
        return bcrypt.checkpw(password.encode('utf-8'), self.password_hash.encode('utf-8'))

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}".strip() or self.username

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'email': self.email,
            'phone': self.phone,
            'role': self.role,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'full_name': self.full_name,
            'matricule': self.matricule,
            'gender': self.gender,
            'school_id': self.school_id,
            'language': self.language,
            'is_active': self.is_active,
            'password_change_required': self.password_change_required,
        }


class ParentStudent(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    parent_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    relationship = db.Column(db.String(30), default='parent')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    parent = db.relationship('User', foreign_keys=[parent_id])
    student = db.relationship('User', foreign_keys=[student_id])

    __table_args__ = (db.UniqueConstraint('parent_id', 'student_id', name='unique_parent_student'),)


class SchoolClass(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=False)
    name = db.Column(db.String(100), nullable=False)
    level = db.Column(db.String(50))
    academic_year = db.Column(db.String(9), nullable=False)  # 2025-2026
    head_teacher_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    school = db.relationship('School', backref='classes')
    head_teacher = db.relationship('User', foreign_keys=[head_teacher_id])

    __table_args__ = (db.UniqueConstraint('school_id', 'name', 'academic_year', name='unique_school_class'),)

    def to_dict(self):
        return {
            'id': self.id,
            'school_id': self.school_id,
            'name': self.name,
            'level': self.level,
            'academic_year': self.academic_year,
            'head_teacher_id': self.head_teacher_id,
        }


class Enrollment(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    class_id = db.Column(db.Integer, db.ForeignKey('school_class.id'), nullable=False)
    academic_year = db.Column(db.String(9), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    student = db.relationship('User')
    school_class = db.relationship('SchoolClass', backref='enrollments')

    # One class per student per academic year
    __table_args__ = (db.UniqueConstraint('student_id', 'academic_year', name='unique_student_year'),)


class Subject(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=False)
    class_id = db.Column(db.Integer, db.ForeignKey('school_class.id'), nullable=False)
    name = db.Column(db.String(100), nullable=False)
    code = db.Column(db.String(20))
    coefficient = db.Column(db.Integer, nullable=False, default=1)
    teacher_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    school_class = db.relationship('SchoolClass', backref='subjects')
    teacher = db.relationship('User')

    def to_dict(self):
        return {
            'id': self.id,
            'class_id': self.class_id,
            'name': self.name,
            'code': self.code,
            'coefficient': self.coefficient,
            'teacher_id': self.teacher_id,
        }


class Grade(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    class_id = db.Column(db.Integer, db.ForeignKey('school_class.id'), nullable=False)
    subject_id = db.Column(db.Integer, db.ForeignKey('subject.id'), nullable=False)
    teacher_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    term = db.Column(db.String(2), nullable=False)
    academic_year = db.Column(db.String(9), nullable=False)
    exam_type = db.Column(db.String(10), nullable=False, default='CC')
    value = db.Column(db.Float, nullable=False)
    comment = db.Column(db.String(300))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    subject = db.relationship('Subject')

    __table_args__ = (db.UniqueConstraint('student_id', 'class_id', 'subject_id', 'term', 'academic_year', 'exam_type',
                                          name='unique_grade_entry'),)

    def to_dict(self):
        return {
            'id': self.id,
            'student_id': self.student_id,
            'class_id': self.class_id,
            'subject_id': self.subject_id,
            'teacher_id': self.teacher_id,
            'term': self.term,
            'academic_year': self.academic_year,
            'exam_type': self.exam_type,
            'value': self.value,
            'comment': self.comment,
        }


class Attendance(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    class_id = db.Column(db.Integer, db.ForeignKey('school_class.id'), nullable=False)
    date = db.Column(db.Date, nullable=False)
    status = db.Column(db.String(10), nullable=False)
    notes = db.Column(db.String(300))
    time_in = db.Column(db.DateTime)
    time_out = db.Column(db.DateTime)
    marked_by = db.Column(db.Integer, db.ForeignKey('user.id'))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (db.UniqueConstraint('student_id', 'class_id', 'date', name='unique_attendance_day'),)

    def to_dict(self):
        return {
            'id': self.id,
            'student_id': self.student_id,
            'class_id': self.class_id,
            'date': self.date.isoformat(),
            'status': self.status,
            'notes': self.notes,
            'time_in': self.time_in.isoformat() if self.time_in else None,
            'time_out': self.time_out.isoformat() if self.time_out else None,
            'marked_by': self.marked_by,
        }


class Homework(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=False)
    class_id = db.Column(db.Integer, db.ForeignKey('school_class.id'), nullable=False)
    subject_id = db.Column(db.Integer, db.ForeignKey('subject.id'), nullable=False)
    teacher_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    instructions = db.Column(db.Text)
    due_date = db.Column(db.Date)
    priority = db.Column(db.String(10), default='medium')
    status = db.Column(db.String(10), default='active')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'class_id': self.class_id,
            'subject_id': self.subject_id,
            'teacher_id': self.teacher_id,
            'title': self.title,
            'description': self.description,
            'instructions': self.instructions,
            'due_date': self.due_date.isoformat() if self.due_date else None,
            'priority': self.priority,
            'status': self.status,
        }


class TimetableSlot(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=False)
    class_id = db.Column(db.Integer, db.ForeignKey('school_class.id'), nullable=False)
    subject_id = db.Column(db.Integer, db.ForeignKey('subject.id'), nullable=False)
    teacher_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    day_of_week = db.Column(db.Integer, nullable=False)  # 1=Monday
    start_time = db.Column(db.String(5), nullable=False)  # HH:MM
    end_time = db.Column(db.String(5), nullable=False)
    room = db.Column(db.String(50))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    subject = db.relationship('Subject')
    teacher = db.relationship('User')

    def to_dict(self):
        return {
            'id': self.id,
            'class_id': self.class_id,
            'subject_id': self.subject_id,
            'subject_name': self.subject.name if self.subject else None,
            'teacher_id': self.teacher_id,
            'day_of_week': self.day_of_week,
            'start_time': self.start_time,
            'end_time': self.end_time,
            'room': self.room,
        }


class Bulletin(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    class_id = db.Column(db.Integer, db.ForeignKey('school_class.id'), nullable=False)
    term = db.Column(db.String(2), nullable=False)
    academic_year = db.Column(db.String(9), nullable=False)
    status = db.Column(db.String(10), nullable=False, default='draft')
    subject_results = db.Column(db.JSON, default=list)
    general_average = db.Column(db.Float)
    annual_average = db.Column(db.Float)
    total_points = db.Column(db.Float)
    total_coefficients = db.Column(db.Integer)
    class_rank = db.Column(db.Integer)
    class_size = db.Column(db.Integer)
    class_min = db.Column(db.Float)
    class_max = db.Column(db.Float)
    class_mean = db.Column(db.Float)
    appreciation = db.Column(db.String(50))
    absences = db.Column(db.Integer, default=0)
    teacher_comments = db.Column(db.Text)
    director_comments = db.Column(db.Text)
    rejection_reason = db.Column(db.Text)
    created_by = db.Column(db.Integer, db.ForeignKey('user.id'))
    submitted_at = db.Column(db.DateTime)
    approved_by = db.Column(db.Integer, db.ForeignKey('user.id'))
    approved_at = db.Column(db.DateTime)
    sent_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    student = db.relationship('User', foreign_keys=[student_id])
    school_class = db.relationship('SchoolClass')
    school = db.relationship('School')

    __table_args__ = (db.UniqueConstraint('student_id', 'class_id', 'term', 'academic_year', name='unique_student_bulletin'),)

    @property
    def is_released(self):
        return self.status in ('approved', 'sent')

    def to_dict(self):
        return {
            'id': self.id,
            'student_id': self.student_id,
            'student_name': self.student.full_name if self.student else None,
            'matricule': self.student.matricule if self.student else None,
            'class_id': self.class_id,
            'class_name': self.school_class.name if self.school_class else None,
            'term': self.term,
            'academic_year': self.academic_year,
            'status': self.status,
            'subject_results': self.subject_results or [],
            'general_average': self.general_average,
            'annual_average': self.annual_average,
            'total_points': self.total_points,
            'total_coefficients': self.total_coefficients,
            'class_rank': self.class_rank,
            'class_size': self.class_size,
            'class_min': self.class_min,
            'class_max': self.class_max,
            'class_mean': self.class_mean,
            'appreciation': self.appreciation,
            'absences': self.absences,
            'teacher_comments': self.teacher_comments,
            'director_comments': self.director_comments,
            'rejection_reason': self.rejection_reason,
            'approved_at': self.approved_at.isoformat() if self.approved_at else None,
            'sent_at': self.sent_at.isoformat() if self.sent_at else None,
        }


class BulletinVerification(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    bulletin_id = db.Column(db.Integer, db.ForeignKey('bulletin.id'), nullable=False, unique=True)
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=False)
    verification_code = db.Column(db.String(32), nullable=False, unique=True)
    short_code = db.Column(db.String(8), nullable=False, unique=True)
    verification_hash = db.Column(db.String(64), nullable=False)
    student_name = db.Column(db.String(200), nullable=False)
    student_matricule = db.Column(db.String(40))
    class_name = db.Column(db.String(100), nullable=False)
    school_name = db.Column(db.String(200), nullable=False)
    term = db.Column(db.String(2), nullable=False)
    academic_year = db.Column(db.String(9), nullable=False)
    general_average = db.Column(db.String(10))
    class_rank = db.Column(db.Integer)
    total_students = db.Column(db.Integer)
    is_active = db.Column(db.Boolean, default=True)
    verification_count = db.Column(db.Integer, default=0)
    last_verified_at = db.Column(db.DateTime)
    last_verified_ip = db.Column(db.String(64))
    issued_by = db.Column(db.Integer, db.ForeignKey('user.id'))
    issued_at = db.Column(db.DateTime, default=datetime.utcnow)
    expires_at = db.Column(db.DateTime)

    bulletin = db.relationship('Bulletin', backref=db.backref('verification', uselist=False))


class BulletinVerificationLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    verification_id = db.Column(db.Integer, db.ForeignKey('bulletin_verification.id'))
    access_type = db.Column(db.String(20), nullable=False)
    access_result = db.Column(db.String(20), nullable=False)
    ip_address = db.Column(db.String(64))
    user_agent = db.Column(db.String(300))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class FeeStructure(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    fee_type = db.Column(db.String(30), nullable=False, default='tuition')
    amount = db.Column(db.Integer, nullable=False)  # XAF has no minor unit
    currency = db.Column(db.String(3), default='XAF')
    class_id = db.Column(db.Integer, db.ForeignKey('school_class.id'))
    frequency = db.Column(db.String(10), default='term')
    due_date = db.Column(db.Date)
    sibling_discount = db.Column(db.Integer, default=0)  # percent
    is_active = db.Column(db.Boolean, default=True)
    is_mandatory = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'fee_type': self.fee_type,
            'amount': self.amount,
            'currency': self.currency,
            'class_id': self.class_id,
            'frequency': self.frequency,
            'due_date': self.due_date.isoformat() if self.due_date else None,
            'sibling_discount': self.sibling_discount,
            'is_active': self.is_active,
            'is_mandatory': self.is_mandatory,
        }


class AssignedFee(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    fee_structure_id = db.Column(db.Integer, db.ForeignKey('fee_structure.id'), nullable=False)
    original_amount = db.Column(db.Integer, nullable=False)
    discount_amount = db.Column(db.Integer, default=0)
    discount_reason = db.Column(db.String(30))
    final_amount = db.Column(db.Integer, nullable=False)
    paid_amount = db.Column(db.Integer, default=0)
    balance_amount = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(10), default='pending')
    due_date = db.Column(db.Date)
    reminder_sent = db.Column(db.Boolean, default=False)
    overdue_notice_sent = db.Column(db.Boolean, default=False)
    last_payment_date = db.Column(db.DateTime)
    paid_date = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    fee_structure = db.relationship('FeeStructure', backref='assigned_fees')
    student = db.relationship('User')

    __table_args__ = (db.UniqueConstraint('student_id', 'fee_structure_id', name='unique_student_fee'),)

    def to_dict(self):
        return {
            'id': self.id,
            'student_id': self.student_id,
            'student_name': self.student.full_name if self.student else None,
            'fee_structure_id': self.fee_structure_id,
            'fee_name': self.fee_structure.name if self.fee_structure else None,
            'original_amount': self.original_amount,
            'discount_amount': self.discount_amount,
            'discount_reason': self.discount_reason,
            'final_amount': self.final_amount,
            'paid_amount': self.paid_amount,
            'balance_amount': self.balance_amount,
            'status': self.status,
            'due_date': self.due_date.isoformat() if self.due_date else None,
        }


class Payment(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    amount = db.Column(db.Integer, nullable=False)
    method = db.Column(db.String(20), default='cash')
    transaction_ref = db.Column(db.String(100))
    notes = db.Column(db.Text)
    recorded_by = db.Column(db.Integer, db.ForeignKey('user.id'))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    items = db.relationship('PaymentItem', backref='payment', cascade='all, delete-orphan')

    def to_dict(self):
        return {
            'id': self.id,
            'student_id': self.student_id,
            'amount': self.amount,
            'method': self.method,
            'transaction_ref': self.transaction_ref,
            'notes': self.notes,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class PaymentItem(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(db.Integer, db.ForeignKey('payment.id'), nullable=False)
    assigned_fee_id = db.Column(db.Integer, db.ForeignKey('assigned_fee.id'), nullable=False)
    amount = db.Column(db.Integer, nullable=False)

    assigned_fee = db.relationship('AssignedFee')


class FeeReceipt(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=False)
    payment_id = db.Column(db.Integer, db.ForeignKey('payment.id'), nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    receipt_number = db.Column(db.String(40), nullable=False, unique=True)
    total_amount = db.Column(db.Integer, nullable=False)
    payment_method = db.Column(db.String(20))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    payment = db.relationship('Payment')
    student = db.relationship('User')
    school = db.relationship('School')

    @staticmethod
    def generate_receipt_number(school_id):
        """Next receipt number for the school: REC-<school>-00001, REC-<school>-00002, ..."""
        # Holds the school row until the payment commits, so concurrent payments number in turn
        db.session.query(School.id).filter_by(id=school_id).with_for_update().one()
        last_receipt = FeeReceipt.query.filter_by(school_id=school_id).order_by(FeeReceipt.id.desc()).first()
        next_number = 1
        if last_receipt:
            tail = last_receipt.receipt_number.rsplit('-', 1)[-1]
            if tail.isdigit():
                next_number = int(tail) + 1
        return f"REC-{school_id}-{next_number:05d}"

    def to_dict(self):
        return {
            'id': self.id,
            'payment_id': self.payment_id,
            'student_id': self.student_id,
            'receipt_number': self.receipt_number,
            'total_amount': self.total_amount,
            'payment_method': self.payment_method,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class FeeAuditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=False)
    actor_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    actor_role = db.Column(db.String(20))
    action = db.Column(db.String(40), nullable=False)
    entity_type = db.Column(db.String(40), nullable=False)
    entity_id = db.Column(db.Integer)
    description = db.Column(db.Text)
    payload = db.Column(db.JSON)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class Subscription(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    owner_type = db.Column(db.String(20), nullable=False, default='school')  # school, parent, freelancer
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'))
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    plan_id = db.Column(db.String(50), nullable=False)
    start_date = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    end_date = db.Column(db.DateTime)
    amount_paid = db.Column(db.Integer, default=0)
    payment_method = db.Column(db.String(20))
    payment_reference = db.Column(db.String(100))
    is_active = db.Column(db.Boolean, default=True)
    created_by = db.Column(db.String(80))
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def is_current(self):
        if not self.is_active:
            return False
        return self.end_date is None or self.end_date > datetime.utcnow()

    def days_remaining(self):
        if self.end_date is None:
            return None  # Unlimited
        return max(0, (self.end_date - datetime.utcnow()).days)

    def to_dict(self):
        return {
            'id': self.id,
            'owner_type': self.owner_type,
            'school_id': self.school_id,
            'user_id': self.user_id,
            'plan_id': self.plan_id,
            'start_date': self.start_date.isoformat() if self.start_date else None,
            'end_date': self.end_date.isoformat() if self.end_date else None,
            'amount_paid': self.amount_paid,
            'payment_method': self.payment_method,
            'is_active': self.is_active,
            'days_remaining': self.days_remaining(),
        }


class Notification(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, nullable=False)
    type = db.Column(db.String(40), default='info')
    priority = db.Column(db.String(10), default='normal')
    is_read = db.Column(db.Boolean, default=False)
    payload = db.Column(db.JSON)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'message': self.message,
            'type': self.type,
            'priority': self.priority,
            'is_read': self.is_read,
            'payload': self.payload,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class NotificationQueue(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'))
    recipient_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    notification_type = db.Column(db.String(40), nullable=False)
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, nullable=False)
    channels = db.Column(db.JSON, default=list)
    status = db.Column(db.String(10), default='pending')
    scheduled_for = db.Column(db.DateTime)
    sms_sent = db.Column(db.Boolean, default=False)
    whatsapp_sent = db.Column(db.Boolean, default=False)
    push_sent = db.Column(db.Boolean, default=False)
    in_app_sent = db.Column(db.Boolean, default=False)
    attempts = db.Column(db.Integer, default=0)
    error_message = db.Column(db.Text)
    sent_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    recipient = db.relationship('User')


class NotificationLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=False)
    notification_type = db.Column(db.String(50), nullable=False)  # subscription_reminder, subscription_expired
    message = db.Column(db.Text, nullable=False)
    days_remaining = db.Column(db.Integer)
    sent_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'notification_type': self.notification_type,
            'message': self.message,
            'days_remaining': self.days_remaining,
            'sent_at': self.sent_at.isoformat() if self.sent_at else None,
        }


class DeviceToken(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    token = db.Column(db.String(300), nullable=False, unique=True)
    platform = db.Column(db.String(20), default='android')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class SyncAction(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    client_action_id = db.Column(db.String(64), nullable=False)
    entity_type = db.Column(db.String(20), nullable=False)
    action = db.Column(db.String(10), nullable=False)
    status = db.Column(db.String(10), default='applied')
    server_id = db.Column(db.Integer)
    result = db.Column(db.JSON)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (db.UniqueConstraint('user_id', 'client_action_id', name='unique_client_action'),)
