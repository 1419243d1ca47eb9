"""
Request validation with Flask-WTF.

JSON bodies are flattened into form data so every endpoint validates through
a FlaskForm. ``load_form`` raises ValidationFailed with the field errors.
"""
from flask import request
from flask_wtf import FlaskForm
from werkzeug.datastructures import MultiDict
from wtforms import BooleanField, DateField, FloatField, IntegerField, PasswordField, StringField
from wtforms.validators import AnyOf, DataRequired, EqualTo, InputRequired, Length, NumberRange, Optional, Regexp

from errors import ValidationFailed
from models import ATTENDANCE_STATUSES, EXAM_TYPES, TERMS

ACADEMIC_YEAR = Regexp(r'^\d{4}-\d{4}$', message='Use the form 2025-2026')
EMAIL = Regexp(r'^[^@\s]+@[^@\s]+\.[^@\s]+$', message='Invalid email address')
HHMM = Regexp(r'^([01]\d|2[0-3]):[0-5]\d$', message='Use HH:MM')
PAYMENT_METHODS = ('cash', 'mtn_momo', 'orange_money', 'bank_transfer', 'card', 'cheque')
FALSE_VALUES = ('false', '0', '', 'off', 'no')


def _to_formdata(payload):
    formdata = MultiDict()
    for key, value in payload.items():
        if value is None or isinstance(value, dict):
            continue
        if isinstance(value, (list, tuple)):
            for item in value:
                formdata.add(key, str(item))
        elif isinstance(value, bool):
            formdata.add(key, 'true' if value else 'false')
        else:
            formdata.add(key, str(value))
    return formdata


def load_form(form_class, data=None):
    """Validate a JSON payload (or the request body) with a form class"""
    payload = data if data is not None else (request.get_json(silent=True) or {})
    if not isinstance(payload, dict):
        raise ValidationFailed('Expected a JSON object')
    form = form_class(formdata=_to_formdata(payload), meta={'csrf': False})
    if not form.validate():
        raise ValidationFailed(errors=form.errors)
    return form


def id_list(name, data=None):
    """Read a list of integer ids from the JSON payload"""
    payload = data if data is not None else (request.get_json(silent=True) or {})
    values = payload.get(name) or []
    if not isinstance(values, list):
        raise ValidationFailed(errors={name: ['Expected a list of ids']})
    try:
        return [int(v) for v in values]
    except (TypeError, ValueError):
        raise ValidationFailed(errors={name: ['Expected a list of ids']})


class LoginForm(FlaskForm):
    username = StringField('Username', validators=[DataRequired()])
    password = PasswordField('Password', validators=[DataRequired()])


class ChangePasswordForm(FlaskForm):
    current_password = PasswordField('Current password', validators=[DataRequired()])
    new_password = PasswordField('New password', validators=[DataRequired(), Length(min=6)])
    confirm_password = PasswordField('Confirm password',
                                     validators=[DataRequired(), EqualTo('new_password', message='Passwords must match')])


class SchoolForm(FlaskForm):
    school_name = StringField('School name', validators=[DataRequired(), Length(max=200)])
    address = StringField('Address', validators=[Optional(), Length(max=500)])
    phone = StringField('Phone', validators=[Optional(), Length(max=50)])
    email = StringField('Email', validators=[Optional(), EMAIL])
    language = StringField('Language', default='fr', validators=[Optional(), AnyOf(('fr', 'en'))])
    matricule_prefix = StringField('Matricule prefix', validators=[Optional(), Length(max=10)])
    is_sandbox = BooleanField('Sandbox', false_values=FALSE_VALUES)
    director_username = StringField('Director username', validators=[DataRequired(), Length(min=3, max=80)])
    director_password = PasswordField('Director password', validators=[DataRequired(), Length(min=6)])
    director_first_name = StringField('Director first name', validators=[Optional(), Length(max=100)])
    director_last_name = StringField('Director last name', validators=[Optional(), Length(max=100)])
    director_email = StringField('Director email', validators=[Optional(), EMAIL])
    director_phone = StringField('Director phone', validators=[Optional(), Length(max=50)])


class ResetCredentialsForm(FlaskForm):
    new_username = StringField('New username', validators=[DataRequired(), Length(min=3, max=80)])
    new_password = PasswordField('New password', validators=[DataRequired(), Length(min=6)])


class ActivatePlanForm(FlaskForm):
    plan_id = StringField('Plan', validators=[DataRequired()])
    amount_paid = IntegerField('Amount paid', validators=[Optional(), NumberRange(min=0)])
    payment_method = StringField('Payment method', validators=[Optional(), AnyOf(PAYMENT_METHODS)])
    payment_reference = StringField('Payment reference', validators=[Optional(), Length(max=100)])
    notes = StringField('Notes', validators=[Optional()])


class SubscribeForm(FlaskForm):
    plan_id = StringField('Plan', validators=[DataRequired()])
    payment_method = StringField('Payment method', validators=[DataRequired(), AnyOf(PAYMENT_METHODS)])
    payment_reference = StringField('Payment reference', validators=[Optional(), Length(max=100)])


class SchoolSettingsForm(FlaskForm):
    name = StringField('Name', validators=[Optional(), Length(max=200)])
    address = StringField('Address', validators=[Optional(), Length(max=500)])
    phone = StringField('Phone', validators=[Optional(), Length(max=50)])
    email = StringField('Email', validators=[Optional(), EMAIL])
    language = StringField('Language', validators=[Optional(), AnyOf(('fr', 'en'))])
    offline_enabled = BooleanField('Offline mode', false_values=FALSE_VALUES)


class ClassForm(FlaskForm):
    name = StringField('Name', validators=[DataRequired(), Length(max=100)])
    level = StringField('Level', validators=[Optional(), Length(max=50)])
    academic_year = StringField('Academic year', validators=[DataRequired(), ACADEMIC_YEAR])
    head_teacher_id = IntegerField('Head teacher', validators=[Optional()])


class SubjectForm(FlaskForm):
    name = StringField('Name', validators=[DataRequired(), Length(max=100)])
    code = StringField('Code', validators=[Optional(), Length(max=20)])
    coefficient = IntegerField('Coefficient', default=1, validators=[Optional(), NumberRange(min=1)])
    class_id = IntegerField('Class', validators=[DataRequired()])
    teacher_id = IntegerField('Teacher', validators=[Optional()])


class PersonForm(FlaskForm):
    first_name = StringField('First name', validators=[DataRequired(), Length(max=100)])
    last_name = StringField('Last name', validators=[DataRequired(), Length(max=100)])
    username = StringField('Username', validators=[Optional(), Length(min=3, max=80)])
    password = PasswordField('Password', validators=[Optional(), Length(min=6)])
    email = StringField('Email', validators=[Optional(), EMAIL])
    phone = StringField('Phone', validators=[Optional(), Length(max=50)])
    language = StringField('Language', validators=[Optional(), AnyOf(('fr', 'en'))])


class StudentForm(PersonForm):
    matricule = StringField('Matricule', validators=[Optional(), Length(max=40)])
    gender = StringField('Gender', validators=[Optional(), AnyOf(('M', 'F'))])
    date_of_birth = DateField('Date of birth', validators=[Optional()])
    class_id = IntegerField('Class', validators=[Optional()])


class ParentForm(PersonForm):
    relationship = StringField('Relationship', default='parent', validators=[Optional(), Length(max=30)])


class GradeForm(FlaskForm):
    student_id = IntegerField('Student', validators=[DataRequired()])
    class_id = IntegerField('Class', validators=[DataRequired()])
    subject_id = IntegerField('Subject', validators=[DataRequired()])
    term = StringField('Term', validators=[DataRequired(), AnyOf(TERMS)])
    academic_year = StringField('Academic year', validators=[DataRequired(), ACADEMIC_YEAR])
    exam_type = StringField('Exam type', default='CC', validators=[Optional(), AnyOf(EXAM_TYPES)])
    value = FloatField('Value', validators=[InputRequired(), NumberRange(min=0, max=20)])
    comment = StringField('Comment', validators=[Optional(), Length(max=300)])


class GradeUpdateForm(FlaskForm):
    value = FloatField('Value', validators=[Optional(), NumberRange(min=0, max=20)])
    comment = StringField('Comment', validators=[Optional(), Length(max=300)])


class AttendanceForm(FlaskForm):
    student_id = IntegerField('Student', validators=[DataRequired()])
    class_id = IntegerField('Class', validators=[DataRequired()])
    date = DateField('Date', validators=[DataRequired()])
    status = StringField('Status', validators=[DataRequired(), AnyOf(ATTENDANCE_STATUSES)])
    notes = StringField('Notes', validators=[Optional(), Length(max=300)])


class AttendanceUpdateForm(FlaskForm):
    status = StringField('Status', validators=[Optional(), AnyOf(ATTENDANCE_STATUSES)])
    notes = StringField('Notes', validators=[Optional(), Length(max=300)])


class HomeworkForm(FlaskForm):
    title = StringField('Title', validators=[DataRequired(), Length(max=200)])
    class_id = IntegerField('Class', validators=[DataRequired()])
    subject_id = IntegerField('Subject', validators=[DataRequired()])
    description = StringField('Description', validators=[Optional()])
    instructions = StringField('Instructions', validators=[Optional()])
    due_date = DateField('Due date', validators=[Optional()])
    priority = StringField('Priority', default='medium', validators=[Optional(), AnyOf(('low', 'medium', 'high'))])
    status = StringField('Status', default='active', validators=[Optional(), AnyOf(('active', 'archived'))])


class TimetableSlotForm(FlaskForm):
    class_id = IntegerField('Class', validators=[DataRequired()])
    subject_id = IntegerField('Subject', validators=[DataRequired()])
    teacher_id = IntegerField('Teacher', validators=[Optional()])
    day_of_week = IntegerField('Day', validators=[DataRequired(), NumberRange(min=1, max=7)])
    start_time = StringField('Start', validators=[DataRequired(), HHMM])
    end_time = StringField('End', validators=[DataRequired(), HHMM])
    room = StringField('Room', validators=[Optional(), Length(max=50)])

    def validate_end_time(self, field):
        if self.start_time.data and field.data and field.data <= self.start_time.data:
            raise ValueError('End time must be after start time')


class BulletinGenerateForm(FlaskForm):
    class_id = IntegerField('Class', validators=[DataRequired()])
    term = StringField('Term', validators=[DataRequired(), AnyOf(TERMS)])
    academic_year = StringField('Academic year', validators=[DataRequired(), ACADEMIC_YEAR])


class BulletinCommentsForm(FlaskForm):
    teacher_comments = StringField('Teacher comments', validators=[Optional(), Length(max=2000)])
    director_comments = StringField('Director comments', validators=[Optional(), Length(max=2000)])


class RejectForm(FlaskForm):
    reason = StringField('Reason', validators=[DataRequired(), Length(max=2000)])


class FeeStructureForm(FlaskForm):
    name = StringField('Name', validators=[DataRequired(), Length(max=200)])
    description = StringField('Description', validators=[Optional()])
    fee_type = StringField('Type', default='tuition',
                           validators=[Optional(), AnyOf(('tuition', 'registration', 'exam', 'transport',
                                                          'uniform', 'books', 'canteen', 'other'))])
    amount = IntegerField('Amount', validators=[DataRequired(), NumberRange(min=1)])
    class_id = IntegerField('Class', validators=[Optional()])
    frequency = StringField('Frequency', default='term',
                            validators=[Optional(), AnyOf(('once', 'monthly', 'term', 'annual'))])
    due_date = DateField('Due date', validators=[Optional()])
    sibling_discount = IntegerField('Sibling discount', default=0, validators=[Optional(), NumberRange(min=0, max=100)])
    is_mandatory = BooleanField('Mandatory', default=True, false_values=FALSE_VALUES)


class AssignFeeForm(FlaskForm):
    fee_structure_id = IntegerField('Fee structure', validators=[DataRequired()])
    class_id = IntegerField('Class', validators=[Optional()])


class PaymentForm(FlaskForm):
    student_id = IntegerField('Student', validators=[DataRequired()])
    amount = IntegerField('Amount', validators=[DataRequired(), NumberRange(min=1)])
    method = StringField('Method', default='cash', validators=[Optional(), AnyOf(PAYMENT_METHODS)])
    transaction_ref = StringField('Reference', validators=[Optional(), Length(max=100)])
    notes = StringField('Notes', validators=[Optional()])


class DeviceTokenForm(FlaskForm):
    token = StringField('Token', validators=[DataRequired(), Length(max=300)])
    platform = StringField('Platform', default='android', validators=[Optional(), AnyOf(('android', 'ios', 'web'))])
