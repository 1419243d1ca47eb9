from datetime import date, datetime, timedelta

import bcrypt
import pytest
import requests

import notifications
from academics import current_academic_year
from app import create_app
from config import TestingConfig
from models import Enrollment, ParentStudent, School, SchoolClass, Subject, User, db
from security import create_access_token

PASSWORD = 'secret123'
# Low cost factor keeps fixture setup fast
PASSWORD_HASH = bcrypt.hashpw(PASSWORD.encode('utf-8'), bcrypt.gensalt(4)).decode('utf-8')

YEAR = current_academic_year()
START_YEAR = int(YEAR.split('-')[0])


def t1_date(day=6):
    """A school day inside the first term of the current academic year"""
    return date(START_YEAR, 10, day)


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload if payload is not None else {}

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f'{self.status_code} Server Error')

    def json(self):
        return self._payload


class RecordingSession:
    """Replaces the gateway's requests.Session and records every POST"""

    def __init__(self):
        self.calls = []
        self.status_code = 200
        self.payload = {'message_uuid': 'aaaa-bbbb', 'success': 1}

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        return FakeResponse(self.status_code, self.payload)


@pytest.fixture(autouse=True)
def gateway_session(monkeypatch):
    session = RecordingSession()
    monkeypatch.setattr(notifications.gateway, 'session', session)
    return session


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    def _make_user(role, school=None, username=None, **fields):
        user = User(
            username=username or f"{role.lower()}{User.query.count() + 1}",
            role=role,
            school_id=school.id if school else None,
            password_hash=PASSWORD_HASH,
            **fields
        )
        db.session.add(user)
        db.session.commit()
        return user
    return _make_user


@pytest.fixture
def auth(app):
    def _headers(user):
        return {'Authorization': f'Bearer {create_access_token(user)}'}
    return _headers


def make_school(name, **fields):
    values = {
        'language': 'fr',
        'plan_id': 'ecole_publique',
        'subscription_status': 'premium',
        'subscription_end_date': datetime.utcnow() + timedelta(days=365),
        'offline_enabled': True,
    }
    values.update(fields)
    school = School(name=name, **values)
    db.session.add(school)
    db.session.commit()
    return school


@pytest.fixture
def school(app):
    return make_school('Collège Saint-Michel', address='BP 120 Yaoundé', phone='222 23 45 67')


@pytest.fixture
def freemium_school(app):
    return make_school('Collège La Réussite', plan_id='freemium', subscription_status='freemium',
                       subscription_end_date=None, offline_enabled=False)


@pytest.fixture
def other_school(app):
    return make_school('Lycée de Mbalmayo')


@pytest.fixture
def site_admin(make_user):
    return make_user('SiteAdmin', username='siteadmin', first_name='Site', last_name='Admin')


@pytest.fixture
def director(make_user, school):
    return make_user('Director', school, username='director', first_name='Jeanne', last_name='Mballa')


@pytest.fixture
def teacher(make_user, school):
    return make_user('Teacher', school, username='teacher', first_name='Alain', last_name='Nkodo')


@pytest.fixture
def school_class(school, teacher):
    school_class = SchoolClass(school_id=school.id, name='6e A', level='6e', academic_year=YEAR,
                               head_teacher_id=teacher.id)
    db.session.add(school_class)
    db.session.commit()
    return school_class


@pytest.fixture
def math(school, school_class, teacher):
    subject = Subject(school_id=school.id, class_id=school_class.id, name='Mathématiques', code='MATH',
                      coefficient=4, teacher_id=teacher.id)
    db.session.add(subject)
    db.session.commit()
    return subject


@pytest.fixture
def french(school, school_class, teacher):
    subject = Subject(school_id=school.id, class_id=school_class.id, name='Français', code='FR',
                      coefficient=2, teacher_id=teacher.id)
    db.session.add(subject)
    db.session.commit()
    return subject


def enroll(student, school_class):
    db.session.add(Enrollment(student_id=student.id, class_id=school_class.id,
                              academic_year=school_class.academic_year))
    db.session.commit()


@pytest.fixture
def student(make_user, school, school_class):
    student = make_user('Student', school, username='student', first_name='Marie', last_name='Atangana',
                        matricule='MAT-001')
    enroll(student, school_class)
    return student


@pytest.fixture
def second_student(make_user, school, school_class):
    student = make_user('Student', school, username='student2', first_name='Eric', last_name='Fouda',
                        matricule='MAT-002')
    enroll(student, school_class)
    return student


@pytest.fixture
def parent(make_user, school, student):
    parent = make_user('Parent', school, username='parent', first_name='Joseph', last_name='Atangana',
                       phone='677 12 34 56')
    db.session.add(ParentStudent(parent_id=parent.id, student_id=student.id))
    db.session.commit()
    return parent
