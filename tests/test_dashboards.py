from datetime import date, timedelta

import pytest

from conftest import t1_date
from dashboards import attendance_rate, current_term
from models import Attendance, Homework, db


def get_dashboard(client, auth, user):
    response = client.get('/api/dashboard', headers=auth(user))
    assert response.status_code == 200
    data = response.get_json()
    assert data['role'] == user.role
    return data['dashboard']


@pytest.mark.parametrize('today, term', [
    (date(2025, 9, 1), 'T1'),
    (date(2025, 12, 20), 'T1'),
    (date(2026, 2, 10), 'T2'),
    (date(2026, 5, 4), 'T3'),
])
def test_current_term(today, term):
    assert current_term(today) == term


def test_director_dashboard(client, auth, director, student, parent, school_class):
    dashboard = get_dashboard(client, auth, director)
    assert dashboard['counts'] == {'students': 1, 'teachers': 1, 'parents': 1, 'classes': 1}
    assert dashboard['bulletins'] == {'draft': 0, 'submitted': 0, 'approved': 0, 'sent': 0}
    assert dashboard['usage']['students'] == {'can_add': True, 'current_count': None, 'limit': -1, 'remaining': -1}
    assert dashboard['offline_access'] is True
    assert 'total_collected' in dashboard['fees']


def test_teacher_dashboard(client, auth, teacher, school_class, math, french):
    dashboard = get_dashboard(client, auth, teacher)
    assert [c['id'] for c in dashboard['classes']] == [school_class.id]
    assert len(dashboard['subjects']) == 2
    assert dashboard['grades_entered'] == 0
    assert dashboard['pending_bulletins'] == 0


def test_parent_dashboard(client, auth, parent, student, school_class, school):
    db.session.add_all([
        Attendance(school_id=school.id, student_id=student.id, class_id=school_class.id, date=t1_date(6),
                   status='present'),
        Attendance(school_id=school.id, student_id=student.id, class_id=school_class.id, date=t1_date(7),
                   status='absent'),
    ])
    db.session.commit()

    dashboard = get_dashboard(client, auth, parent)
    child = dashboard['children'][0]
    assert child['student']['id'] == student.id
    assert child['class']['name'] == '6e A'
    assert child['latest_bulletin'] is None
    assert child['fee_balance'] == 0
    assert child['attendance_rate'] == 50.0


def test_student_dashboard(client, auth, student, school, school_class, math, teacher):
    db.session.add_all([
        Homework(school_id=school.id, class_id=school_class.id, subject_id=math.id, teacher_id=teacher.id,
                 title='Exercices 1 à 5', due_date=date.today() + timedelta(days=3)),
        Homework(school_id=school.id, class_id=school_class.id, subject_id=math.id, teacher_id=teacher.id,
                 title='Déjà rendu', due_date=date.today() - timedelta(days=3)),
    ])
    db.session.commit()

    dashboard = get_dashboard(client, auth, student)
    assert dashboard['class']['id'] == school_class.id
    assert dashboard['attendance_rate'] is None
    assert [h['title'] for h in dashboard['homework_due']] == ['Exercices 1 à 5']
    assert attendance_rate(student) is None


def test_freelancer_dashboard(client, auth, make_user):
    freelancer = make_user('Freelancer', first_name='Paul', last_name='Biya')
    dashboard = get_dashboard(client, auth, freelancer)
    assert dashboard['current_subscription'] is None
    assert dashboard['limits'] == dashboard['subscription']['limits']


def test_commercial_dashboard(client, auth, make_user, school, other_school):
    commercial = make_user('Commercial', first_name='Alice', last_name='Ngo')
    school.commercial_id = commercial.id
    db.session.commit()

    dashboard = get_dashboard(client, auth, commercial)
    assert [s['id'] for s in dashboard['schools']] == [school.id]
    assert dashboard['by_status']['premium'] == 1
    assert dashboard['by_status']['trial'] == 0


def test_site_admin_dashboard(client, auth, site_admin, school, director, student):
    dashboard = get_dashboard(client, auth, site_admin)
    assert dashboard['schools'] == 1
    assert dashboard['blocked_schools'] == 0
    assert dashboard['schools_by_status'] == {'premium': 1}
    assert dashboard['users_by_role']['Student'] == 1
    assert dashboard['payments_total'] == 0
    assert dashboard['bulletins_sent'] == 0


def test_dashboard_needs_a_login(client):
    assert client.get('/api/dashboard').status_code == 401
