from datetime import date, datetime, timedelta

import pytest

from app import create_app
from bulletins import compute_class_results, content_hash, term_date_range
from config import TestingConfig
from conftest import START_YEAR, YEAR, t1_date
from models import Attendance, Bulletin, BulletinVerificationLog, Grade, NotificationQueue, db


def add_grade(student, school_class, subject, value, exam_type='CC', term='T1'):
    db.session.add(Grade(school_id=school_class.school_id, student_id=student.id, class_id=school_class.id,
                         subject_id=subject.id, term=term, academic_year=YEAR, exam_type=exam_type, value=value))
    db.session.commit()


@pytest.fixture
def graded_class(school_class, math, french, student, second_student):
    add_grade(student, school_class, math, 12, 'CC')
    add_grade(student, school_class, math, 14, 'EXAM')
    add_grade(student, school_class, french, 10, 'EXAM')
    add_grade(second_student, school_class, math, 16, 'CC')
    add_grade(second_student, school_class, math, 16, 'EXAM')
    add_grade(second_student, school_class, french, 14, 'CC')
    add_grade(second_student, school_class, french, 14, 'EXAM')
    return school_class


def generate(client, auth, user, school_class, term='T1'):
    return client.post('/api/bulletins/generate', headers=auth(user),
                       json={'class_id': school_class.id, 'term': term, 'academic_year': YEAR})


def bulletin_of(student):
    return Bulletin.query.filter_by(student_id=student.id).first()


def test_term_date_ranges():
    assert term_date_range('T1', '2025-2026') == (date(2025, 9, 1), date(2025, 12, 31))
    assert term_date_range('T2', '2025-2026') == (date(2026, 1, 1), date(2026, 3, 31))
    assert term_date_range('T3', '2025-2026') == (date(2026, 4, 1), date(2026, 8, 31))


def test_class_results(graded_class, student, second_student, math):
    results = compute_class_results(graded_class, 'T1', YEAR)
    marie = results[student.id]
    assert marie['general_average'] == pytest.approx(12.27)
    assert marie['class_rank'] == 2
    assert marie['class_size'] == 2
    assert marie['appreciation'] == 'Assez bien'
    assert marie['total_points'] == pytest.approx(73.6)
    assert marie['total_coefficients'] == 6
    assert marie['class_mean'] == pytest.approx(13.8)
    assert marie['class_max'] == pytest.approx(15.33)

    maths = next(r for r in marie['subject_results'] if r['subject_id'] == math.id)
    assert maths['average'] == pytest.approx(13.4)
    assert maths['rank'] == 2
    assert maths['teacher_name'] == 'Alain Nkodo'

    assert results[second_student.id]['general_average'] == pytest.approx(15.33)
    assert results[second_student.id]['class_rank'] == 1


def test_absences_are_counted_within_the_term(graded_class, student):
    for day, status in ((t1_date(6), 'absent'), (t1_date(7), 'absent'), (t1_date(8), 'late'),
                        (date(START_YEAR + 1, 2, 2), 'absent')):
        db.session.add(Attendance(school_id=graded_class.school_id, student_id=student.id,
                                  class_id=graded_class.id, date=day, status=status))
    db.session.commit()
    assert compute_class_results(graded_class, 'T1', YEAR)[student.id]['absences'] == 2


def test_third_term_carries_the_annual_average(school_class, math, student):
    for term, value in (('T1', 10), ('T2', 12), ('T3', 14)):
        add_grade(student, school_class, math, value, 'EXAM', term)
    results = compute_class_results(school_class, 'T3', YEAR)
    assert results[student.id]['general_average'] == 14.0
    assert results[student.id]['annual_average'] == 12.0
    assert compute_class_results(school_class, 'T1', YEAR)[student.id]['annual_average'] is None


def test_generate_creates_then_updates_drafts(client, auth, teacher, graded_class, student):
    response = generate(client, auth, teacher, graded_class)
    assert response.status_code == 200
    assert len(response.get_json()['created']) == 2

    response = generate(client, auth, teacher, graded_class)
    data = response.get_json()
    assert data['created'] == []
    assert len(data['updated']) == 2
    assert Bulletin.query.count() == 2


def test_generate_needs_the_bulletins_feature(client, auth, make_user, freemium_school):
    director = make_user('Director', freemium_school, first_name='Amadou', last_name='Sali')
    response = client.post('/api/bulletins/generate', headers=auth(director),
                           json={'class_id': 1, 'term': 'T1', 'academic_year': YEAR})
    assert response.status_code == 403
    assert response.get_json()['error'] == 'PREMIUM_REQUIRED'


def test_workflow(client, auth, teacher, director, graded_class, student, parent):
    generate(client, auth, teacher, graded_class)
    bulletin = bulletin_of(student)

    assert client.post(f'/api/bulletins/{bulletin.id}/approve', headers=auth(director)).status_code == 409
    assert client.post(f'/api/bulletins/{bulletin.id}/submit', headers=auth(teacher)).status_code == 200
    assert client.post(f'/api/bulletins/{bulletin.id}/approve', headers=auth(teacher)).status_code == 403

    response = client.post(f'/api/bulletins/{bulletin.id}/approve', headers=auth(director))
    assert response.status_code == 200
    assert response.get_json()['bulletin']['status'] == 'approved'
    assert bulletin.verification is not None
    assert len(bulletin.verification.short_code) == 8

    response = client.post(f'/api/bulletins/{bulletin.id}/send', headers=auth(director))
    assert response.get_json()['bulletin']['status'] == 'sent'
    queued = NotificationQueue.query.filter_by(recipient_id=parent.id).all()
    assert [q.notification_type for q in queued] == ['bulletin_available']
    assert '12.27/20' in queued[0].message

    assert client.post(f'/api/bulletins/{bulletin.id}/send', headers=auth(director)).status_code == 409


@pytest.mark.parametrize('mark, template', [
    (18, 'bulletin_excellent'),
    (16, 'bulletin_excellent'),
    (13, 'bulletin_available'),
    (9.5, 'bulletin_needs_improvement'),
])
def test_send_picks_the_template_from_the_average(client, auth, director, school_class, math, student, parent,
                                                  mark, template):
    add_grade(student, school_class, math, mark, 'EXAM')
    generate(client, auth, director, school_class)
    bulletin = bulletin_of(student)
    for action in ('submit', 'approve', 'send'):
        assert client.post(f'/api/bulletins/{bulletin.id}/{action}', headers=auth(director)).status_code == 200
    queued = NotificationQueue.query.filter_by(recipient_id=parent.id).one()
    assert queued.notification_type == template


def test_reject_needs_a_reason(client, auth, teacher, director, graded_class, student):
    generate(client, auth, teacher, graded_class)
    bulletin = bulletin_of(student)
    client.post(f'/api/bulletins/{bulletin.id}/submit', headers=auth(teacher))

    response = client.post(f'/api/bulletins/{bulletin.id}/reject', headers=auth(director), json={})
    assert response.status_code == 400

    response = client.post(f'/api/bulletins/{bulletin.id}/reject', headers=auth(director),
                           json={'reason': 'Note de français manquante'})
    data = response.get_json()['bulletin']
    assert data['status'] == 'draft'
    assert data['rejection_reason'] == 'Note de français manquante'


def test_grades_lock_once_submitted(client, auth, teacher, graded_class, student, math):
    generate(client, auth, teacher, graded_class)
    bulletin = bulletin_of(student)
    client.post(f'/api/bulletins/{bulletin.id}/submit', headers=auth(teacher))

    response = client.post('/api/grades', headers=auth(teacher), json={
        'student_id': student.id, 'class_id': graded_class.id, 'subject_id': math.id,
        'term': 'T1', 'academic_year': YEAR, 'exam_type': 'EXAM', 'value': 20})
    assert response.status_code == 409

    data = generate(client, auth, teacher, graded_class).get_json()
    assert [s['student_id'] for s in data['skipped']] == [student.id]
    assert len(data['updated']) == 1


def test_families_read_released_bulletins_only(client, auth, teacher, director, graded_class, student, parent):
    generate(client, auth, teacher, graded_class)
    bulletin = bulletin_of(student)

    assert client.get(f'/api/bulletins/{bulletin.id}', headers=auth(parent)).status_code == 404
    assert client.get('/api/bulletins/mine', headers=auth(parent)).get_json()['bulletins'] == []

    client.post(f'/api/bulletins/{bulletin.id}/submit', headers=auth(teacher))
    client.post(f'/api/bulletins/{bulletin.id}/approve', headers=auth(director))

    response = client.get(f'/api/bulletins/{bulletin.id}', headers=auth(parent))
    assert response.status_code == 200
    assert response.get_json()['bulletin']['verification']['url'].startswith('https://www.educafric.com/verify?code=')
    assert len(client.get('/api/bulletins/mine', headers=auth(student)).get_json()['bulletins']) == 1


def test_only_drafts_take_comments(client, auth, teacher, graded_class, student):
    generate(client, auth, teacher, graded_class)
    bulletin = bulletin_of(student)
    response = client.put(f'/api/bulletins/{bulletin.id}/comments', headers=auth(teacher),
                          json={'teacher_comments': 'Bon trimestre'})
    assert response.get_json()['bulletin']['teacher_comments'] == 'Bon trimestre'
    assert client.put(f'/api/bulletins/{bulletin.id}/comments', headers=auth(teacher),
                      json={'director_comments': 'Bravo'}).status_code == 403

    client.post(f'/api/bulletins/{bulletin.id}/submit', headers=auth(teacher))
    assert client.put(f'/api/bulletins/{bulletin.id}/comments', headers=auth(teacher),
                      json={'teacher_comments': 'Trop tard'}).status_code == 409


@pytest.fixture
def approved_bulletin(client, auth, teacher, director, graded_class, student):
    generate(client, auth, teacher, graded_class)
    bulletin = bulletin_of(student)
    client.post(f'/api/bulletins/{bulletin.id}/submit', headers=auth(teacher))
    client.post(f'/api/bulletins/{bulletin.id}/approve', headers=auth(director))
    return bulletin


def test_verify_valid_code(client, approved_bulletin):
    verification = approved_bulletin.verification
    response = client.get(f'/api/bulletins/verify?code={verification.verification_code}')
    assert response.status_code == 200
    data = response.get_json()
    assert data['valid'] is True
    assert data['bulletin']['student_name'] == 'Marie Atangana'
    assert data['bulletin']['general_average'] == '12.27'
    assert data['bulletin']['verification_count'] == 1

    response = client.post('/api/bulletins/verify', json={'short_code': verification.short_code.lower()})
    assert response.get_json()['result'] == 'valid'


def test_verify_unknown_code(client, approved_bulletin):
    response = client.get('/api/bulletins/verify?code=NOPE1234')
    assert response.status_code == 404
    assert response.get_json()['result'] == 'invalid_code'
    assert BulletinVerificationLog.query.filter_by(access_result='invalid_code').count() == 1


def test_verify_deactivated_code(client, auth, director, approved_bulletin):
    code = approved_bulletin.verification.verification_code
    assert client.post(f'/api/bulletins/{approved_bulletin.id}/verification/deactivate',
                       headers=auth(director)).status_code == 200
    data = client.get(f'/api/bulletins/verify?code={code}').get_json()
    assert data['valid'] is False
    assert data['result'] == 'deactivated'


def test_verify_detects_tampering(client, approved_bulletin):
    code = approved_bulletin.verification.verification_code
    approved_bulletin.general_average = 17.5
    db.session.commit()
    assert client.get(f'/api/bulletins/verify?code={code}').get_json()['result'] == 'tampered'


def test_verify_expired_code(client, approved_bulletin):
    verification = approved_bulletin.verification
    verification.expires_at = datetime.utcnow() - timedelta(days=1)
    db.session.commit()
    response = client.get(f'/api/bulletins/verify?code={verification.verification_code}')
    assert response.get_json()['result'] == 'expired'


def test_hash_covers_content(approved_bulletin):
    before = content_hash(approved_bulletin)
    assert approved_bulletin.verification.verification_hash == before
    approved_bulletin.class_rank = 1
    assert content_hash(approved_bulletin) != before


def test_verify_is_rate_limited(app, client):
    app.config['VERIFICATION_RATE_LIMIT'] = 2
    assert client.get('/api/bulletins/verify?code=AAAA').status_code == 404
    assert client.get('/api/bulletins/verify?code=BBBB').status_code == 404
    response = client.get('/api/bulletins/verify?code=CCCC')
    assert response.status_code == 429
    assert BulletinVerificationLog.query.filter_by(access_result='rate_limited').count() == 1


def test_forwarded_for_does_not_reset_the_limit(app, client):
    app.config['VERIFICATION_RATE_LIMIT'] = 2
    statuses = [client.get('/api/bulletins/verify?code=AAAA',
                           headers={'X-Forwarded-For': f'10.0.0.{i}'}).status_code
                for i in range(5)]
    assert statuses == [404, 404, 429, 429, 429]
    assert set(log.ip_address for log in BulletinVerificationLog.query) == {'127.0.0.1'}


class ProxiedConfig(TestingConfig):
    PROXY_FIX = 1


@pytest.fixture
def proxied_app():
    app = create_app(ProxiedConfig)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


def test_behind_a_proxy_the_last_hop_is_the_client(proxied_app):
    proxied_app.config['VERIFICATION_RATE_LIMIT'] = 2
    client = proxied_app.test_client()
    statuses = [client.get('/api/bulletins/verify?code=AAAA',
                           headers={'X-Forwarded-For': f'10.0.0.{i}, 203.0.113.7'}).status_code
                for i in range(3)]
    assert statuses == [404, 404, 429]

    response = client.get('/api/bulletins/verify?code=AAAA', headers={'X-Forwarded-For': '198.51.100.4'})
    assert response.status_code == 404
    assert BulletinVerificationLog.query.filter_by(access_result='rate_limited').one().ip_address == '203.0.113.7'


def test_points_are_rounded_to_two_decimals(school_class, math, french, student):
    add_grade(student, school_class, math, 13.5, 'CC')
    add_grade(student, school_class, math, 12.5, 'EXAM')
    add_grade(student, school_class, french, 11.35, 'EXAM')
    marie = compute_class_results(school_class, 'T1', YEAR)[student.id]
    points = {r['subject_name']: r['points'] for r in marie['subject_results']}
    assert points == {'Mathématiques': 51.2, 'Français': 22.7}
    assert marie['total_points'] == 73.9
