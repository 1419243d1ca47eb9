import re

import pytest

from bulletins import generate_bulletins, transition
from conftest import YEAR
from documents import bulletin_pdf, transcript_rows
from fees import assign_fee, record_payment
from models import Bulletin, FeeStructure, Grade, TimetableSlot, db


@pytest.fixture
def bulletin(director, school_class, math, french, student):
    for subject, exam_type, value in ((math, 'CC', 12), (math, 'EXAM', 14), (french, 'EXAM', 10)):
        db.session.add(Grade(school_id=school_class.school_id, student_id=student.id, class_id=school_class.id,
                             subject_id=subject.id, term='T1', academic_year=YEAR, exam_type=exam_type,
                             value=value))
    generate_bulletins(director, school_class, 'T1', YEAR)
    db.session.commit()
    return Bulletin.query.filter_by(student_id=student.id).one()


def release(bulletin, director):
    transition(bulletin, 'submit', director)
    transition(bulletin, 'approve', director)
    db.session.commit()


def assert_pdf(response):
    assert response.status_code == 200
    assert response.mimetype == 'application/pdf'
    assert response.data.startswith(b'%PDF')


def test_bulletin_pdf_for_staff(client, auth, director, bulletin):
    response = client.get(f'/api/documents/bulletins/{bulletin.id}/pdf', headers=auth(director))
    assert_pdf(response)
    assert 'bulletin_MAT-001_T1.pdf' in response.headers['Content-Disposition']


def test_parents_download_released_bulletins_only(client, auth, director, parent, bulletin):
    url = f'/api/documents/bulletins/{bulletin.id}/pdf'
    assert client.get(url, headers=auth(parent)).status_code == 404
    release(bulletin, director)
    assert_pdf(client.get(url, headers=auth(parent)))


def test_english_school_bulletin(client, auth, director, school, bulletin):
    school.language = 'en'
    db.session.commit()
    assert_pdf(client.get(f'/api/documents/bulletins/{bulletin.id}/pdf', headers=auth(director)))


def test_freemium_staff_cannot_print_bulletins(client, auth, make_user, freemium_school, bulletin):
    bulletin.school_id = freemium_school.id
    db.session.commit()
    director = make_user('Director', freemium_school, first_name='Amadou', last_name='Sali')
    response = client.get(f'/api/documents/bulletins/{bulletin.id}/pdf', headers=auth(director))
    assert response.status_code == 403
    assert response.get_json()['error'] == 'PREMIUM_REQUIRED'


def test_transcript_rows_for_families_skip_drafts(director, student, bulletin):
    rows, annual = transcript_rows(student, YEAR, released_only=False)
    assert [row['term'] for row in rows] == ['T1']
    assert annual == pytest.approx(12.27)
    assert transcript_rows(student, YEAR, released_only=True) == ([], None)


def test_transcript_pdf(client, auth, director, student, parent, bulletin, make_user, school):
    assert_pdf(client.get(f'/api/documents/transcripts/{student.id}?academic_year={YEAR}',
                          headers=auth(director)))
    assert_pdf(client.get(f'/api/documents/transcripts/{student.id}', headers=auth(parent)))

    stranger = make_user('Parent', school, first_name='Paul', last_name='Mvondo')
    assert client.get(f'/api/documents/transcripts/{student.id}', headers=auth(stranger)).status_code == 404


def test_timetable_pdf(client, auth, director, student, school_class, math, teacher):
    db.session.add(TimetableSlot(school_id=school_class.school_id, class_id=school_class.id, subject_id=math.id,
                                 teacher_id=teacher.id, day_of_week=1, start_time='08:00', end_time='10:00',
                                 room='B12'))
    db.session.commit()
    assert_pdf(client.get(f'/api/documents/timetable/{school_class.id}', headers=auth(director)))
    assert_pdf(client.get(f'/api/documents/timetable/{school_class.id}', headers=auth(student)))
    assert client.get(f'/api/documents/timetable/{school_class.id + 1}', headers=auth(student)).status_code == 404


def test_receipt_pdf(client, auth, director, student, parent, school, make_user):
    structure = FeeStructure(school_id=school.id, name='Scolarité T1', amount=50000)
    db.session.add(structure)
    db.session.flush()
    assign_fee(director, structure, [student])
    _, receipt, _ = record_payment(director, school.id, student, 20000)
    db.session.commit()

    url = f'/api/documents/receipts/{receipt.id}'
    assert_pdf(client.get(url, headers=auth(director)))
    assert_pdf(client.get(url, headers=auth(parent)))

    stranger = make_user('Parent', school, first_name='Paul', last_name='Mvondo')
    assert client.get(url, headers=auth(stranger)).status_code == 404


def page_count(pdf_bytes):
    return len(re.findall(rb'/Type /Page\b', pdf_bytes))


def test_long_bulletins_continue_on_a_new_page(director, bulletin):
    assert page_count(bulletin_pdf(bulletin)) == 1

    bulletin.subject_results = [
        {'subject_name': f'Option {i}', 'coefficient': 1, 'cc': 11.0, 'exam': 13.0, 'average': 12.0,
         'points': 12.0, 'rank': 1, 'appreciation': 'Assez bien'}
        for i in range(40)
    ]
    db.session.commit()
    assert page_count(bulletin_pdf(bulletin)) == 2

    bulletin.subject_results = bulletin.subject_results * 2
    db.session.commit()
    assert page_count(bulletin_pdf(bulletin)) == 3


def test_families_of_freemium_schools_need_bulletin_access(client, auth, make_user, freemium_school, director,
                                                           student, bulletin):
    release(bulletin, director)
    student.school_id = freemium_school.id
    db.session.commit()
    url = f'/api/documents/bulletins/{bulletin.id}/pdf'
    response = client.get(url, headers=auth(student))
    assert response.status_code == 403
    assert response.get_json()['feature'] == 'bulletin_access'
