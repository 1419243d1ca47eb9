from datetime import datetime, timedelta

import pytest

from admin import check_subscriptions
from conftest import make_school
from models import (Bulletin, Grade, NotificationLog, NotificationQueue, School, SchoolClass, Subscription, User,
                    db)


def new_school_payload(**overrides):
    payload = {
        'school_name': 'Institut Polyvalent de Douala',
        'address': 'Akwa, Douala',
        'language': 'fr',
        'director_username': 'ipd.director',
        'director_password': 'bienvenue',
        'director_first_name': 'Samuel',
        'director_last_name': 'Eto',
    }
    payload.update(overrides)
    return payload


def test_create_school_starts_a_trial(client, auth, site_admin):
    response = client.post('/api/admin/schools', headers=auth(site_admin), json=new_school_payload())
    assert response.status_code == 201
    data = response.get_json()
    assert data['school']['subscription_status'] == 'trial'
    assert data['school']['days_remaining'] in (29, 30)
    assert data['director']['username'] == 'ipd.director'

    school = db.session.get(School, data['school']['id'])
    director = User.query.filter_by(username='ipd.director').one()
    assert director.school_id == school.id
    assert director.password_change_required is True
    assert director.check_password('bienvenue')
    assert Subscription.query.filter_by(school_id=school.id, plan_id='ecole_publique').count() == 1


def test_create_school_rejects_taken_usernames(client, auth, site_admin, director):
    response = client.post('/api/admin/schools', headers=auth(site_admin),
                           json=new_school_payload(director_username='director'))
    assert response.status_code == 409
    assert School.query.count() == 1


def test_admin_routes_need_site_admin(client, auth, director):
    assert client.get('/api/admin/schools', headers=auth(director)).status_code == 403


def test_list_schools(client, auth, site_admin, school, director, student):
    schools = client.get('/api/admin/schools', headers=auth(site_admin)).get_json()['schools']
    assert len(schools) == 1
    assert schools[0]['director']['username'] == 'director'
    assert schools[0]['student_count'] == 1


def test_block_and_unblock(client, auth, site_admin, school, director):
    client.post(f'/api/admin/schools/{school.id}/block', headers=auth(site_admin))
    assert client.get('/api/auth/me', headers=auth(director)).status_code == 403
    client.post(f'/api/admin/schools/{school.id}/unblock', headers=auth(site_admin))
    assert client.get('/api/auth/me', headers=auth(director)).status_code == 200


def test_reset_director_credentials(client, auth, site_admin, school, director):
    response = client.post(f'/api/admin/schools/{school.id}/reset-credentials', headers=auth(site_admin),
                           json={'new_username': 'nouveau.directeur', 'new_password': 'motdepasse'})
    assert response.status_code == 200
    director = db.session.get(User, director.id)
    assert director.username == 'nouveau.directeur'
    assert director.check_password('motdepasse')
    assert director.password_change_required is True


def test_activate_plan(client, auth, site_admin):
    school = make_school('Collège Expiré', subscription_status='expired',
                         subscription_end_date=datetime.utcnow() - timedelta(days=3))
    old = Subscription(owner_type='school', school_id=school.id, plan_id='ecole_publique',
                       start_date=datetime.utcnow() - timedelta(days=368),
                       end_date=datetime.utcnow() - timedelta(days=3))
    db.session.add(old)
    db.session.commit()

    response = client.post(f'/api/admin/schools/{school.id}/plan', headers=auth(site_admin), json={
        'plan_id': 'ecole_privee', 'amount_paid': 750000, 'payment_method': 'bank_transfer'})
    assert response.status_code == 200
    data = response.get_json()
    assert data['school']['subscription_status'] == 'premium'
    assert data['school']['plan_id'] == 'ecole_privee'
    assert data['subscription']['days_remaining'] in (364, 365)
    assert db.session.get(Subscription, old.id).is_active is False


@pytest.mark.parametrize('plan_id', ['parent_premium', 'platinum'])
def test_activate_plan_rejects_non_school_plans(client, auth, site_admin, school, plan_id):
    response = client.post(f'/api/admin/schools/{school.id}/plan', headers=auth(site_admin),
                           json={'plan_id': plan_id})
    assert response.status_code == 400


def test_manual_notice_once_a_day(client, auth, site_admin, director):
    school = db.session.get(School, director.school_id)
    school.subscription_end_date = datetime.utcnow() + timedelta(days=5, hours=1)
    db.session.commit()

    response = client.post(f'/api/admin/schools/{school.id}/notify', headers=auth(site_admin))
    assert response.status_code == 200
    assert response.get_json()['notification']['days_remaining'] == 5
    assert NotificationQueue.query.filter_by(recipient_id=director.id,
                                             notification_type='subscription_reminder').count() == 1

    response = client.post(f'/api/admin/schools/{school.id}/notify', headers=auth(site_admin))
    assert response.status_code == 409


def test_no_notice_while_far_from_expiry(client, auth, site_admin, school):
    school.subscription_end_date = datetime.utcnow() + timedelta(days=20)
    db.session.commit()
    response = client.post(f'/api/admin/schools/{school.id}/notify', headers=auth(site_admin))
    assert response.status_code == 409
    assert response.get_json()['days_remaining'] == 19


def test_check_subscriptions(director, school):
    lapsed = make_school('Collège Expiré', subscription_end_date=datetime.utcnow() - timedelta(hours=1))
    soon = make_school('Collège Bientôt', subscription_status='trial',
                       subscription_end_date=datetime.utcnow() + timedelta(days=3, hours=1))

    assert check_subscriptions() == {'expired': 1, 'notices': 2}
    assert lapsed.subscription_status == 'expired'
    assert NotificationLog.query.filter_by(school_id=lapsed.id, notification_type='subscription_expired').count() == 1
    assert NotificationLog.query.filter_by(school_id=soon.id, days_remaining=3).count() == 1
    assert check_subscriptions() == {'expired': 0, 'notices': 0}


def test_delete_school_removes_its_data(client, auth, site_admin, school, other_school, student, parent, math,
                                        school_class, make_user):
    outsider = make_user('Student', other_school, first_name='Grace', last_name='Ndi')
    db.session.add(Grade(school_id=school.id, student_id=student.id, class_id=school_class.id, subject_id=math.id,
                         term='T1', academic_year=school_class.academic_year, value=12))
    db.session.commit()

    response = client.delete(f'/api/admin/schools/{school.id}', headers=auth(site_admin))
    assert response.status_code == 200
    assert db.session.get(School, school.id) is None
    assert User.query.filter_by(school_id=school.id).count() == 0
    assert SchoolClass.query.count() == 0
    assert Grade.query.count() == 0
    assert Bulletin.query.count() == 0
    assert db.session.get(User, outsider.id) is not None


def test_create_platform_users(client, auth, site_admin, school):
    response = client.post('/api/admin/users', headers=auth(site_admin), json={
        'role': 'Commercial', 'username': 'vendeur', 'password': 'secret99',
        'first_name': 'Alice', 'last_name': 'Ngo'})
    assert response.status_code == 201
    commercial_id = response.get_json()['user']['id']

    response = client.post(f'/api/admin/schools/{school.id}/commercial', headers=auth(site_admin),
                           json={'commercial_id': commercial_id})
    assert response.get_json()['commercial_id'] == commercial_id

    response = client.post('/api/admin/users', headers=auth(site_admin), json={
        'role': 'Director', 'username': 'x', 'password': 'secret99', 'first_name': 'A', 'last_name': 'B'})
    assert response.status_code == 400
