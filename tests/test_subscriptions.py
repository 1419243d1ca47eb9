from datetime import datetime, timedelta

from conftest import make_school
from models import Subscription, db
from subscriptions import (can_access_feature, check_limit, filter_fictitious, get_access, has_offline_access,
                           is_exempt_email)


def test_premium_school_staff_get_plan_features(director):
    access = get_access(director)
    assert access['plan_id'] == 'ecole_publique'
    assert access['is_freemium'] is False
    assert can_access_feature(director, 'bulletins')
    assert not can_access_feature(director, 'financial_reports')


def test_lapsed_school_falls_back_to_freemium(make_user):
    school = make_school('Collège Expiré', subscription_end_date=datetime.utcnow() - timedelta(days=1))
    director = make_user('Director', school, first_name='Paul', last_name='Biya')
    access = get_access(director)
    assert access['is_freemium'] is True
    assert not can_access_feature(director, 'bulletins')
    assert can_access_feature(director, 'basic_grades')


def test_blocked_school_has_no_features(director, school):
    school.is_blocked = True
    db.session.commit()
    assert not can_access_feature(director, 'basic_grades')


def test_parents_inherit_premium_from_the_school(parent):
    assert get_access(parent)['plan_id'] == 'parent_premium'
    assert can_access_feature(parent, 'bulletin_access')


def test_parents_of_freemium_schools_need_their_own_plan(make_user, freemium_school):
    parent = make_user('Parent', freemium_school, first_name='Awa', last_name='Moussa')
    assert not can_access_feature(parent, 'bulletin_access')
    db.session.add(Subscription(owner_type='parent', user_id=parent.id, school_id=freemium_school.id,
                                plan_id='parent_premium', start_date=datetime.utcnow(),
                                end_date=datetime.utcnow() + timedelta(days=30), amount_paid=1000))
    db.session.commit()
    assert can_access_feature(parent, 'bulletin_access')


def test_exempt_accounts_have_everything(make_user, freemium_school):
    assert is_exempt_email('Demo@school.cm')
    assert not is_exempt_email('principal@college.cm')
    user = make_user('Director', freemium_school, email='sandbox@educafric.cm')
    access = get_access(user)
    assert access['is_exempt'] is True
    assert can_access_feature(user, 'offline_mode')


def test_offline_access_needs_the_school_flag(director, school):
    assert has_offline_access(director)
    school.offline_enabled = False
    db.session.commit()
    assert not has_offline_access(director)


def test_freemium_limits(make_user, freemium_school, school):
    director = make_user('Director', freemium_school, first_name='Amadou', last_name='Sali')
    assert check_limit(director, 'classes') == {'can_add': True, 'current_count': 0, 'limit': 5, 'remaining': 5}
    premium_director = make_user('Director', school, first_name='Jeanne', last_name='Mballa')
    assert check_limit(premium_director, 'classes')['limit'] == -1


def test_fictitious_records_are_hidden_outside_sandbox(school):
    items = [{'first_name': 'Demo', 'last_name': 'Eleve'}, {'first_name': 'Paul', 'email': 'test@x.cm'},
             {'first_name': 'Marie', 'last_name': 'Atangana'}]
    assert filter_fictitious(items, school) == [{'first_name': 'Marie', 'last_name': 'Atangana'}]
    school.is_sandbox = True
    assert filter_fictitious(items, school) == items


def test_plans_are_public(client):
    response = client.get('/api/subscriptions/plans')
    assert response.status_code == 200
    plans = {plan['id']: plan for plan in response.get_json()['plans']}
    assert plans['parent_premium']['price'] == 1000
    assert plans['ecole_privee']['billing'] == 'annual'


def test_status_reports_usage_for_directors(client, auth, director, school_class):
    response = client.get('/api/subscriptions/status', headers=auth(director))
    data = response.get_json()
    assert data['subscription']['planId'] == 'ecole_publique'
    assert data['offline_access'] is True
    assert set(data['usage']) == {'students', 'teachers', 'classes', 'parents'}


def test_parent_subscribes(client, auth, make_user, freemium_school):
    parent = make_user('Parent', freemium_school, first_name='Awa', last_name='Moussa')
    response = client.post('/api/subscriptions/subscribe', headers=auth(parent),
                           json={'plan_id': 'parent_premium', 'payment_method': 'mtn_momo'})
    assert response.status_code == 201
    assert response.get_json()['subscription']['plan_id'] == 'parent_premium'
    assert can_access_feature(parent, 'bulletin_access')


def test_parent_cannot_take_a_school_plan(client, auth, parent):
    response = client.post('/api/subscriptions/subscribe', headers=auth(parent),
                           json={'plan_id': 'ecole_privee', 'payment_method': 'cash'})
    assert response.status_code == 400
