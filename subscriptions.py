"""
Subscription plans and premium feature gating.

Schools, parents and freelancers each hold their own subscription. A school
that is not on an active premium or trial plan falls back to freemium, with
basic features and record limits.
"""
import logging
import re
from datetime import datetime, timedelta
from functools import wraps

from flask import Blueprint, current_app, jsonify

from errors import LimitReached, NotFound, PermissionDenied, PremiumRequired, ValidationFailed
from models import School, SchoolClass, Subscription, User, db
from forms import SubscribeForm, load_form
from tenancy import get_current_user, login_required, require_school_id, roles_required

log = logging.getLogger("educafric.subscriptions")

subscriptions_bp = Blueprint('subscriptions', __name__, url_prefix='/api/subscriptions')

FREEMIUM_FEATURES = (
    'basic_student_management',
    'basic_teacher_management',
    'basic_attendance',
    'basic_grades',
    'basic_communication',
    'basic_homework',
)
FREEMIUM_RESTRICTIONS = (
    'No SMS or WhatsApp notifications',
    'No bulletins or report cards',
    'No advanced reports',
    'No offline mode',
)
FREEMIUM_LIMITS = {
    'students': 30,
    'teachers': 5,
    'classes': 5,
    'parents': 30,
}

_SCHOOL_CORE = FREEMIUM_FEATURES + (
    'advanced_academic',
    'bulletins',
    'transcripts',
    'timetable',
    'parent_communication',
    'sms_notifications',
    'whatsapp_notifications',
    'push_notifications',
    'fee_management',
    'offline_mode',
    'automatic_backup',
)

PLANS = {
    'ecole_publique': {
        'name': 'École Publique', 'type': 'school', 'price': 250000, 'billing': 'annual',
        'features': _SCHOOL_CORE,
    },
    'ecole_privee': {
        'name': 'École Privée', 'type': 'school', 'price': 750000, 'billing': 'annual',
        'features': _SCHOOL_CORE + ('advanced_reports', 'financial_reports', 'commercial_module',
                                    'custom_branding', 'api_access'),
    },
    'ecole_entreprise': {
        'name': 'École Entreprise', 'type': 'school', 'price': 150000, 'billing': 'annual',
        'features': _SCHOOL_CORE + ('bilingual_interface', 'professional_training', 'digital_certificates'),
    },
    'parent_premium': {
        'name': 'Parent Premium', 'type': 'parent', 'price': 1000, 'billing': 'monthly',
        'features': ('student_tracking', 'grade_access', 'bulletin_access', 'fee_tracking',
                     'real_time_notifications', 'sms_notifications', 'whatsapp_notifications',
                     'push_notifications', 'teacher_communication'),
    },
    'repetiteur_professionnel': {
        'name': 'Répétiteur Professionnel', 'type': 'freelancer', 'price': 12000, 'billing': 'monthly',
        'features': ('student_management', 'custom_schedule', 'progress_tracking', 'parent_communication',
                     'simplified_billing', 'pedagogical_documents'),
        'limits': {'students': 50, 'classes': 10},
    },
    'repetiteur_professionnel_annual': {
        'name': 'Répétiteur Professionnel (Annuel)', 'type': 'freelancer', 'price': 120000, 'billing': 'annual',
        'features': ('student_management', 'custom_schedule', 'progress_tracking', 'parent_communication',
                     'simplified_billing', 'pedagogical_documents', 'priority_support', 'marketing_tools'),
        'limits': {'students': 50, 'classes': 10},
    },
}

EXEMPT_EMAIL_PATTERNS = (
    '@test.educafric.com', '@educafric.demo', '@educafric.test',
    'sandbox@', 'sandbox.', 'demo@', 'demo.', 'test@', 'test.',
)

_FICTITIOUS_EMAIL = re.compile(r'^(test|demo|sandbox|fictif)@', re.IGNORECASE)
_FICTITIOUS_NAME = re.compile(r'^(test|demo|fictif)', re.IGNORECASE)


def plan_end_date(plan_id, start=None):
    """Annual plans run 365 days, monthly plans 30 days"""
    start = start or datetime.utcnow()
    billing = PLANS[plan_id]['billing']
    return start + timedelta(days=365 if billing == 'annual' else 30)


def is_exempt_email(email):
    if not email:
        return False
    email = email.lower()
    return any(pattern in email for pattern in EXEMPT_EMAIL_PATTERNS)


def is_sandbox_school(school):
    if school is None:
        return False
    sandbox_id = current_app.config.get('SANDBOX_SCHOOL_ID')
    return bool(school.is_sandbox or (sandbox_id and str(school.id) == str(sandbox_id)))


def school_plan_active(school):
    """True while the school is on a premium or trial plan that has not lapsed"""
    if school is None or school.is_blocked:
        return False
    if school.subscription_status not in ('premium', 'trial'):
        return False
    return not school.is_subscription_expired()


def active_user_subscription(user, owner_type):
    now = datetime.utcnow()
    return (Subscription.query
            .filter_by(user_id=user.id, owner_type=owner_type, is_active=True)
            .filter(db.or_(Subscription.end_date.is_(None), Subscription.end_date > now))
            .order_by(Subscription.created_at.desc())
            .first())


def _freemium_access(**extra):
    access = {
        'plan_id': 'freemium',
        'plan_name': 'Freemium',
        'is_freemium': True,
        'is_exempt': False,
        'features': set(FREEMIUM_FEATURES),
        'restrictions': list(FREEMIUM_RESTRICTIONS),
        'limits': dict(FREEMIUM_LIMITS),
        'expires_at': None,
    }
    access.update(extra)
    return access


def _plan_access(plan_id, expires_at=None, **extra):
    plan = PLANS.get(plan_id)
    if plan is None:
        return _freemium_access(**extra)
    access = {
        'plan_id': plan_id,
        'plan_name': plan['name'],
        'is_freemium': False,
        'is_exempt': False,
        'features': set(plan['features']),
        'restrictions': [],
        'limits': dict(plan.get('limits', {})),
        'expires_at': expires_at.isoformat() if expires_at else None,
    }
    access.update(extra)
    return access


def get_access(user):
    """Resolve the plan, features and limits that apply to a user"""
    school = db.session.get(School, user.school_id) if user.school_id else None

    if school is not None and school.is_blocked:
        return _freemium_access(plan_id='blocked', plan_name='Blocked', features=set(), blocked=True)

    if user.role == 'SiteAdmin' or is_exempt_email(user.email) or is_sandbox_school(school):
        return {
            'plan_id': 'sandbox_unlimited',
            'plan_name': 'Sandbox Unlimited',
            'is_freemium': False,
            'is_exempt': True,
            'features': '*',
            'restrictions': [],
            'limits': {},
            'expires_at': None,
        }

    if user.role in ('Parent', 'Student'):
        subscription = active_user_subscription(user, 'parent')
        if subscription is not None:
            return _plan_access(subscription.plan_id, subscription.end_date)
        if school_plan_active(school):
            return _plan_access('parent_premium', school.subscription_end_date)
        return _freemium_access()

    if user.role == 'Freelancer':
        subscription = active_user_subscription(user, 'freelancer')
        if subscription is not None:
            return _plan_access(subscription.plan_id, subscription.end_date)
        return _freemium_access()

    if school_plan_active(school):
        return _plan_access(school.plan_id, school.subscription_end_date,
                            status=school.subscription_status)
    return _freemium_access()


def can_access_feature(user, feature):
    access = get_access(user)
    if access.get('blocked'):
        return False
    return access['features'] == '*' or feature in access['features']


def has_offline_access(user):
    """Offline mode needs a premium-grade plan with offline_mode and the school flag"""
    if user.role == 'SiteAdmin':
        return True
    school = db.session.get(School, user.school_id) if user.school_id else None
    if school is None or not school.offline_enabled:
        return False
    access = get_access(user)
    if access.get('blocked') or access['is_freemium']:
        return False
    return access['features'] == '*' or 'offline_mode' in access['features']


def count_resource(school_id, resource):
    if resource == 'students':
        return User.query.filter_by(school_id=school_id, role='Student').count()
    if resource == 'teachers':
        return User.query.filter_by(school_id=school_id, role='Teacher').count()
    if resource == 'parents':
        return User.query.filter_by(school_id=school_id, role='Parent').count()
    if resource == 'classes':
        return SchoolClass.query.filter_by(school_id=school_id).count()
    raise ValueError(f"Unknown resource: {resource}")


def check_limit(user, resource, school_id=None):
    """Current count, limit and remaining room for a countable resource"""
    access = get_access(user)
    school_id = school_id or user.school_id
    limit = access['limits'].get(resource) if access['is_freemium'] else None
    if access['is_exempt'] or limit is None or school_id is None:
        return {'can_add': True, 'current_count': None, 'limit': -1, 'remaining': -1}
    current_count = count_resource(school_id, resource)
    remaining = max(0, limit - current_count)
    return {'can_add': current_count < limit, 'current_count': current_count,
            'limit': limit, 'remaining': remaining}


def serialize_access(access):
    features = access['features']
    return {
        'planId': access['plan_id'],
        'planName': access['plan_name'],
        'isFreemium': access['is_freemium'],
        'isExempt': access['is_exempt'],
        'features': '*' if features == '*' else sorted(features),
        'restrictions': access['restrictions'],
        'limits': access['limits'],
        'expiresAt': access['expires_at'],
    }


def upgrade_url(user):
    if user.role in ('Parent', 'Student'):
        return f'/subscribe?type=parent&user={user.id}'
    if user.role == 'Freelancer':
        return f'/subscribe?type=freelancer&user={user.id}'
    return '/subscribe'


def require_feature(user, feature):
    access = get_access(user)
    if access.get('blocked'):
        raise PermissionDenied('School account is suspended. Please contact support.')
    if access['features'] != '*' and feature not in access['features']:
        log.info("Premium feature %s denied for user %s (%s)", feature, user.id, access['plan_id'])
        raise PremiumRequired(
            f"Premium feature required: {feature}",
            feature=feature,
            currentPlan=access['plan_id'],
            isFreemium=access['is_freemium'],
            upgradeUrl=upgrade_url(user),
            availableFeatures=sorted(access['features']),
            restrictions=access['restrictions'],
        )
    return access


def feature_required(feature):
    """Deny with PremiumRequired unless the caller's plan includes the feature"""
    def decorator(f):
        @wraps(f)
        @login_required
        def decorated_function(*args, **kwargs):
            require_feature(get_current_user(), feature)
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def enforce_limit(user, resource, school_id=None):
    result = check_limit(user, resource, school_id)
    if not result['can_add']:
        raise LimitReached(
            f"Freemium limit reached ({result['limit']} {resource} max). Upgrade to premium for more.",
            resource=resource,
            currentCount=result['current_count'],
            limit=result['limit'],
            remaining=result['remaining'],
            upgradeUrl=upgrade_url(user),
        )
    return result


def freemium_limit(resource):
    """Deny with LimitReached once a freemium school is at its quota"""
    def decorator(f):
        @wraps(f)
        @login_required
        def decorated_function(*args, **kwargs):
            enforce_limit(get_current_user(), resource, require_school_id())
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def is_fictitious(item):
    email = item.get('email')
    if email and _FICTITIOUS_EMAIL.match(email):
        return True
    for key in ('first_name', 'last_name', 'name'):
        value = item.get(key)
        if value and _FICTITIOUS_NAME.match(value):
            return True
    return False


def filter_fictitious(items, school):
    """Drop test and demo records from listings outside sandbox schools"""
    if is_sandbox_school(school):
        return list(items)
    return [item for item in items if not is_fictitious(item)]


def activate_school_plan(school, plan_id, amount_paid=0, payment_method=None,
                         payment_reference=None, created_by=None, notes=None):
    """Replace the school's subscriptions with a new premium plan"""
    plan = PLANS.get(plan_id)
    if plan is None or plan['type'] != 'school':
        raise ValidationFailed('Invalid school plan', errors={'plan_id': ['Unknown school plan']})

    # Deactivate current subscriptions
    Subscription.query.filter_by(owner_type='school', school_id=school.id, is_active=True).update({'is_active': False})

    start_date = datetime.utcnow()
    end_date = plan_end_date(plan_id, start_date)
    subscription = Subscription(
        owner_type='school',
        school_id=school.id,
        plan_id=plan_id,
        start_date=start_date,
        end_date=end_date,
        amount_paid=amount_paid if amount_paid is not None else plan['price'],
        payment_method=payment_method,
        payment_reference=payment_reference,
        created_by=created_by,
        notes=notes,
    )
    db.session.add(subscription)

    school.plan_id = plan_id
    school.subscription_status = 'premium'
    school.subscription_end_date = end_date
    school.is_blocked = False
    school.updated_at = datetime.utcnow()
    log.info("School %s moved to plan %s until %s", school.id, plan_id, end_date.date())
    return subscription


def expire_lapsed_schools():
    """Mark trial and premium schools past their end date as expired"""
    expired = []
    for school in School.query.filter(School.subscription_status.in_(('trial', 'premium'))).all():
        if school.is_subscription_expired():
            school.subscription_status = 'expired'
            expired.append(school)
    for subscription in Subscription.query.filter(Subscription.is_active.is_(True),
                                                  Subscription.end_date.isnot(None),
                                                  Subscription.end_date <= datetime.utcnow()).all():
        subscription.is_active = False
    db.session.commit()
    if expired:
        log.info("Expired %d school subscriptions", len(expired))
    return expired


@subscriptions_bp.route('/plans')
def list_plans():
    plans = []
    for plan_id, plan in PLANS.items():
        plans.append({
            'id': plan_id,
            'name': plan['name'],
            'type': plan['type'],
            'price': plan['price'],
            'currency': 'XAF',
            'billing': plan['billing'],
            'features': list(plan['features']),
            'limits': plan.get('limits', {}),
        })
    return jsonify({'success': True, 'plans': plans,
                    'freemium': {'features': list(FREEMIUM_FEATURES), 'limits': FREEMIUM_LIMITS,
                                 'restrictions': list(FREEMIUM_RESTRICTIONS)}})


@subscriptions_bp.route('/status')
@login_required
def subscription_status():
    user = get_current_user()
    access = get_access(user)
    usage = {}
    if user.school_id and user.role in ('Director', 'SiteAdmin'):
        for resource in FREEMIUM_LIMITS:
            usage[resource] = check_limit(user, resource)
    return jsonify({'success': True, 'subscription': serialize_access(access),
                    'offline_access': has_offline_access(user), 'usage': usage})


@subscriptions_bp.route('/subscribe', methods=['POST'])
@roles_required('Parent', 'Freelancer')
def subscribe():
    """Record a paid parent or freelancer subscription"""
    user = get_current_user()
    form = load_form(SubscribeForm)
    plan_id = form.plan_id.data
    plan = PLANS.get(plan_id)
    owner_type = 'parent' if user.role == 'Parent' else 'freelancer'
    if plan is None:
        raise NotFound('Plan not found')
    if plan['type'] != owner_type:
        raise ValidationFailed('Plan not available for this account',
                               errors={'plan_id': [f'Choose a {owner_type} plan']})

    try:
        Subscription.query.filter_by(user_id=user.id, owner_type=owner_type, is_active=True).update({'is_active': False})
        start_date = datetime.utcnow()
        subscription = Subscription(
            owner_type=owner_type,
            user_id=user.id,
            school_id=user.school_id,
            plan_id=plan_id,
            start_date=start_date,
            end_date=plan_end_date(plan_id, start_date),
            amount_paid=plan['price'],
            payment_method=form.payment_method.data,
            payment_reference=form.payment_reference.data or None,
            created_by=user.username,
        )
        db.session.add(subscription)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    log.info("User %s subscribed to %s", user.id, plan_id)
    return jsonify({'success': True, 'subscription': subscription.to_dict()}), 201
