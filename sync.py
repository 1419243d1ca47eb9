"""
Server side of offline sync.

Devices replay queued actions either one by one (the upsert endpoints) or in
batches. Each batch action carries a client action id; an id already applied
for the same user is answered from the stored result instead of being applied
twice.
"""
import logging
import time

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import IntegrityError

from academics import (current_academic_year, mark_attendance, remove_grade, remove_homework, save_grade,
                       save_homework)
from bulletins import generate_bulletins
from errors import Conflict, EducafricError, PermissionDenied, ValidationFailed
from forms import BulletinGenerateForm, load_form
from models import Attendance, Bulletin, Grade, Homework, SchoolClass, Subject, SyncAction, TimetableSlot, User, db
from subscriptions import has_offline_access
from tenancy import get_current_user, get_school_object, require_school_id, roles_required, school_query

log = logging.getLogger("educafric.sync")

sync_bp = Blueprint('sync', __name__, url_prefix='/api/sync')

SYNC_ROLES = ('Teacher', 'Director')
ENTITY_TYPES = ('attendance', 'grade', 'homework', 'bulletin')
ACTIONS = ('create', 'update', 'delete')


def require_offline_access(user):
    if not has_offline_access(user):
        raise PermissionDenied('Offline mode is not available for this school', error='OFFLINE_NOT_AVAILABLE')


def _save(entity_type, user, school_id, data, record=None):
    if entity_type == 'attendance':
        return mark_attendance(user, school_id, data, record)
    if entity_type == 'grade':
        return save_grade(user, school_id, data, record)
    return save_homework(user, school_id, data, record)


MODELS = {'attendance': Attendance, 'grade': Grade, 'homework': Homework}


def _create_bulletin(user, data):
    form = load_form(BulletinGenerateForm, data)
    school_class = get_school_object(SchoolClass, form.class_id.data)
    try:
        student_id = int(data.get('student_id'))
    except (TypeError, ValueError):
        raise ValidationFailed(errors={'student_id': ['This field is required.']})
    summary = generate_bulletins(user, school_class, form.term.data, form.academic_year.data,
                                 student_ids=[student_id])
    if summary['skipped']:
        raise Conflict('Bulletin is no longer a draft', status=summary['skipped'][0]['status'])
    bulletin_ids = summary['created'] or summary['updated']
    if not bulletin_ids:
        raise ValidationFailed(errors={'student_id': ['Student is not enrolled in this class']})
    bulletin = db.session.get(Bulletin, bulletin_ids[0])
    return bulletin, bool(summary['updated'])


def _resolve_id(raw_id, id_map):
    if raw_id is None:
        raise ValidationFailed(errors={'id': ['A record id is required']})
    raw_id = id_map.get(str(raw_id), raw_id)
    try:
        return int(raw_id)
    except (TypeError, ValueError):
        raise ValidationFailed(errors={'id': [f'Unknown record id {raw_id}']})


def apply_action(user, school_id, entry, id_map):
    """Apply one batch action; returns the result stored for replays"""
    entity_type = entry.get('type')
    action = entry.get('action')
    if entity_type not in ENTITY_TYPES:
        raise ValidationFailed(errors={'type': [f'Unsupported type {entity_type}']})
    if action not in ACTIONS:
        raise ValidationFailed(errors={'action': [f'Unsupported action {action}']})
    data = entry.get('data')
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationFailed(errors={'data': ['Expected an object']})
    data = dict(data)
    record_id = data.pop('id', None)

    if entity_type == 'bulletin':
        if action != 'create':
            raise ValidationFailed(errors={'action': ['Bulletins can only be created offline']})
        bulletin, updated = _create_bulletin(user, data)
        return {'server_id': bulletin.id, 'updated': updated, 'data': bulletin.to_dict()}

    model = MODELS[entity_type]
    if action == 'create':
        record, updated = _save(entity_type, user, school_id, data)
        db.session.flush()
        return {'server_id': record.id, 'updated': updated, 'data': record.to_dict()}

    record = get_school_object(model, _resolve_id(record_id, id_map))
    if action == 'update':
        record, _ = _save(entity_type, user, school_id, data, record)
        db.session.flush()
        return {'server_id': record.id, 'updated': True, 'data': record.to_dict()}

    server_id = record.id
    if entity_type == 'grade':
        remove_grade(user, record)
    elif entity_type == 'homework':
        remove_homework(user, record)
    else:
        db.session.delete(record)
    db.session.flush()
    return {'server_id': server_id, 'deleted': True}


def process_batch(user, school_id, actions):
    results, errors, id_map = [], [], {}
    for index, entry in enumerate(actions):
        if not isinstance(entry, dict):
            errors.append({'index': index, 'message': 'Expected an object'})
            continue
        client_id = str(entry.get('id') or '')[:64]
        temp_id = entry.get('temp_id')
        if not client_id:
            errors.append({'index': index, 'message': 'Missing action id'})
            continue

        previous = SyncAction.query.filter_by(user_id=user.id, client_action_id=client_id).first()
        if previous is not None:
            result = {**(previous.result or {}), 'id': client_id, 'replayed': True}
            if temp_id is not None and previous.server_id is not None:
                id_map[str(temp_id)] = previous.server_id
            results.append(result)
            continue

        try:
            with db.session.begin_nested():
                result = apply_action(user, school_id, entry, id_map)
                db.session.add(SyncAction(user_id=user.id, client_action_id=client_id,
                                          entity_type=entry['type'], action=entry['action'], status='applied',
                                          server_id=result.get('server_id'), result=result))
        except EducafricError as e:
            errors.append({'id': client_id, 'index': index, 'message': e.message, **e.extra})
            continue
        except (IntegrityError, TypeError, ValueError) as e:
            log.warning("Sync action %s failed: %s", client_id, e)
            errors.append({'id': client_id, 'index': index, 'message': str(e).splitlines()[0]})
            continue

        if entry['action'] == 'create' and temp_id is not None:
            id_map[str(temp_id)] = result['server_id']
        results.append({**result, 'id': client_id})

    db.session.commit()
    log.info("Sync batch for user %s: %d ok, %d failed", user.id, len(results), len(errors))
    return {
        'success': not errors,
        'results': results,
        'errors': errors,
        'total': len(actions),
        'succeeded': len(results),
        'failed': len(errors),
        'id_map': id_map,
    }


def _upsert(entity_type):
    user = get_current_user()
    require_offline_access(user)
    record, updated = _save(entity_type, user, require_school_id(), request.get_json(silent=True) or {})
    db.session.commit()
    return jsonify({'success': True, 'data': record.to_dict(), 'updated': updated})


def _update(entity_type, record_id):
    user = get_current_user()
    require_offline_access(user)
    record = get_school_object(MODELS[entity_type], record_id)
    record, _ = _save(entity_type, user, require_school_id(), request.get_json(silent=True) or {}, record)
    db.session.commit()
    return jsonify({'success': True, 'data': record.to_dict()})


@sync_bp.route('/attendance', methods=['POST'])
@roles_required(*SYNC_ROLES)
def sync_attendance():
    return _upsert('attendance')


@sync_bp.route('/attendance/<int:record_id>', methods=['PUT'])
@roles_required(*SYNC_ROLES)
def update_attendance(record_id):
    return _update('attendance', record_id)


@sync_bp.route('/grades', methods=['POST'])
@roles_required(*SYNC_ROLES)
def sync_grade():
    return _upsert('grade')


@sync_bp.route('/grades/<int:record_id>', methods=['PUT'])
@roles_required(*SYNC_ROLES)
def update_grade(record_id):
    return _update('grade', record_id)


@sync_bp.route('/homework', methods=['POST'])
@roles_required(*SYNC_ROLES)
def sync_homework():
    return _upsert('homework')


@sync_bp.route('/batch', methods=['POST'])
@roles_required(*SYNC_ROLES)
def batch():
    user = get_current_user()
    require_offline_access(user)
    payload = request.get_json(silent=True) or {}
    actions = payload.get('actions')
    if not isinstance(actions, list):
        raise ValidationFailed('Actions must be an array')
    limit = current_app.config['OFFLINE_BATCH_LIMIT']
    if len(actions) > limit:
        raise ValidationFailed(f'Too many actions in one batch (max {limit})', limit=limit)
    return jsonify(process_batch(user, require_school_id(), actions))


@sync_bp.route('/status', methods=['GET'])
@roles_required(*SYNC_ROLES)
def status():
    user = get_current_user()
    offline_access = has_offline_access(user)
    return jsonify({
        'success': True,
        'server_time': int(time.time() * 1000),
        'sync_available': True,
        'offline_access': offline_access,
        'batch_limit': current_app.config['OFFLINE_BATCH_LIMIT'],
    })


@sync_bp.route('/snapshot', methods=['GET'])
@roles_required(*SYNC_ROLES)
def snapshot():
    """School data for the device cache; grades and bulletins need offline access"""
    user = get_current_user()
    academic_year = request.args.get('academic_year') or current_academic_year()
    classes = school_query(SchoolClass).filter_by(academic_year=academic_year).all()
    class_ids = [c.id for c in classes] or [-1]
    subjects = school_query(Subject).filter(Subject.class_id.in_(class_ids)).all()
    if user.role == 'Teacher':
        subjects = [s for s in subjects if s.teacher_id == user.id]
    students = school_query(User).filter_by(role='Student', is_active=True).all()
    slots = school_query(TimetableSlot).filter(TimetableSlot.class_id.in_(class_ids)).all()
    data = {
        'success': True,
        'academic_year': academic_year,
        'server_time': int(time.time() * 1000),
        'classes': [c.to_dict() for c in classes],
        'subjects': [s.to_dict() for s in subjects],
        'students': [s.to_dict() for s in students],
        'timetable': [s.to_dict() for s in slots],
        'offline_access': has_offline_access(user),
    }
    if data['offline_access']:
        grades = school_query(Grade).filter_by(academic_year=academic_year).all()
        bulletins = school_query(Bulletin).filter_by(academic_year=academic_year).all()
        data['grades'] = [g.to_dict() for g in grades]
        data['bulletins'] = [b.to_dict() for b in bulletins]
    return jsonify(data)
