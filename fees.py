"""
School fees: structures, per-student assignment, payments, receipts and the
daily reminder run.

Amounts are whole XAF. An assigned fee always keeps
``paid_amount + balance_amount == final_amount``.
"""
import logging
import math
from datetime import date, datetime, timedelta

from flask import Blueprint, jsonify, request
from sqlalchemy.exc import IntegrityError

from academics import class_students
from errors import Conflict, NotFound, ValidationFailed
from forms import AssignFeeForm, FeeStructureForm, PaymentForm, id_list, load_form
from models import (FEE_OPEN_STATUSES, AssignedFee, FeeAuditLog, FeeReceipt, FeeStructure, ParentStudent,
                    Payment, PaymentItem, SchoolClass, User, db)
from notifications import format_amount, notify, parents_of
from subscriptions import feature_required
from tenancy import (get_current_user, get_school_object, get_school_user, require_school_id, roles_required,
                     school_query)

log = logging.getLogger("educafric.fees")

fees_bp = Blueprint('fees', __name__, url_prefix='/api/fees')

RECEIPT_NUMBER_ATTEMPTS = 3


def round_half_up(value):
    return int(math.floor(value + 0.5))


def sibling_discount(structure, student):
    """Discount for the 2nd and later child of the same parent"""
    if not structure.sibling_discount:
        return 0
    for link in ParentStudent.query.filter_by(student_id=student.id).all():
        siblings = (User.query.join(ParentStudent, ParentStudent.student_id == User.id)
                    .filter(ParentStudent.parent_id == link.parent_id, User.school_id == student.school_id)
                    .order_by(User.id)
                    .all())
        position = [s.id for s in siblings].index(student.id) + 1
        if position >= 2:
            return round_half_up(structure.amount * structure.sibling_discount / 100)
    return 0


def audit(school_id, user, action, entity_type, entity_id=None, description=None, payload=None):
    db.session.add(FeeAuditLog(
        school_id=school_id,
        actor_id=user.id if user else None,
        actor_role=user.role if user else 'system',
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        description=description,
        payload=payload,
    ))


def fee_recipients(student):
    return parents_of(student) or [student]


def assign_fee(user, structure, students):
    """Assign a structure to students; those who already have it are skipped"""
    assigned, skipped = [], []
    for student in students:
        if AssignedFee.query.filter_by(student_id=student.id, fee_structure_id=structure.id).first():
            skipped.append(student.id)
            continue
        discount = sibling_discount(structure, student)
        final_amount = structure.amount - discount
        fee = AssignedFee(
            school_id=structure.school_id,
            student_id=student.id,
            fee_structure_id=structure.id,
            original_amount=structure.amount,
            discount_amount=discount,
            discount_reason='sibling' if discount else None,
            final_amount=final_amount,
            paid_amount=0,
            balance_amount=final_amount,
            status='pending',
            due_date=structure.due_date,
        )
        db.session.add(fee)
        assigned.append(fee)
    db.session.flush()
    audit(structure.school_id, user, 'assign', 'fee_structure', structure.id,
          f"{structure.name} assigned to {len(assigned)} students",
          {'assigned': [f.student_id for f in assigned], 'skipped': skipped})
    return assigned, skipped


def record_payment(user, school_id, student, amount, method='cash', transaction_ref=None, notes=None,
                   fee_ids=None):
    """Apply a payment to open fees, oldest due date first.

    Returns (payment, receipt, excess). The excess is what could not be
    applied to any open fee and is not recorded.
    """
    query = AssignedFee.query.filter(AssignedFee.school_id == school_id,
                                     AssignedFee.student_id == student.id,
                                     AssignedFee.status.in_(FEE_OPEN_STATUSES),
                                     AssignedFee.balance_amount > 0)
    if fee_ids:
        query = query.filter(AssignedFee.id.in_(fee_ids))
    fees = query.order_by(AssignedFee.due_date.is_(None), AssignedFee.due_date, AssignedFee.id).all()
    if not fees:
        raise ValidationFailed('No outstanding fees for this student', errors={'student_id': ['Nothing to pay']})

    payment = Payment(school_id=school_id, student_id=student.id, amount=0, method=method,
                      transaction_ref=transaction_ref, notes=notes, recorded_by=user.id if user else None)
    db.session.add(payment)

    remaining = amount
    now = datetime.utcnow()
    for fee in fees:
        if remaining <= 0:
            break
        applied = min(remaining, fee.balance_amount)
        fee.paid_amount += applied
        fee.balance_amount -= applied
        fee.last_payment_date = now
        if fee.balance_amount == 0:
            fee.status = 'paid'
            fee.paid_date = now
        else:
            fee.status = 'partial'
        payment.items.append(PaymentItem(assigned_fee_id=fee.id, amount=applied))
        remaining -= applied

    payment.amount = amount - remaining
    db.session.flush()

    receipt = None
    for _ in range(RECEIPT_NUMBER_ATTEMPTS):
        candidate = FeeReceipt(school_id=school_id, payment_id=payment.id, student_id=student.id,
                               receipt_number=FeeReceipt.generate_receipt_number(school_id),
                               total_amount=payment.amount, payment_method=method)
        try:
            with db.session.begin_nested():
                db.session.add(candidate)
        except IntegrityError:
            log.warning("Receipt number %s already taken, retrying", candidate.receipt_number)
            continue
        receipt = candidate
        break
    if receipt is None:
        raise Conflict('Could not allocate a receipt number, please retry')

    audit(school_id, user, 'payment', 'payment', payment.id,
          f"Payment of {payment.amount} XAF for student {student.id}",
          {'items': [{'assigned_fee_id': i.assigned_fee_id, 'amount': i.amount} for i in payment.items],
           'excess': remaining, 'receipt_number': receipt.receipt_number})

    for recipient in fee_recipients(student):
        notify(recipient, 'payment_receipt', school_id=school_id, amount=format_amount(payment.amount),
               student_name=student.full_name, receipt_number=receipt.receipt_number)

    log.info("Payment %s: %s XAF for student %s, receipt %s", payment.id, payment.amount, student.id,
             receipt.receipt_number)
    return payment, receipt, remaining


def fee_stats(school_id, today=None):
    today = today or date.today()
    fees = AssignedFee.query.filter_by(school_id=school_id).all()
    expected = sum(f.final_amount for f in fees)
    collected = sum(f.paid_amount for f in fees)
    outstanding = sum(f.balance_amount for f in fees)
    since = datetime.combine(today - timedelta(days=30), datetime.min.time())
    recent = Payment.query.filter(Payment.school_id == school_id, Payment.created_at >= since).all()
    return {
        'total_expected': expected,
        'total_collected': collected,
        'total_outstanding': outstanding,
        'collection_rate': round(collected / expected * 100, 2) if expected else 0,
        'fee_count': len(fees),
        'students_in_arrears': len({f.student_id for f in fees if f.balance_amount > 0}),
        'overdue_count': sum(1 for f in fees if f.status == 'overdue'),
        'pending_count': sum(1 for f in fees if f.status == 'pending'),
        'paid_count': sum(1 for f in fees if f.status == 'paid'),
        'recent_payments_count': len(recent),
        'recent_payments_amount': sum(p.amount for p in recent),
        'currency': 'XAF',
    }


def check_fees(today=None):
    """Mark fees past due as overdue and send one notice, remind fees due within 3 days"""
    today = today or date.today()
    stats = {'overdue': 0, 'reminders': 0}

    overdue = (AssignedFee.query
               .filter(AssignedFee.balance_amount > 0, AssignedFee.due_date.isnot(None),
                       AssignedFee.due_date < today, AssignedFee.status.in_(FEE_OPEN_STATUSES))
               .all())
    for fee in overdue:
        fee.status = 'overdue'
        if not fee.overdue_notice_sent:
            for recipient in fee_recipients(fee.student):
                notify(recipient, 'fee_overdue', school_id=fee.school_id, fee_name=fee.fee_structure.name,
                       student_name=fee.student.full_name, due_date=fee.due_date.strftime('%d/%m/%Y'),
                       balance=format_amount(fee.balance_amount))
            fee.overdue_notice_sent = True
            stats['overdue'] += 1

    upcoming = (AssignedFee.query
                .filter(AssignedFee.balance_amount > 0, AssignedFee.reminder_sent.is_(False),
                        AssignedFee.due_date >= today, AssignedFee.due_date <= today + timedelta(days=3),
                        AssignedFee.status.in_(('pending', 'partial')))
                .all())
    for fee in upcoming:
        for recipient in fee_recipients(fee.student):
            notify(recipient, 'fee_reminder', school_id=fee.school_id, fee_name=fee.fee_structure.name,
                   student_name=fee.student.full_name, due_date=fee.due_date.strftime('%d/%m/%Y'),
                   balance=format_amount(fee.balance_amount))
        fee.reminder_sent = True
        stats['reminders'] += 1

    db.session.commit()
    log.info("Fee check: %s", stats)
    return stats


@fees_bp.route('/structures', methods=['GET'])
@roles_required('Director', 'Commercial')
@feature_required('fee_management')
def list_structures():
    query = school_query(FeeStructure)
    if request.args.get('active') in ('1', 'true'):
        query = query.filter_by(is_active=True)
    structures = query.order_by(FeeStructure.due_date.is_(None), FeeStructure.due_date, FeeStructure.name).all()
    return jsonify({'success': True, 'structures': [s.to_dict() for s in structures]})


def _apply_structure_form(structure, form, payload):
    if form.class_id.data:
        get_school_object(SchoolClass, form.class_id.data)
    structure.name = form.name.data
    structure.description = form.description.data or None
    structure.fee_type = form.fee_type.data or 'tuition'
    structure.amount = form.amount.data
    structure.class_id = form.class_id.data
    structure.frequency = form.frequency.data or 'term'
    structure.due_date = form.due_date.data
    structure.sibling_discount = form.sibling_discount.data or 0
    if 'is_mandatory' in payload:
        structure.is_mandatory = form.is_mandatory.data


@fees_bp.route('/structures', methods=['POST'])
@roles_required('Director')
@feature_required('fee_management')
def create_structure():
    school_id = require_school_id()
    payload = request.get_json(silent=True) or {}
    form = load_form(FeeStructureForm)
    structure = FeeStructure(school_id=school_id, is_mandatory=True)
    _apply_structure_form(structure, form, payload)
    db.session.add(structure)
    db.session.flush()
    audit(school_id, get_current_user(), 'create', 'fee_structure', structure.id, structure.name,
          {'amount': structure.amount})
    db.session.commit()
    return jsonify({'success': True, 'structure': structure.to_dict()}), 201


@fees_bp.route('/structures/<int:structure_id>', methods=['PUT'])
@roles_required('Director')
@feature_required('fee_management')
def update_structure(structure_id):
    structure = get_school_object(FeeStructure, structure_id)
    payload = request.get_json(silent=True) or {}
    form = load_form(FeeStructureForm, {**structure.to_dict(), **payload})
    if form.amount.data != structure.amount and structure.assigned_fees:
        raise Conflict('Amount cannot change once the fee is assigned')
    _apply_structure_form(structure, form, payload)
    if 'is_active' in payload:
        structure.is_active = bool(payload['is_active'])
    audit(structure.school_id, get_current_user(), 'update', 'fee_structure', structure.id, structure.name, payload)
    db.session.commit()
    return jsonify({'success': True, 'structure': structure.to_dict()})


@fees_bp.route('/structures/<int:structure_id>', methods=['DELETE'])
@roles_required('Director')
@feature_required('fee_management')
def delete_structure(structure_id):
    structure = get_school_object(FeeStructure, structure_id)
    if structure.assigned_fees:
        # Assigned structures stay for the payment history
        structure.is_active = False
        action = 'deactivate'
    else:
        db.session.delete(structure)
        action = 'delete'
    audit(structure.school_id, get_current_user(), action, 'fee_structure', structure_id, structure.name)
    db.session.commit()
    return jsonify({'success': True, 'action': action})


@fees_bp.route('/assign', methods=['POST'])
@roles_required('Director')
@feature_required('fee_management')
def assign():
    """Assign to explicit students, else to a class, else to the whole school"""
    school_id = require_school_id()
    form = load_form(AssignFeeForm)
    structure = get_school_object(FeeStructure, form.fee_structure_id.data)
    if not structure.is_active:
        raise Conflict('Fee structure is inactive')

    student_ids = id_list('student_ids')
    class_id = form.class_id.data or structure.class_id
    if student_ids:
        students = [get_school_user(student_id, 'Student') for student_id in student_ids]
    elif class_id:
        students = class_students(get_school_object(SchoolClass, class_id))
    else:
        students = school_query(User).filter_by(role='Student', is_active=True).all()

    try:
        assigned, skipped = assign_fee(get_current_user(), structure, students)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return jsonify({'success': True, 'assigned': [f.to_dict() for f in assigned], 'skipped': skipped,
                    'assigned_count': len(assigned), 'skipped_count': len(skipped)})


@fees_bp.route('/assigned', methods=['GET'])
@roles_required('Director', 'Commercial')
@feature_required('fee_management')
def list_assigned():
    query = school_query(AssignedFee)
    if request.args.get('student_id'):
        query = query.filter_by(student_id=request.args.get('student_id', type=int))
    if request.args.get('status'):
        query = query.filter_by(status=request.args['status'])
    if request.args.get('fee_structure_id'):
        query = query.filter_by(fee_structure_id=request.args.get('fee_structure_id', type=int))
    fees = query.order_by(AssignedFee.due_date.is_(None), AssignedFee.due_date, AssignedFee.id).all()
    return jsonify({'success': True, 'fees': [f.to_dict() for f in fees]})


@fees_bp.route('/payments', methods=['POST'])
@roles_required('Director')
@feature_required('fee_management')
def create_payment():
    school_id = require_school_id()
    form = load_form(PaymentForm)
    student = get_school_user(form.student_id.data, 'Student')
    fee_ids = id_list('fee_ids')
    try:
        payment, receipt, excess = record_payment(get_current_user(), school_id, student, form.amount.data,
                                                  form.method.data or 'cash', form.transaction_ref.data or None,
                                                  form.notes.data or None, fee_ids)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    fees = [db.session.get(AssignedFee, item.assigned_fee_id).to_dict() for item in payment.items]
    return jsonify({'success': True, 'payment': payment.to_dict(), 'receipt': receipt.to_dict(),
                    'fees': fees, 'excess': excess}), 201


@fees_bp.route('/payments', methods=['GET'])
@roles_required('Director', 'Commercial')
@feature_required('fee_management')
def list_payments():
    query = school_query(Payment)
    if request.args.get('student_id'):
        query = query.filter_by(student_id=request.args.get('student_id', type=int))
    payments = query.order_by(Payment.created_at.desc(), Payment.id.desc()).all()
    return jsonify({'success': True, 'payments': [p.to_dict() for p in payments]})


@fees_bp.route('/receipts/<int:receipt_id>', methods=['GET'])
@roles_required('Director', 'Commercial')
def get_receipt(receipt_id):
    receipt = get_school_object(FeeReceipt, receipt_id)
    data = receipt.to_dict()
    data['items'] = [{'assigned_fee_id': i.assigned_fee_id, 'amount': i.amount} for i in receipt.payment.items]
    return jsonify({'success': True, 'receipt': data})


@fees_bp.route('/stats', methods=['GET'])
@roles_required('Director', 'Commercial')
@feature_required('fee_management')
def stats():
    return jsonify({'success': True, 'stats': fee_stats(require_school_id())})


def family_student_ids(user):
    if user.role == 'Student':
        return [user.id]
    return [link.student_id for link in ParentStudent.query.filter_by(parent_id=user.id).all()]


@fees_bp.route('/my', methods=['GET'])
@roles_required('Parent', 'Student')
def my_fees():
    """Fees, payments and receipts of the caller or their children"""
    student_ids = family_student_ids(get_current_user()) or [-1]
    fees = AssignedFee.query.filter(AssignedFee.student_id.in_(student_ids)).order_by(AssignedFee.due_date).all()
    payments = (Payment.query.filter(Payment.student_id.in_(student_ids))
                .order_by(Payment.created_at.desc()).all())
    receipts = (FeeReceipt.query.filter(FeeReceipt.student_id.in_(student_ids))
                .order_by(FeeReceipt.created_at.desc()).all())
    return jsonify({
        'success': True,
        'fees': [f.to_dict() for f in fees],
        'payments': [p.to_dict() for p in payments],
        'receipts': [r.to_dict() for r in receipts],
        'total_balance': sum(f.balance_amount for f in fees),
    })


def get_family_receipt(receipt_id):
    receipt = db.session.get(FeeReceipt, receipt_id)
    user = get_current_user()
    if receipt is None:
        raise NotFound('Receipt not found')
    if user.role in ('Parent', 'Student'):
        if receipt.student_id not in family_student_ids(user):
            raise NotFound('Receipt not found')
    elif user.role != 'SiteAdmin' and receipt.school_id != user.school_id:
        raise NotFound('Receipt not found')
    return receipt
