"""
Bilingual notifications delivered by SMS, WhatsApp (Vonage Messages API),
push (FCM) and in-app messages.

Senders queue entries with ``queue_notification`` or ``notify`` inside their
own transaction. ``process_queue`` delivers them later, from the
``flask process-notifications`` command.
"""
import logging
import re
from datetime import datetime

import requests
from flask import Blueprint, current_app, jsonify, request

from errors import NotFound
from forms import DeviceTokenForm, load_form
from models import DeviceToken, Notification, NotificationQueue, ParentStudent, db
from subscriptions import can_access_feature
from tenancy import get_current_user, login_required

log = logging.getLogger("educafric.notifications")

notifications_bp = Blueprint('notifications', __name__, url_prefix='/api/notifications')

CHANNELS = ('sms', 'whatsapp', 'push', 'in_app')
DEFAULT_CHANNELS = ['in_app', 'push', 'whatsapp', 'sms']

# Channels that need a paid feature on the recipient's plan
CHANNEL_FEATURES = {
    'sms': 'sms_notifications',
    'whatsapp': 'whatsapp_notifications',
    'push': 'push_notifications',
}

TEMPLATES = {
    'bulletin_available': {
        'fr': ("Bulletin disponible",
               "Le bulletin {term} {academic_year} de {student_name} est disponible. "
               "Moyenne : {average}/20, rang {rank}/{class_size}."),
        'en': ("Report card available",
               "{student_name}'s {term} {academic_year} report card is available. "
               "Average: {average}/20, rank {rank}/{class_size}."),
    },
    'bulletin_excellent': {
        'fr': ("Excellents résultats",
               "Félicitations ! {student_name} obtient {average}/20 au {term} ({appreciation}). "
               "Rang {rank}/{class_size}."),
        'en': ("Excellent results",
               "Congratulations! {student_name} scored {average}/20 in {term} ({appreciation}). "
               "Rank {rank}/{class_size}."),
    },
    'bulletin_needs_improvement': {
        'fr': ("Résultats à améliorer",
               "{student_name} obtient {average}/20 au {term}. Un suivi renforcé est recommandé. "
               "Contactez l'établissement."),
        'en': ("Results need improvement",
               "{student_name} scored {average}/20 in {term}. Closer follow-up is recommended. "
               "Please contact the school."),
    },
    'fee_reminder': {
        'fr': ("Rappel de paiement",
               "Rappel : {fee_name} pour {student_name}, reste à payer {balance}, échéance le {due_date}."),
        'en': ("Payment reminder",
               "Reminder: {fee_name} for {student_name}, {balance} outstanding, due on {due_date}."),
    },
    'fee_overdue': {
        'fr': ("Paiement en retard",
               "{fee_name} pour {student_name} est en retard depuis le {due_date}. Reste à payer : {balance}."),
        'en': ("Overdue payment",
               "{fee_name} for {student_name} has been overdue since {due_date}. Outstanding: {balance}."),
    },
    'payment_receipt': {
        'fr': ("Paiement reçu",
               "Paiement de {amount} reçu pour {student_name}. Reçu n° {receipt_number}. Merci."),
        'en': ("Payment received",
               "Payment of {amount} received for {student_name}. Receipt no. {receipt_number}. Thank you."),
    },
    'attendance_absence': {
        'fr': ("Absence signalée",
               "{student_name} a été marqué(e) absent(e) le {date} ({class_name})."),
        'en': ("Absence recorded",
               "{student_name} was marked absent on {date} ({class_name})."),
    },
    'subscription_reminder': {
        'fr': ("Abonnement bientôt expiré",
               "L'abonnement de {school_name} expire dans {days_remaining} jour(s). "
               "Renouvelez-le pour éviter toute interruption."),
        'en': ("Subscription expiring soon",
               "The {school_name} subscription expires in {days_remaining} day(s). "
               "Please renew to avoid service interruption."),
    },
    'subscription_expired': {
        'fr': ("Abonnement expiré",
               "L'abonnement de {school_name} a expiré. Les fonctions premium sont suspendues."),
        'en': ("Subscription expired",
               "The {school_name} subscription has expired. Premium features are suspended."),
    },
}


def render_message(template, language='fr', **params):
    """Return (title, message) for a template; unknown templates raise KeyError"""
    variants = TEMPLATES[template]
    title, body = variants.get(language) or variants['fr']
    return title, body.format(**params)


def format_amount(amount):
    """12500 -> '12 500 XAF'"""
    return "{:,} XAF".format(int(amount or 0)).replace(',', ' ')


def normalize_phone(phone, country_code=None):
    """Digits-only international number, defaulting to the Cameroon prefix"""
    if not phone:
        return None
    country_code = country_code or current_app.config.get('DEFAULT_COUNTRY_CODE', '237')
    digits = re.sub(r'\D', '', phone)
    if not digits:
        return None
    if phone.strip().startswith('+'):
        return digits
    if digits.startswith('00'):
        return digits[2:]
    if digits.startswith(country_code) and len(digits) > 9:
        return digits
    return country_code + digits.lstrip('0')


class MessagingGateway:
    """Outbound SMS, WhatsApp and push over HTTP"""

    def __init__(self):
        self.session = requests.Session()

    def _vonage_credentials(self):
        key = current_app.config.get('VONAGE_API_KEY')
        secret = current_app.config.get('VONAGE_API_SECRET')
        if not key or not secret:
            return None
        return key, secret

    def _send_vonage(self, channel, sender, phone, text):
        credentials = self._vonage_credentials()
        to = normalize_phone(phone)
        if credentials is None or not sender or not to:
            log.debug("Skipping %s to %s: gateway not configured", channel, phone)
            return False
        payload = {
            'message_type': 'text',
            'text': text,
            'to': to,
            'from': sender,
            'channel': channel,
        }
        try:
            response = self.session.post(current_app.config['VONAGE_MESSAGES_URL'], json=payload,
                                         auth=credentials, timeout=15)
            response.raise_for_status()
        except requests.RequestException as e:
            log.warning("Vonage %s to %s failed: %s", channel, to, e)
            return False
        log.info("Vonage %s sent to %s", channel, to)
        return True

    def send_sms(self, phone, text):
        return self._send_vonage('sms', current_app.config.get('VONAGE_SMS_FROM'), phone, text)

    def send_whatsapp(self, phone, text):
        return self._send_vonage('whatsapp', current_app.config.get('VONAGE_WHATSAPP_FROM'), phone, text)

    def send_push(self, tokens, title, body, data=None):
        server_key = current_app.config.get('FCM_SERVER_KEY')
        if not server_key or not tokens:
            return False
        headers = {
            'Authorization': f'key={server_key}',
            'Content-Type': 'application/json',
        }
        payload = {
            'registration_ids': list(tokens),
            'notification': {'title': title, 'body': body},
            'data': data or {},
        }
        try:
            response = self.session.post(current_app.config['FCM_URL'], headers=headers, json=payload, timeout=15)
            response.raise_for_status()
            result = response.json()
        except (requests.RequestException, ValueError) as e:
            log.warning("FCM push failed: %s", e)
            return False
        return result.get('success', 0) > 0


gateway = MessagingGateway()


def queue_notification(recipient, notification_type, title, message, channels=None,
                       school_id=None, scheduled_for=None):
    """Store a pending notification; the caller commits"""
    entry = NotificationQueue(
        school_id=school_id if school_id is not None else recipient.school_id,
        recipient_id=recipient.id,
        notification_type=notification_type,
        title=title,
        message=message,
        channels=list(channels or DEFAULT_CHANNELS),
        status='pending',
        scheduled_for=scheduled_for,
    )
    db.session.add(entry)
    return entry


def notify(recipient, template, channels=None, school_id=None, **params):
    """Render a template in the recipient's language and queue it"""
    title, message = render_message(template, recipient.language or 'fr', **params)
    return queue_notification(recipient, template, title, message, channels=channels, school_id=school_id)


def _deliver(entry, channel):
    recipient = entry.recipient
    feature = CHANNEL_FEATURES.get(channel)
    if feature and not can_access_feature(recipient, feature):
        return False
    if channel == 'in_app':
        db.session.add(Notification(user_id=recipient.id, title=entry.title, message=entry.message,
                                    type=entry.notification_type, payload={'queue_id': entry.id}))
        return True
    if channel == 'sms':
        return gateway.send_sms(recipient.phone, entry.message)
    if channel == 'whatsapp':
        return gateway.send_whatsapp(recipient.phone, entry.message)
    if channel == 'push':
        tokens = [t.token for t in DeviceToken.query.filter_by(user_id=recipient.id).all()]
        return gateway.send_push(tokens, entry.title, entry.message, {'type': entry.notification_type})
    raise ValueError(f"Unknown channel: {channel}")


def process_queue(limit=50):
    """Deliver due pending entries; returns counts by outcome"""
    max_attempts = current_app.config.get('NOTIFICATION_MAX_ATTEMPTS', 3)
    now = datetime.utcnow()
    entries = (NotificationQueue.query
               .filter_by(status='pending')
               .filter(db.or_(NotificationQueue.scheduled_for.is_(None), NotificationQueue.scheduled_for <= now))
               .order_by(NotificationQueue.created_at, NotificationQueue.id)
               .limit(limit)
               .all())

    stats = {'processed': 0, 'sent': 0, 'failed': 0, 'retrying': 0}
    for entry in entries:
        entry.attempts = (entry.attempts or 0) + 1
        errors = []
        for channel in entry.channels or []:
            flag = f'{channel}_sent'
            if getattr(entry, flag, False):
                continue
            try:
                delivered = _deliver(entry, channel)
            except ValueError as e:
                errors.append(str(e))
                continue
            if delivered:
                setattr(entry, flag, True)
            else:
                errors.append(f'{channel} not delivered')

        if any(getattr(entry, f'{channel}_sent', False) for channel in entry.channels or []):
            entry.status = 'sent'
            entry.sent_at = datetime.utcnow()
            entry.error_message = '; '.join(errors) or None
            stats['sent'] += 1
        elif entry.attempts >= max_attempts:
            entry.status = 'failed'
            entry.error_message = '; '.join(errors) or 'No channel available'
            stats['failed'] += 1
        else:
            entry.error_message = '; '.join(errors) or None
            stats['retrying'] += 1
        stats['processed'] += 1
        db.session.commit()

    if entries:
        log.info("Notification queue processed: %s", stats)
    return stats


@notifications_bp.route('')
@login_required
def list_notifications():
    user = get_current_user()
    query = Notification.query.filter_by(user_id=user.id)
    if request.args.get('unread') in ('1', 'true'):
        query = query.filter_by(is_read=False)
    limit = min(request.args.get('limit', 50, type=int), 200)
    notifications = query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()
    unread_count = Notification.query.filter_by(user_id=user.id, is_read=False).count()
    return jsonify({'success': True, 'notifications': [n.to_dict() for n in notifications],
                    'unread_count': unread_count})


@notifications_bp.route('/<int:notification_id>/read', methods=['POST'])
@login_required
def mark_read(notification_id):
    user = get_current_user()
    notification = db.session.get(Notification, notification_id)
    if notification is None or notification.user_id != user.id:
        raise NotFound('Notification not found')
    notification.is_read = True
    db.session.commit()
    return jsonify({'success': True})


@notifications_bp.route('/read-all', methods=['POST'])
@login_required
def mark_all_read():
    user = get_current_user()
    updated = Notification.query.filter_by(user_id=user.id, is_read=False).update({'is_read': True})
    db.session.commit()
    return jsonify({'success': True, 'updated': updated})


@notifications_bp.route('/device-token', methods=['POST'])
@login_required
def register_device_token():
    user = get_current_user()
    form = load_form(DeviceTokenForm)
    token = DeviceToken.query.filter_by(token=form.token.data).first()
    if token is None:
        token = DeviceToken(token=form.token.data)
        db.session.add(token)
    # A device belongs to whoever logged in on it last
    token.user_id = user.id
    token.platform = form.platform.data or 'android'
    db.session.commit()
    return jsonify({'success': True}), 201


def parents_of(student):
    return [link.parent for link in ParentStudent.query.filter_by(student_id=student.id).all()]
