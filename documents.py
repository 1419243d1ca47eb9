"""
PDF documents drawn with reportlab: bulletins, transcripts, class timetables
and payment receipts. Labels follow the school language.
"""
import logging
from io import BytesIO

from flask import Blueprint, Response, request
from reportlab.graphics import renderPDF
from reportlab.graphics.barcode.qr import QrCodeWidget
from reportlab.graphics.shapes import Drawing
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, A5, landscape
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas

from academics import current_academic_year, student_class
from bulletins import get_readable_bulletin, verification_url
from errors import NotFound
from fees import get_family_receipt
from grading import annual_average, appreciation
from models import Bulletin, ParentStudent, SchoolClass, TimetableSlot
from notifications import format_amount
from subscriptions import require_feature
from tenancy import get_current_user, get_school_object, get_school_user, login_required, roles_required

log = logging.getLogger("educafric.documents")

documents_bp = Blueprint('documents', __name__, url_prefix='/api/documents')

BRAND = colors.HexColor("#1d4ed8")
LIGHT_BG = colors.HexColor("#eff6ff")
MUTED = colors.HexColor("#64748b")
BORDER = colors.HexColor("#cbd5e1")

# Bulletin page layout: subject rows stop at TABLE_BOTTOM, the QR code sits below QR_TOP
TABLE_BOTTOM = 20 * mm
QR_TOP = 46 * mm
FOOTER_HEIGHT = 64 * mm

LABELS = {
    'fr': {
        'bulletin': "BULLETIN DE NOTES",
        'transcript': "RELEVÉ DE NOTES",
        'timetable': "EMPLOI DU TEMPS",
        'receipt': "REÇU DE PAIEMENT",
        'term': "Trimestre",
        'year': "Année scolaire",
        'student': "Élève",
        'matricule': "Matricule",
        'class': "Classe",
        'subject': "Matière",
        'coef': "Coef",
        'cc': "CC",
        'exam': "Examen",
        'average': "Moyenne",
        'points': "Points",
        'rank': "Rang",
        'appreciation': "Appréciation",
        'totals': "Totaux",
        'general_average': "Moyenne générale",
        'class_rank': "Rang",
        'class_stats': "Classe : min {min} / moy {mean} / max {max}",
        'annual_average': "Moyenne annuelle",
        'absences': "Absences",
        'teacher_comments': "Observations du professeur principal",
        'director_comments': "Observations du chef d'établissement",
        'teacher_signature': "Le professeur principal",
        'director_signature': "Le chef d'établissement",
        'parent_signature': "Le parent",
        'verify': "Vérifier : code {code}",
        'days': ('Lundi', 'Mardi', 'Mercredi', 'Jeudi', 'Vendredi', 'Samedi', 'Dimanche'),
        'amount_paid': "Montant payé",
        'receipt_number': "Reçu n°",
        'date': "Date",
        'method': "Mode de paiement",
        'reference': "Référence",
        'thanks': "Merci pour votre paiement.",
        'draft': "BROUILLON",
    },
    'en': {
        'bulletin': "REPORT CARD",
        'transcript': "ACADEMIC TRANSCRIPT",
        'timetable': "TIMETABLE",
        'receipt': "PAYMENT RECEIPT",
        'term': "Term",
        'year': "Academic year",
        'student': "Student",
        'matricule': "Student ID",
        'class': "Class",
        'subject': "Subject",
        'coef': "Coef",
        'cc': "CA",
        'exam': "Exam",
        'average': "Average",
        'points': "Points",
        'rank': "Rank",
        'appreciation': "Remark",
        'totals': "Totals",
        'general_average': "General average",
        'class_rank': "Rank",
        'class_stats': "Class: min {min} / mean {mean} / max {max}",
        'annual_average': "Annual average",
        'absences': "Absences",
        'teacher_comments': "Class teacher's remarks",
        'director_comments': "Principal's remarks",
        'teacher_signature': "Class teacher",
        'director_signature': "Principal",
        'parent_signature': "Parent",
        'verify': "Verify: code {code}",
        'days': ('Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday', 'Sunday'),
        'amount_paid': "Amount paid",
        'receipt_number': "Receipt no.",
        'date': "Date",
        'method': "Payment method",
        'reference': "Reference",
        'thanks': "Thank you for your payment.",
        'draft': "DRAFT",
    },
}


def labels_for(school):
    return LABELS.get(school.language if school else 'fr') or LABELS['fr']


def _fmt(value):
    if value is None or value == '':
        return '-'
    if isinstance(value, float):
        return f"{value:.2f}"
    return str(value)


def _header(c, school, title, width, height):
    header_h = 24 * mm
    c.setFillColor(BRAND)
    c.rect(0, height - header_h, width, header_h, fill=1, stroke=0)
    c.setFillColor(colors.white)
    c.setFont("Helvetica-Bold", 14)
    c.drawString(14 * mm, height - 10 * mm, school.name)
    c.setFont("Helvetica", 8.5)
    details = " | ".join(filter(None, [school.address, school.phone, school.email]))
    if details:
        c.drawString(14 * mm, height - 15 * mm, details)
    c.setFont("Helvetica-Bold", 12)
    c.drawRightString(width - 14 * mm, height - 10 * mm, title)
    return height - header_h - 8 * mm


def _draw_qr(c, text, x, y, size):
    widget = QrCodeWidget(text)
    bounds = widget.getBounds()
    w = bounds[2] - bounds[0]
    h = bounds[3] - bounds[1]
    d = Drawing(size, size)
    widget.transform = [size / w, 0, 0, size / h, 0, 0]
    d.add(widget)
    renderPDF.draw(d, c, x, y)


def _finish(c, buf):
    c.showPage()
    c.save()
    pdf_bytes = buf.getvalue()
    buf.close()
    return pdf_bytes


def bulletin_pdf(bulletin):
    school = bulletin.school
    text = labels_for(school)
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=A4)
    width, height = A4
    margin = 14 * mm
    y = _header(c, school, text['bulletin'], width, height)

    # Student block
    c.setFillColor(LIGHT_BG)
    c.roundRect(margin, y - 18 * mm, width - 2 * margin, 18 * mm, 2 * mm, fill=1, stroke=0)
    c.setFillColor(colors.black)
    c.setFont("Helvetica-Bold", 10)
    c.drawString(margin + 4 * mm, y - 6 * mm, f"{text['student']} : {bulletin.student.full_name}")
    c.setFont("Helvetica", 9)
    c.drawString(margin + 4 * mm, y - 12 * mm, f"{text['matricule']} : {_fmt(bulletin.student.matricule)}")
    c.drawString(width / 2, y - 6 * mm, f"{text['class']} : {bulletin.school_class.name}")
    c.drawString(width / 2, y - 12 * mm,
                 f"{text['term']} : {bulletin.term}    {text['year']} : {bulletin.academic_year}")
    y -= 26 * mm

    # Subject table
    columns = [
        ('subject', margin, 'left'),
        ('coef', margin + 58 * mm, 'right'),
        ('cc', margin + 72 * mm, 'right'),
        ('exam', margin + 88 * mm, 'right'),
        ('average', margin + 106 * mm, 'right'),
        ('points', margin + 124 * mm, 'right'),
        ('rank', margin + 136 * mm, 'right'),
        ('appreciation', margin + 140 * mm, 'left'),
    ]

    def draw_row(values, bold=False):
        c.setFont("Helvetica-Bold" if bold else "Helvetica", 8.5)
        for (key, x, align) in columns:
            value = values.get(key, '')
            if align == 'right':
                c.drawRightString(x, y, value)
            else:
                c.drawString(x + 1 * mm, y, value)

    def table_header():
        nonlocal y
        c.setFillColor(BRAND)
        c.rect(margin, y - 2 * mm, width - 2 * margin, 7 * mm, fill=1, stroke=0)
        c.setFillColor(colors.white)
        draw_row({key: text[key] for key, _, _ in columns}, bold=True)
        c.setFillColor(colors.black)
        y -= 7 * mm

    def next_page():
        nonlocal y
        c.showPage()
        y = _header(c, school, text['bulletin'], width, height)
        c.setFillColor(colors.black)
        c.setFont("Helvetica", 9)
        c.drawString(margin, y, f"{bulletin.student.full_name} ({_fmt(bulletin.student.matricule)}) "
                                f"{bulletin.school_class.name} {bulletin.term}")
        y -= 8 * mm

    table_header()
    for result in bulletin.subject_results or []:
        if y < TABLE_BOTTOM:
            next_page()
            table_header()
        draw_row({
            'subject': str(result.get('subject_name', ''))[:32],
            'coef': _fmt(result.get('coefficient')),
            'cc': _fmt(result.get('cc')),
            'exam': _fmt(result.get('exam')),
            'average': _fmt(result.get('average')),
            'points': _fmt(result.get('points')),
            'rank': _fmt(result.get('rank')),
            'appreciation': str(result.get('appreciation') or ''),
        })
        c.setStrokeColor(BORDER)
        c.line(margin, y - 2 * mm, width - margin, y - 2 * mm)
        y -= 6 * mm

    if y < TABLE_BOTTOM:
        next_page()
    draw_row({'subject': text['totals'], 'coef': _fmt(bulletin.total_coefficients),
              'points': _fmt(bulletin.total_points)}, bold=True)
    y -= 10 * mm
    # Results, comments and signatures stay together above the QR code
    if y - FOOTER_HEIGHT < QR_TOP:
        next_page()

    # Results
    c.setFont("Helvetica-Bold", 11)
    c.drawString(margin, y, f"{text['general_average']} : {_fmt(bulletin.general_average)}/20")
    c.drawRightString(width - margin, y,
                      f"{text['class_rank']} : {_fmt(bulletin.class_rank)}/{_fmt(bulletin.class_size)}")
    y -= 6 * mm
    c.setFont("Helvetica", 9)
    c.drawString(margin, y, f"{text['appreciation']} : {bulletin.appreciation or '-'}")
    c.drawRightString(width - margin, y, f"{text['absences']} : {bulletin.absences or 0}")
    y -= 6 * mm
    c.drawString(margin, y, text['class_stats'].format(min=_fmt(bulletin.class_min), mean=_fmt(bulletin.class_mean),
                                                       max=_fmt(bulletin.class_max)))
    if bulletin.term == 'T3' and bulletin.annual_average is not None:
        c.setFont("Helvetica-Bold", 10)
        c.drawRightString(width - margin, y, f"{text['annual_average']} : {_fmt(bulletin.annual_average)}/20")
    y -= 10 * mm

    # Comments
    for key in ('teacher_comments', 'director_comments'):
        c.setFont("Helvetica-Bold", 9)
        c.drawString(margin, y, text[key])
        c.setFont("Helvetica", 9)
        c.drawString(margin, y - 5 * mm, (getattr(bulletin, key) or '')[:110])
        y -= 12 * mm

    # Signatures
    y -= 4 * mm
    c.setFont("Helvetica", 8.5)
    for i, key in enumerate(('teacher_signature', 'director_signature', 'parent_signature')):
        x = margin + i * (width - 2 * margin) / 3
        c.drawString(x, y, text[key])
        c.setStrokeColor(MUTED)
        c.line(x, y - 14 * mm, x + 48 * mm, y - 14 * mm)

    verification = bulletin.verification
    if verification is not None and verification.is_active:
        size = 30 * mm
        _draw_qr(c, verification_url(verification) + '&source=qr', width - margin - size, 14 * mm, size)
        c.setFont("Helvetica", 7.5)
        c.setFillColor(MUTED)
        c.drawRightString(width - margin, 11 * mm, text['verify'].format(code=verification.short_code))
    elif not bulletin.is_released:
        c.setFont("Helvetica-Bold", 40)
        c.setFillColor(colors.HexColor("#fecaca"))
        c.drawCentredString(width / 2, 40 * mm, text['draft'])

    return _finish(c, buf)


def transcript_rows(student, academic_year, released_only):
    """Per-term averages of a student over one academic year"""
    query = Bulletin.query.filter_by(student_id=student.id, academic_year=academic_year)
    if released_only:
        query = query.filter(Bulletin.status.in_(('approved', 'sent')))
    bulletins = {b.term: b for b in query.all()}
    rows = []
    for term in ('T1', 'T2', 'T3'):
        bulletin = bulletins.get(term)
        if bulletin is None:
            continue
        rows.append({
            'term': term,
            'average': bulletin.general_average,
            'rank': bulletin.class_rank,
            'class_size': bulletin.class_size,
            'appreciation': bulletin.appreciation,
        })
    return rows, annual_average({row['term']: row['average'] for row in rows})


def transcript_pdf(student, academic_year, rows, annual):
    school = student.school
    text = labels_for(school)
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=A4)
    width, height = A4
    margin = 14 * mm
    y = _header(c, school, text['transcript'], width, height)

    school_class = student_class(student, academic_year)
    c.setFont("Helvetica-Bold", 10)
    c.drawString(margin, y, f"{text['student']} : {student.full_name}")
    c.setFont("Helvetica", 9)
    c.drawString(margin, y - 6 * mm, f"{text['matricule']} : {_fmt(student.matricule)}")
    c.drawString(width / 2, y, f"{text['class']} : {school_class.name if school_class else '-'}")
    c.drawString(width / 2, y - 6 * mm, f"{text['year']} : {academic_year}")
    y -= 18 * mm

    c.setFillColor(BRAND)
    c.rect(margin, y - 2 * mm, width - 2 * margin, 7 * mm, fill=1, stroke=0)
    c.setFillColor(colors.white)
    c.setFont("Helvetica-Bold", 9)
    c.drawString(margin + 2 * mm, y, text['term'])
    c.drawRightString(margin + 70 * mm, y, text['average'])
    c.drawRightString(margin + 100 * mm, y, text['rank'])
    c.drawString(margin + 110 * mm, y, text['appreciation'])
    c.setFillColor(colors.black)
    y -= 8 * mm

    c.setFont("Helvetica", 9)
    for row in rows:
        c.drawString(margin + 2 * mm, y, row['term'])
        c.drawRightString(margin + 70 * mm, y, _fmt(row['average']))
        c.drawRightString(margin + 100 * mm, y, f"{_fmt(row['rank'])}/{_fmt(row['class_size'])}")
        c.drawString(margin + 110 * mm, y, row['appreciation'] or '-')
        y -= 7 * mm

    y -= 4 * mm
    c.setFont("Helvetica-Bold", 11)
    c.drawString(margin, y, f"{text['annual_average']} : {_fmt(annual)}/20")
    c.setFont("Helvetica", 9)
    c.drawString(margin, y - 6 * mm, f"{text['appreciation']} : {appreciation(annual, school.language or 'fr')}")
    return _finish(c, buf)


def timetable_pdf(school_class, slots):
    school = school_class.school
    text = labels_for(school)
    buf = BytesIO()
    page = landscape(A4)
    c = canvas.Canvas(buf, pagesize=page)
    width, height = page
    margin = 12 * mm
    y = _header(c, school, f"{text['timetable']} - {school_class.name}", width, height)

    days = [d for d in range(1, 8) if d <= 5 or any(s.day_of_week == d for s in slots)]
    periods = sorted({(s.start_time, s.end_time) for s in slots})
    time_col = 24 * mm
    col_w = (width - 2 * margin - time_col) / len(days)
    row_h = min(16 * mm, (y - 14 * mm) / max(len(periods) + 1, 1))

    c.setFillColor(BRAND)
    c.rect(margin, y - row_h, width - 2 * margin, row_h, fill=1, stroke=0)
    c.setFillColor(colors.white)
    c.setFont("Helvetica-Bold", 9)
    for i, day in enumerate(days):
        c.drawCentredString(margin + time_col + (i + 0.5) * col_w, y - row_h / 2 - 1 * mm, text['days'][day - 1])
    y -= row_h

    by_cell = {(s.day_of_week, s.start_time, s.end_time): s for s in slots}
    c.setStrokeColor(BORDER)
    for start, end in periods:
        c.setFillColor(colors.black)
        c.setFont("Helvetica-Bold", 8)
        c.drawString(margin + 1 * mm, y - row_h / 2 - 1 * mm, f"{start}-{end}")
        for i, day in enumerate(days):
            x = margin + time_col + i * col_w
            c.rect(x, y - row_h, col_w, row_h, fill=0, stroke=1)
            slot = by_cell.get((day, start, end))
            if slot is None:
                continue
            c.setFont("Helvetica-Bold", 8)
            c.drawCentredString(x + col_w / 2, y - row_h / 2 + 1 * mm, slot.subject.name[:24])
            c.setFont("Helvetica", 7)
            detail = " / ".join(filter(None, [slot.teacher.full_name if slot.teacher else None, slot.room]))
            c.drawCentredString(x + col_w / 2, y - row_h / 2 - 3 * mm, detail[:34])
        c.rect(margin, y - row_h, time_col, row_h, fill=0, stroke=1)
        y -= row_h
    return _finish(c, buf)


def receipt_pdf(receipt):
    school = receipt.school
    text = labels_for(school)
    payment = receipt.payment
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=A5)
    width, height = A5
    margin = 12 * mm
    y = _header(c, school, text['receipt'], width, height)

    card_h = 14 * mm
    c.setFillColor(LIGHT_BG)
    c.roundRect(margin, y - card_h, width - 2 * margin, card_h, 3 * mm, fill=1, stroke=0)
    c.setFillColor(MUTED)
    c.setFont("Helvetica", 9)
    c.drawCentredString(width / 2, y - 5 * mm, text['amount_paid'])
    c.setFillColor(colors.black)
    c.setFont("Helvetica-Bold", 15)
    c.drawCentredString(width / 2, y - card_h + 3 * mm, format_amount(receipt.total_amount))
    y -= card_h + 8 * mm

    def draw_kv(label, value):
        nonlocal y
        c.setFont("Helvetica", 9)
        c.setFillColor(MUTED)
        c.drawString(margin, y, label)
        c.setFillColor(colors.black)
        c.setFont("Helvetica-Bold", 9.5)
        c.drawRightString(width - margin, y, value)
        y -= 6.5 * mm

    draw_kv(text['receipt_number'], receipt.receipt_number)
    draw_kv(text['date'], receipt.created_at.strftime('%d/%m/%Y %H:%M') if receipt.created_at else '-')
    draw_kv(text['student'], receipt.student.full_name)
    draw_kv(text['matricule'], _fmt(receipt.student.matricule))
    draw_kv(text['method'], receipt.payment_method or '-')
    draw_kv(text['reference'], _fmt(payment.transaction_ref))

    c.setStrokeColor(BORDER)
    c.setDash(1, 2)
    c.line(margin, y + 2 * mm, width - margin, y + 2 * mm)
    c.setDash()
    y -= 4 * mm
    for item in payment.items:
        fee = item.assigned_fee
        draw_kv(fee.fee_structure.name[:40], format_amount(item.amount))

    c.setFillColor(MUTED)
    c.setFont("Helvetica", 9)
    c.drawCentredString(width / 2, max(y - 4 * mm, 16 * mm), text['thanks'])
    return _finish(c, buf)


def pdf_response(pdf_bytes, filename):
    return Response(pdf_bytes, mimetype='application/pdf',
                    headers={'Content-Disposition': f'attachment; filename={filename}'})


@documents_bp.route('/bulletins/<int:bulletin_id>/pdf', methods=['GET'])
@login_required
def bulletin_document(bulletin_id):
    user = get_current_user()
    bulletin = get_readable_bulletin(bulletin_id)
    require_feature(user, 'bulletin_access' if user.role in ('Parent', 'Student') else 'bulletins')
    log.info("Bulletin %s PDF requested by user %s", bulletin.id, user.id)
    filename = f"bulletin_{bulletin.student.matricule or bulletin.student_id}_{bulletin.term}.pdf"
    return pdf_response(bulletin_pdf(bulletin), filename)


@documents_bp.route('/transcripts/<int:student_id>', methods=['GET'])
@roles_required('Director', 'Teacher', 'Parent', 'Student')
def transcript_document(student_id):
    user = get_current_user()
    require_feature(user, 'bulletin_access' if user.role in ('Parent', 'Student') else 'transcripts')
    academic_year = request.args.get('academic_year') or current_academic_year()
    if user.role == 'Student':
        if student_id != user.id:
            raise NotFound('Student not found')
        student = user
    elif user.role == 'Parent':
        link = ParentStudent.query.filter_by(parent_id=user.id, student_id=student_id).first()
        if link is None:
            raise NotFound('Student not found')
        student = link.student
    else:
        student = get_school_user(student_id, 'Student')
    rows, annual = transcript_rows(student, academic_year, released_only=user.role in ('Parent', 'Student'))
    return pdf_response(transcript_pdf(student, academic_year, rows, annual),
                        f"transcript_{student.matricule or student.id}_{academic_year}.pdf")


@documents_bp.route('/timetable/<int:class_id>', methods=['GET'])
@roles_required('Director', 'Teacher', 'Parent', 'Student')
def timetable_document(class_id):
    user = get_current_user()
    if user.role in ('Parent', 'Student'):
        require_feature(user, 'student_tracking')
        school_class = _family_class(user, class_id)
    else:
        require_feature(user, 'timetable')
        school_class = get_school_object(SchoolClass, class_id)
    slots = (TimetableSlot.query.filter_by(class_id=school_class.id)
             .order_by(TimetableSlot.day_of_week, TimetableSlot.start_time).all())
    return pdf_response(timetable_pdf(school_class, slots), f"timetable_{school_class.id}.pdf")


def _family_class(user, class_id):
    students = [user] if user.role == 'Student' else [
        link.student for link in ParentStudent.query.filter_by(parent_id=user.id).all()]
    for student in students:
        school_class = student_class(student)
        if school_class is not None and school_class.id == class_id:
            return school_class
    raise NotFound('Class not found')


@documents_bp.route('/receipts/<int:receipt_id>', methods=['GET'])
@roles_required('Director', 'Commercial', 'Parent', 'Student')
def receipt_document(receipt_id):
    receipt = get_family_receipt(receipt_id)
    return pdf_response(receipt_pdf(receipt), f"receipt_{receipt.receipt_number}.pdf")
