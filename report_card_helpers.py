"""
Report Card Assembler
Builds the per-student report card snapshot of a published exam: subject
results, an attendance summary for the exam window, subject remarks and
teacher-written student summaries.
"""

import logging
from datetime import datetime

from models import Student, Subject, StudentStatusEnum, StudentAttendance, StudentAttendanceStatusEnum
from examination_models import (
    ExaminationResult, ExaminationStatus, ReportCard, ReportCardType, ReportCardStatus
)
from exam_errors import ValidationError, PreconditionFailed, Forbidden, NotFound
from exam_validators import ExamValidator
from access_helpers import require_admin, require_actor, load_exam, load_class, own_student_ids
from student_summary_helpers import summaries_for_report_card
from db_single import atomic

logger = logging.getLogger(__name__)

NON_WORKING = (StudentAttendanceStatusEnum.HOLIDAY, StudentAttendanceStatusEnum.WEEK_OFF)


def attendance_summary(session, student_id, start_date, end_date):
    """
    Attendance of one student between two dates (inclusive)

    Holidays and week-offs are not working days; a half day counts as half
    a present day.

    Returns:
        dict: total_days, present_days, absent_days, half_days, on_leave_days, percentage
    """
    records = session.query(StudentAttendance).filter(
        StudentAttendance.student_id == student_id,
        StudentAttendance.attendance_date >= start_date,
        StudentAttendance.attendance_date <= end_date,
    ).all()

    present = sum(1 for r in records if r.status == StudentAttendanceStatusEnum.PRESENT)
    half_day = sum(1 for r in records if r.status == StudentAttendanceStatusEnum.HALF_DAY)
    absent = sum(1 for r in records if r.status == StudentAttendanceStatusEnum.ABSENT)
    on_leave = sum(1 for r in records if r.status == StudentAttendanceStatusEnum.ON_LEAVE)
    total_working = sum(1 for r in records if r.status not in NON_WORKING)

    present_days = present + half_day * 0.5
    percentage = (present_days / total_working * 100) if total_working > 0 else 0

    return {
        'total_days': total_working,
        'present_days': present_days,
        'absent_days': absent,
        'half_days': half_day,
        'on_leave_days': on_leave,
        'percentage': round(percentage, 2),
    }


def build_results_data(results):
    """Per-subject rows plus totals; ranks come from the first subject row"""
    subjects = [{
        'subject_id': r.subject_id,
        'subject_name': r.subject.name if r.subject else None,
        'subject_code': r.subject.code if r.subject else None,
        'max_marks': r.max_marks,
        'marks_obtained': r.marks_obtained,
        'theory_marks': r.theory_marks_obtained,
        'practical_marks': r.practical_marks_obtained,
        'percentage': r.percentage,
        'grade': r.grade,
        'is_passed': r.is_passed,
        'is_absent': r.is_absent,
        'remarks': r.remarks,
        'class_rank': r.class_rank,
    } for r in results]

    total_max = sum(r.max_marks or 0 for r in results)
    total_obtained = sum(r.marks_obtained or 0 for r in results)
    first = results[0] if results else None

    return {
        'subjects': subjects,
        'total_max_marks': total_max,
        'total_marks_obtained': total_obtained,
        'overall_percentage': round(total_obtained / total_max * 100, 2) if total_max else 0,
        'total_subjects': len(results),
        'subjects_passed': sum(1 for r in results if r.is_passed is True),
        'subjects_failed': sum(1 for r in results if r.is_passed is False),
        'class_rank': first.class_rank if first else None,
        'overall_rank': first.overall_rank if first else None,
    }


def build_remarks_data(results, summaries=None):
    return {
        'teacher_remarks': [
            {'subject': r.subject.name if r.subject else None, 'remarks': r.remarks}
            for r in results if r.remarks
        ],
        'summaries': summaries or [],
        'principal_remarks': None,
    }


def _student_results(session, exam_id, student_id):
    return session.query(ExaminationResult).join(
        Subject, Subject.id == ExaminationResult.subject_id
    ).filter(
        ExaminationResult.examination_id == exam_id,
        ExaminationResult.student_id == student_id,
    ).order_by(Subject.display_order, Subject.id).all()


def generate_report_cards(session, actor, exam_id, student_id=None, class_id=None,
                          card_type=ReportCardType.EXAM_WISE, include_attendance=True, include_remarks=True):
    """
    Generate (or regenerate) report cards for one student or a whole class

    Students that cannot be found are skipped with a warning; the rest of
    the batch is still written.

    Returns:
        list of ReportCard
    """
    require_admin(actor)
    exam = load_exam(session, actor, exam_id)
    if exam.status != ExaminationStatus.RESULTS_PUBLISHED:
        raise PreconditionFailed('Results must be published before generating report cards')

    card_type = ExamValidator.validate_enum(card_type, ReportCardType, 'card_type')

    if student_id is not None:
        student_ids = [student_id]
    elif class_id is not None:
        load_class(session, actor, class_id)
        student_ids = [row[0] for row in session.query(Student.id).filter(
            Student.tenant_id == exam.tenant_id,
            Student.class_id == class_id,
            Student.status == StudentStatusEnum.ACTIVE,
        ).order_by(Student.roll_number, Student.id).all()]
    else:
        raise ValidationError('student_id', 'either student_id or class_id must be provided')

    period = exam.academic_session.session_name if exam.academic_session else None
    now = datetime.utcnow()
    cards = []

    with atomic(session):
        for sid in student_ids:
            student = session.query(Student).filter_by(id=sid, tenant_id=exam.tenant_id).first()
            if student is None:
                logger.warning(f"Report card skipped: student {sid} not found for exam {exam.id}")
                continue

            results = _student_results(session, exam.id, student.id)
            card = session.query(ReportCard).filter_by(examination_id=exam.id, student_id=student.id).first()
            if card is None:
                card = ReportCard(tenant_id=exam.tenant_id, examination_id=exam.id, student_id=student.id)
                session.add(card)

            card.class_id = student.class_id
            card.card_type = card_type
            card.title = f"{exam.exam_name} - Report Card"
            card.report_period = period
            card.results_data = build_results_data(results)
            card.attendance_data = (
                attendance_summary(session, student.id, exam.start_date, exam.end_date)
                if include_attendance else None
            )
            card.remarks_data = (
                build_remarks_data(results, summaries_for_report_card(session, exam.id, student.id))
                if include_remarks else None
            )
            card.status = ReportCardStatus.GENERATED
            card.generated_at = now
            card.generated_by = actor.id
            cards.append(card)

    logger.info(f"Generated {len(cards)} report card(s) for exam {exam.id} by user {actor.id}")
    return cards


def fetch_report_cards(session, actor, exam_id, student_id=None, class_id=None):
    """Staff see every card; students and parents their own once results are published"""
    require_actor(actor)
    exam = load_exam(session, actor, exam_id)
    query = session.query(ReportCard).filter(ReportCard.examination_id == exam.id)

    if not actor.is_staff:
        if exam.status != ExaminationStatus.RESULTS_PUBLISHED:
            raise NotFound('Report cards are not available yet')
        allowed = own_student_ids(session, actor)
        if student_id is not None and student_id not in allowed:
            raise Forbidden('You can only view your own report card')
        query = query.filter(ReportCard.student_id.in_(allowed))

    if student_id is not None:
        query = query.filter(ReportCard.student_id == student_id)
    if class_id is not None:
        query = query.filter(ReportCard.class_id == class_id)
    return query.order_by(ReportCard.class_id, ReportCard.student_id).all()
