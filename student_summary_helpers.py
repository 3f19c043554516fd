"""
Teacher-written student exam summaries

A summary is either overall (no subject) or for one subject, one per
(exam, student, subject). Saved summaries notify the student and their
parents in-app and are carried into the report card remarks.
"""

import logging

from models import Student, Subject
from examination_models import (
    StudentExamSummary, ExaminationSchedule, ExaminationStatus, OverallPerformance, NotificationType
)
from exam_errors import ValidationError, ConflictError, PreconditionFailed, Forbidden, NotFound
from exam_validators import ExamValidator
from access_helpers import require_role, require_actor, load_exam, own_student_ids
from notification_email import notify_exam_event, STUDENTS, PARENTS
from db_single import atomic

logger = logging.getLogger(__name__)

TEXT_FIELDS = ('strengths', 'weaknesses', 'recommendations', 'behavior_remarks')
RATING_FIELDS = ('preparedness_rating', 'participation_rating', 'discipline_rating')


def summary_key(exam_id, student_id, subject_id=None):
    return f"{exam_id}:{student_id}:{subject_id if subject_id is not None else '*'}"


def _clean_summary(data):
    v = ExamValidator
    values = {
        'overall_performance': v.validate_enum(data.get('overall_performance'), OverallPerformance, 'overall_performance')
    }
    for field in TEXT_FIELDS:
        raw = data.get(field)
        values[field] = raw.strip() or None if isinstance(raw, str) else None
    for field in RATING_FIELDS:
        rating = v.validate_number(data.get(field), field, minimum=1, maximum=5, required=False)
        if rating is not None and rating != int(rating):
            raise ValidationError(field, 'must be a whole number from 1 to 5')
        values[field] = int(rating) if rating is not None else None
    return values


def save_student_summary(session, actor, exam_id, data):
    """Create or update a teacher's summary of one student"""
    require_role(actor, ('teacher',))
    exam = load_exam(session, actor, exam_id)
    if exam.status == ExaminationStatus.DRAFT:
        raise PreconditionFailed('Publish the exam schedule before adding student summaries')
    if exam.status == ExaminationStatus.ARCHIVED:
        raise ConflictError('Cannot add summaries to an archived examination')
    if not isinstance(data, dict):
        raise ValidationError(None, 'Summary must be an object')

    student_id = ExamValidator.validate_required(data.get('student_id'), 'student_id')
    student = session.query(Student).filter_by(id=student_id, tenant_id=exam.tenant_id).first()
    if student is None:
        raise NotFound(f"Student {student_id} not found")
    if student.class_id not in (exam.target_classes or []):
        raise ValidationError('student_id', "student's class is not part of this examination")

    subject_id = data.get('subject_id')
    if subject_id is not None:
        subject = session.query(Subject).filter_by(id=subject_id, tenant_id=exam.tenant_id).first()
        if subject is None:
            raise NotFound(f"Subject {subject_id} not found")
        scheduled = session.query(ExaminationSchedule.id).filter_by(
            examination_id=exam.id, subject_id=subject_id, class_id=student.class_id
        ).first()
        if not scheduled:
            raise ValidationError('subject_id', "is not scheduled for the student's class")

    values = _clean_summary(data)
    key = summary_key(exam.id, student.id, subject_id)

    with atomic(session):
        summary = session.query(StudentExamSummary).filter_by(summary_key=key).first()
        if summary is None:
            summary = StudentExamSummary(
                tenant_id=exam.tenant_id,
                examination_id=exam.id,
                student_id=student.id,
                subject_id=subject_id,
                summary_key=key,
            )
            session.add(summary)
        summary.teacher_id = actor.id
        for field, value in values.items():
            setattr(summary, field, value)

    logger.info(f"Summary {key} saved by teacher {actor.id}")

    notify_exam_event(
        session, exam, NotificationType.SUMMARY_ADDED,
        f"Exam summary available: {exam.exam_name}",
        f"A performance summary for {student.full_name} in {exam.exam_name} has been added by the teacher.",
        audiences=(STUDENTS, PARENTS), class_ids=[student.class_id], student_ids=[student.id],
        in_app_only=True,
    )
    return summary


def fetch_student_summaries(session, actor, exam_id, student_id=None, subject_id=None):
    """
    Teachers see the summaries they wrote, admins every summary, students
    and parents those about their own students.
    """
    require_actor(actor)
    exam = load_exam(session, actor, exam_id)
    query = session.query(StudentExamSummary).filter(StudentExamSummary.examination_id == exam.id)

    if actor.role == 'teacher':
        query = query.filter(StudentExamSummary.teacher_id == actor.id)
    elif not actor.is_staff:
        if exam.status == ExaminationStatus.DRAFT:
            raise NotFound(f"Examination {exam_id} not found")
        allowed = own_student_ids(session, actor)
        if student_id is not None and student_id not in allowed:
            raise Forbidden('You can only view your own summaries')
        query = query.filter(StudentExamSummary.student_id.in_(allowed))

    if student_id is not None:
        query = query.filter(StudentExamSummary.student_id == student_id)
    if subject_id is not None:
        query = query.filter(StudentExamSummary.subject_id == subject_id)
    return query.order_by(StudentExamSummary.student_id, StudentExamSummary.id).all()


def summaries_for_report_card(session, exam_id, student_id):
    """Summary dicts of one student for the report card remarks, overall first"""
    rows = session.query(StudentExamSummary).filter_by(examination_id=exam_id, student_id=student_id).all()
    rows.sort(key=lambda s: (s.subject_id is not None, s.subject_id or 0))
    return [{
        'subject': s.subject.name if s.subject else None,
        'overall_performance': s.overall_performance.name,
        'strengths': s.strengths,
        'weaknesses': s.weaknesses,
        'recommendations': s.recommendations,
        'behavior_remarks': s.behavior_remarks,
    } for s in rows]
