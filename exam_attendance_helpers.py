"""
Exam sitting attendance

One record per (sitting, student), upserted. Absentees and their parents are
notified once the batch is saved.
"""

import logging
from datetime import datetime

from models import Student
from examination_models import (
    ExamAttendance, ExaminationSchedule, ExaminationStatus, NotificationType
)
from exam_errors import ValidationError, ConflictError, PreconditionFailed, NotFound
from exam_validators import ExamValidator
from access_helpers import require_staff, require_actor, load_exam, own_student_ids
from notification_email import notify_exam_event, STUDENTS, PARENTS
from db_single import atomic

logger = logging.getLogger(__name__)


def attendance_stats(records):
    return {
        'total': len(records),
        'present': sum(1 for r in records if r.is_present),
        'absent': sum(1 for r in records if not r.is_present),
        'late_arrivals': sum(1 for r in records if r.late_arrival),
        'early_departures': sum(1 for r in records if r.early_departure),
    }


def _clean_attendance(entry):
    """Validate one attendance row; returns (values, errors)"""
    v = ExamValidator
    values = {}
    errors = {}

    if entry.get('is_present') is None:
        errors['is_present'] = 'is required'
        return values, errors

    try:
        values['is_present'] = v.validate_bool(entry.get('is_present'), 'is_present')
        values['late_arrival'] = v.validate_bool(entry.get('late_arrival'), 'late_arrival')
        values['early_departure'] = v.validate_bool(entry.get('early_departure'), 'early_departure')
        for field in ('arrival_time', 'departure_time'):
            raw = entry.get(field)
            values[field] = v.validate_time(raw, field) if raw else None
    except ValidationError as e:
        errors.update(e.errors or {e.field: e.message})
        return values, errors

    if values['arrival_time'] and values['departure_time'] and values['departure_time'] < values['arrival_time']:
        errors['departure_time'] = 'must not be before arrival_time'

    # an absent student neither arrives nor leaves
    if not values['is_present']:
        values.update(arrival_time=None, departure_time=None, late_arrival=False, early_departure=False)

    remarks = entry.get('remarks')
    values['remarks'] = remarks.strip() or None if isinstance(remarks, str) else None
    return values, errors


def mark_exam_attendance(session, actor, exam_id, schedule_id, entries):
    """
    Record attendance for one sitting.

    Args:
        entries: list of {student_id, is_present, arrival_time, departure_time,
                 late_arrival, early_departure, remarks}

    The whole batch is validated before anything is written.

    Returns:
        dict with the saved records and present/absent counts
    """
    require_staff(actor)
    exam = load_exam(session, actor, exam_id)
    if exam.status == ExaminationStatus.DRAFT:
        raise PreconditionFailed('Publish the exam schedule before marking attendance')
    if exam.status == ExaminationStatus.ARCHIVED:
        raise ConflictError('Cannot mark attendance for an archived examination')

    ExamValidator.validate_required(schedule_id, 'schedule_id')
    schedule = session.query(ExaminationSchedule).filter_by(id=schedule_id, examination_id=exam.id).first()
    if schedule is None:
        raise NotFound(f"Exam schedule {schedule_id} not found")

    if not isinstance(entries, list) or not entries:
        raise ValidationError('attendances', 'must be a non-empty list')

    existing = {
        r.student_id: r for r in session.query(ExamAttendance).filter_by(schedule_id=schedule.id).all()
    }

    errors = {}
    prepared = []
    seen = set()
    for index, entry in enumerate(entries):
        prefix = f"attendances[{index}]"
        if not isinstance(entry, dict):
            errors[prefix] = 'must be an object'
            continue
        student_id = entry.get('student_id')
        if isinstance(student_id, bool) or not isinstance(student_id, int):
            errors[f"{prefix}.student_id"] = 'is required'
            continue
        if student_id in seen:
            errors[f"{prefix}.student_id"] = 'appears more than once in this submission'
            continue
        seen.add(student_id)

        student = session.query(Student).filter_by(id=student_id, tenant_id=exam.tenant_id).first()
        if student is None:
            errors[f"{prefix}.student_id"] = 'student not found'
            continue
        if student.class_id != schedule.class_id:
            errors[f"{prefix}.student_id"] = "is not in this sitting's class"
            continue

        values, row_errors = _clean_attendance(entry)
        for field, message in row_errors.items():
            errors[f"{prefix}.{field}"] = message
        if not row_errors:
            prepared.append((student, values))

    if errors:
        raise ValidationError(None, f"{len(errors)} invalid attendance entr{'y' if len(errors) == 1 else 'ies'}",
                              errors=errors)

    now = datetime.utcnow()
    saved = []
    with atomic(session):
        for student, values in prepared:
            record = existing.get(student.id)
            if record is None:
                record = ExamAttendance(
                    tenant_id=exam.tenant_id,
                    examination_id=exam.id,
                    schedule_id=schedule.id,
                    student_id=student.id,
                    class_id=student.class_id,
                )
                session.add(record)
            for key, value in values.items():
                setattr(record, key, value)
            record.marked_by = actor.id
            record.marked_at = now
            saved.append(record)

    absent_ids = [r.student_id for r in saved if not r.is_present]
    subject = schedule.subject.name if schedule.subject else f"subject {schedule.subject_id}"
    logger.info(
        f"Attendance for exam {exam.id} sitting {schedule.id} marked by user {actor.id}: "
        f"{len(saved) - len(absent_ids)} present, {len(absent_ids)} absent"
    )

    if absent_ids:
        notify_exam_event(
            session, exam, NotificationType.ATTENDANCE_MARKED,
            f"Exam attendance: absent from {subject}",
            f"Marked absent for the {subject} paper of {exam.exam_name} on {schedule.exam_date.isoformat()}. "
            f"Please contact the school if this is incorrect.",
            audiences=(STUDENTS, PARENTS), class_ids=[schedule.class_id], student_ids=absent_ids,
        )

    return {
        'records': saved,
        'total_marked': len(saved),
        'present': len(saved) - len(absent_ids),
        'absent': len(absent_ids),
    }


def fetch_exam_attendance(session, actor, exam_id, schedule_id=None, class_id=None):
    """
    Attendance records of an exam with summary counts.

    Students and parents see only their own records.

    Returns:
        tuple: (list of ExamAttendance, stats dict)
    """
    require_actor(actor)
    exam = load_exam(session, actor, exam_id)
    query = session.query(ExamAttendance).filter(ExamAttendance.examination_id == exam.id)

    if not actor.is_staff:
        if exam.status == ExaminationStatus.DRAFT:
            raise NotFound(f"Examination {exam_id} not found")
        query = query.filter(ExamAttendance.student_id.in_(own_student_ids(session, actor)))

    if schedule_id is not None:
        query = query.filter(ExamAttendance.schedule_id == schedule_id)
    if class_id is not None:
        query = query.filter(ExamAttendance.class_id == class_id)

    records = query.order_by(ExamAttendance.schedule_id, ExamAttendance.student_id).all()
    return records, attendance_stats(records)
