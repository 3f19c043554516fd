"""
Exam timetable helpers: slot validation, conflict detection and
single/bulk schedule creation
"""

import logging
from datetime import datetime

from models import Subject, Student
from examination_models import ExaminationSchedule, ExaminationStatus
from exam_errors import ValidationError, ConflictError, NotFound, ExaminationError
from exam_validators import ExamValidator
from access_helpers import require_staff, load_exam
from db_single import atomic

logger = logging.getLogger(__name__)

LOCKED_STATUSES = (ExaminationStatus.RESULTS_PUBLISHED, ExaminationStatus.ARCHIVED)


def times_overlap(start_a, end_a, start_b, end_b):
    """Half-open interval intersection on zero-padded HH:MM strings; touching slots do not overlap"""
    return start_a < end_b and end_a > start_b


def find_schedule_conflict(session, class_id, exam_date, start_time, end_time, exclude_id=None):
    """
    Find an existing sitting for the class on that date that overlaps the slot

    Args:
        session: Database session
        class_id: Class ID
        exam_date: date of the proposed sitting
        start_time, end_time: 'HH:MM' strings
        exclude_id: Schedule ID to ignore (for updates)

    Returns:
        The first overlapping ExaminationSchedule, or None
    """
    query = session.query(ExaminationSchedule).filter(
        ExaminationSchedule.class_id == class_id,
        ExaminationSchedule.exam_date == exam_date,
    )
    if exclude_id:
        query = query.filter(ExaminationSchedule.id != exclude_id)

    for existing in query.order_by(ExaminationSchedule.start_time).all():
        if times_overlap(existing.start_time, existing.end_time, start_time, end_time):
            return existing
    return None


def _conflict_error(exam_date, start_time, end_time):
    return ConflictError(
        f"Class already has an exam on {exam_date.isoformat()} from {start_time} to {end_time}",
        errors={'conflict': {
            'exam_date': exam_date.isoformat(),
            'start_time': start_time,
            'end_time': end_time,
        }}
    )


def clean_schedule_item(session, exam, data):
    """Validate one schedule payload against the exam; returns column values"""
    v = ExamValidator
    if not isinstance(data, dict):
        raise ValidationError(None, 'Each schedule must be an object')

    subject_id = v.validate_required(data.get('subject_id'), 'subject_id')
    class_id = v.validate_required(data.get('class_id'), 'class_id')
    if class_id not in (exam.target_classes or []):
        raise ValidationError('class_id', 'is not a target class of this examination')

    subject = session.query(Subject).filter_by(id=subject_id, tenant_id=exam.tenant_id).first()
    if not subject:
        raise NotFound(f"Subject {subject_id} not found")

    exam_date = v.validate_date(data.get('exam_date'), 'exam_date')
    if not exam.start_date <= exam_date <= exam.end_date:
        raise ValidationError(
            'exam_date',
            f"must be between {exam.start_date.isoformat()} and {exam.end_date.isoformat()}"
        )

    start_time = v.validate_time(data.get('start_time'), 'start_time')
    end_time = v.validate_time(data.get('end_time'), 'end_time')
    if end_time <= start_time:
        raise ValidationError('end_time', 'must be after start_time')

    max_marks = v.validate_number(data.get('max_marks', 100), 'max_marks', minimum=0, allow_zero=False)
    default_passing = round(max_marks * (exam.passing_percentage or 0) / 100, 2)
    passing_marks = v.validate_number(
        data.get('passing_marks', default_passing), 'passing_marks', minimum=0, maximum=max_marks
    )

    theory_marks = v.validate_number(data.get('theory_marks'), 'theory_marks', minimum=0, required=False)
    practical_marks = v.validate_number(data.get('practical_marks'), 'practical_marks', minimum=0, required=False)
    if theory_marks is not None and practical_marks is not None and theory_marks + practical_marks != max_marks:
        raise ValidationError('practical_marks', 'theory and practical marks must add up to max_marks')

    start_dt = datetime.strptime(start_time, '%H:%M')
    end_dt = datetime.strptime(end_time, '%H:%M')

    return {
        'subject_id': subject_id,
        'class_id': class_id,
        'exam_date': exam_date,
        'start_time': start_time,
        'end_time': end_time,
        'duration_minutes': int((end_dt - start_dt).total_seconds() // 60),
        'room_number': (data.get('room_number') or '').strip() or None,
        'exam_center': (data.get('exam_center') or '').strip() or None,
        'max_marks': max_marks,
        'passing_marks': passing_marks,
        'theory_marks': theory_marks,
        'practical_marks': practical_marks,
        'instructions': (data.get('instructions') or '').strip() or None,
    }


def check_against_store(session, exam, item):
    """Reject duplicates of (exam, subject, class) first, then time overlaps"""
    duplicate = session.query(ExaminationSchedule).filter_by(
        examination_id=exam.id,
        subject_id=item['subject_id'],
        class_id=item['class_id'],
    ).first()
    if duplicate:
        raise ConflictError('A schedule already exists for this subject and class in this examination')

    clash = find_schedule_conflict(
        session, item['class_id'], item['exam_date'], item['start_time'], item['end_time']
    )
    if clash:
        raise _conflict_error(clash.exam_date, clash.start_time, clash.end_time)


def check_against_batch(item, accepted):
    for other in accepted:
        if other['class_id'] != item['class_id']:
            continue
        if other['subject_id'] == item['subject_id']:
            raise ConflictError('The batch schedules the same subject twice for this class')
        if other['exam_date'] == item['exam_date'] and times_overlap(
                other['start_time'], other['end_time'], item['start_time'], item['end_time']):
            raise _conflict_error(other['exam_date'], other['start_time'], other['end_time'])


def _editable_exam(session, actor, exam_id):
    require_staff(actor)
    exam = load_exam(session, actor, exam_id)
    if exam.status in LOCKED_STATUSES:
        raise ConflictError(f"Cannot change the timetable of an exam in status {exam.status.name}")
    return exam


def create_schedule(session, actor, exam_id, data):
    """Create one sitting; returns the new ExaminationSchedule"""
    exam = _editable_exam(session, actor, exam_id)
    item = clean_schedule_item(session, exam, data)
    check_against_store(session, exam, item)

    with atomic(session):
        schedule = ExaminationSchedule(examination_id=exam.id, created_by=actor.id, **item)
        session.add(schedule)

    logger.info(f"Schedule {schedule.id} created for exam {exam.id} (class {item['class_id']}) by user {actor.id}")
    return schedule


def create_schedules_bulk(session, actor, exam_id, items):
    """
    Create many sittings all-or-nothing.

    Every item is validated against the store and against the rest of the
    batch before anything is written; the first failure aborts the batch and
    names the offending item.
    """
    exam = _editable_exam(session, actor, exam_id)
    if not isinstance(items, list) or not items:
        raise ValidationError('schedules', 'must be a non-empty list')

    accepted = []
    for index, data in enumerate(items):
        try:
            item = clean_schedule_item(session, exam, data)
            check_against_store(session, exam, item)
            check_against_batch(item, accepted)
        except ExaminationError as e:
            e.message = f"Schedule {index + 1}: {e.message}"
            e.errors = dict(e.errors, item=index)
            raise
        accepted.append(item)

    with atomic(session):
        schedules = [ExaminationSchedule(examination_id=exam.id, created_by=actor.id, **item) for item in accepted]
        session.add_all(schedules)

    logger.info(f"{len(schedules)} schedules created for exam {exam.id} by user {actor.id}")
    return schedules


def list_schedules(session, actor, exam_id, class_id=None):
    """Timetable of an exam; students and parents only see published timetables for their classes"""
    exam = load_exam(session, actor, exam_id)
    query = session.query(ExaminationSchedule).filter_by(examination_id=exam.id)

    if not actor.is_staff:
        if exam.status == ExaminationStatus.DRAFT:
            raise NotFound(f"Examination {exam_id} not found")
        if actor.role == 'student':
            own = Student.user_id == actor.id
        else:
            own = Student.guardian_user_id == actor.id
        class_ids = [row[0] for row in session.query(Student.class_id).filter(own).all()]
        query = query.filter(ExaminationSchedule.class_id.in_(class_ids))

    if class_id:
        query = query.filter_by(class_id=class_id)
    return query.order_by(ExaminationSchedule.exam_date, ExaminationSchedule.start_time).all()
