"""
Marks entry and the draft gate

Results are upserted per (exam, student, subject). Percentage, grade and the
pass flag are always derived here; callers cannot set them. Every write is
journaled to the append-only MarksEntryLog.
"""

import logging
from datetime import datetime

from sqlalchemy import func

from models import Student, Subject, StudentStatusEnum
from examination_models import (
    ExaminationResult, ExaminationSchedule, ExaminationStatus, EvaluationType,
    MarksEntryLog, MarksEntryAction
)
from exam_errors import ValidationError, ConflictError, PreconditionFailed, NotFound
from exam_validators import ExamValidator
from grading_helpers import evaluate_marks
from access_helpers import require_staff, require_admin, load_exam
from db_single import atomic

logger = logging.getLogger(__name__)

DERIVED_FIELDS = ('percentage', 'grade', 'is_passed', 'class_rank', 'overall_rank')


def count_draft_results(session, exam_id):
    return session.query(func.count(ExaminationResult.id)).filter(
        ExaminationResult.examination_id == exam_id,
        ExaminationResult.is_draft == True
    ).scalar() or 0


def pass_threshold_for(exam, schedule):
    """Pass mark as a percentage: the sitting's own pass mark, or the exam-wide one"""
    if exam.subject_wise_passing and schedule.max_marks:
        return schedule.passing_marks * 100 / schedule.max_marks
    return exam.passing_percentage or 0


def log_action(session, exam_id, action, entity_type, entity_id, description, actor_id):
    entry = MarksEntryLog(
        examination_id=exam_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        description=description,
        performed_by=actor_id,
        performed_at=datetime.utcnow(),
    )
    session.add(entry)
    return entry


def _check_exam_accepts_marks(exam):
    if exam.status == ExaminationStatus.DRAFT:
        raise PreconditionFailed('Publish the exam schedule before entering marks')
    if exam.status == ExaminationStatus.RESULTS_PUBLISHED:
        raise ConflictError('Results are already published; marks can no longer be changed')
    if exam.status == ExaminationStatus.ARCHIVED:
        raise ConflictError('Cannot enter marks for an archived examination')


def _clean_entry(entry, schedule, exam):
    """Validate one row and derive its result columns; returns (values, errors)"""
    v = ExamValidator
    errors = {}
    values = {}

    for key in DERIVED_FIELDS:
        if key in entry:
            errors[key] = 'is derived and cannot be set'

    try:
        values['is_absent'] = v.validate_bool(entry.get('is_absent'), 'is_absent', default=False)
        values['is_draft'] = v.validate_bool(entry.get('is_draft'), 'is_draft', default=True)
    except ValidationError as e:
        errors[e.field] = e.errors[e.field]
        return values, errors

    remarks = entry.get('remarks')
    values['remarks'] = remarks.strip() or None if isinstance(remarks, str) else None

    if values['is_absent']:
        values.update(marks_obtained=None, theory_marks_obtained=None, practical_marks_obtained=None,
                      percentage=None, grade=None, is_passed=False)
        return values, errors

    try:
        values['theory_marks_obtained'] = v.validate_number(
            entry.get('theory_marks'), 'theory_marks', minimum=0,
            maximum=schedule.theory_marks if schedule.theory_marks is not None else schedule.max_marks,
            required=False
        )
        values['practical_marks_obtained'] = v.validate_number(
            entry.get('practical_marks'), 'practical_marks', minimum=0,
            maximum=schedule.practical_marks if schedule.practical_marks is not None else schedule.max_marks,
            required=False
        )
        marks = entry.get('marks_obtained')
        if marks is None and values['theory_marks_obtained'] is not None and values['practical_marks_obtained'] is not None:
            marks = values['theory_marks_obtained'] + values['practical_marks_obtained']
        descriptive = exam.evaluation_type == EvaluationType.DESCRIPTIVE
        marks = v.validate_number(
            marks, 'marks_obtained', minimum=0, maximum=schedule.max_marks, required=not descriptive
        )
        values['marks_obtained'] = marks
        values.update(evaluate_marks(
            exam.evaluation_type, marks, schedule.max_marks,
            pass_threshold_for(exam, schedule), exam.grading_bands or None
        ))
    except ValidationError as e:
        errors.update(e.errors or {e.field: e.message})

    return values, errors


def submit_marks(session, actor, exam_id, subject_id, entries):
    """
    Record or correct marks for one subject of an exam.

    Args:
        entries: list of {student_id, marks_obtained|None, is_absent, remarks,
                 is_draft (default True), theory_marks, practical_marks}

    The whole batch is validated before anything is written; writes are
    all-or-nothing.

    Returns:
        dict with saved results, remaining draft count and exam status
    """
    require_staff(actor)
    # Row lock held until the write commits; publish_results takes the same lock
    exam = load_exam(session, actor, exam_id, for_update=True)
    _check_exam_accepts_marks(exam)

    if not isinstance(entries, list) or not entries:
        raise ValidationError('entries', 'must be a non-empty list')

    subject = session.query(Subject).filter_by(id=subject_id, tenant_id=exam.tenant_id).first()
    if not subject:
        raise NotFound(f"Subject {subject_id} not found")

    schedules = {
        s.class_id: s for s in session.query(ExaminationSchedule).filter_by(
            examination_id=exam.id, subject_id=subject_id
        ).all()
    }
    if not schedules:
        raise ValidationError('subject_id', 'is not scheduled in this examination')

    existing = {
        r.student_id: r for r in session.query(ExaminationResult).filter_by(
            examination_id=exam.id, subject_id=subject_id
        ).all()
    }

    if exam.status == ExaminationStatus.MARKS_ENTRY_COMPLETED and any(
            ExamValidator.validate_bool(e.get('is_draft'), 'is_draft', default=True)
            for e in entries if isinstance(e, dict)):
        raise ConflictError('Marks entry is completed; only final corrections are accepted')

    errors = {}
    prepared = []
    seen_students = set()
    for index, entry in enumerate(entries):
        prefix = f"entries[{index}]"
        if not isinstance(entry, dict):
            errors[prefix] = 'must be an object'
            continue
        student_id = entry.get('student_id')
        if isinstance(student_id, bool) or not isinstance(student_id, int):
            errors[f"{prefix}.student_id"] = 'is required'
            continue
        if student_id in seen_students:
            errors[f"{prefix}.student_id"] = 'appears more than once in this submission'
            continue
        seen_students.add(student_id)

        student = session.query(Student).filter_by(id=student_id, tenant_id=exam.tenant_id).first()
        if not student:
            errors[f"{prefix}.student_id"] = 'student not found'
            continue
        schedule = schedules.get(student.class_id)
        if schedule is None:
            errors[f"{prefix}.student_id"] = "student's class has no sitting for this subject"
            continue

        values, row_errors = _clean_entry(entry, schedule, exam)
        for field, message in row_errors.items():
            errors[f"{prefix}.{field}"] = message
        if row_errors:
            continue

        current = existing.get(student_id)
        if current is not None and not current.is_draft and values['is_draft']:
            errors[f"{prefix}.is_draft"] = 'finalized marks cannot be returned to draft'
            continue
        prepared.append((student, schedule, current, values))

    if errors:
        raise ValidationError(None, f"{len(errors)} invalid marks entr{'y' if len(errors) == 1 else 'ies'}", errors=errors)

    now = datetime.utcnow()
    saved = []
    with atomic(session):
        for student, schedule, current, values in prepared:
            if current is None:
                current = ExaminationResult(
                    examination_id=exam.id,
                    schedule_id=schedule.id,
                    student_id=student.id,
                    subject_id=subject_id,
                    class_id=schedule.class_id,
                )
                session.add(current)
                action = MarksEntryAction.MARKS_ENTERED if values['is_draft'] else MarksEntryAction.MARKS_SUBMITTED
            elif not current.is_draft:
                action = MarksEntryAction.MARKS_CORRECTED
            else:
                action = MarksEntryAction.MARKS_ENTERED if values['is_draft'] else MarksEntryAction.MARKS_SUBMITTED

            current.schedule_id = schedule.id
            current.max_marks = schedule.max_marks
            for key, value in values.items():
                setattr(current, key, value)
            current.entered_by = actor.id
            current.entered_at = now
            if not values['is_draft']:
                current.submitted_by = actor.id
                current.submitted_at = now
            session.flush()

            shown = 'absent' if current.is_absent else f"{current.marks_obtained}/{current.max_marks}"
            log_action(session, exam.id, action, 'ExaminationResult', current.id,
                       f"{subject.name}: student {student.id} {shown}", actor.id)
            saved.append(current)

        if exam.status == ExaminationStatus.SCHEDULED:
            exam.status = ExaminationStatus.MARKS_ENTRY_IN_PROGRESS
        session.flush()
        drafts = count_draft_results(session, exam.id)
        if exam.status == ExaminationStatus.MARKS_ENTRY_IN_PROGRESS and drafts == 0 and all_marks_finalized(session, exam):
            exam.status = ExaminationStatus.MARKS_ENTRY_COMPLETED

    logger.info(
        f"Saved {len(saved)} marks for exam {exam.id} subject {subject_id} by user {actor.id}; "
        f"{drafts} drafts remain; status {exam.status.name}"
    )
    return {
        'results': saved,
        'draft_count': drafts,
        'status': exam.status,
    }


def rederive_results(session, exam):
    """
    Recompute percentage, grade and pass flag of every sat result from the
    exam's current grading settings. The caller owns the transaction.

    Returns:
        number of results whose derived fields changed
    """
    bands = exam.grading_bands or None
    changed = 0
    for result in session.query(ExaminationResult).filter_by(examination_id=exam.id).all():
        if result.is_absent:
            continue
        derived = evaluate_marks(
            exam.evaluation_type, result.marks_obtained, result.max_marks,
            pass_threshold_for(exam, result.schedule), bands
        )
        if any(getattr(result, key) != value for key, value in derived.items()):
            for key, value in derived.items():
                setattr(result, key, value)
            changed += 1
    session.flush()
    if changed:
        logger.info(f"Re-derived {changed} result(s) of exam {exam.id} from its grading settings")
    return changed


def all_marks_finalized(session, exam):
    """True when every active student of every scheduled class has a final result for each sitting"""
    schedules = session.query(ExaminationSchedule).filter_by(examination_id=exam.id).all()
    if not schedules:
        return False
    finalized = {
        (r.student_id, r.subject_id)
        for r in session.query(ExaminationResult).filter_by(examination_id=exam.id, is_draft=False).all()
    }
    for schedule in schedules:
        student_ids = [row[0] for row in session.query(Student.id).filter(
            Student.class_id == schedule.class_id,
            Student.status == StudentStatusEnum.ACTIVE,
        ).all()]
        if any((sid, schedule.subject_id) not in finalized for sid in student_ids):
            return False
    return True


def fetch_marks(session, actor, exam_id, subject_id=None, class_id=None):
    """Entered marks (drafts included) for staff"""
    require_staff(actor)
    exam = load_exam(session, actor, exam_id)
    query = session.query(ExaminationResult).filter_by(examination_id=exam.id)
    if subject_id:
        query = query.filter_by(subject_id=subject_id)
    if class_id:
        query = query.filter_by(class_id=class_id)
    return query.order_by(ExaminationResult.class_id, ExaminationResult.subject_id, ExaminationResult.id).all()


def fetch_marks_log(session, actor, exam_id):
    """Audit trail of marks entry for one exam"""
    require_admin(actor)
    exam = load_exam(session, actor, exam_id)
    return session.query(MarksEntryLog).filter_by(examination_id=exam.id).order_by(MarksEntryLog.id).all()
