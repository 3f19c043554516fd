"""
Examination lifecycle helpers

DRAFT -> SCHEDULED -> MARKS_ENTRY_IN_PROGRESS -> MARKS_ENTRY_COMPLETED ->
RESULTS_PUBLISHED, with ARCHIVED reachable from any other state. Nothing
here moves an exam backwards.
"""

import logging
from datetime import datetime, date, timedelta

from sqlalchemy import desc, or_, func

from models import Class, AcademicSession
from examination_models import (
    Examination, ExaminationSchedule, ExaminationResult, ExaminationStatus,
    MarksEntryAction, NotificationType
)
from exam_errors import ValidationError, ConflictError, PreconditionFailed, Forbidden, NotFound
from exam_validators import ExamValidator
from grading_helpers import validate_grade_bands
from access_helpers import require_admin, require_staff, require_actor, load_exam, can_access_tenant, own_student_ids
from marks_entry_helpers import count_draft_results, log_action, rederive_results
from rank_helpers import compute_ranks, TIE_POLICIES
from analytics_helpers import generate_exam_analytics
from notification_email import notify_exam_event, STUDENTS, ALL_AUDIENCES
from db_single import atomic, get_config

logger = logging.getLogger(__name__)

EDIT_LOCKED = (ExaminationStatus.RESULTS_PUBLISHED, ExaminationStatus.ARCHIVED)
MARKS_OPEN = (ExaminationStatus.MARKS_ENTRY_IN_PROGRESS, ExaminationStatus.MARKS_ENTRY_COMPLETED)
# Settings that percentage, grade and the pass flag are derived from
GRADING_FIELDS = ('grading_bands', 'passing_percentage', 'subject_wise_passing')


def _check_tenant(actor, tenant_id):
    if not can_access_tenant(actor, tenant_id):
        raise Forbidden('You cannot manage examinations of another school')


def _check_references(session, tenant_id, data):
    """Target classes and the academic session must belong to the school"""
    if 'target_classes' in data:
        found = {row[0] for row in session.query(Class.id).filter(
            Class.tenant_id == tenant_id,
            Class.id.in_(data['target_classes'])
        ).all()}
        missing = [cid for cid in data['target_classes'] if cid not in found]
        if missing:
            raise ValidationError('target_classes', f"unknown class id(s): {', '.join(str(m) for m in missing)}")

    if 'academic_session_id' in data:
        exists = session.query(AcademicSession.id).filter_by(
            id=data['academic_session_id'], tenant_id=tenant_id
        ).first()
        if not exists:
            raise ValidationError('academic_session_id', 'academic session not found')


def _check_dates(start_date, end_date):
    if start_date > end_date:
        raise ValidationError('end_date', 'must not be before start_date')


def _check_removed_classes(session, exam, target_classes):
    """A class with sittings or marks cannot be dropped from the exam"""
    removed = [cid for cid in (exam.target_classes or []) if cid not in target_classes]
    if not removed:
        return
    in_use = {row[0] for row in session.query(ExaminationSchedule.class_id).filter(
        ExaminationSchedule.examination_id == exam.id,
        ExaminationSchedule.class_id.in_(removed),
    ).all()}
    in_use |= {row[0] for row in session.query(ExaminationResult.class_id).filter(
        ExaminationResult.examination_id == exam.id,
        ExaminationResult.class_id.in_(removed),
    ).all()}
    if in_use:
        blocked = sorted(in_use)
        raise ConflictError(
            f"Class(es) {', '.join(str(c) for c in blocked)} already have sittings or results in this examination",
            errors={'target_classes': blocked}
        )


# ===== QUERIES =====

def list_exams(session, actor, tenant_id, status=None, academic_session_id=None, search=None):
    require_actor(actor)
    _check_tenant(actor, tenant_id)
    query = session.query(Examination).filter(Examination.tenant_id == tenant_id)

    if not actor.is_staff:
        query = query.filter(Examination.status != ExaminationStatus.DRAFT)

    if status:
        try:
            query = query.filter(Examination.status == ExaminationStatus[status.upper()])
        except KeyError:
            raise ValidationError('status', f"must be one of {', '.join(ExaminationStatus.__members__)}")

    if academic_session_id:
        query = query.filter(Examination.academic_session_id == academic_session_id)

    if search:
        query = query.filter(or_(
            Examination.exam_name.ilike(f'%{search}%'),
            Examination.exam_code.ilike(f'%{search}%')
        ))

    return query.order_by(desc(Examination.start_date), desc(Examination.id)).all()


def get_exam(session, actor, exam_id):
    exam = load_exam(session, actor, exam_id)
    if not actor.is_staff and exam.status == ExaminationStatus.DRAFT:
        raise NotFound(f"Examination {exam_id} not found")
    return exam


# ===== CREATE / UPDATE / DELETE / ARCHIVE =====

def create_exam(session, actor, tenant_id, form_data):
    """Create an examination in DRAFT"""
    require_admin(actor)
    _check_tenant(actor, tenant_id)

    data = ExamValidator.validate_all_exam_data(form_data or {})
    _check_references(session, tenant_id, data)
    _check_dates(data['start_date'], data['end_date'])

    if data.get('grading_bands') is not None:
        data['grading_bands'] = validate_grade_bands(data['grading_bands'])
    if data.get('passing_percentage') is None:
        data['passing_percentage'] = get_config().EXAM_DEFAULT_PASSING_PERCENTAGE

    with atomic(session):
        exam = Examination(
            tenant_id=tenant_id,
            status=ExaminationStatus.DRAFT,
            created_by=actor.id,
            **data
        )
        session.add(exam)

    logger.info(f"Examination {exam.id} '{exam.exam_name}' created by user {actor.id}")
    return exam


def update_exam(session, actor, exam_id, patch):
    require_admin(actor)
    exam = load_exam(session, actor, exam_id, for_update=True)
    if exam.status in EDIT_LOCKED:
        raise ConflictError(f"Examination cannot be edited in status {exam.status.name}")
    if not isinstance(patch, dict) or not patch:
        raise ValidationError(None, 'Nothing to update')
    if 'status' in patch:
        raise ValidationError('status', 'cannot be changed directly; use the lifecycle actions')

    data = ExamValidator.validate_all_exam_data(patch, partial=True)
    _check_references(session, exam.tenant_id, data)
    _check_dates(data.get('start_date', exam.start_date), data.get('end_date', exam.end_date))
    if 'grading_bands' in data and data['grading_bands'] is not None:
        data['grading_bands'] = validate_grade_bands(data['grading_bands'])
    if 'target_classes' in data:
        _check_removed_classes(session, exam, data['target_classes'])

    has_results = session.query(ExaminationResult.id).filter(
        ExaminationResult.examination_id == exam.id
    ).first() is not None
    if has_results and 'evaluation_type' in data and data['evaluation_type'] != exam.evaluation_type:
        raise ConflictError('Evaluation type cannot be changed once marks have been entered',
                            errors={'evaluation_type': 'marks already entered'})

    regrade = has_results and any(
        key in data and data[key] != getattr(exam, key) for key in GRADING_FIELDS
    )

    with atomic(session):
        for key, value in data.items():
            setattr(exam, key, value)
        if regrade:
            session.flush()
            rederive_results(session, exam)

    logger.info(f"Examination {exam.id} updated by user {actor.id}: {', '.join(sorted(data))}")
    return exam


def delete_exam(session, actor, exam_id):
    """Hard delete; only possible while no marks have been recorded"""
    require_admin(actor)
    exam = load_exam(session, actor, exam_id)

    result_count = session.query(func.count(ExaminationResult.id)).filter(
        ExaminationResult.examination_id == exam.id
    ).scalar() or 0
    if result_count:
        raise PreconditionFailed(f"Examination has {result_count} recorded results; archive it instead")
    if exam.status in MARKS_OPEN:
        raise ConflictError(f"Examination cannot be deleted in status {exam.status.name}")

    name = exam.exam_name
    with atomic(session):
        session.delete(exam)

    logger.info(f"Examination {exam_id} '{name}' deleted by user {actor.id}")


def archive_exam(session, actor, exam_id):
    require_admin(actor)
    exam = load_exam(session, actor, exam_id, for_update=True)
    if exam.status == ExaminationStatus.ARCHIVED:
        raise ConflictError('Examination is already archived')

    previous = exam.status
    with atomic(session):
        exam.status = ExaminationStatus.ARCHIVED

    logger.info(f"Examination {exam.id} archived from {previous.name} by user {actor.id}")
    return exam


# ===== SCHEDULE PUBLICATION =====

def publish_schedule(session, actor, exam_id):
    """
    Publish the timetable: DRAFT -> SCHEDULED.

    Publishing an already scheduled exam sends the notifications again
    without changing its status.
    """
    require_staff(actor)
    exam = load_exam(session, actor, exam_id, for_update=True)
    if exam.status in EDIT_LOCKED:
        raise ConflictError(f"Cannot publish the timetable of an exam in status {exam.status.name}")
    if exam.status in MARKS_OPEN:
        raise ConflictError('Timetable is already published and marks entry has started')

    schedule_count = session.query(func.count(ExaminationSchedule.id)).filter(
        ExaminationSchedule.examination_id == exam.id
    ).scalar() or 0
    if not schedule_count:
        raise PreconditionFailed('Add at least one schedule before publishing the timetable')

    if exam.status == ExaminationStatus.DRAFT:
        with atomic(session):
            exam.status = ExaminationStatus.SCHEDULED
            exam.schedule_published_at = datetime.utcnow()
            exam.schedule_published_by = actor.id
        logger.info(f"Timetable of exam {exam.id} published by user {actor.id} ({schedule_count} sittings)")
    else:
        session.commit()
        logger.info(f"Timetable of exam {exam.id} re-announced by user {actor.id}")

    notify_exam_event(
        session, exam, NotificationType.SCHEDULE_PUBLISHED,
        f"Exam timetable published: {exam.exam_name}",
        f"The timetable for {exam.exam_name} ({exam.start_date.isoformat()} to {exam.end_date.isoformat()}) "
        f"has been published. Please check the schedule.",
        audiences=ALL_AUDIENCES,
    )
    return exam


# ===== MARKS ENTRY COMPLETION =====

def complete_marks_entry(session, actor, exam_id):
    require_staff(actor)
    exam = load_exam(session, actor, exam_id, for_update=True)
    if exam.status == ExaminationStatus.MARKS_ENTRY_COMPLETED:
        raise ConflictError('Marks entry is already completed')
    if exam.status != ExaminationStatus.MARKS_ENTRY_IN_PROGRESS:
        raise PreconditionFailed(f"Marks entry is not in progress (status {exam.status.name})")

    drafts = count_draft_results(session, exam.id)
    if drafts:
        raise ConflictError(f"{drafts} result(s) are still drafts", errors={'draft_count': drafts})

    with atomic(session):
        exam.status = ExaminationStatus.MARKS_ENTRY_COMPLETED

    logger.info(f"Marks entry of exam {exam.id} completed by user {actor.id}")
    return exam


# ===== RESULTS =====

def tie_policy():
    policy = (get_config().EXAM_RANK_TIE_POLICY or '').lower()
    if policy not in TIE_POLICIES:
        logger.warning(f"Unknown EXAM_RANK_TIE_POLICY '{policy}', using sequential")
        return TIE_POLICIES[0]
    return policy


def run_results_pipeline(session, exam):
    """Re-derived grades, ranks (when shown) then analytics. The caller owns the transaction."""
    regraded = rederive_results(session, exam)
    ranked = compute_ranks(session, exam, tie_policy()) if exam.show_rank else None
    scopes = generate_exam_analytics(session, exam)
    return {'regraded': regraded, 'ranks': ranked, 'analytics_scopes': len(scopes)}


def publish_results(session, actor, exam_id):
    """
    Publish results: rank, aggregate, flip status and stamp the publication
    in one transaction, then notify.
    """
    require_admin(actor)
    exam = load_exam(session, actor, exam_id, for_update=True)

    if exam.status == ExaminationStatus.RESULTS_PUBLISHED:
        raise ConflictError('Results are already published')
    if exam.status == ExaminationStatus.ARCHIVED:
        raise ConflictError('Cannot publish results of an archived examination')
    if exam.status not in MARKS_OPEN:
        raise PreconditionFailed('Marks entry has not started for this examination')

    result_count = session.query(func.count(ExaminationResult.id)).filter(
        ExaminationResult.examination_id == exam.id
    ).scalar() or 0
    if not result_count:
        raise PreconditionFailed('No results have been entered for this examination')

    drafts = count_draft_results(session, exam.id)
    if drafts:
        raise ConflictError(
            f"Cannot publish: {drafts} result(s) are still drafts",
            errors={'draft_count': drafts}
        )

    with atomic(session):
        summary = run_results_pipeline(session, exam)
        exam.status = ExaminationStatus.RESULTS_PUBLISHED
        exam.results_published_at = datetime.utcnow()
        exam.results_published_by = actor.id
        log_action(session, exam.id, MarksEntryAction.RESULTS_PUBLISHED, 'Examination', exam.id,
                   f"Results published ({result_count} results)", actor.id)

    logger.info(f"Results of exam {exam.id} published by user {actor.id}: {summary}")

    notify_exam_event(
        session, exam, NotificationType.RESULTS_PUBLISHED,
        f"Results published: {exam.exam_name}",
        f"Results for {exam.exam_name} have been published. Log in to view them.",
        audiences=ALL_AUDIENCES,
    )
    return exam


def recompute_exam(session, exam, actor_id=None):
    """Re-derive grades, then re-run ranks and analytics of a published exam; status and timestamps stay untouched"""
    if exam.status != ExaminationStatus.RESULTS_PUBLISHED:
        raise PreconditionFailed('Only published results can be recomputed')

    with atomic(session):
        summary = run_results_pipeline(session, exam)
        log_action(session, exam.id, MarksEntryAction.RESULTS_RECOMPUTED, 'Examination', exam.id,
                   'Ranks and analytics recomputed', actor_id)

    logger.info(f"Results of exam {exam.id} recomputed: {summary}")
    return summary


def recompute_results(session, actor, exam_id):
    require_admin(actor)
    exam = load_exam(session, actor, exam_id, for_update=True)
    return recompute_exam(session, exam, actor.id)


def fetch_results(session, actor, exam_id, class_id=None, student_id=None, subject_id=None):
    """
    Result rows as dicts.

    Students and parents see published results for their own students only,
    with rank, percentage and grade hidden per the exam's display flags.
    """
    require_actor(actor)
    exam = load_exam(session, actor, exam_id)
    query = session.query(ExaminationResult).filter(ExaminationResult.examination_id == exam.id)

    staff = actor.is_staff
    if not staff:
        if exam.status != ExaminationStatus.RESULTS_PUBLISHED:
            raise NotFound('Results are not published yet')
        allowed = own_student_ids(session, actor)
        if student_id is not None and student_id not in allowed:
            raise Forbidden('You can only view your own results')
        query = query.filter(ExaminationResult.student_id.in_(allowed))

    if class_id is not None:
        query = query.filter(ExaminationResult.class_id == class_id)
    if student_id is not None:
        query = query.filter(ExaminationResult.student_id == student_id)
    if subject_id is not None:
        query = query.filter(ExaminationResult.subject_id == subject_id)

    results = query.order_by(ExaminationResult.class_id, ExaminationResult.student_id, ExaminationResult.subject_id).all()
    return [
        r.to_dict(
            show_rank=staff or exam.show_rank,
            show_percentage=staff or exam.show_percentage,
            show_grade=staff or exam.show_grade,
        )
        for r in results
    ]


# ===== REMINDERS =====

def remind_upcoming_sittings(session, exam, days_ahead=1, today=None):
    """
    Notify the students of each class with sittings within the next
    `days_ahead` days. Parents and teachers are not reminded.

    Returns:
        dict with the number of sittings found and notifications recorded
    """
    today = today or date.today()
    window_end = today + timedelta(days=days_ahead)
    sittings = session.query(ExaminationSchedule).filter(
        ExaminationSchedule.examination_id == exam.id,
        ExaminationSchedule.exam_date >= today,
        ExaminationSchedule.exam_date <= window_end,
    ).order_by(ExaminationSchedule.exam_date, ExaminationSchedule.start_time).all()

    if not sittings:
        logger.info(f"No sittings of exam {exam.id} between {today} and {window_end}; no reminders sent")
        return {'sittings': 0, 'notified': 0}

    notified = 0
    by_class = {}
    for s in sittings:
        by_class.setdefault(s.class_id, []).append(s)

    for class_id, class_sittings in by_class.items():
        lines = [
            f"- {s.exam_date.isoformat()} {s.start_time}-{s.end_time}: "
            f"{s.subject.name if s.subject else 'Subject ' + str(s.subject_id)}"
            + (f" (Room {s.room_number})" if s.room_number else '')
            for s in class_sittings
        ]
        notified += notify_exam_event(
            session, exam, NotificationType.EXAM_REMINDER,
            f"Upcoming exam: {exam.exam_name}",
            "Reminder of your upcoming papers:\n" + '\n'.join(lines),
            audiences=(STUDENTS,), class_ids=[class_id],
        )

    return {'sittings': len(sittings), 'notified': notified}


def send_exam_reminders(session, actor, exam_id, days_ahead=1, today=None):
    require_staff(actor)
    exam = load_exam(session, actor, exam_id)
    if exam.status not in (ExaminationStatus.SCHEDULED, ExaminationStatus.MARKS_ENTRY_IN_PROGRESS):
        raise PreconditionFailed('Reminders can only be sent for a scheduled examination')
    days_ahead = int(ExamValidator.validate_number(days_ahead, 'days_ahead', minimum=0, maximum=30))
    return remind_upcoming_sittings(session, exam, days_ahead, today)
