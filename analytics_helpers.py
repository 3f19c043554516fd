"""
Analytics Aggregator and performance comparison
"""

import logging
from datetime import datetime

from examination_models import (
    ExaminationAnalytics, ExaminationResult, ExaminationSchedule, Examination,
    ExaminationStatus, PerformanceComparison, PerformanceTrend, PerformanceLevel
)
from exam_errors import PreconditionFailed, Forbidden
from access_helpers import require_staff, require_actor, load_exam, own_student_ids
from db_single import atomic

logger = logging.getLogger(__name__)

# (field, lower bound inclusive, upper bound exclusive)
SCORE_BANDS = [
    ('above_90', 90, None),
    ('between_75_90', 75, 90),
    ('between_60_75', 60, 75),
    ('between_33_60', 33, 60),
    ('below_33', None, 33),
]

TREND_THRESHOLD = 5


def scope_key(exam_id, class_id=None, subject_id=None):
    return f"{exam_id}:{class_id if class_id is not None else '*'}:{subject_id if subject_id is not None else '*'}"


def median(values):
    ordered = sorted(values)
    count = len(ordered)
    if count == 0:
        return None
    middle = count // 2
    if count % 2:
        return ordered[middle]
    return (ordered[middle - 1] + ordered[middle]) / 2


def band_for(percentage):
    for field, low, high in SCORE_BANDS:
        if (low is None or percentage >= low) and (high is None or percentage < high):
            return field
    return None


def compute_scope_statistics(results):
    """
    Descriptive statistics over the results of one scope.

    Student counts are distinct students: a student is absent in the scope
    when none of their rows was sat. Pass/fail, marks and band figures are
    per result row.
    """
    students = set()
    present = set()
    passed = failed = 0
    marks = []
    bands = {field: 0 for field, _, _ in SCORE_BANDS}

    for r in results:
        students.add(r.student_id)
        if r.is_passed is True:
            passed += 1
        elif r.is_passed is False:
            failed += 1
        if r.is_absent:
            continue
        present.add(r.student_id)
        if r.marks_obtained is not None:
            marks.append(r.marks_obtained)
        if r.percentage is not None:
            bands[band_for(r.percentage)] += 1

    stats = {
        'total_students': len(students),
        'appeared_students': len(present),
        'absent_students': len(students) - len(present),
        'passed_students': passed,
        'failed_students': failed,
        'highest_marks': max(marks) if marks else None,
        'lowest_marks': min(marks) if marks else None,
        'average_marks': sum(marks) / len(marks) if marks else None,
        'median_marks': median(marks),
    }
    stats.update(bands)
    return stats


def _upsert_scope(session, exam_id, class_id, subject_id, stats, now):
    key = scope_key(exam_id, class_id, subject_id)
    row = session.query(ExaminationAnalytics).filter_by(scope_key=key).first()
    if row is None:
        row = ExaminationAnalytics(examination_id=exam_id, class_id=class_id, subject_id=subject_id, scope_key=key)
        session.add(row)
    for field, value in stats.items():
        setattr(row, field, value)
    row.calculated_at = now
    return row


def generate_exam_analytics(session, exam):
    """
    Recompute every analytics scope of the exam: exam-wide, then each target
    class, then each (class, subject) scheduled for that class. Rows are
    overwritten in place. The caller owns the transaction.
    """
    now = datetime.utcnow()
    target_classes = list(exam.target_classes or [])
    results = session.query(ExaminationResult).filter(
        ExaminationResult.examination_id == exam.id,
        ExaminationResult.class_id.in_(target_classes),
    ).order_by(ExaminationResult.id).all()

    rows = [_upsert_scope(session, exam.id, None, None, compute_scope_statistics(results), now)]

    for class_id in target_classes:
        class_results = [r for r in results if r.class_id == class_id]
        rows.append(_upsert_scope(session, exam.id, class_id, None, compute_scope_statistics(class_results), now))

        subject_ids = []
        for schedule in session.query(ExaminationSchedule).filter_by(
                examination_id=exam.id, class_id=class_id
        ).order_by(ExaminationSchedule.exam_date, ExaminationSchedule.start_time).all():
            if schedule.subject_id not in subject_ids:
                subject_ids.append(schedule.subject_id)

        for subject_id in subject_ids:
            subject_results = [r for r in class_results if r.subject_id == subject_id]
            rows.append(_upsert_scope(
                session, exam.id, class_id, subject_id, compute_scope_statistics(subject_results), now
            ))

    session.flush()
    logger.info(f"Analytics recomputed for exam {exam.id}: {len(rows)} scopes")
    return rows


def fetch_analytics(session, actor, exam_id, class_id=None, subject_id=None):
    require_staff(actor)
    exam = load_exam(session, actor, exam_id)
    query = session.query(ExaminationAnalytics).filter_by(examination_id=exam.id)
    if class_id is not None:
        query = query.filter_by(class_id=class_id)
    if subject_id is not None:
        query = query.filter_by(subject_id=subject_id)
    return query.order_by(ExaminationAnalytics.id).all()


# ===== PERFORMANCE COMPARISON =====

def classify_trend(percentage_change):
    if percentage_change > TREND_THRESHOLD:
        return PerformanceTrend.IMPROVING
    if percentage_change < -TREND_THRESHOLD:
        return PerformanceTrend.DECLINING
    return PerformanceTrend.STABLE


def classify_level(percentage):
    if percentage >= 90:
        return PerformanceLevel.EXCELLENT
    if percentage >= 75:
        return PerformanceLevel.GOOD
    if percentage < 50:
        return PerformanceLevel.NEEDS_IMPROVEMENT
    return PerformanceLevel.AVERAGE


def recommendation_for(level, trend):
    if level == PerformanceLevel.NEEDS_IMPROVEMENT:
        text = 'Needs focused revision and extra practice in this subject.'
    elif level == PerformanceLevel.AVERAGE:
        text = 'Regular practice can lift performance to the next level.'
    elif level == PerformanceLevel.GOOD:
        text = 'Good work; keep practising to reach excellence.'
    else:
        text = 'Excellent performance; keep it up.'
    if trend == PerformanceTrend.DECLINING:
        text += ' Performance has dropped since the previous exam and should be reviewed with the student.'
    elif trend == PerformanceTrend.IMPROVING:
        text += ' Clear improvement over the previous exam.'
    return text


def find_previous_exam(session, exam):
    """The latest published exam of the same type that started before this one"""
    return session.query(Examination).filter(
        Examination.tenant_id == exam.tenant_id,
        Examination.exam_type == exam.exam_type,
        Examination.status == ExaminationStatus.RESULTS_PUBLISHED,
        Examination.start_date < exam.start_date,
        Examination.id != exam.id,
    ).order_by(Examination.start_date.desc(), Examination.id.desc()).first()


def generate_performance_comparison(session, actor, exam_id):
    """
    Compare each sat result of a published exam with the same student and
    subject in the previous exam of the same type. Rows are upserted per
    (student, subject, exam).
    """
    require_staff(actor)
    exam = load_exam(session, actor, exam_id)
    if exam.status != ExaminationStatus.RESULTS_PUBLISHED:
        raise PreconditionFailed('Results must be published before comparing performance')

    previous = find_previous_exam(session, exam)
    if previous is None:
        raise PreconditionFailed('No earlier published exam of the same type to compare against')

    prior = {
        (r.student_id, r.subject_id): r
        for r in session.query(ExaminationResult).filter_by(examination_id=previous.id, is_absent=False).all()
    }
    current_results = session.query(ExaminationResult).filter_by(
        examination_id=exam.id, is_absent=False
    ).order_by(ExaminationResult.id).all()

    comparisons = []
    with atomic(session):
        for current in current_results:
            before = prior.get((current.student_id, current.subject_id))
            if before is None or current.percentage is None or before.percentage is None:
                continue

            change = current.percentage - before.percentage
            trend = classify_trend(change)
            level = classify_level(current.percentage)

            row = session.query(PerformanceComparison).filter_by(
                student_id=current.student_id,
                subject_id=current.subject_id,
                current_examination_id=exam.id,
            ).first()
            if row is None:
                row = PerformanceComparison(
                    tenant_id=exam.tenant_id,
                    student_id=current.student_id,
                    subject_id=current.subject_id,
                    current_examination_id=exam.id,
                )
                session.add(row)

            row.previous_examination_id = previous.id
            row.current_marks = current.marks_obtained
            row.current_percentage = current.percentage
            row.previous_marks = before.marks_obtained
            row.previous_percentage = before.percentage
            row.marks_improvement = (
                current.marks_obtained - before.marks_obtained
                if current.marks_obtained is not None and before.marks_obtained is not None else None
            )
            row.percentage_improvement = change
            row.rank_improvement = (
                before.class_rank - current.class_rank
                if before.class_rank is not None and current.class_rank is not None else None
            )
            row.trend = trend
            row.performance_level = level
            row.recommendations = recommendation_for(level, trend)
            comparisons.append(row)

    logger.info(f"Performance comparison for exam {exam.id} against exam {previous.id}: {len(comparisons)} rows")
    return comparisons


def fetch_performance_comparison(session, actor, exam_id, student_id=None):
    require_actor(actor)
    exam = load_exam(session, actor, exam_id)
    query = session.query(PerformanceComparison).filter_by(current_examination_id=exam.id)
    if not actor.is_staff:
        allowed = own_student_ids(session, actor)
        if student_id is not None and student_id not in allowed:
            raise Forbidden('You can only view your own performance')
        query = query.filter(PerformanceComparison.student_id.in_(allowed))
    if student_id is not None:
        query = query.filter_by(student_id=student_id)
    return query.order_by(PerformanceComparison.student_id, PerformanceComparison.subject_id).all()
