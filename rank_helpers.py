"""
Rank Engine
Class and overall ranks by total marks over non-absent results.

Students whose every result is absent get no rank at all. Ordering among
equal totals follows the order students first appear in the result set
(result id), which keeps repeated runs identical.
"""

import logging

from examination_models import ExaminationResult

logger = logging.getLogger(__name__)

SEQUENTIAL = 'sequential'    # 1, 2, 3 for equal totals
COMPETITION = 'competition'  # 1, 1, 3
DENSE = 'dense'              # 1, 1, 2
TIE_POLICIES = (SEQUENTIAL, COMPETITION, DENSE)


def assign_ranks(totals, policy=SEQUENTIAL):
    """
    Args:
        totals: list of (student_id, total) in stable insertion order
        policy: one of TIE_POLICIES

    Returns:
        dict student_id -> rank
    """
    if policy not in TIE_POLICIES:
        raise ValueError(f"Unknown rank tie policy: {policy}")

    # sorted() is stable, so equal totals keep insertion order
    ordered = sorted(totals, key=lambda item: -item[1])
    ranks = {}
    prev_total = None
    prev_rank = 0
    for position, (student_id, total) in enumerate(ordered, start=1):
        if policy == SEQUENTIAL:
            rank = position
        elif prev_total is not None and round(total, 4) == round(prev_total, 4):
            rank = prev_rank
        elif policy == COMPETITION:
            rank = position
        else:
            rank = prev_rank + 1
        ranks[student_id] = rank
        prev_total, prev_rank = total, rank
    return ranks


def student_totals(results):
    """
    Sum marks per student over non-absent rows.

    Returns:
        (totals, home_class): totals as an ordered list of (student_id, total)
        and each student's class taken from their first row
    """
    sums = {}
    home_class = {}
    for result in results:
        home_class.setdefault(result.student_id, result.class_id)
        if result.is_absent:
            continue
        sums[result.student_id] = sums.get(result.student_id, 0) + (result.marks_obtained or 0)
    # dicts keep insertion order, i.e. first non-absent appearance
    return list(sums.items()), home_class


def compute_ranks(session, exam, policy=SEQUENTIAL):
    """
    Recompute class_rank and overall_rank for every result of the exam.

    Existing ranks are cleared first, so the pass is idempotent. The caller
    owns the transaction.

    Returns:
        dict with the number of students ranked per class and overall
    """
    target_classes = list(exam.target_classes or [])
    results = session.query(ExaminationResult).filter(
        ExaminationResult.examination_id == exam.id,
        ExaminationResult.class_id.in_(target_classes),
    ).order_by(ExaminationResult.id).all()

    session.query(ExaminationResult).filter(
        ExaminationResult.examination_id == exam.id
    ).update({'class_rank': None, 'overall_rank': None}, synchronize_session='fetch')

    rows_by_student = {}
    for result in results:
        rows_by_student.setdefault(result.student_id, []).append(result)

    totals, home_class = student_totals(results)

    class_counts = {}
    for class_id in target_classes:
        class_totals = [(sid, total) for sid, total in totals if home_class[sid] == class_id]
        for student_id, rank in assign_ranks(class_totals, policy).items():
            for row in rows_by_student[student_id]:
                row.class_rank = rank
        class_counts[class_id] = len(class_totals)

    for student_id, rank in assign_ranks(totals, policy).items():
        for row in rows_by_student[student_id]:
            row.overall_rank = rank

    session.flush()
    logger.info(f"Ranked {len(totals)} students for exam {exam.id} ({policy})")
    return {'class': class_counts, 'overall': len(totals)}
