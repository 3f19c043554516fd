from types import SimpleNamespace

import pytest

from exam_errors import PreconditionFailed, Forbidden
from examination_models import PerformanceTrend, PerformanceLevel
from analytics_helpers import (
    compute_scope_statistics, median, band_for, scope_key, fetch_analytics,
    generate_performance_comparison, fetch_performance_comparison, classify_trend, classify_level
)
from examination_helpers import publish_results, publish_schedule
from schedule_helpers import create_schedules_bulk
from tests.conftest import schedule_payload
from tests.test_marks_entry_helpers import submit_everything


def row(student_id, marks, max_marks=100, is_absent=False, is_passed=None):
    percentage = None if is_absent or marks is None else marks * 100 / max_marks
    if is_passed is None and not is_absent and percentage is not None:
        is_passed = percentage >= 33
    if is_absent:
        is_passed = False
    return SimpleNamespace(student_id=student_id, marks_obtained=None if is_absent else marks,
                           percentage=percentage, is_absent=is_absent, is_passed=is_passed)


class TestScopeStatistics:

    def test_counts_marks_and_bands(self):
        stats = compute_scope_statistics([
            row(1, 95), row(2, 80), row(3, 62), row(4, 40), row(5, 20), row(6, None, is_absent=True),
        ])
        assert stats['total_students'] == 6
        assert stats['appeared_students'] == 5
        assert stats['absent_students'] == 1
        assert stats['passed_students'] == 4
        assert stats['failed_students'] == 2
        assert stats['highest_marks'] == 95
        assert stats['lowest_marks'] == 20
        assert stats['average_marks'] == pytest.approx(59.4)
        assert stats['median_marks'] == 62
        assert (stats['above_90'], stats['between_75_90'], stats['between_60_75'],
                stats['between_33_60'], stats['below_33']) == (1, 1, 1, 1, 1)

    def test_band_sum_and_mean_invariants(self):
        marks = [12, 33, 59.9, 60, 74.99, 75, 89, 90, 100, 47]
        results = [row(i, m) for i, m in enumerate(marks)] + [row(99, None, is_absent=True)]
        stats = compute_scope_statistics(results)
        band_total = sum(stats[k] for k in ('above_90', 'between_75_90', 'between_60_75', 'between_33_60', 'below_33'))
        assert band_total == len(marks)
        assert stats['average_marks'] * len(marks) == pytest.approx(sum(marks))
        assert stats['appeared_students'] + stats['absent_students'] == stats['total_students']

    def test_multi_subject_scope_counts_rows_in_bands_and_students_once(self):
        # student 1 sat two papers, student 2 sat one and missed one
        stats = compute_scope_statistics([row(1, 95), row(1, 70), row(2, 40), row(2, None, is_absent=True)])
        band_total = sum(stats[k] for k in ('above_90', 'between_75_90', 'between_60_75', 'between_33_60', 'below_33'))
        assert stats['total_students'] == 2
        assert stats['appeared_students'] == 2
        assert band_total == 3
        assert stats['passed_students'] + stats['failed_students'] == 4
        assert band_total != stats['appeared_students']

    def test_student_absent_in_one_subject_is_not_absent_in_scope(self):
        stats = compute_scope_statistics([row(1, 50), row(1, None, is_absent=True)])
        assert stats['total_students'] == 1
        assert stats['absent_students'] == 0
        assert stats['failed_students'] == 1

    def test_empty_scope(self):
        stats = compute_scope_statistics([])
        assert stats['total_students'] == 0
        assert stats['average_marks'] is None
        assert stats['median_marks'] is None

    def test_median_even_count(self):
        assert median([4, 1, 3, 2]) == 2.5
        assert median([7]) == 7

    @pytest.mark.parametrize('percentage,band', [
        (100, 'above_90'), (90, 'above_90'), (89.9, 'between_75_90'), (75, 'between_75_90'),
        (60, 'between_60_75'), (33, 'between_33_60'), (32.99, 'below_33'), (0, 'below_33'),
    ])
    def test_band_bounds(self, percentage, band):
        assert band_for(percentage) == band

    def test_scope_key(self):
        assert scope_key(5) == '5:*:*'
        assert scope_key(5, 2) == '5:2:*'
        assert scope_key(5, 2, 9) == '5:2:9'


class TestExamAnalytics:

    def test_publish_writes_every_scope_once(self, db, admin, teacher, scheduled_exam, subjects, students, classes):
        submit_everything(db, teacher, scheduled_exam, subjects, students)
        publish_results(db, admin, scheduled_exam.id)

        rows = fetch_analytics(db, teacher, scheduled_exam.id)
        # exam-wide, two classes, two subjects per class
        assert len(rows) == 7
        exam_wide = next(r for r in rows if r.class_id is None)
        assert exam_wide.total_students == len(students)
        assert exam_wide.average_marks == 60

        class_b = fetch_analytics(db, teacher, scheduled_exam.id, class_id=classes[1].id, subject_id=subjects[0].id)
        assert len(class_b) == 1
        assert class_b[0].total_students == 2

    def test_students_cannot_read_analytics(self, db, student_user, scheduled_exam):
        with pytest.raises(Forbidden):
            fetch_analytics(db, student_user, scheduled_exam.id)


class TestPerformanceComparison:

    def test_classifiers(self):
        assert classify_trend(5.1) == PerformanceTrend.IMPROVING
        assert classify_trend(5) == PerformanceTrend.STABLE
        assert classify_trend(-6) == PerformanceTrend.DECLINING
        assert classify_level(90) == PerformanceLevel.EXCELLENT
        assert classify_level(75) == PerformanceLevel.GOOD
        assert classify_level(60) == PerformanceLevel.AVERAGE
        assert classify_level(49) == PerformanceLevel.NEEDS_IMPROVEMENT

    def test_requires_previous_published_exam(self, db, admin, teacher, scheduled_exam, subjects, students):
        submit_everything(db, teacher, scheduled_exam, subjects, students)
        publish_results(db, admin, scheduled_exam.id)
        with pytest.raises(PreconditionFailed):
            generate_performance_comparison(db, teacher, scheduled_exam.id)

    def test_compares_with_previous_exam_of_same_type(self, db, admin, teacher, student_user, scheduled_exam,
                                                      exam_factory, subjects, students, classes):
        # earlier mid term, published with 60 everywhere
        submit_everything(db, teacher, scheduled_exam, subjects, students)
        publish_results(db, admin, scheduled_exam.id)

        later = exam_factory(exam_name='Mid Term 2025', start_date='2025-09-01', end_date='2025-09-10')
        create_schedules_bulk(db, admin, later.id, [
            schedule_payload(subject, cls, f'2025-09-0{day}')
            for cls in classes for day, subject in enumerate(subjects, start=1)
        ])
        publish_schedule(db, admin, later.id)
        marks = {(students[0].id, subjects[0].id): 80, (students[1].id, subjects[0].id): 40}
        submit_everything(db, teacher, later, subjects, students, marks=marks)
        publish_results(db, admin, later.id)

        rows = generate_performance_comparison(db, teacher, later.id)
        assert len(rows) == len(students) * len(subjects)

        improved = next(r for r in rows if r.student_id == students[0].id and r.subject_id == subjects[0].id)
        assert improved.previous_examination_id == scheduled_exam.id
        assert improved.percentage_improvement == 20
        assert improved.trend == PerformanceTrend.IMPROVING
        assert improved.performance_level == PerformanceLevel.GOOD

        declined = next(r for r in rows if r.student_id == students[1].id and r.subject_id == subjects[0].id)
        assert declined.trend == PerformanceTrend.DECLINING
        assert declined.performance_level == PerformanceLevel.NEEDS_IMPROVEMENT

        # regenerating upserts
        generate_performance_comparison(db, teacher, later.id)
        assert len(fetch_performance_comparison(db, teacher, later.id)) == len(rows)

        own = fetch_performance_comparison(db, student_user, later.id)
        assert {r.student_id for r in own} == {students[0].id}
