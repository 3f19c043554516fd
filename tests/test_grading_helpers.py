import pytest

from exam_errors import ValidationError
from examination_models import EvaluationType
from grading_helpers import (
    DEFAULT_GRADE_BANDS, validate_grade_bands, grade_for_percentage,
    calculate_percentage, calculate_grade, evaluate_marks
)


CUSTOM_BANDS = [
    {'grade': 'Distinction', 'min': 75, 'max': 100},
    {'grade': 'Pass', 'min': 40, 'max': 75},
    {'grade': 'Fail', 'min': 0, 'max': 40},
]


class TestDefaultTable:

    @pytest.mark.parametrize('percentage,grade', [
        (100, 'A+'), (90, 'A+'), (89.99, 'A'), (80, 'A'), (70, 'B+'), (60, 'B'),
        (50, 'C+'), (40, 'C'), (33, 'D'), (32.9, 'F'), (0, 'F'),
    ])
    def test_band_boundaries(self, percentage, grade):
        assert grade_for_percentage(percentage) == grade

    def test_every_percentage_maps_to_exactly_one_band(self):
        for tenth in range(0, 1001):
            pct = tenth / 10
            matching = [
                b for b in DEFAULT_GRADE_BANDS
                if b['min'] <= pct < b['max'] or (b['max'] == 100 and pct == 100)
            ]
            assert len(matching) == 1, pct
            assert grade_for_percentage(pct) == matching[0]['grade']

    def test_missing_table_falls_back_to_default(self):
        assert grade_for_percentage(85, None) == 'A'
        assert grade_for_percentage(85, []) == 'A'


class TestCustomBands:

    def test_custom_table_is_sorted_and_used(self):
        bands = validate_grade_bands(list(reversed(CUSTOM_BANDS)))
        assert [b['grade'] for b in bands] == ['Distinction', 'Pass', 'Fail']
        assert grade_for_percentage(75, bands) == 'Distinction'
        assert grade_for_percentage(74.5, bands) == 'Pass'
        assert grade_for_percentage(100, bands) == 'Distinction'

    def test_overlapping_bands_rejected(self):
        bands = [
            {'grade': 'A', 'min': 50, 'max': 100},
            {'grade': 'B', 'min': 0, 'max': 60},
        ]
        with pytest.raises(ValidationError):
            validate_grade_bands(bands)

    def test_gap_rejected(self):
        bands = [
            {'grade': 'A', 'min': 60, 'max': 100},
            {'grade': 'B', 'min': 0, 'max': 50},
        ]
        with pytest.raises(ValidationError):
            validate_grade_bands(bands)

    def test_table_must_span_zero_to_hundred(self):
        with pytest.raises(ValidationError):
            validate_grade_bands([{'grade': 'A', 'min': 10, 'max': 100}])
        with pytest.raises(ValidationError):
            validate_grade_bands([{'grade': 'A', 'min': 0, 'max': 90}])

    def test_malformed_band_rejected(self):
        with pytest.raises(ValidationError) as exc:
            validate_grade_bands([{'grade': 'A', 'min': 'low', 'max': 100}])
        assert 'grading_bands' in exc.value.errors


class TestCalculations:

    def test_percentage(self):
        assert calculate_percentage(45, 50) == 90
        assert calculate_grade(45, 50) == {'percentage': 90, 'grade': 'A+'}

    def test_marks_based_evaluation(self):
        outcome = evaluate_marks(EvaluationType.MARKS_BASED, 30, 100, 33)
        assert outcome == {'percentage': 30, 'grade': 'F', 'is_passed': False}

    def test_pass_fail_evaluation_grades_p_or_f(self):
        assert evaluate_marks(EvaluationType.PASS_FAIL, 40, 100, 33)['grade'] == 'P'
        assert evaluate_marks(EvaluationType.PASS_FAIL, 20, 100, 33)['grade'] == 'F'

    def test_descriptive_without_marks_derives_nothing(self):
        outcome = evaluate_marks(EvaluationType.DESCRIPTIVE, None, 100, 33)
        assert outcome == {'percentage': None, 'grade': None, 'is_passed': None}

    def test_marks_required_for_marks_based(self):
        with pytest.raises(ValidationError):
            evaluate_marks(EvaluationType.MARKS_BASED, None, 100, 33)
