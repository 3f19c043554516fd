"""
Grading Calculator
Maps obtained marks to a percentage and a letter grade using an ordered
banding table ({grade, min, max} in percent).

Bands are half-open [min, max) except the top band, which also contains its
upper bound (100). A valid table covers 0-100 with no gaps or overlaps, so
every percentage falls in exactly one band.
"""

from numbers import Number

from exam_errors import ValidationError
from examination_models import EvaluationType

DEFAULT_GRADE_BANDS = [
    {'grade': 'A+', 'min': 90, 'max': 100},
    {'grade': 'A', 'min': 80, 'max': 90},
    {'grade': 'B+', 'min': 70, 'max': 80},
    {'grade': 'B', 'min': 60, 'max': 70},
    {'grade': 'C+', 'min': 50, 'max': 60},
    {'grade': 'C', 'min': 40, 'max': 50},
    {'grade': 'D', 'min': 33, 'max': 40},
    {'grade': 'F', 'min': 0, 'max': 33},
]

PASS_GRADE = 'P'
FAIL_GRADE = 'F'


def _is_number(value):
    return isinstance(value, Number) and not isinstance(value, bool)


def validate_grade_bands(bands, field='grading_bands'):
    """
    Validate a banding table and return it sorted from the highest band down.

    Raises:
        ValidationError if the table is malformed, overlaps, leaves gaps or
        does not span exactly 0 to 100.
    """
    if not isinstance(bands, (list, tuple)) or not bands:
        raise ValidationError(field, 'must be a non-empty list of {grade, min, max}')

    normalized = []
    seen = set()
    for index, band in enumerate(bands):
        if not isinstance(band, dict):
            raise ValidationError(field, f'band {index} must be an object')
        grade = band.get('grade')
        low = band.get('min')
        high = band.get('max')
        if not isinstance(grade, str) or not grade.strip():
            raise ValidationError(field, f'band {index} needs a grade name')
        if not _is_number(low) or not _is_number(high):
            raise ValidationError(field, f"band '{grade}' needs numeric min and max")
        if low < 0 or high > 100 or low >= high:
            raise ValidationError(field, f"band '{grade}' must satisfy 0 <= min < max <= 100")
        grade = grade.strip()
        if grade in seen:
            raise ValidationError(field, f"grade '{grade}' appears more than once")
        seen.add(grade)
        normalized.append({'grade': grade, 'min': low, 'max': high})

    ascending = sorted(normalized, key=lambda b: b['min'])
    if ascending[0]['min'] != 0:
        raise ValidationError(field, 'bands must start at 0')
    if ascending[-1]['max'] != 100:
        raise ValidationError(field, 'bands must end at 100')
    for lower, upper in zip(ascending, ascending[1:]):
        if upper['min'] < lower['max']:
            raise ValidationError(field, f"bands '{lower['grade']}' and '{upper['grade']}' overlap")
        if upper['min'] > lower['max']:
            raise ValidationError(field, f"gap between {lower['max']} and {upper['min']}")

    return list(reversed(ascending))


def grade_for_percentage(percentage, bands=None):
    """Return the grade of the unique band containing `percentage`"""
    bands = bands or DEFAULT_GRADE_BANDS
    for band in bands:
        if band['min'] <= percentage < band['max']:
            return band['grade']
        if band['max'] == 100 and percentage == 100:
            return band['grade']
    # Only reachable with an unvalidated table
    raise ValidationError('grading_bands', f'no band covers {percentage}%')


def calculate_percentage(marks_obtained, max_marks):
    if not _is_number(max_marks) or max_marks <= 0:
        raise ValidationError('max_marks', 'must be greater than 0')
    if not _is_number(marks_obtained):
        raise ValidationError('marks_obtained', 'must be a number')
    if marks_obtained < 0 or marks_obtained > max_marks:
        raise ValidationError('marks_obtained', f'must be between 0 and {max_marks}')
    return marks_obtained * 100 / max_marks


def calculate_grade(marks_obtained, max_marks, bands=None):
    """
    Args:
        marks_obtained: marks scored (0 <= marks <= max_marks)
        max_marks: maximum marks for the sitting
        bands: validated banding table, or None for the default table

    Returns:
        dict: {'percentage': float, 'grade': str}
    """
    percentage = calculate_percentage(marks_obtained, max_marks)
    return {'percentage': percentage, 'grade': grade_for_percentage(percentage, bands)}


def evaluate_marks(evaluation_type, marks_obtained, max_marks, pass_threshold, bands=None):
    """
    Derive percentage, grade and pass flag for one non-absent result.

    `pass_threshold` is a percentage. Descriptive evaluation may carry no
    marks at all, in which case nothing is derived.
    """
    if marks_obtained is None:
        if evaluation_type == EvaluationType.DESCRIPTIVE:
            return {'percentage': None, 'grade': None, 'is_passed': None}
        raise ValidationError('marks_obtained', 'is required unless the student is absent')

    percentage = calculate_percentage(marks_obtained, max_marks)
    is_passed = percentage >= pass_threshold
    if evaluation_type == EvaluationType.PASS_FAIL:
        grade = PASS_GRADE if is_passed else FAIL_GRADE
    else:
        grade = grade_for_percentage(percentage, bands)
    return {'percentage': percentage, 'grade': grade, 'is_passed': is_passed}
