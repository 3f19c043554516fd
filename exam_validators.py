"""
Examination Input Validation Utilities
Validates and cleans exam, schedule and marks payloads before they reach the store
"""

import re
from datetime import datetime, date
from numbers import Number

from exam_errors import ValidationError
from examination_models import ExaminationType, EvaluationType

TIME_PATTERN = re.compile(r'^(\d{1,2}):(\d{2})$')


class ExamValidator:
    """Validates examination data"""

    @staticmethod
    def validate_required(value, field_name):
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValidationError(field_name, "is required")
        return value.strip() if isinstance(value, str) else value

    @staticmethod
    def validate_date(value, field_name="date"):
        """
        Validate a date
        Args:
            value: date object or string in YYYY-MM-DD format
        Returns:
            date object
        Raises:
            ValidationError if invalid
        """
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        if not value or not isinstance(value, str):
            raise ValidationError(field_name, "is required")
        try:
            return datetime.strptime(value.strip(), '%Y-%m-%d').date()
        except ValueError:
            raise ValidationError(field_name, "must be in YYYY-MM-DD format")

    @staticmethod
    def validate_time(value, field_name="time"):
        """
        Validate a same-day clock time
        Returns:
            zero-padded 'HH:MM' string (so text comparison orders correctly)
        """
        if not value or not isinstance(value, str):
            raise ValidationError(field_name, "is required")
        match = TIME_PATTERN.match(value.strip())
        if not match:
            raise ValidationError(field_name, "must be in HH:MM format")
        hours, minutes = int(match.group(1)), int(match.group(2))
        if hours > 23 or minutes > 59:
            raise ValidationError(field_name, "is not a valid time of day")
        return f"{hours:02d}:{minutes:02d}"

    @staticmethod
    def validate_number(value, field_name, minimum=None, maximum=None, required=True, allow_zero=True):
        if value is None or value == '':
            if required:
                raise ValidationError(field_name, "is required")
            return None
        if isinstance(value, bool):
            raise ValidationError(field_name, "must be a number")
        if isinstance(value, str):
            try:
                value = float(value)
            except ValueError:
                raise ValidationError(field_name, "must be a number")
        if not isinstance(value, Number):
            raise ValidationError(field_name, "must be a number")
        if not allow_zero and value == 0:
            raise ValidationError(field_name, "must be greater than 0")
        if minimum is not None and value < minimum:
            raise ValidationError(field_name, f"must be at least {minimum}")
        if maximum is not None and value > maximum:
            raise ValidationError(field_name, f"must be at most {maximum}")
        return value

    @staticmethod
    def validate_bool(value, field_name, default=False):
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in ('true', '1', 'yes', 'on'):
            return True
        if isinstance(value, str) and value.lower() in ('false', '0', 'no', 'off', ''):
            return False
        if isinstance(value, int):
            return bool(value)
        raise ValidationError(field_name, "must be true or false")

    @staticmethod
    def validate_enum(value, enum_cls, field_name):
        """Accept either the member name (MID_TERM) or its value (Mid Term)"""
        if isinstance(value, enum_cls):
            return value
        if not value or not isinstance(value, str):
            raise ValidationError(field_name, "is required")
        if value in enum_cls.__members__:
            return enum_cls[value]
        for member in enum_cls:
            if member.value == value:
                return member
        allowed = ', '.join(enum_cls.__members__)
        raise ValidationError(field_name, f"must be one of {allowed}")

    @staticmethod
    def validate_id_list(value, field_name):
        if not isinstance(value, (list, tuple)) or not value:
            raise ValidationError(field_name, "must be a non-empty list")
        cleaned = []
        for item in value:
            if isinstance(item, bool) or not isinstance(item, int):
                raise ValidationError(field_name, "must contain integer ids")
            if item not in cleaned:
                cleaned.append(item)
        return cleaned

    @staticmethod
    def validate_all_exam_data(form_data, partial=False):
        """
        Validate exam create/update data
        Args:
            form_data: dict of submitted data
            partial: only validate the keys present (update patch)
        Returns:
            dict of validated and cleaned data
        Raises:
            ValidationError on first validation failure
        """
        v = ExamValidator
        validated = {}

        def wants(key):
            return not partial or key in form_data

        if wants('exam_name'):
            validated['exam_name'] = v.validate_required(form_data.get('exam_name'), 'exam_name')
        if wants('academic_session_id'):
            validated['academic_session_id'] = v.validate_required(form_data.get('academic_session_id'), 'academic_session_id')
        if wants('exam_type'):
            validated['exam_type'] = v.validate_enum(form_data.get('exam_type'), ExaminationType, 'exam_type')
        if 'evaluation_type' in form_data:
            validated['evaluation_type'] = v.validate_enum(form_data.get('evaluation_type'), EvaluationType, 'evaluation_type')
        if wants('target_classes'):
            validated['target_classes'] = v.validate_id_list(form_data.get('target_classes'), 'target_classes')
        if wants('start_date'):
            validated['start_date'] = v.validate_date(form_data.get('start_date'), 'start_date')
        if wants('end_date'):
            validated['end_date'] = v.validate_date(form_data.get('end_date'), 'end_date')
        if 'passing_percentage' in form_data:
            validated['passing_percentage'] = v.validate_number(
                form_data.get('passing_percentage'), 'passing_percentage', minimum=0, maximum=100
            )

        for flag in ('subject_wise_passing', 'show_rank', 'show_percentage', 'show_grade'):
            if flag in form_data:
                validated[flag] = v.validate_bool(form_data.get(flag), flag, default=True)

        for text_field in ('exam_code', 'description', 'instructions'):
            if text_field in form_data:
                raw = form_data.get(text_field)
                validated[text_field] = raw.strip() or None if isinstance(raw, str) else raw

        if 'grading_bands' in form_data:
            validated['grading_bands'] = form_data.get('grading_bands')

        return validated
