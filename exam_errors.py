"""
Examination Engine Errors
Every failure the engine reports carries an HTTP status code and a stable message
"""


class ExaminationError(Exception):
    """Base class for all examination engine errors"""
    status_code = 500

    def __init__(self, message, errors=None):
        self.message = message
        self.errors = errors or {}
        super().__init__(message)

    def to_dict(self):
        payload = {'success': False, 'message': self.message}
        if self.errors:
            payload['errors'] = self.errors
        return payload


class Unauthorized(ExaminationError):
    """No authenticated actor"""
    status_code = 401

    def __init__(self, message='Authentication required', errors=None):
        super().__init__(message, errors)


class Forbidden(ExaminationError):
    """Actor role insufficient or cross-institution access"""
    status_code = 403

    def __init__(self, message='You do not have permission to perform this action', errors=None):
        super().__init__(message, errors)


class NotFound(ExaminationError):
    status_code = 404


class ValidationError(ExaminationError):
    """Malformed input; carries field-level detail"""
    status_code = 400

    def __init__(self, field, message, errors=None):
        self.field = field
        if errors is None:
            errors = {field: message} if field else {}
        super().__init__(f"{field}: {message}" if field else message, errors)


class ConflictError(ExaminationError):
    status_code = 409


class PreconditionFailed(ExaminationError):
    status_code = 412


class TransactionTimeout(ExaminationError):
    """The store could not begin or finish a unit of work within its budget"""
    status_code = 503
