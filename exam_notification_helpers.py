"""
Recipient inbox for exam notifications
"""

import logging
from datetime import datetime

from examination_models import ExamNotification
from exam_errors import ValidationError, NotFound
from exam_validators import ExamValidator
from access_helpers import require_actor

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 50
MAX_LIMIT = 200


def _inbox(session, actor):
    return session.query(ExamNotification).filter(
        ExamNotification.tenant_id == actor.tenant_id,
        ExamNotification.recipient_user_id == actor.id,
    )


def list_notifications(session, actor, unread_only=False, exam_id=None, limit=DEFAULT_LIMIT):
    """
    Notifications addressed to the actor, newest first.

    Returns:
        tuple: (list of ExamNotification, unread count over the whole inbox)
    """
    require_actor(actor)
    limit = int(ExamValidator.validate_number(limit, 'limit', minimum=1, maximum=MAX_LIMIT))

    query = _inbox(session, actor)
    if unread_only:
        query = query.filter(ExamNotification.is_read == False)
    if exam_id is not None:
        query = query.filter(ExamNotification.examination_id == exam_id)
    rows = query.order_by(ExamNotification.created_at.desc(), ExamNotification.id.desc()).limit(limit).all()

    unread = _inbox(session, actor).filter(ExamNotification.is_read == False).count()
    return rows, unread


def mark_notifications_read(session, actor, notification_id=None, mark_all=False):
    """
    Mark one notification, or every unread one, as read.

    Returns:
        number of notifications marked
    """
    require_actor(actor)
    now = datetime.utcnow()

    if mark_all:
        rows = _inbox(session, actor).filter(ExamNotification.is_read == False).all()
    elif notification_id is not None:
        row = _inbox(session, actor).filter(ExamNotification.id == notification_id).first()
        if row is None:
            raise NotFound(f"Notification {notification_id} not found")
        rows = [] if row.is_read else [row]
    else:
        raise ValidationError('notification_id', 'either notification_id or mark_all must be provided')

    for row in rows:
        row.is_read = True
        row.read_at = now
    session.commit()

    logger.info(f"User {actor.id} marked {len(rows)} exam notification(s) as read")
    return len(rows)
