"""
Notification Email Helper
Sends exam notifications to students, parents and teachers via SMTP (cPanel
compatible) and, when configured, WhatsApp.

Every notification is recorded as an ExamNotification row first; delivery
happens in a background thread and never blocks or fails the exam operation
that triggered it.

Configuration via environment variables:
- MAIL_SERVER: SMTP host (e.g., mail.yourdomain.com)
- MAIL_PORT: SMTP port (default: 587 for TLS)
- MAIL_USERNAME: SMTP username (e.g., notifications@yourdomain.com)
- MAIL_PASSWORD: SMTP password
- MAIL_USE_TLS: Use STARTTLS (default: True)
- MAIL_USE_SSL: Use SSL (default: False, use for port 465)
- MAIL_SENDER_NAME: Display name for sender (default: School Notifications)
- MAIL_DEBUG: Enable SMTP debug logging (default: False)
"""

import os
import html
import smtplib
import socket
import logging
import traceback
from email.message import EmailMessage
from email.utils import formataddr
from typing import List, Tuple, Optional
from threading import Thread
from datetime import datetime

from dotenv import load_dotenv

from models import User, Student, StudentStatusEnum
from examination_models import ExamNotification, NotificationStatus, RecipientType
from whatsapp_helper import WhatsAppSender, is_whatsapp_configured

load_dotenv()

logger = logging.getLogger(__name__)

STUDENTS = 'students'
PARENTS = 'parents'
TEACHERS = 'teachers'
ALL_AUDIENCES = (STUDENTS, PARENTS, TEACHERS)


def get_smtp_config():
    """Get SMTP configuration from environment (reload each time for testing)."""
    return {
        'host': os.getenv('MAIL_SERVER', 'localhost'),
        'port': int(os.getenv('MAIL_PORT', 587)),
        'user': os.getenv('MAIL_USERNAME', ''),
        'password': os.getenv('MAIL_PASSWORD', ''),
        'use_tls': os.getenv('MAIL_USE_TLS', 'True').lower() in ('true', '1', 'yes'),
        'use_ssl': os.getenv('MAIL_USE_SSL', 'False').lower() in ('true', '1', 'yes'),
        'sender_name': os.getenv('MAIL_SENDER_NAME', 'School Notifications'),
        'debug': os.getenv('MAIL_DEBUG', 'False').lower() in ('true', '1', 'yes'),
    }


def is_email_configured() -> bool:
    """Check if email sending is properly configured."""
    cfg = get_smtp_config()
    return bool(cfg['host'] and cfg['host'] != 'localhost' and cfg['user'] and cfg['password'])


def send_email(
    to_addrs: List[str],
    subject: str,
    html_body: str,
    plain_body: Optional[str] = None,
    reply_to: Optional[str] = None
) -> Tuple[bool, str]:
    """
    Send an email to one or more recipients.

    Args:
        to_addrs: List of recipient email addresses
        subject: Email subject
        html_body: HTML content of the email
        plain_body: Plain text fallback (optional)
        reply_to: Reply-to address (optional)

    Returns:
        Tuple of (success: bool, message: str)
    """
    cfg = get_smtp_config()
    start_time = datetime.now()

    if not is_email_configured():
        return False, "Email not configured. Set MAIL_SERVER, MAIL_USERNAME, MAIL_PASSWORD environment variables."

    # Filter out empty/None addresses
    to_addrs = [addr for addr in (to_addrs or []) if addr and '@' in addr]
    if not to_addrs:
        return False, "No valid email addresses provided"

    try:
        msg = EmailMessage()
        msg['Subject'] = subject
        msg['From'] = formataddr((cfg['sender_name'], cfg['user']))
        msg['To'] = ', '.join(to_addrs)
        msg['Reply-To'] = reply_to or cfg['user']

        msg.set_content(plain_body or 'Please view this email in an HTML-compatible email client.')
        msg.add_alternative(html_body, subtype='html')

        if cfg['use_ssl']:
            with smtplib.SMTP_SSL(cfg['host'], cfg['port'], timeout=30) as server:
                if cfg['debug']:
                    server.set_debuglevel(2)
                server.login(cfg['user'], cfg['password'])
                server.send_message(msg)
        else:
            with smtplib.SMTP(cfg['host'], cfg['port'], timeout=30) as server:
                if cfg['debug']:
                    server.set_debuglevel(2)
                if cfg['use_tls']:
                    server.starttls()
                server.login(cfg['user'], cfg['password'])
                server.send_message(msg)

        elapsed = (datetime.now() - start_time).total_seconds()
        success_msg = f"Email sent to {len(to_addrs)} recipient(s) in {elapsed:.2f}s"
        logger.info(f"[EMAIL] {success_msg}")
        return True, success_msg

    except smtplib.SMTPAuthenticationError as e:
        error_msg = f"SMTP authentication failed: {str(e)}"
    except smtplib.SMTPConnectError as e:
        error_msg = f"Could not connect to SMTP server {cfg['host']}:{cfg['port']}: {str(e)}"
    except smtplib.SMTPException as e:
        error_msg = f"SMTP error: {str(e)}"
    except socket.timeout as e:
        error_msg = f"Connection timed out after 30 seconds: {str(e)}"
    except OSError as e:
        error_msg = f"Error sending email: {str(e)}"

    logger.error(f"[EMAIL] FAILED: {error_msg}")
    return False, error_msg


def _render_html(title, message):
    title = html.escape(title)
    body = html.escape(message).replace('\n', '<br>')
    return f"""
    <html>
    <body style="font-family: Arial, sans-serif; color: #333;">
        <h2>{title}</h2>
        <p>{body}</p>
        <p style="font-size: 12px; color: #666;">This is an automated message. Please do not reply to this email.</p>
    </body>
    </html>
    """


def deliver_notifications(notification_ids: List[int]):
    """Send recorded notifications and store the outcome on each row"""
    from db_single import get_session

    session = get_session()
    try:
        rows = session.query(ExamNotification).filter(ExamNotification.id.in_(notification_ids)).all()
        whatsapp = WhatsAppSender.from_env() if is_whatsapp_configured() else None

        for row in rows:
            errors = []
            delivered = False
            if row.recipient_email:
                ok, info = send_email([row.recipient_email], row.title, _render_html(row.title, row.message), row.message)
                delivered = delivered or ok
                if not ok:
                    errors.append(info)
            if whatsapp and row.recipient_phone:
                result = whatsapp.send_message(row.recipient_phone, f"{row.title}\n\n{row.message}")
                delivered = delivered or result['success']
                if not result['success']:
                    errors.append(result['error'])

            if delivered:
                row.status = NotificationStatus.SENT
                row.sent_at = datetime.utcnow()
            else:
                row.status = NotificationStatus.FAILED
                row.error_message = '; '.join(e for e in errors if e) or 'No contact details for recipient'
        session.commit()
        logger.info(f"[NOTIFY] Delivered {len(rows)} exam notification(s)")
    except Exception as e:
        session.rollback()
        logger.error(f"[NOTIFY] Delivery failed: {e}")
        logger.error(traceback.format_exc())
    finally:
        session.close()


def deliver_notifications_async(notification_ids: List[int]):
    """Send recorded notifications in a background thread."""
    thread = Thread(target=deliver_notifications, args=(list(notification_ids),), daemon=True)
    thread.start()
    logger.info(f"[NOTIFY] Async thread started: {thread.name} ({len(notification_ids)} notifications)")
    return thread


class ExamNotificationDispatcher:
    """Records exam notifications for students, parents and teachers and hands them to delivery"""

    def __init__(self, deliver=True):
        self.deliver = deliver

    def build_recipients(self, session, exam, audiences=ALL_AUDIENCES, class_ids=None, student_ids=None):
        class_ids = class_ids or list(exam.target_classes or [])
        recipients = []

        if STUDENTS in audiences or PARENTS in audiences:
            query = session.query(Student).filter(
                Student.tenant_id == exam.tenant_id,
                Student.class_id.in_(class_ids),
                Student.status == StudentStatusEnum.ACTIVE,
            )
            if student_ids is not None:
                query = query.filter(Student.id.in_(student_ids))
            for student in query.order_by(Student.id).all():
                if STUDENTS in audiences:
                    recipients.append({
                        'recipient_type': RecipientType.STUDENT,
                        'user_id': student.user_id,
                        'name': student.full_name,
                        'email': student.user.email if student.user else student.email,
                        'phone': student.phone,
                    })
                if PARENTS in audiences and (student.guardian_user_id or student.guardian_email or student.guardian_phone):
                    guardian = student.guardian_user
                    recipients.append({
                        'recipient_type': RecipientType.PARENT,
                        'user_id': student.guardian_user_id,
                        'name': guardian.full_name if guardian else (student.father_name or student.mother_name),
                        'email': guardian.email if guardian else student.guardian_email,
                        'phone': (guardian.phone if guardian else None) or student.guardian_phone,
                    })

        if TEACHERS in audiences:
            teachers = session.query(User).filter(
                User.tenant_id == exam.tenant_id,
                User.role == 'teacher',
                User.is_active == True
            ).order_by(User.id).all()
            for teacher in teachers:
                recipients.append({
                    'recipient_type': RecipientType.TEACHER,
                    'user_id': teacher.id,
                    'name': teacher.full_name,
                    'email': teacher.email,
                    'phone': teacher.phone,
                })

        return recipients

    def notify(self, session, exam, notification_type, title, message,
               audiences=ALL_AUDIENCES, class_ids=None, student_ids=None, in_app_only=False):
        """
        Record one notification per recipient; returns the number recorded.

        In-app-only notifications are stored as SENT and never handed to
        email or WhatsApp delivery.
        """
        recipients = self.build_recipients(session, exam, audiences, class_ids, student_ids)
        now = datetime.utcnow()
        rows = [
            ExamNotification(
                tenant_id=exam.tenant_id,
                examination_id=exam.id,
                notification_type=notification_type,
                recipient_type=r['recipient_type'],
                recipient_user_id=r['user_id'],
                recipient_name=r['name'],
                recipient_email=r['email'],
                recipient_phone=r['phone'],
                title=title,
                message=message,
                status=NotificationStatus.SENT if in_app_only else NotificationStatus.PENDING,
                sent_at=now if in_app_only else None,
            )
            for r in recipients
        ]
        session.add_all(rows)
        session.commit()

        if self.deliver and rows and not in_app_only:
            deliver_notifications_async([row.id for row in rows])
        return len(rows)


_dispatcher = None


def get_dispatcher():
    global _dispatcher
    if _dispatcher is None:
        from db_single import get_config
        _dispatcher = ExamNotificationDispatcher(deliver=get_config().EXAM_NOTIFICATIONS_ENABLED)
    return _dispatcher


def set_dispatcher(dispatcher):
    """Install a different dispatcher (None restores the default on next use)"""
    global _dispatcher
    _dispatcher = dispatcher


def notify_exam_event(session, exam, notification_type, title, message, **kwargs):
    """
    Fire-and-forget notification fan-out.

    Failures are logged and swallowed; the exam operation that triggered the
    notification has already been committed.
    """
    try:
        count = get_dispatcher().notify(session, exam, notification_type, title, message, **kwargs)
        logger.info(f"[NOTIFY] {notification_type.name} for exam {exam.id}: {count} recipient(s)")
        return count
    except Exception as e:
        session.rollback()
        logger.warning(f"[NOTIFY] {notification_type.name} for exam {exam.id} failed: {e}")
        logger.warning(traceback.format_exc())
        return 0
