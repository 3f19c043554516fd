"""
Hall ticket helpers: seat and ticket number generation, batch issue,
lookup and download tracking
"""

import random
import logging
from datetime import datetime

from dateutil.relativedelta import relativedelta

from models import Student, StudentStatusEnum
from examination_models import (
    HallTicket, ExaminationSchedule, ExaminationStatus, NotificationType
)
from exam_errors import ValidationError, ConflictError, PreconditionFailed, NotFound, Forbidden
from access_helpers import require_admin, require_actor, load_exam, own_student_ids, can_access_tenant
from notification_email import notify_exam_event, STUDENTS
from db_single import atomic, get_config

logger = logging.getLogger(__name__)

SEAT_RANGE = (1000, 9999)
TICKET_SUFFIX_RANGE = (10000, 99999)


class UniqueSampler:
    """
    Draws distinct integers from [low, high].

    Random draws are retried on collision up to `max_attempts_factor` draws
    per requested value. Large requests (more than half the space) and
    exhausted retries switch to a shuffled sequential range, which always
    terminates.
    """

    def __init__(self, low, high, rng=None, max_attempts_factor=20):
        if high < low:
            raise ValueError('high must not be below low')
        self.low = low
        self.high = high
        self.rng = rng or random.SystemRandom()
        self.max_attempts_factor = max_attempts_factor

    @property
    def space(self):
        return self.high - self.low + 1

    def _shuffled_range(self, exclude=()):
        pool = [n for n in range(self.low, self.high + 1) if n not in exclude]
        self.rng.shuffle(pool)
        return pool

    def sample(self, count):
        if count < 0:
            raise ValidationError('count', 'must not be negative')
        if count > self.space:
            raise ValidationError('count', f'cannot issue {count} unique values from a space of {self.space}')
        if count > self.space // 2:
            return self._shuffled_range()[:count]

        values = []
        seen = set()
        attempts = 0
        budget = count * self.max_attempts_factor
        while len(values) < count and attempts < budget:
            attempts += 1
            candidate = self.rng.randint(self.low, self.high)
            if candidate in seen:
                continue
            seen.add(candidate)
            values.append(candidate)

        if len(values) < count:
            logger.warning(
                f"Random sampling gave {len(values)}/{count} unique values after {attempts} draws; "
                f"filling the rest from a shuffled range"
            )
            values.extend(self._shuffled_range(exclude=seen)[:count - len(values)])
        return values


def ticket_prefix(exam_name):
    """First three letters/digits of the exam name, upper-cased"""
    letters = ''.join(c for c in (exam_name or '') if c.isalnum()).upper()
    return letters[:3].ljust(3, 'X')


def generate_seat_numbers(count, rng=None, max_attempts_factor=20):
    sampler = UniqueSampler(*SEAT_RANGE, rng=rng, max_attempts_factor=max_attempts_factor)
    return [f"SEAT-{n}" for n in sampler.sample(count)]


def generate_hall_ticket_numbers(count, exam_name, year, rng=None, max_attempts_factor=20):
    """'<PFX><YY><NNNNN>', e.g. MID2412345"""
    sampler = UniqueSampler(*TICKET_SUFFIX_RANGE, rng=rng, max_attempts_factor=max_attempts_factor)
    prefix = f"{ticket_prefix(exam_name)}{year % 100:02d}"
    return [f"{prefix}{n}" for n in sampler.sample(count)]


def reporting_time_for(sitting, minutes_before):
    start = datetime.combine(sitting.exam_date, datetime.strptime(sitting.start_time, '%H:%M').time())
    return (start - relativedelta(minutes=minutes_before)).strftime('%H:%M')


def _timetable_instructions(exam, sittings, minutes_before):
    lines = []
    if exam.instructions:
        lines.append(exam.instructions)
    lines.append(f"Report {minutes_before} minutes before each paper.")
    lines.append('Timetable:')
    for s in sittings:
        subject = s.subject.name if s.subject else f"Subject {s.subject_id}"
        room = f" (Room {s.room_number})" if s.room_number else ''
        lines.append(f"- {s.exam_date.isoformat()} {s.start_time}-{s.end_time}: {subject}{room}")
    return '\n'.join(lines)


def generate_hall_tickets(session, actor, exam_id, class_id=None, replace=False, rng=None):
    """
    Issue hall tickets for every active student of the exam's scheduled classes.

    An existing batch is only discarded when `replace` is set; regeneration
    invalidates tickets already handed out.

    Returns:
        list of HallTicket
    """
    require_admin(actor)
    exam = load_exam(session, actor, exam_id)
    cfg = get_config()

    if exam.status == ExaminationStatus.ARCHIVED:
        raise ConflictError('Cannot issue hall tickets for an archived examination')
    if not exam.status_at_least(ExaminationStatus.SCHEDULED):
        raise PreconditionFailed('Publish the exam timetable before generating hall tickets')

    if class_id is not None:
        if class_id not in (exam.target_classes or []):
            raise ValidationError('class_id', 'is not a target class of this examination')
        class_ids = [class_id]
    else:
        class_ids = list(exam.target_classes or [])

    sittings = session.query(ExaminationSchedule).filter(
        ExaminationSchedule.examination_id == exam.id,
        ExaminationSchedule.class_id.in_(class_ids),
    ).order_by(ExaminationSchedule.exam_date, ExaminationSchedule.start_time).all()
    if not sittings:
        raise PreconditionFailed('No schedules exist for the selected class(es)')

    sittings_by_class = {}
    for s in sittings:
        sittings_by_class.setdefault(s.class_id, []).append(s)

    students = session.query(Student).filter(
        Student.tenant_id == exam.tenant_id,
        Student.class_id.in_(list(sittings_by_class)),
        Student.status == StudentStatusEnum.ACTIVE,
    ).order_by(Student.class_id, Student.roll_number, Student.id).all()
    if not students:
        raise PreconditionFailed('No active students found in the scheduled classes')

    existing = session.query(HallTicket).filter(
        HallTicket.examination_id == exam.id,
        HallTicket.class_id.in_(list(sittings_by_class)),
    ).all()
    if existing and not replace:
        raise ConflictError(
            f"{len(existing)} hall tickets already exist for this timetable; "
            f"regenerate with replace to discard them"
        )

    seats = generate_seat_numbers(len(students), rng, cfg.CREDENTIAL_MAX_ATTEMPTS_FACTOR)
    tickets_numbers = generate_hall_ticket_numbers(
        len(students), exam.exam_name, exam.start_date.year, rng, cfg.CREDENTIAL_MAX_ATTEMPTS_FACTOR
    )
    minutes_before = cfg.HALL_TICKET_REPORTING_MINUTES
    tenant_name = exam.tenant.name if exam.tenant else None

    with atomic(session):
        for old in existing:
            session.delete(old)
        # deletes must reach the store before inserts reuse (exam, student)
        session.flush()

        tickets = []
        for student, seat, number in zip(students, seats, tickets_numbers):
            class_sittings = sittings_by_class[student.class_id]
            first = class_sittings[0]
            tickets.append(HallTicket(
                tenant_id=exam.tenant_id,
                examination_id=exam.id,
                student_id=student.id,
                class_id=student.class_id,
                ticket_number=number,
                seat_number=seat,
                exam_center=first.exam_center or tenant_name,
                room_number=first.room_number,
                reporting_time=reporting_time_for(first, minutes_before),
                instructions=_timetable_instructions(exam, class_sittings, minutes_before),
                generated_by=actor.id,
            ))
        session.add_all(tickets)

    logger.info(
        f"Generated {len(tickets)} hall tickets for exam {exam.id} by user {actor.id}"
        f"{' (replaced ' + str(len(existing)) + ')' if existing else ''}"
    )

    notify_exam_event(
        session, exam, NotificationType.HALL_TICKET_GENERATED,
        f"Hall ticket available: {exam.exam_name}",
        f"Your hall ticket for {exam.exam_name} has been generated. Please download it before the exam.",
        audiences=(STUDENTS,), class_ids=list(sittings_by_class),
    )
    return tickets


def fetch_hall_tickets(session, actor, exam_id, student_id=None, class_id=None):
    """Staff see every ticket; students and parents only their own"""
    require_actor(actor)
    exam = load_exam(session, actor, exam_id)
    query = session.query(HallTicket).filter(HallTicket.examination_id == exam.id)

    if not actor.is_staff:
        allowed = own_student_ids(session, actor)
        if student_id is not None and student_id not in allowed:
            raise Forbidden('You can only view your own hall ticket')
        query = query.filter(HallTicket.student_id.in_(allowed))

    if student_id is not None:
        query = query.filter(HallTicket.student_id == student_id)
    if class_id is not None:
        query = query.filter(HallTicket.class_id == class_id)
    return query.order_by(HallTicket.class_id, HallTicket.seat_number).all()


def track_hall_ticket_download(session, actor, ticket_id):
    """Count a download of one hall ticket"""
    require_actor(actor)
    ticket = session.query(HallTicket).filter(HallTicket.id == ticket_id).with_for_update().first()
    if ticket is None or not can_access_tenant(actor, ticket.tenant_id):
        raise NotFound(f"Hall ticket {ticket_id} not found")
    if not actor.is_staff and ticket.student_id not in own_student_ids(session, actor):
        raise Forbidden('You can only download your own hall ticket')

    with atomic(session):
        now = datetime.utcnow()
        ticket.is_downloaded = True
        ticket.download_count = (ticket.download_count or 0) + 1
        if ticket.first_downloaded_at is None:
            ticket.first_downloaded_at = now
        ticket.last_downloaded_at = now

    logger.info(f"Hall ticket {ticket.id} downloaded by user {actor.id} (count {ticket.download_count})")
    return ticket
