"""
Examination Routes for School ERP
JSON API integrated into the school blueprint under /<tenant_slug>/api/examinations
"""
from flask import request, g, jsonify
from flask_login import current_user
from werkzeug.exceptions import HTTPException
import logging
import traceback

from db_single import get_session
from examination_models import Examination, HallTicket, ReportCardType
from exam_errors import ExaminationError, NotFound
from exam_validators import ExamValidator
import examination_helpers
import schedule_helpers
import credential_helpers
import marks_entry_helpers
import analytics_helpers
import report_card_helpers
import exam_attendance_helpers
import student_summary_helpers
import exam_notification_helpers

logger = logging.getLogger(__name__)


def ok(data=None, message='OK', status=200):
    return jsonify({'success': True, 'message': message, 'data': data}), status


def register_examination_routes(bp, require_school_auth):
    """Register all examination routes to the school blueprint"""

    base = '/<tenant_slug>/api/examinations'

    def actor():
        return current_user._get_current_object()

    def payload():
        return request.get_json(silent=True) or {}

    def scoped(session_db, exam_id):
        """Exam ids are only resolved inside the school named in the URL"""
        tenant_id = session_db.query(Examination.tenant_id).filter(Examination.id == exam_id).scalar()
        if tenant_id != g.current_tenant.id:
            raise NotFound(f"Examination {exam_id} not found")
        return exam_id

    @bp.errorhandler(ExaminationError)
    def examination_error(e):
        if e.status_code >= 500:
            logger.error(f"Examination error: {e.message}")
        return jsonify(e.to_dict()), e.status_code

    @bp.errorhandler(Exception)
    def unexpected_error(e):
        if isinstance(e, HTTPException):
            return e
        logger.error(f"Unhandled error on {request.path}: {e}")
        logger.error(traceback.format_exc())
        return jsonify({'success': False, 'message': 'An unexpected error occurred'}), 500

    # ==================== EXAMINATIONS ====================
    @bp.route(base, methods=['GET'])
    @require_school_auth
    def examinations_list(tenant_slug):
        """List examinations of the school"""
        session_db = get_session()
        try:
            exams = examination_helpers.list_exams(
                session_db, actor(), g.current_tenant.id,
                status=request.args.get('status'),
                academic_session_id=request.args.get('session_id', type=int),
                search=request.args.get('search', '').strip() or None,
            )
            return ok([e.to_dict() for e in exams])
        finally:
            session_db.close()

    @bp.route(base, methods=['POST'])
    @require_school_auth
    def examinations_add(tenant_slug):
        session_db = get_session()
        try:
            exam = examination_helpers.create_exam(session_db, actor(), g.current_tenant.id, payload())
            return ok(exam.to_dict(), f'Examination "{exam.exam_name}" created successfully', 201)
        finally:
            session_db.close()

    @bp.route(f'{base}/<int:exam_id>', methods=['GET'])
    @require_school_auth
    def examinations_detail(tenant_slug, exam_id):
        session_db = get_session()
        try:
            exam = examination_helpers.get_exam(session_db, actor(), scoped(session_db, exam_id))
            return ok(exam.to_dict())
        finally:
            session_db.close()

    @bp.route(f'{base}/<int:exam_id>', methods=['PATCH', 'PUT'])
    @require_school_auth
    def examinations_edit(tenant_slug, exam_id):
        session_db = get_session()
        try:
            exam = examination_helpers.update_exam(session_db, actor(), scoped(session_db, exam_id), payload())
            return ok(exam.to_dict(), 'Examination updated successfully')
        finally:
            session_db.close()

    @bp.route(f'{base}/<int:exam_id>', methods=['DELETE'])
    @require_school_auth
    def examinations_delete(tenant_slug, exam_id):
        session_db = get_session()
        try:
            examination_helpers.delete_exam(session_db, actor(), scoped(session_db, exam_id))
            return ok(None, 'Examination deleted successfully')
        finally:
            session_db.close()

    @bp.route(f'{base}/<int:exam_id>/archive', methods=['POST'])
    @require_school_auth
    def examinations_archive(tenant_slug, exam_id):
        session_db = get_session()
        try:
            exam = examination_helpers.archive_exam(session_db, actor(), scoped(session_db, exam_id))
            return ok(exam.to_dict(), 'Examination archived')
        finally:
            session_db.close()

    # ==================== SCHEDULES ====================
    @bp.route(f'{base}/<int:exam_id>/schedules', methods=['GET'])
    @require_school_auth
    def schedules_list(tenant_slug, exam_id):
        session_db = get_session()
        try:
            schedules = schedule_helpers.list_schedules(
                session_db, actor(), scoped(session_db, exam_id), class_id=request.args.get('class_id', type=int)
            )
            return ok([s.to_dict() for s in schedules])
        finally:
            session_db.close()

    @bp.route(f'{base}/<int:exam_id>/schedules', methods=['POST'])
    @require_school_auth
    def schedules_add(tenant_slug, exam_id):
        session_db = get_session()
        try:
            schedule = schedule_helpers.create_schedule(session_db, actor(), scoped(session_db, exam_id), payload())
            return ok(schedule.to_dict(), 'Schedule added successfully', 201)
        finally:
            session_db.close()

    @bp.route(f'{base}/<int:exam_id>/schedules/bulk', methods=['POST'])
    @require_school_auth
    def schedules_bulk_add(tenant_slug, exam_id):
        session_db = get_session()
        try:
            schedules = schedule_helpers.create_schedules_bulk(
                session_db, actor(), scoped(session_db, exam_id), payload().get('schedules')
            )
            return ok([s.to_dict() for s in schedules], f'{len(schedules)} schedules added successfully', 201)
        finally:
            session_db.close()

    @bp.route(f'{base}/<int:exam_id>/publish-schedule', methods=['POST'])
    @require_school_auth
    def publish_schedule(tenant_slug, exam_id):
        session_db = get_session()
        try:
            exam = examination_helpers.publish_schedule(session_db, actor(), scoped(session_db, exam_id))
            return ok(exam.to_dict(), 'Exam timetable published')
        finally:
            session_db.close()

    @bp.route(f'{base}/<int:exam_id>/reminders', methods=['POST'])
    @require_school_auth
    def send_reminders(tenant_slug, exam_id):
        session_db = get_session()
        try:
            summary = examination_helpers.send_exam_reminders(
                session_db, actor(), scoped(session_db, exam_id), payload().get('days_ahead', 1)
            )
            return ok(summary, f"{summary['notified']} reminder(s) queued")
        finally:
            session_db.close()

    # ==================== HALL TICKETS ====================
    @bp.route(f'{base}/<int:exam_id>/hall-tickets', methods=['POST'])
    @require_school_auth
    def hall_tickets_generate(tenant_slug, exam_id):
        session_db = get_session()
        try:
            data = payload()
            tickets = credential_helpers.generate_hall_tickets(
                session_db, actor(), scoped(session_db, exam_id),
                class_id=data.get('class_id'),
                replace=ExamValidator.validate_bool(data.get('replace'), 'replace'),
            )
            return ok([t.to_dict() for t in tickets], f'{len(tickets)} hall tickets generated', 201)
        finally:
            session_db.close()

    @bp.route(f'{base}/<int:exam_id>/hall-tickets', methods=['GET'])
    @require_school_auth
    def hall_tickets_list(tenant_slug, exam_id):
        session_db = get_session()
        try:
            tickets = credential_helpers.fetch_hall_tickets(
                session_db, actor(), scoped(session_db, exam_id),
                student_id=request.args.get('student_id', type=int),
                class_id=request.args.get('class_id', type=int),
            )
            return ok([t.to_dict() for t in tickets])
        finally:
            session_db.close()

    @bp.route('/<tenant_slug>/api/hall-tickets/<int:ticket_id>/download', methods=['POST'])
    @require_school_auth
    def hall_ticket_download(tenant_slug, ticket_id):
        session_db = get_session()
        try:
            tenant_id = session_db.query(HallTicket.tenant_id).filter(HallTicket.id == ticket_id).scalar()
            if tenant_id != g.current_tenant.id:
                raise NotFound(f"Hall ticket {ticket_id} not found")
            ticket = credential_helpers.track_hall_ticket_download(session_db, actor(), ticket_id)
            return ok(ticket.to_dict())
        finally:
            session_db.close()

    # ==================== MARKS ENTRY ====================
    @bp.route(f'{base}/<int:exam_id>/marks', methods=['POST'])
    @require_school_auth
    def marks_submit(tenant_slug, exam_id):
        session_db = get_session()
        try:
            data = payload()
            outcome = marks_entry_helpers.submit_marks(
                session_db, actor(), scoped(session_db, exam_id), data.get('subject_id'), data.get('entries')
            )
            return ok({
                'results': [r.to_dict() for r in outcome['results']],
                'draft_count': outcome['draft_count'],
                'status': outcome['status'].name,
            }, f"{len(outcome['results'])} marks saved")
        finally:
            session_db.close()

    @bp.route(f'{base}/<int:exam_id>/marks', methods=['GET'])
    @require_school_auth
    def marks_list(tenant_slug, exam_id):
        session_db = get_session()
        try:
            results = marks_entry_helpers.fetch_marks(
                session_db, actor(), scoped(session_db, exam_id),
                subject_id=request.args.get('subject_id', type=int),
                class_id=request.args.get('class_id', type=int),
            )
            return ok([r.to_dict() for r in results])
        finally:
            session_db.close()

    @bp.route(f'{base}/<int:exam_id>/marks/log', methods=['GET'])
    @require_school_auth
    def marks_log(tenant_slug, exam_id):
        session_db = get_session()
        try:
            entries = marks_entry_helpers.fetch_marks_log(session_db, actor(), scoped(session_db, exam_id))
            return ok([e.to_dict() for e in entries])
        finally:
            session_db.close()

    @bp.route(f'{base}/<int:exam_id>/complete-marks-entry', methods=['POST'])
    @require_school_auth
    def marks_complete(tenant_slug, exam_id):
        session_db = get_session()
        try:
            exam = examination_helpers.complete_marks_entry(session_db, actor(), scoped(session_db, exam_id))
            return ok(exam.to_dict(), 'Marks entry completed')
        finally:
            session_db.close()

    # ==================== RESULTS ====================
    @bp.route(f'{base}/<int:exam_id>/publish-results', methods=['POST'])
    @require_school_auth
    def publish_results(tenant_slug, exam_id):
        """Publish examination results"""
        session_db = get_session()
        try:
            exam = examination_helpers.publish_results(session_db, actor(), scoped(session_db, exam_id))
            return ok(exam.to_dict(), f'Results for "{exam.exam_name}" published successfully')
        finally:
            session_db.close()

    @bp.route(f'{base}/<int:exam_id>/recompute', methods=['POST'])
    @require_school_auth
    def recompute_results(tenant_slug, exam_id):
        session_db = get_session()
        try:
            summary = examination_helpers.recompute_results(session_db, actor(), scoped(session_db, exam_id))
            return ok(summary, 'Ranks and analytics recomputed')
        finally:
            session_db.close()

    @bp.route(f'{base}/<int:exam_id>/results', methods=['GET'])
    @require_school_auth
    def examinations_results(tenant_slug, exam_id):
        session_db = get_session()
        try:
            results = examination_helpers.fetch_results(
                session_db, actor(), scoped(session_db, exam_id),
                class_id=request.args.get('class_id', type=int),
                student_id=request.args.get('student_id', type=int),
                subject_id=request.args.get('subject_id', type=int),
            )
            return ok(results)
        finally:
            session_db.close()

    # ==================== ANALYTICS ====================
    @bp.route(f'{base}/<int:exam_id>/analytics', methods=['GET'])
    @require_school_auth
    def examinations_analytics(tenant_slug, exam_id):
        session_db = get_session()
        try:
            rows = analytics_helpers.fetch_analytics(
                session_db, actor(), scoped(session_db, exam_id),
                class_id=request.args.get('class_id', type=int),
                subject_id=request.args.get('subject_id', type=int),
            )
            return ok([r.to_dict() for r in rows])
        finally:
            session_db.close()

    @bp.route(f'{base}/<int:exam_id>/performance', methods=['POST'])
    @require_school_auth
    def performance_generate(tenant_slug, exam_id):
        session_db = get_session()
        try:
            rows = analytics_helpers.generate_performance_comparison(session_db, actor(), scoped(session_db, exam_id))
            return ok([r.to_dict() for r in rows], f'{len(rows)} comparisons generated')
        finally:
            session_db.close()

    @bp.route(f'{base}/<int:exam_id>/performance', methods=['GET'])
    @require_school_auth
    def performance_list(tenant_slug, exam_id):
        session_db = get_session()
        try:
            rows = analytics_helpers.fetch_performance_comparison(
                session_db, actor(), scoped(session_db, exam_id),
                student_id=request.args.get('student_id', type=int),
            )
            return ok([r.to_dict() for r in rows])
        finally:
            session_db.close()

    # ==================== REPORT CARDS ====================
    @bp.route(f'{base}/<int:exam_id>/report-cards', methods=['POST'])
    @require_school_auth
    def report_cards_generate(tenant_slug, exam_id):
        session_db = get_session()
        try:
            data = payload()
            cards = report_card_helpers.generate_report_cards(
                session_db, actor(), scoped(session_db, exam_id),
                student_id=data.get('student_id'),
                class_id=data.get('class_id'),
                card_type=data.get('card_type') or ReportCardType.EXAM_WISE,
                include_attendance=ExamValidator.validate_bool(data.get('include_attendance'), 'include_attendance', default=True),
                include_remarks=ExamValidator.validate_bool(data.get('include_remarks'), 'include_remarks', default=True),
            )
            return ok([c.to_dict() for c in cards], f'{len(cards)} report card(s) generated successfully', 201)
        finally:
            session_db.close()

    @bp.route(f'{base}/<int:exam_id>/report-cards', methods=['GET'])
    @require_school_auth
    def report_cards_list(tenant_slug, exam_id):
        session_db = get_session()
        try:
            cards = report_card_helpers.fetch_report_cards(
                session_db, actor(), scoped(session_db, exam_id),
                student_id=request.args.get('student_id', type=int),
                class_id=request.args.get('class_id', type=int),
            )
            return ok([c.to_dict() for c in cards])
        finally:
            session_db.close()

    # ==================== SITTING ATTENDANCE ====================
    @bp.route(f'{base}/<int:exam_id>/attendance', methods=['POST'])
    @require_school_auth
    def attendance_mark(tenant_slug, exam_id):
        """Mark one student ({student_id, ...}) or a batch ({attendances: [...]}) for a sitting"""
        session_db = get_session()
        try:
            data = payload()
            bulk = isinstance(data.get('attendances'), list)
            entries = data.get('attendances') if bulk else [
                {k: v for k, v in data.items() if k != 'schedule_id'}
            ]
            outcome = exam_attendance_helpers.mark_exam_attendance(
                session_db, actor(), scoped(session_db, exam_id), data.get('schedule_id'), entries
            )
            if not bulk:
                return ok(outcome['records'][0].to_dict(), 'Attendance marked successfully')
            return ok({
                'total_marked': outcome['total_marked'],
                'present': outcome['present'],
                'absent': outcome['absent'],
            }, 'Attendance marked successfully')
        finally:
            session_db.close()

    @bp.route(f'{base}/<int:exam_id>/attendance', methods=['GET'])
    @require_school_auth
    def attendance_list(tenant_slug, exam_id):
        session_db = get_session()
        try:
            records, stats = exam_attendance_helpers.fetch_exam_attendance(
                session_db, actor(), scoped(session_db, exam_id),
                schedule_id=request.args.get('schedule_id', type=int),
                class_id=request.args.get('class_id', type=int),
            )
            return ok({'records': [r.to_dict() for r in records], 'stats': stats})
        finally:
            session_db.close()

    # ==================== STUDENT SUMMARIES ====================
    @bp.route(f'{base}/<int:exam_id>/student-summaries', methods=['POST'])
    @require_school_auth
    def student_summary_save(tenant_slug, exam_id):
        session_db = get_session()
        try:
            summary = student_summary_helpers.save_student_summary(
                session_db, actor(), scoped(session_db, exam_id), payload()
            )
            return ok(summary.to_dict(), 'Student exam summary saved successfully')
        finally:
            session_db.close()

    @bp.route(f'{base}/<int:exam_id>/student-summaries', methods=['GET'])
    @require_school_auth
    def student_summary_list(tenant_slug, exam_id):
        session_db = get_session()
        try:
            summaries = student_summary_helpers.fetch_student_summaries(
                session_db, actor(), scoped(session_db, exam_id),
                student_id=request.args.get('student_id', type=int),
                subject_id=request.args.get('subject_id', type=int),
            )
            return ok([s.to_dict() for s in summaries])
        finally:
            session_db.close()

    # ==================== NOTIFICATION INBOX ====================
    @bp.route('/<tenant_slug>/api/exam-notifications', methods=['GET'])
    @require_school_auth
    def notifications_list(tenant_slug):
        session_db = get_session()
        try:
            rows, unread = exam_notification_helpers.list_notifications(
                session_db, actor(),
                unread_only=ExamValidator.validate_bool(request.args.get('unread_only'), 'unread_only'),
                exam_id=request.args.get('exam_id', type=int),
                limit=request.args.get('limit', exam_notification_helpers.DEFAULT_LIMIT),
            )
            return ok({'notifications': [n.to_dict() for n in rows], 'unread_count': unread})
        finally:
            session_db.close()

    @bp.route('/<tenant_slug>/api/exam-notifications', methods=['PATCH'])
    @require_school_auth
    def notifications_mark_read(tenant_slug):
        session_db = get_session()
        try:
            data = payload()
            marked = exam_notification_helpers.mark_notifications_read(
                session_db, actor(),
                notification_id=data.get('notification_id'),
                mark_all=ExamValidator.validate_bool(data.get('mark_all'), 'mark_all'),
            )
            return ok({'marked': marked}, f'{marked} notification(s) marked as read')
        finally:
            session_db.close()
