"""
Flask CLI commands for the examination engine
"""

import click
from flask import Flask
import logging

from db_single import create_school, list_schools, get_session, get_config
from init_db import run_on_startup
from examination_models import Examination, ExaminationStatus
from exam_errors import ExaminationError
from marks_entry_helpers import count_draft_results
from examination_helpers import recompute_exam, remind_upcoming_sittings

logger = logging.getLogger(__name__)


def _load_exam(session, exam_id):
    exam = session.query(Examination).filter_by(id=exam_id).first()
    if not exam:
        raise click.ClickException(f"Examination {exam_id} not found")
    return exam


def register_cli_commands(app: Flask):
    """Register CLI commands with the Flask app"""

    @app.cli.command("setup-db")
    def setup_db_command():
        """Create all tables and the default admin user"""
        click.echo("Setting up database...")
        if run_on_startup():
            click.echo("Database setup completed successfully!")
        else:
            click.echo("Database setup failed!")

    @app.cli.command("add-school")
    @click.option("--slug", required=True, help="URL-friendly school identifier (e.g., xyz)")
    @click.option("--name", required=True, help="Full school name (e.g., 'XYZ Public School')")
    def add_school_command(slug, name):
        """Add a new school to the system"""
        success, message = create_school(slug, name)
        click.echo(message)
        if success:
            click.echo(f"API base: /{slug}/api/examinations")

    @app.cli.command("list-schools")
    def list_schools_command():
        """List all schools in the system"""
        schools = list_schools()
        if not schools:
            click.echo("No schools found")
            return
        for school in schools:
            click.echo(f"  {school.name} (/{school.slug}/)")

    @app.cli.command("recompute-exam-results")
    @click.argument("exam_id", type=int)
    def recompute_exam_results_command(exam_id):
        """Re-run ranks and analytics of a published exam"""
        session = get_session()
        try:
            exam = _load_exam(session, exam_id)
            summary = recompute_exam(session, exam)
            click.echo(f"Recomputed exam {exam_id}: {summary}")
        except ExaminationError as e:
            raise click.ClickException(e.message)
        finally:
            session.close()

    @app.cli.command("send-exam-reminders")
    @click.argument("exam_id", type=int)
    @click.option("--days", default=1, show_default=True, help="Remind about sittings within this many days")
    def send_exam_reminders_command(exam_id, days):
        """Notify students of upcoming sittings (cron friendly)"""
        session = get_session()
        try:
            exam = _load_exam(session, exam_id)
            if exam.status not in (ExaminationStatus.SCHEDULED, ExaminationStatus.MARKS_ENTRY_IN_PROGRESS):
                raise click.ClickException(f"Exam {exam_id} is {exam.status.name}; nothing to remind")
            summary = remind_upcoming_sittings(session, exam, days)
            click.echo(f"{summary['sittings']} sitting(s), {summary['notified']} notification(s) recorded")
        finally:
            session.close()

    @app.cli.command("exam-status")
    @click.argument("exam_id", type=int)
    def exam_status_command(exam_id):
        """Show the lifecycle state of an exam"""
        session = get_session()
        try:
            exam = _load_exam(session, exam_id)
            click.echo(f"{exam.exam_name} [{exam.status.name}]")
            click.echo(f"  Window: {exam.start_date} to {exam.end_date}")
            click.echo(f"  Schedules: {len(exam.schedules)}")
            click.echo(f"  Results: {len(exam.results)} ({count_draft_results(session, exam.id)} drafts)")
            click.echo(f"  Hall tickets: {len(exam.hall_tickets)}")
            click.echo(f"  Tie policy: {get_config().EXAM_RANK_TIE_POLICY}")
            if exam.results_published_at:
                click.echo(f"  Results published: {exam.results_published_at.isoformat()}")
        finally:
            session.close()
