"""
Database Initialization and Integrity Checker
Creates any missing examination or institutional tables on startup
"""

import sys
import logging
from sqlalchemy import inspect
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.schema import sort_tables

# Import all models to register them with Base.metadata
from models import Base, Tenant, User, AcademicSession, Class, Subject, Student, StudentAttendance
from examination_models import (
    Examination, ExaminationSchedule, ExaminationResult, ExaminationAnalytics,
    ReportCard, HallTicket, MarksEntryLog, ExamNotification, PerformanceComparison,
    ExamAttendance, StudentExamSummary
)
import db_single

logger = logging.getLogger(__name__)


def get_existing_tables(engine):
    """Get list of existing tables in database"""
    return set(inspect(engine).get_table_names())


def get_expected_tables():
    """Get list of all expected tables from models"""
    return set(Base.metadata.tables.keys())


def create_missing_tables(engine, existing_tables, expected_tables):
    """Create any missing tables in foreign key order"""
    missing_tables = expected_tables - existing_tables
    if not missing_tables:
        logger.info("All tables exist")
        return [], []

    logger.info(f"Creating {len(missing_tables)} missing tables: {', '.join(sorted(missing_tables))}")

    created = []
    failed = []
    for table in sort_tables([Base.metadata.tables[name] for name in missing_tables]):
        try:
            table.create(engine, checkfirst=True)
            created.append(table.name)
        except OperationalError as e:
            failed.append((table.name, str(e)))
            logger.error(f"Could not create table {table.name}: {str(e)[:100]}")

    return created, failed


def create_default_admin_user(engine):
    """Create default portal admin user if no users exist"""
    Session = sessionmaker(bind=engine)
    session = Session()
    try:
        if session.query(User).count():
            return False

        admin = User(
            username='admin',
            email='admin@school.com',
            role='portal_admin',
            first_name='Portal',
            last_name='Admin',
            is_active=True
        )
        admin.set_password('admin123')  # Change this in production!
        session.add(admin)
        session.commit()
        logger.warning("Created default portal admin 'admin' / 'admin123'; change this password immediately")
        return True
    except Exception as e:
        session.rollback()
        logger.warning(f"Could not create default admin user: {e}")
        return False
    finally:
        session.close()


def run_on_startup(engine=None, create_admin=True):
    """
    Verify the schema of the active engine

    Returns:
        bool: True when every expected table exists afterwards
    """
    if engine is None:
        if db_single.ENGINE is None:
            db_single.init_database()
        engine = db_single.ENGINE

    try:
        existing_tables = get_existing_tables(engine)
        created, failed = create_missing_tables(engine, existing_tables, get_expected_tables())
        if create_admin and 'users' in created:
            create_default_admin_user(engine)
    except OperationalError as e:
        logger.error(f"Database initialization failed: {e}")
        return False

    if failed:
        logger.warning(f"Database initialized with {len(failed)} table failure(s)")
        return False

    logger.info(f"Database integrity verified ({len(created)} tables created)")
    return True


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO)
    sys.exit(0 if run_on_startup() else 1)
