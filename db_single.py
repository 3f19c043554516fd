"""
Database management for single database multi-tenant system
"""

import time
import logging
from contextlib import contextmanager
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.exc import OperationalError, TimeoutError as PoolTimeoutError
from config import Config
from models import Tenant
from exam_errors import TransactionTimeout

logger = logging.getLogger(__name__)

# Global engine and session factory
ENGINE = None
SessionLocal = None
ACTIVE_CONFIG = None

# MySQL "Lock wait timeout exceeded"
MYSQL_LOCK_WAIT_TIMEOUT = 1205


def _engine_options(config, database_uri):
    if database_uri.startswith('sqlite'):
        options = {'connect_args': {'check_same_thread': False}}
        if ':memory:' in database_uri or database_uri in ('sqlite://', 'sqlite:///'):
            options['poolclass'] = StaticPool
        return options

    options = dict(config.SQLALCHEMY_ENGINE_OPTIONS)
    options['pool_timeout'] = config.EXAM_TRANSACTION_WAIT_SECONDS
    if database_uri.startswith('mysql'):
        options['connect_args'] = {
            'init_command': f"SET SESSION innodb_lock_wait_timeout = {config.EXAM_TRANSACTION_WAIT_SECONDS}"
        }
    return options


def init_database(config=None):
    """Initialize database engine and session factory"""
    global ENGINE, SessionLocal, ACTIVE_CONFIG

    config = config or Config()
    database_uri = config.get_database_uri()

    ENGINE = create_engine(database_uri, **_engine_options(config, database_uri))
    SessionLocal = sessionmaker(bind=ENGINE, autoflush=False, autocommit=False)
    ACTIVE_CONFIG = config

    logger.info(f"Database initialized: {ENGINE.url.render_as_string(hide_password=True)}")
    return ENGINE, SessionLocal


def get_session():
    """Get a database session"""
    if SessionLocal is None:
        init_database()
    return SessionLocal()


def get_config():
    """Config the engine was initialized with"""
    return ACTIVE_CONFIG or Config()


@contextmanager
def atomic(session, timeout=None):
    """
    Run a multi-row write as one unit of work.

    Commits when the block finishes inside the timeout budget; otherwise
    everything written in the block is rolled back and TransactionTimeout
    is raised. Pool waits and store lock waits are bounded by
    EXAM_TRANSACTION_WAIT_SECONDS and surface as TransactionTimeout too.
    """
    budget = timeout if timeout is not None else get_config().EXAM_TRANSACTION_TIMEOUT_SECONDS
    started = time.monotonic()
    try:
        yield session
        elapsed = time.monotonic() - started
        if elapsed > budget:
            raise TransactionTimeout(
                f"Operation exceeded its {budget}s transaction budget ({elapsed:.1f}s); nothing was saved"
            )
        session.commit()
    except PoolTimeoutError as e:
        session.rollback()
        logger.error(f"Could not begin transaction within wait budget: {e}")
        raise TransactionTimeout('Database is busy, please retry the operation') from e
    except OperationalError as e:
        session.rollback()
        code = e.orig.args[0] if e.orig is not None and getattr(e.orig, 'args', None) else None
        if code == MYSQL_LOCK_WAIT_TIMEOUT:
            logger.error(f"Lock wait timeout inside transaction: {e}")
            raise TransactionTimeout('Timed out waiting for a database lock, please retry') from e
        raise
    except Exception:
        session.rollback()
        raise


def create_school(slug: str, name: str) -> tuple[bool, str]:
    """
    Create a new school (tenant)

    Returns:
        tuple: (success: bool, message: str)
    """
    session = get_session()
    try:
        existing = session.query(Tenant).filter_by(slug=slug).first()
        if existing:
            return False, f"School with slug '{slug}' already exists"

        school = Tenant(slug=slug, name=name, is_active=True)
        session.add(school)
        session.commit()

        logger.info(f"Created school: {name} ({slug})")
        return True, f"School '{name}' created successfully with slug '{slug}'"

    except Exception as e:
        session.rollback()
        logger.error(f"Failed to create school: {e}")
        return False, f"Error creating school: {str(e)}"
    finally:
        session.close()


def list_schools() -> list:
    """List all schools/tenants"""
    session = get_session()
    try:
        return session.query(Tenant).filter_by(is_active=True).order_by(Tenant.name).all()
    finally:
        session.close()
