import sys
from pathlib import Path
from datetime import date


def _ensure_app_on_path():
    repo_root = Path(__file__).resolve().parent.parent
    if str(repo_root) not in sys.path:
        sys.path.insert(0, str(repo_root))
    return repo_root


_ensure_app_on_path()

import pytest

import db_single
from main import create_app
from models import Tenant, User, AcademicSession, Class, Subject, Student, StudentStatusEnum
from examination_helpers import create_exam, publish_schedule
from schedule_helpers import create_schedules_bulk
from notification_email import ExamNotificationDispatcher, set_dispatcher


# ============================================================================
# APP, DATABASE AND NOTIFICATIONS
# ============================================================================

class RecordingDispatcher(ExamNotificationDispatcher):
    """Records ExamNotification rows like the real dispatcher but never delivers"""

    def __init__(self):
        super().__init__(deliver=False)
        self.calls = []

    def notify(self, session, exam, notification_type, title, message, **kwargs):
        count = super().notify(session, exam, notification_type, title, message, **kwargs)
        self.calls.append({'exam_id': exam.id, 'type': notification_type, 'title': title, 'count': count, **kwargs})
        return count

    def types(self):
        return [c['type'] for c in self.calls]


@pytest.fixture
def app():
    """Fresh application with its own in-memory SQLite database (StaticPool)"""
    application = create_app('testing')
    yield application
    db_single.ENGINE.dispose()


@pytest.fixture
def db(app):
    session = db_single.get_session()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def dispatcher():
    recorder = RecordingDispatcher()
    set_dispatcher(recorder)
    yield recorder
    set_dispatcher(None)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def login(client):
    """Seed the Flask-Login session for a user"""
    def _login(user):
        with client.session_transaction() as sess:
            sess['_user_id'] = user.get_id()
            sess['_fresh'] = True
        return client
    return _login


# ============================================================================
# INSTITUTIONAL ENTITIES
# ============================================================================

def make_user(db, tenant, username, role, **extra):
    user = User(
        tenant_id=tenant.id if tenant else None,
        username=username,
        email=f'{username}@school.test',
        role=role,
        first_name=username.title(),
        last_name='Test',
        is_active=True,
        **extra
    )
    user.set_password('secret123')
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def tenant(db):
    school = Tenant(name='Green Valley School', slug='greenvalley', is_active=True)
    db.add(school)
    db.commit()
    return school


@pytest.fixture
def other_tenant(db):
    school = Tenant(name='Hill Top School', slug='hilltop', is_active=True)
    db.add(school)
    db.commit()
    return school


@pytest.fixture
def academic_session(db, tenant):
    session_row = AcademicSession(
        tenant_id=tenant.id, session_name='2024-25',
        start_date=date(2024, 4, 1), end_date=date(2025, 3, 31), is_current=True
    )
    db.add(session_row)
    db.commit()
    return session_row


@pytest.fixture
def admin(db, tenant):
    return make_user(db, tenant, 'principal', 'school_admin')


@pytest.fixture
def teacher(db, tenant):
    return make_user(db, tenant, 'mrsharma', 'teacher', phone='9876500001')


@pytest.fixture
def classes(db, tenant):
    class_a = Class(tenant_id=tenant.id, class_name='10', section='A')
    class_b = Class(tenant_id=tenant.id, class_name='10', section='B')
    db.add_all([class_a, class_b])
    db.commit()
    return class_a, class_b


@pytest.fixture
def subjects(db, tenant):
    maths = Subject(tenant_id=tenant.id, name='Mathematics', code='MATH', display_order=1)
    science = Subject(tenant_id=tenant.id, name='Science', code='SCI', display_order=2)
    db.add_all([maths, science])
    db.commit()
    return maths, science


def make_student(db, tenant, cls, academic_session, number, user=None, guardian=None):
    student = Student(
        tenant_id=tenant.id,
        admission_number=f'ADM{number:03d}',
        first_name=f'Student{number}',
        last_name='Test',
        full_name=f'Student{number} Test',
        class_id=cls.id,
        session_id=academic_session.id,
        roll_number=f'{number:02d}',
        status=StudentStatusEnum.ACTIVE,
        user_id=user.id if user else None,
        guardian_user_id=guardian.id if guardian else None,
        guardian_email=f'parent{number}@school.test',
    )
    db.add(student)
    db.commit()
    return student


@pytest.fixture
def student_user(db, tenant):
    return make_user(db, tenant, 'aarav', 'student')


@pytest.fixture
def parent_user(db, tenant):
    return make_user(db, tenant, 'mrkumar', 'parent')


@pytest.fixture
def students(db, tenant, classes, academic_session, student_user, parent_user):
    """Three students in 10-A (the first with portal accounts) and two in 10-B"""
    class_a, class_b = classes
    return [
        make_student(db, tenant, class_a, academic_session, 1, user=student_user, guardian=parent_user),
        make_student(db, tenant, class_a, academic_session, 2),
        make_student(db, tenant, class_a, academic_session, 3),
        make_student(db, tenant, class_b, academic_session, 4),
        make_student(db, tenant, class_b, academic_session, 5),
    ]


# ============================================================================
# EXAMINATIONS
# ============================================================================

@pytest.fixture
def exam_factory(db, admin, tenant, academic_session, classes):
    def _make(**overrides):
        data = {
            'exam_name': 'Mid Term 2024',
            'exam_type': 'MIDTERM',
            'academic_session_id': academic_session.id,
            'target_classes': [c.id for c in classes],
            'start_date': '2024-09-02',
            'end_date': '2024-09-10',
        }
        data.update(overrides)
        return create_exam(db, admin, tenant.id, data)
    return _make


@pytest.fixture
def draft_exam(exam_factory):
    return exam_factory()


def schedule_payload(subject, cls, exam_date, start='09:00', end='12:00', **extra):
    item = {
        'subject_id': subject.id,
        'class_id': cls.id,
        'exam_date': exam_date,
        'start_time': start,
        'end_time': end,
        'max_marks': 100,
    }
    item.update(extra)
    return item


@pytest.fixture
def scheduled_exam(db, admin, draft_exam, classes, subjects, students):
    """Both subjects timetabled for both classes, timetable published"""
    class_a, class_b = classes
    maths, science = subjects
    create_schedules_bulk(db, admin, draft_exam.id, [
        schedule_payload(maths, class_a, '2024-09-02', room_number='101'),
        schedule_payload(science, class_a, '2024-09-03', room_number='101'),
        schedule_payload(maths, class_b, '2024-09-02', room_number='102'),
        schedule_payload(science, class_b, '2024-09-03', room_number='102'),
    ])
    publish_schedule(db, admin, draft_exam.id)
    return draft_exam
