"""
Single Database Multi-Tenant Models
Institutional records the examination engine reads from: tenants, users,
academic sessions, classes, subjects, students and daily attendance
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, Boolean, ForeignKey, Date, Enum, Index, UniqueConstraint
from sqlalchemy.orm import declarative_base, relationship
from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash
from datetime import datetime, date
import enum

Base = declarative_base()

ADMIN_ROLES = ('portal_admin', 'school_admin')
STAFF_ROLES = ADMIN_ROLES + ('teacher',)


# ===== TENANT MODEL =====
class Tenant(Base):
    __tablename__ = 'tenants'

    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False)
    slug = Column(String(100), unique=True, nullable=False)  # URL identifier
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    users = relationship("User", back_populates="tenant", cascade="all, delete-orphan")

    def __repr__(self):
        return f'<Tenant {self.name} ({self.slug})>'


# ===== USER MODEL =====
class User(Base, UserMixin):
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id'), nullable=True)  # NULL for portal admin
    username = Column(String(80), nullable=False)
    email = Column(String(120), nullable=False)
    phone = Column(String(20))
    password_hash = Column(String(255), nullable=False)
    role = Column(String(20), default='teacher')  # portal_admin, school_admin, teacher, student, parent
    first_name = Column(String(50))
    last_name = Column(String(50))
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    tenant = relationship("Tenant", back_populates="users")

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    @property
    def full_name(self):
        return f"{self.first_name or ''} {self.last_name or ''}".strip()

    @property
    def is_admin(self):
        return self.role in ADMIN_ROLES

    @property
    def is_staff(self):
        return self.role in STAFF_ROLES

    def get_id(self):
        """Return user ID in format needed by Flask-Login"""
        if self.tenant_id:
            return f"school_{self.tenant_id}_{self.id}"
        else:
            return f"admin_{self.id}"

    def __repr__(self):
        return f'<User {self.username} ({self.role})>'


# ===== ENUMS FOR TENANT-SCOPED MODELS =====
class GenderEnum(enum.Enum):
    MALE = "M"
    FEMALE = "F"
    OTHER = "O"


class StudentStatusEnum(enum.Enum):
    ACTIVE = "Active"
    TRANSFERRED = "Transferred"
    LEFT = "Left"
    GRADUATED = "Graduated"


# ===== TENANT-SCOPED MODELS =====

class AcademicSession(Base):
    __tablename__ = 'academic_sessions'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id'), nullable=False)
    session_name = Column(String(20), nullable=False)  # e.g., "2024-25"
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    is_current = Column(Boolean, default=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    tenant = relationship("Tenant")
    students = relationship("Student", back_populates="academic_session")

    def __repr__(self):
        return f'<AcademicSession {self.session_name}>'


class Class(Base):
    __tablename__ = 'classes'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id'), nullable=False)
    class_name = Column(String(10), nullable=False)  # e.g., "10", "9"
    section = Column(String(5), nullable=False)  # e.g., "A", "B"
    description = Column(Text)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    tenant = relationship("Tenant")
    students = relationship("Student", back_populates="student_class")

    @property
    def display_name(self):
        return f"{self.class_name}-{self.section}"

    def __repr__(self):
        return f'<Class {self.class_name}-{self.section}>'


class Subject(Base):
    """Subjects taught in the school"""
    __tablename__ = 'subjects'
    __table_args__ = (
        UniqueConstraint('tenant_id', 'code', name='unique_subject_code_per_tenant'),
    )

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id'), nullable=False)
    name = Column(String(100), nullable=False)
    code = Column(String(20))
    display_order = Column(Integer, default=0)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    tenant = relationship("Tenant")

    def __repr__(self):
        return f'<Subject {self.name}>'


class Student(Base):
    __tablename__ = 'students'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id'), nullable=False)

    # Basic Information
    admission_number = Column(String(20), nullable=False)
    first_name = Column(String(50), nullable=False)
    last_name = Column(String(50), nullable=False)
    full_name = Column(String(100), nullable=False)
    date_of_birth = Column(Date)
    gender = Column(Enum(GenderEnum, values_callable=lambda obj: [e.value for e in obj]))

    # Contact Information
    email = Column(String(120))
    phone = Column(String(20))

    # Guardian Information
    father_name = Column(String(100))
    mother_name = Column(String(100))
    guardian_phone = Column(String(20))
    guardian_email = Column(String(120))

    # Portal accounts
    user_id = Column(Integer, ForeignKey('users.id'), nullable=True)
    guardian_user_id = Column(Integer, ForeignKey('users.id'), nullable=True)

    # Academic Information
    class_id = Column(Integer, ForeignKey('classes.id'), nullable=False)
    session_id = Column(Integer, ForeignKey('academic_sessions.id'), nullable=False)
    roll_number = Column(String(10))
    admission_date = Column(Date, default=date.today)
    status = Column(Enum(StudentStatusEnum, values_callable=lambda obj: [e.value for e in obj]), default=StudentStatusEnum.ACTIVE)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    tenant = relationship("Tenant")
    student_class = relationship("Class", back_populates="students")
    academic_session = relationship("AcademicSession", back_populates="students")
    user = relationship("User", foreign_keys=[user_id])
    guardian_user = relationship("User", foreign_keys=[guardian_user_id])

    def to_dict(self):
        return {
            'id': self.id,
            'admission_number': self.admission_number,
            'full_name': self.full_name,
            'class_id': self.class_id,
            'class_name': self.student_class.display_name if self.student_class else None,
            'roll_number': self.roll_number,
            'status': self.status.value if self.status else None
        }

    def __repr__(self):
        return f'<Student {self.full_name} ({self.admission_number})>'


# ===== STUDENT ATTENDANCE =====
class StudentAttendanceStatusEnum(enum.Enum):
    PRESENT = 'Present'
    ABSENT = 'Absent'
    HALF_DAY = 'Half-Day'
    ON_LEAVE = 'On Leave'
    HOLIDAY = 'Holiday'
    WEEK_OFF = 'Week Off'


class StudentAttendance(Base):
    """Daily attendance records for students"""
    __tablename__ = 'student_attendance'
    __table_args__ = (
        UniqueConstraint('student_id', 'attendance_date', name='unique_student_date'),
        Index('idx_attend_student_date', 'student_id', 'attendance_date'),
        Index('idx_attend_class_date', 'class_id', 'attendance_date'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False)
    student_id = Column(Integer, ForeignKey('students.id', ondelete='CASCADE'), nullable=False)
    class_id = Column(Integer, ForeignKey('classes.id', ondelete='CASCADE'), nullable=False)
    attendance_date = Column(Date, nullable=False)
    status = Column(Enum(StudentAttendanceStatusEnum, values_callable=lambda obj: [e.value for e in obj]), nullable=False)
    remarks = Column(Text, nullable=True)
    marked_by = Column(Integer, nullable=True)  # User ID who marked
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    tenant = relationship("Tenant")
    student = relationship("Student", backref="attendance_records")

    def __repr__(self):
        return f"<StudentAttendance student_id={self.student_id} date={self.attendance_date} status={self.status.value}>"
