"""
Examination Models for School ERP
Exams, timetables, results, analytics snapshots, report cards, hall tickets,
sitting attendance, teacher summaries and the append-only marks entry log
"""
from sqlalchemy import (
    Column, Integer, String, Date, DateTime, Float, Text, JSON,
    Boolean, ForeignKey, Enum as SQLEnum, UniqueConstraint, Index, event
)
from sqlalchemy.orm import relationship
from datetime import datetime
import enum
from models import Base
from exam_errors import ConflictError


class ExaminationType(enum.Enum):
    """Types of examinations"""
    UNIT_TEST = "Unit Test"
    CLASS_TEST = "Class Test"
    MONTHLY_TEST = "Monthly Test"
    MIDTERM = "Mid Term"
    FINAL = "Final"
    PRACTICAL = "Practical"
    ORAL = "Oral"
    PROJECT = "Project"
    ASSIGNMENT = "Assignment"
    MOCK_TEST = "Mock Test"
    INTERNAL_ASSESSMENT = "Internal Assessment"


class EvaluationType(enum.Enum):
    """How sittings of an examination are evaluated"""
    MARKS_BASED = "Marks Based"
    GRADE_BASED = "Grade Based"
    PERCENTAGE_BASED = "Percentage Based"
    CREDIT_BASED = "Credit Based"
    PASS_FAIL = "Pass/Fail"
    DESCRIPTIVE = "Descriptive"


class ExaminationStatus(enum.Enum):
    """Status of examination"""
    DRAFT = "Draft"
    SCHEDULED = "Scheduled"
    MARKS_ENTRY_IN_PROGRESS = "Marks Entry In Progress"
    MARKS_ENTRY_COMPLETED = "Marks Entry Completed"
    RESULTS_PUBLISHED = "Results Published"
    ARCHIVED = "Archived"


# Forward order of the lifecycle; ARCHIVED sits outside it
STATUS_ORDER = [
    ExaminationStatus.DRAFT,
    ExaminationStatus.SCHEDULED,
    ExaminationStatus.MARKS_ENTRY_IN_PROGRESS,
    ExaminationStatus.MARKS_ENTRY_COMPLETED,
    ExaminationStatus.RESULTS_PUBLISHED,
]


class ReportCardType(enum.Enum):
    EXAM_WISE = "Exam Wise"
    TERM_WISE = "Term Wise"
    ANNUAL = "Annual"
    PROGRESS_REPORT = "Progress Report"
    TRANSCRIPT = "Transcript"


class ReportCardStatus(enum.Enum):
    GENERATED = "Generated"


class MarksEntryAction(enum.Enum):
    MARKS_ENTERED = "Marks Entered"
    MARKS_SUBMITTED = "Marks Submitted"
    MARKS_CORRECTED = "Marks Corrected"
    RESULTS_PUBLISHED = "Results Published"
    RESULTS_RECOMPUTED = "Results Recomputed"


class NotificationType(enum.Enum):
    SCHEDULE_PUBLISHED = "Schedule Published"
    RESULTS_PUBLISHED = "Results Published"
    HALL_TICKET_GENERATED = "Hall Ticket Generated"
    EXAM_REMINDER = "Exam Reminder"
    ATTENDANCE_MARKED = "Attendance Marked"
    SUMMARY_ADDED = "Summary Added"


class RecipientType(enum.Enum):
    STUDENT = "Student"
    PARENT = "Parent"
    TEACHER = "Teacher"


class NotificationStatus(enum.Enum):
    """Notification status"""
    PENDING = "Pending"
    SENT = "Sent"
    FAILED = "Failed"


class PerformanceTrend(enum.Enum):
    IMPROVING = "Improving"
    STABLE = "Stable"
    DECLINING = "Declining"


class PerformanceLevel(enum.Enum):
    EXCELLENT = "Excellent"
    GOOD = "Good"
    AVERAGE = "Average"
    NEEDS_IMPROVEMENT = "Needs Improvement"


class OverallPerformance(enum.Enum):
    """Teacher's overall judgement in a student exam summary"""
    EXCELLENT = "Excellent"
    GOOD = "Good"
    AVERAGE = "Average"
    BELOW_AVERAGE = "Below Average"
    POOR = "Poor"


class Examination(Base):
    """Main examination model"""
    __tablename__ = 'examinations'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id'), nullable=False)
    academic_session_id = Column(Integer, ForeignKey('academic_sessions.id'), nullable=False)

    # Basic Information
    exam_name = Column(String(200), nullable=False)
    exam_code = Column(String(50))
    exam_type = Column(SQLEnum(ExaminationType), nullable=False)
    evaluation_type = Column(SQLEnum(EvaluationType), default=EvaluationType.MARKS_BASED, nullable=False)
    target_classes = Column(JSON, nullable=False)  # list of class ids

    # Dates
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)

    # Configuration
    passing_percentage = Column(Float, default=33.0)
    subject_wise_passing = Column(Boolean, default=True)
    grading_bands = Column(JSON)  # ordered [{grade, min, max}], NULL = default table
    show_rank = Column(Boolean, default=True)
    show_percentage = Column(Boolean, default=True)
    show_grade = Column(Boolean, default=True)
    status = Column(SQLEnum(ExaminationStatus), default=ExaminationStatus.DRAFT, nullable=False)

    # Additional Info
    description = Column(Text)
    instructions = Column(Text)

    # Publication
    schedule_published_at = Column(DateTime)
    schedule_published_by = Column(Integer)
    results_published_at = Column(DateTime)
    results_published_by = Column(Integer)

    # Metadata
    created_by = Column(Integer)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    tenant = relationship("Tenant", backref="examinations")
    academic_session = relationship("AcademicSession", backref="examinations")
    schedules = relationship("ExaminationSchedule", back_populates="examination", cascade="all, delete-orphan")
    results = relationship("ExaminationResult", back_populates="examination", cascade="all, delete-orphan")
    analytics = relationship("ExaminationAnalytics", back_populates="examination", cascade="all, delete-orphan")
    report_cards = relationship("ReportCard", back_populates="examination", cascade="all, delete-orphan")
    hall_tickets = relationship("HallTicket", back_populates="examination", cascade="all, delete-orphan")
    notifications = relationship("ExamNotification", back_populates="examination", cascade="all, delete-orphan")
    attendance = relationship("ExamAttendance", back_populates="examination", cascade="all, delete-orphan")
    student_summaries = relationship("StudentExamSummary", back_populates="examination", cascade="all, delete-orphan")

    def status_at_least(self, status):
        """True once the exam has reached `status` on the forward lifecycle"""
        if self.status == ExaminationStatus.ARCHIVED:
            return False
        return STATUS_ORDER.index(self.status) >= STATUS_ORDER.index(status)

    def to_dict(self):
        return {
            'id': self.id,
            'exam_name': self.exam_name,
            'exam_code': self.exam_code,
            'exam_type': self.exam_type.value if self.exam_type else None,
            'evaluation_type': self.evaluation_type.value if self.evaluation_type else None,
            'academic_session_id': self.academic_session_id,
            'target_classes': list(self.target_classes or []),
            'start_date': self.start_date.isoformat() if self.start_date else None,
            'end_date': self.end_date.isoformat() if self.end_date else None,
            'passing_percentage': self.passing_percentage,
            'subject_wise_passing': self.subject_wise_passing,
            'grading_bands': self.grading_bands,
            'show_rank': self.show_rank,
            'show_percentage': self.show_percentage,
            'show_grade': self.show_grade,
            'status': self.status.name if self.status else None,
            'description': self.description,
            'instructions': self.instructions,
            'schedule_published_at': self.schedule_published_at.isoformat() if self.schedule_published_at else None,
            'results_published_at': self.results_published_at.isoformat() if self.results_published_at else None,
            'results_published_by': self.results_published_by,
        }

    def __repr__(self):
        return f"<Examination {self.exam_name}>"


class ExaminationSchedule(Base):
    """One subject sitting for one class within an exam"""
    __tablename__ = 'examination_schedules'
    __table_args__ = (
        UniqueConstraint('examination_id', 'subject_id', 'class_id', name='unique_exam_subject_class'),
        Index('idx_schedule_class_date', 'class_id', 'exam_date'),
    )

    id = Column(Integer, primary_key=True)
    examination_id = Column(Integer, ForeignKey('examinations.id'), nullable=False)
    subject_id = Column(Integer, ForeignKey('subjects.id'), nullable=False)
    class_id = Column(Integer, ForeignKey('classes.id'), nullable=False)

    # Schedule Details (same-day, zero-padded HH:MM)
    exam_date = Column(Date, nullable=False)
    start_time = Column(String(5), nullable=False)
    end_time = Column(String(5), nullable=False)
    duration_minutes = Column(Integer)

    # Venue
    room_number = Column(String(50))
    exam_center = Column(String(200))

    # Marks Distribution
    max_marks = Column(Float, default=100, nullable=False)
    passing_marks = Column(Float, default=33, nullable=False)
    theory_marks = Column(Float)
    practical_marks = Column(Float)

    # Instructions
    instructions = Column(Text)

    # Metadata
    created_by = Column(Integer)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    examination = relationship("Examination", back_populates="schedules")
    subject = relationship("Subject")
    class_ref = relationship("Class")

    def to_dict(self):
        return {
            'id': self.id,
            'examination_id': self.examination_id,
            'subject_id': self.subject_id,
            'subject_name': self.subject.name if self.subject else None,
            'class_id': self.class_id,
            'exam_date': self.exam_date.isoformat(),
            'start_time': self.start_time,
            'end_time': self.end_time,
            'duration_minutes': self.duration_minutes,
            'room_number': self.room_number,
            'exam_center': self.exam_center,
            'max_marks': self.max_marks,
            'passing_marks': self.passing_marks,
            'theory_marks': self.theory_marks,
            'practical_marks': self.practical_marks,
        }

    def __repr__(self):
        return f"<ExaminationSchedule {self.exam_date} {self.start_time}-{self.end_time}>"


class ExaminationResult(Base):
    """One student's outcome for one subject within an exam"""
    __tablename__ = 'examination_results'
    __table_args__ = (
        UniqueConstraint('examination_id', 'student_id', 'subject_id', name='unique_exam_student_subject'),
        Index('idx_result_exam_class', 'examination_id', 'class_id'),
    )

    id = Column(Integer, primary_key=True)
    examination_id = Column(Integer, ForeignKey('examinations.id'), nullable=False)
    schedule_id = Column(Integer, ForeignKey('examination_schedules.id'), nullable=False)
    student_id = Column(Integer, ForeignKey('students.id'), nullable=False)
    subject_id = Column(Integer, ForeignKey('subjects.id'), nullable=False)
    class_id = Column(Integer, ForeignKey('classes.id'), nullable=False)

    # Marks
    max_marks = Column(Float, nullable=False)
    marks_obtained = Column(Float)  # NULL when absent
    theory_marks_obtained = Column(Float)
    practical_marks_obtained = Column(Float)

    # Derived
    percentage = Column(Float)
    grade = Column(String(5))

    # Status
    is_absent = Column(Boolean, default=False, nullable=False)
    is_passed = Column(Boolean)  # NULL = no determination
    is_draft = Column(Boolean, default=True, nullable=False)

    # Ranks (NULL until rank computation runs)
    class_rank = Column(Integer)
    overall_rank = Column(Integer)

    remarks = Column(Text)

    # Entry Info
    entered_by = Column(Integer)
    entered_at = Column(DateTime)
    submitted_by = Column(Integer)
    submitted_at = Column(DateTime)

    # Metadata
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    examination = relationship("Examination", back_populates="results")
    schedule = relationship("ExaminationSchedule")
    student = relationship("Student", backref="examination_results")
    subject = relationship("Subject")

    def to_dict(self, show_rank=True, show_percentage=True, show_grade=True):
        data = {
            'id': self.id,
            'examination_id': self.examination_id,
            'student_id': self.student_id,
            'subject_id': self.subject_id,
            'subject_name': self.subject.name if self.subject else None,
            'class_id': self.class_id,
            'max_marks': self.max_marks,
            'marks_obtained': self.marks_obtained,
            'theory_marks_obtained': self.theory_marks_obtained,
            'practical_marks_obtained': self.practical_marks_obtained,
            'is_absent': self.is_absent,
            'is_passed': self.is_passed,
            'is_draft': self.is_draft,
            'remarks': self.remarks,
        }
        if show_percentage:
            data['percentage'] = self.percentage
        if show_grade:
            data['grade'] = self.grade
        if show_rank:
            data['class_rank'] = self.class_rank
            data['overall_rank'] = self.overall_rank
        return data

    def __repr__(self):
        return f"<ExaminationResult Student:{self.student_id} Subject:{self.subject_id} Exam:{self.examination_id}>"


class ExaminationAnalytics(Base):
    """Statistics snapshot at exam, class or class+subject granularity"""
    __tablename__ = 'examination_analytics'

    id = Column(Integer, primary_key=True)
    examination_id = Column(Integer, ForeignKey('examinations.id'), nullable=False)
    class_id = Column(Integer, ForeignKey('classes.id'), nullable=True)
    subject_id = Column(Integer, ForeignKey('subjects.id'), nullable=True)
    # "<exam>:<class|*>:<subject|*>"; nullable columns cannot carry the uniqueness themselves
    scope_key = Column(String(64), unique=True, nullable=False)

    total_students = Column(Integer, default=0)
    appeared_students = Column(Integer, default=0)
    absent_students = Column(Integer, default=0)
    passed_students = Column(Integer, default=0)
    failed_students = Column(Integer, default=0)

    highest_marks = Column(Float)
    lowest_marks = Column(Float)
    average_marks = Column(Float)
    median_marks = Column(Float)

    above_90 = Column(Integer, default=0)
    between_75_90 = Column(Integer, default=0)
    between_60_75 = Column(Integer, default=0)
    between_33_60 = Column(Integer, default=0)
    below_33 = Column(Integer, default=0)

    calculated_at = Column(DateTime, default=datetime.utcnow)

    examination = relationship("Examination", back_populates="analytics")

    def to_dict(self):
        return {
            'examination_id': self.examination_id,
            'class_id': self.class_id,
            'subject_id': self.subject_id,
            'total_students': self.total_students,
            'appeared_students': self.appeared_students,
            'absent_students': self.absent_students,
            'passed_students': self.passed_students,
            'failed_students': self.failed_students,
            'highest_marks': self.highest_marks,
            'lowest_marks': self.lowest_marks,
            'average_marks': self.average_marks,
            'median_marks': self.median_marks,
            'bands': {
                'above_90': self.above_90,
                'between_75_90': self.between_75_90,
                'between_60_75': self.between_60_75,
                'between_33_60': self.between_33_60,
                'below_33': self.below_33,
            },
            'calculated_at': self.calculated_at.isoformat() if self.calculated_at else None,
        }

    def __repr__(self):
        return f"<ExaminationAnalytics {self.scope_key}>"


class ReportCard(Base):
    """Persisted per-student snapshot of an exam's outcome"""
    __tablename__ = 'report_cards'
    __table_args__ = (
        UniqueConstraint('examination_id', 'student_id', name='unique_report_card_exam_student'),
    )

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id'), nullable=False)
    examination_id = Column(Integer, ForeignKey('examinations.id'), nullable=False)
    student_id = Column(Integer, ForeignKey('students.id'), nullable=False)
    class_id = Column(Integer, ForeignKey('classes.id'), nullable=False)

    card_type = Column(SQLEnum(ReportCardType), default=ReportCardType.EXAM_WISE, nullable=False)
    title = Column(String(200))
    report_period = Column(String(100))

    results_data = Column(JSON, nullable=False)
    attendance_data = Column(JSON)
    remarks_data = Column(JSON)

    status = Column(SQLEnum(ReportCardStatus), default=ReportCardStatus.GENERATED, nullable=False)
    generated_at = Column(DateTime, default=datetime.utcnow)
    generated_by = Column(Integer)

    examination = relationship("Examination", back_populates="report_cards")
    student = relationship("Student")

    def to_dict(self):
        return {
            'id': self.id,
            'examination_id': self.examination_id,
            'student_id': self.student_id,
            'class_id': self.class_id,
            'card_type': self.card_type.name if self.card_type else None,
            'title': self.title,
            'report_period': self.report_period,
            'results_data': self.results_data,
            'attendance_data': self.attendance_data,
            'remarks_data': self.remarks_data,
            'status': self.status.name if self.status else None,
            'generated_at': self.generated_at.isoformat() if self.generated_at else None,
            'generated_by': self.generated_by,
        }

    def __repr__(self):
        return f"<ReportCard Student:{self.student_id} Exam:{self.examination_id}>"


class HallTicket(Base):
    """Per-student exam entry credential"""
    __tablename__ = 'hall_tickets'
    __table_args__ = (
        UniqueConstraint('examination_id', 'student_id', name='unique_hall_ticket_exam_student'),
    )

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id'), nullable=False)
    examination_id = Column(Integer, ForeignKey('examinations.id'), nullable=False)
    student_id = Column(Integer, ForeignKey('students.id'), nullable=False)
    class_id = Column(Integer, ForeignKey('classes.id'), nullable=False)

    ticket_number = Column(String(20), nullable=False)
    seat_number = Column(String(20), nullable=False)
    exam_center = Column(String(200))
    room_number = Column(String(50))
    reporting_time = Column(String(5))
    instructions = Column(Text)

    generated_at = Column(DateTime, default=datetime.utcnow)
    generated_by = Column(Integer)

    # Download tracking
    is_downloaded = Column(Boolean, default=False)
    download_count = Column(Integer, default=0)
    first_downloaded_at = Column(DateTime)
    last_downloaded_at = Column(DateTime)

    examination = relationship("Examination", back_populates="hall_tickets")
    student = relationship("Student")

    def to_dict(self):
        return {
            'id': self.id,
            'examination_id': self.examination_id,
            'student_id': self.student_id,
            'student_name': self.student.full_name if self.student else None,
            'class_id': self.class_id,
            'ticket_number': self.ticket_number,
            'seat_number': self.seat_number,
            'exam_center': self.exam_center,
            'room_number': self.room_number,
            'reporting_time': self.reporting_time,
            'instructions': self.instructions,
            'generated_at': self.generated_at.isoformat() if self.generated_at else None,
            'is_downloaded': self.is_downloaded,
            'download_count': self.download_count,
            'first_downloaded_at': self.first_downloaded_at.isoformat() if self.first_downloaded_at else None,
            'last_downloaded_at': self.last_downloaded_at.isoformat() if self.last_downloaded_at else None,
        }

    def __repr__(self):
        return f"<HallTicket {self.ticket_number}>"


class MarksEntryLog(Base):
    """Append-only journal of marks entry and publication actions"""
    __tablename__ = 'marks_entry_logs'
    __table_args__ = (
        Index('idx_marks_log_exam', 'examination_id'),
    )

    id = Column(Integer, primary_key=True)
    # no foreign key: log rows outlive the exam they describe
    examination_id = Column(Integer, nullable=False)
    action = Column(SQLEnum(MarksEntryAction), nullable=False)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(Integer)
    description = Column(Text)
    performed_by = Column(Integer)
    performed_at = Column(DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'examination_id': self.examination_id,
            'action': self.action.name,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'description': self.description,
            'performed_by': self.performed_by,
            'performed_at': self.performed_at.isoformat() if self.performed_at else None,
        }

    def __repr__(self):
        return f"<MarksEntryLog {self.action.name} Exam:{self.examination_id}>"


@event.listens_for(MarksEntryLog, 'before_update')
def _refuse_log_update(mapper, connection, target):
    raise ConflictError('Marks entry log is append-only; entries cannot be modified')


@event.listens_for(MarksEntryLog, 'before_delete')
def _refuse_log_delete(mapper, connection, target):
    raise ConflictError('Marks entry log is append-only; entries cannot be deleted')


class ExamNotification(Base):
    """Track exam notifications sent to students, parents and teachers"""
    __tablename__ = 'exam_notifications'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id'), nullable=False)
    examination_id = Column(Integer, ForeignKey('examinations.id'), nullable=False)

    notification_type = Column(SQLEnum(NotificationType), nullable=False)
    recipient_type = Column(SQLEnum(RecipientType), nullable=False)
    recipient_user_id = Column(Integer, ForeignKey('users.id'), nullable=True)
    recipient_name = Column(String(100))
    recipient_email = Column(String(120))
    recipient_phone = Column(String(20))

    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)

    # Status
    status = Column(SQLEnum(NotificationStatus), default=NotificationStatus.PENDING)
    error_message = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)
    sent_at = Column(DateTime)

    # Recipient inbox
    is_read = Column(Boolean, default=False, nullable=False)
    read_at = Column(DateTime)

    examination = relationship("Examination", back_populates="notifications")

    def to_dict(self):
        exam = self.examination
        return {
            'id': self.id,
            'examination_id': self.examination_id,
            'exam': {
                'id': exam.id,
                'exam_name': exam.exam_name,
                'exam_code': exam.exam_code,
                'start_date': exam.start_date.isoformat() if exam.start_date else None,
                'end_date': exam.end_date.isoformat() if exam.end_date else None,
            } if exam else None,
            'notification_type': self.notification_type.name,
            'recipient_type': self.recipient_type.name,
            'title': self.title,
            'message': self.message,
            'status': self.status.name if self.status else None,
            'is_read': self.is_read,
            'read_at': self.read_at.isoformat() if self.read_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<ExamNotification {self.notification_type.name} -> {self.recipient_type.name}>"


class PerformanceComparison(Base):
    """A student's subject result compared with the previous exam of the same type"""
    __tablename__ = 'performance_comparisons'
    __table_args__ = (
        UniqueConstraint('student_id', 'subject_id', 'current_examination_id', name='unique_comparison_student_subject_exam'),
    )

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id'), nullable=False)
    student_id = Column(Integer, ForeignKey('students.id'), nullable=False)
    subject_id = Column(Integer, ForeignKey('subjects.id'), nullable=False)
    current_examination_id = Column(Integer, ForeignKey('examinations.id', ondelete='CASCADE'), nullable=False)
    previous_examination_id = Column(Integer, ForeignKey('examinations.id', ondelete='SET NULL'))

    current_marks = Column(Float)
    current_percentage = Column(Float)
    previous_marks = Column(Float)
    previous_percentage = Column(Float)
    marks_improvement = Column(Float)
    percentage_improvement = Column(Float)
    rank_improvement = Column(Integer)

    trend = Column(SQLEnum(PerformanceTrend))
    performance_level = Column(SQLEnum(PerformanceLevel))
    recommendations = Column(Text)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'student_id': self.student_id,
            'subject_id': self.subject_id,
            'current_examination_id': self.current_examination_id,
            'previous_examination_id': self.previous_examination_id,
            'current_marks': self.current_marks,
            'current_percentage': self.current_percentage,
            'previous_marks': self.previous_marks,
            'previous_percentage': self.previous_percentage,
            'marks_improvement': self.marks_improvement,
            'percentage_improvement': self.percentage_improvement,
            'rank_improvement': self.rank_improvement,
            'trend': self.trend.name if self.trend else None,
            'performance_level': self.performance_level.name if self.performance_level else None,
            'recommendations': self.recommendations,
        }

    def __repr__(self):
        return f"<PerformanceComparison Student:{self.student_id} Subject:{self.subject_id}>"


class ExamAttendance(Base):
    """Whether a student sat one sitting of an exam"""
    __tablename__ = 'exam_attendance'
    __table_args__ = (
        UniqueConstraint('schedule_id', 'student_id', name='unique_exam_attendance_schedule_student'),
        Index('idx_exam_attendance_exam', 'examination_id'),
    )

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id'), nullable=False)
    examination_id = Column(Integer, ForeignKey('examinations.id'), nullable=False)
    schedule_id = Column(Integer, ForeignKey('examination_schedules.id', ondelete='CASCADE'), nullable=False)
    student_id = Column(Integer, ForeignKey('students.id'), nullable=False)
    class_id = Column(Integer, ForeignKey('classes.id'), nullable=False)

    is_present = Column(Boolean, nullable=False)
    arrival_time = Column(String(5))  # HH:MM
    departure_time = Column(String(5))
    late_arrival = Column(Boolean, default=False, nullable=False)
    early_departure = Column(Boolean, default=False, nullable=False)
    remarks = Column(Text)

    marked_by = Column(Integer)
    marked_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    examination = relationship("Examination", back_populates="attendance")
    schedule = relationship("ExaminationSchedule")
    student = relationship("Student")

    def to_dict(self):
        schedule = self.schedule
        return {
            'id': self.id,
            'examination_id': self.examination_id,
            'schedule_id': self.schedule_id,
            'exam_date': schedule.exam_date.isoformat() if schedule else None,
            'subject_name': schedule.subject.name if schedule and schedule.subject else None,
            'student_id': self.student_id,
            'student_name': self.student.full_name if self.student else None,
            'roll_number': self.student.roll_number if self.student else None,
            'class_id': self.class_id,
            'is_present': self.is_present,
            'arrival_time': self.arrival_time,
            'departure_time': self.departure_time,
            'late_arrival': self.late_arrival,
            'early_departure': self.early_departure,
            'remarks': self.remarks,
            'marked_by': self.marked_by,
            'marked_at': self.marked_at.isoformat() if self.marked_at else None,
        }

    def __repr__(self):
        return f"<ExamAttendance Student:{self.student_id} Schedule:{self.schedule_id} {'P' if self.is_present else 'A'}>"


class StudentExamSummary(Base):
    """A teacher's written assessment of one student in an exam, overall or for one subject"""
    __tablename__ = 'student_exam_summaries'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id'), nullable=False)
    examination_id = Column(Integer, ForeignKey('examinations.id'), nullable=False)
    student_id = Column(Integer, ForeignKey('students.id'), nullable=False)
    subject_id = Column(Integer, ForeignKey('subjects.id'), nullable=True)  # NULL = overall
    teacher_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    # "<exam>:<student>:<subject|*>"; subject_id is nullable so it cannot carry the uniqueness
    summary_key = Column(String(64), unique=True, nullable=False)

    overall_performance = Column(SQLEnum(OverallPerformance), nullable=False)
    strengths = Column(Text)
    weaknesses = Column(Text)
    recommendations = Column(Text)
    behavior_remarks = Column(Text)

    # 1 to 5
    preparedness_rating = Column(Integer)
    participation_rating = Column(Integer)
    discipline_rating = Column(Integer)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    examination = relationship("Examination", back_populates="student_summaries")
    student = relationship("Student")
    subject = relationship("Subject")
    teacher = relationship("User")

    def to_dict(self):
        return {
            'id': self.id,
            'examination_id': self.examination_id,
            'student_id': self.student_id,
            'student_name': self.student.full_name if self.student else None,
            'subject_id': self.subject_id,
            'subject_name': self.subject.name if self.subject else None,
            'teacher_id': self.teacher_id,
            'teacher_name': self.teacher.full_name if self.teacher else None,
            'overall_performance': self.overall_performance.name,
            'strengths': self.strengths,
            'weaknesses': self.weaknesses,
            'recommendations': self.recommendations,
            'behavior_remarks': self.behavior_remarks,
            'preparedness_rating': self.preparedness_rating,
            'participation_rating': self.participation_rating,
            'discipline_rating': self.discipline_rating,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<StudentExamSummary {self.summary_key}>"
