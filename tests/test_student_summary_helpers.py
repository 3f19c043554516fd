import pytest

from models import Subject
from exam_errors import ValidationError, PreconditionFailed, NotFound, Forbidden
from examination_models import (
    StudentExamSummary, ExamNotification, NotificationStatus, NotificationType, OverallPerformance
)
from student_summary_helpers import save_student_summary, fetch_student_summaries
from examination_helpers import publish_results
from report_card_helpers import generate_report_cards
from tests.conftest import make_user
from tests.test_marks_entry_helpers import submit_everything


def overall(student, **extra):
    data = {
        'student_id': student.id,
        'overall_performance': 'GOOD',
        'strengths': ' Clear working in algebra ',
        'preparedness_rating': 4,
        'discipline_rating': '5',
    }
    data.update(extra)
    return data


class TestSaveSummary:

    def test_teacher_saves_overall_summary(self, db, teacher, scheduled_exam, students, dispatcher):
        summary = save_student_summary(db, teacher, scheduled_exam.id, overall(students[0]))

        assert summary.subject_id is None
        assert summary.teacher_id == teacher.id
        assert summary.overall_performance == OverallPerformance.GOOD
        assert summary.strengths == 'Clear working in algebra'
        assert summary.discipline_rating == 5
        assert summary.weaknesses is None

        call = dispatcher.calls[-1]
        assert call['type'] == NotificationType.SUMMARY_ADDED
        assert call['in_app_only'] is True
        assert call['count'] == 2
        rows = db.query(ExamNotification).filter_by(notification_type=NotificationType.SUMMARY_ADDED).all()
        assert {r.status for r in rows} == {NotificationStatus.SENT}

    def test_saving_again_updates_and_subjects_are_separate(self, db, teacher, scheduled_exam, subjects, students):
        save_student_summary(db, teacher, scheduled_exam.id, overall(students[0]))
        save_student_summary(db, teacher, scheduled_exam.id, overall(students[0], overall_performance='EXCELLENT'))
        save_student_summary(db, teacher, scheduled_exam.id, overall(students[0], subject_id=subjects[0].id))

        rows = db.query(StudentExamSummary).order_by(StudentExamSummary.id).all()
        assert [(r.subject_id, r.overall_performance) for r in rows] == [
            (None, OverallPerformance.EXCELLENT),
            (subjects[0].id, OverallPerformance.GOOD),
        ]

    def test_only_teachers_write_summaries(self, db, admin, student_user, scheduled_exam, students):
        for actor in (admin, student_user):
            with pytest.raises(Forbidden):
                save_student_summary(db, actor, scheduled_exam.id, overall(students[0]))

    @pytest.mark.parametrize('bad, field', [
        ({'preparedness_rating': 6}, 'preparedness_rating'),
        ({'participation_rating': 2.5}, 'participation_rating'),
        ({'overall_performance': 'BRILLIANT'}, 'overall_performance'),
        ({'overall_performance': None}, 'overall_performance'),
    ])
    def test_invalid_summary(self, db, teacher, scheduled_exam, students, bad, field):
        with pytest.raises(ValidationError) as exc:
            save_student_summary(db, teacher, scheduled_exam.id, overall(students[0], **bad))
        assert exc.value.field == field
        assert db.query(StudentExamSummary).count() == 0

    def test_subject_must_be_on_the_students_timetable(self, db, tenant, teacher, scheduled_exam, students):
        hindi = Subject(tenant_id=tenant.id, name='Hindi', code='HIN', display_order=3)
        db.add(hindi)
        db.commit()
        with pytest.raises(ValidationError) as exc:
            save_student_summary(db, teacher, scheduled_exam.id, overall(students[0], subject_id=hindi.id))
        assert exc.value.field == 'subject_id'
        with pytest.raises(NotFound):
            save_student_summary(db, teacher, scheduled_exam.id, overall(students[0], subject_id=9999))

    def test_unknown_student(self, db, teacher, scheduled_exam, students):
        with pytest.raises(NotFound):
            save_student_summary(db, teacher, scheduled_exam.id, {'student_id': 9999, 'overall_performance': 'GOOD'})

    def test_draft_exam_takes_no_summaries(self, db, teacher, draft_exam, students):
        with pytest.raises(PreconditionFailed):
            save_student_summary(db, teacher, draft_exam.id, overall(students[0]))


class TestFetchSummaries:

    @pytest.fixture
    def written(self, db, teacher, scheduled_exam, students):
        save_student_summary(db, teacher, scheduled_exam.id, overall(students[0]))
        save_student_summary(db, teacher, scheduled_exam.id, overall(students[1], overall_performance='AVERAGE'))
        return scheduled_exam

    def test_teachers_see_what_they_wrote(self, db, tenant, teacher, admin, written, students):
        assert len(fetch_student_summaries(db, teacher, written.id)) == 2
        assert len(fetch_student_summaries(db, teacher, written.id, student_id=students[1].id)) == 1
        other_teacher = make_user(db, tenant, 'msiyer', 'teacher')
        assert fetch_student_summaries(db, other_teacher, written.id) == []
        assert len(fetch_student_summaries(db, admin, written.id)) == 2

    def test_students_and_parents_see_their_own(self, db, student_user, parent_user, written, students):
        for viewer in (student_user, parent_user):
            rows = fetch_student_summaries(db, viewer, written.id)
            assert [r.student_id for r in rows] == [students[0].id]
            with pytest.raises(Forbidden):
                fetch_student_summaries(db, viewer, written.id, student_id=students[1].id)


def test_summaries_appear_on_the_report_card(db, admin, teacher, scheduled_exam, subjects, students):
    save_student_summary(db, teacher, scheduled_exam.id, overall(students[0], subject_id=subjects[1].id,
                                                                 overall_performance='BELOW_AVERAGE'))
    save_student_summary(db, teacher, scheduled_exam.id, overall(students[0], recommendations='More practice'))
    submit_everything(db, teacher, scheduled_exam, subjects, students)
    publish_results(db, admin, scheduled_exam.id)

    card = generate_report_cards(db, admin, scheduled_exam.id, student_id=students[0].id)[0]
    summaries = card.remarks_data['summaries']
    assert [(s['subject'], s['overall_performance']) for s in summaries] == [
        (None, 'GOOD'), ('Science', 'BELOW_AVERAGE'),
    ]
    assert summaries[0]['recommendations'] == 'More practice'
