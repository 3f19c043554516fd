from datetime import date

import pytest

import db_single
from exam_errors import ValidationError, ConflictError, PreconditionFailed, Forbidden, NotFound
from examination_models import (
    Examination, ExaminationResult, ExaminationStatus, MarksEntryLog, MarksEntryAction, NotificationType
)
from examination_helpers import (
    list_exams, get_exam, create_exam, update_exam, delete_exam, archive_exam, publish_schedule,
    complete_marks_entry, publish_results, recompute_results, fetch_results, send_exam_reminders, tie_policy
)
from marks_entry_helpers import submit_marks
from tests.conftest import make_user
from tests.test_marks_entry_helpers import submit_everything


class TestCreateExam:

    def test_created_in_draft_with_default_passing_percentage(self, db, admin, tenant, academic_session, classes):
        exam = create_exam(db, admin, tenant.id, {
            'exam_name': '  Unit Test 1 ',
            'exam_type': 'Unit Test',
            'academic_session_id': academic_session.id,
            'target_classes': [classes[0].id, classes[0].id],
            'start_date': '2024-07-15',
            'end_date': '2024-07-15',
        })
        assert exam.status == ExaminationStatus.DRAFT
        assert exam.exam_name == 'Unit Test 1'
        assert exam.passing_percentage == 33
        assert exam.target_classes == [classes[0].id]
        assert exam.created_by == admin.id

    @pytest.mark.parametrize('overrides,field', [
        ({'exam_name': ''}, 'exam_name'),
        ({'exam_type': 'QUIZ'}, 'exam_type'),
        ({'start_date': '02/09/2024'}, 'start_date'),
        ({'end_date': '2024-09-01'}, 'end_date'),
        ({'target_classes': []}, 'target_classes'),
        ({'target_classes': [424242]}, 'target_classes'),
        ({'academic_session_id': 424242}, 'academic_session_id'),
        ({'passing_percentage': 120}, 'passing_percentage'),
    ])
    def test_invalid_exam_rejected(self, db, exam_factory, overrides, field):
        with pytest.raises(ValidationError) as exc:
            exam_factory(**overrides)
        assert field in exc.value.errors
        assert db.query(Examination).count() == 0

    def test_grading_bands_validated(self, exam_factory):
        exam = exam_factory(grading_bands=[
            {'grade': 'P', 'min': 40, 'max': 100}, {'grade': 'F', 'min': 0, 'max': 40},
        ])
        assert [b['grade'] for b in exam.grading_bands] == ['P', 'F']
        with pytest.raises(ValidationError):
            exam_factory(grading_bands=[{'grade': 'P', 'min': 50, 'max': 100}])

    def test_teacher_cannot_create(self, db, teacher, tenant, academic_session, classes):
        with pytest.raises(Forbidden):
            create_exam(db, teacher, tenant.id, {'exam_name': 'X'})

    def test_admin_of_another_school_cannot_create_or_see(self, db, tenant, other_tenant, draft_exam):
        outsider = make_user(db, other_tenant, 'hilltopadmin', 'school_admin')
        with pytest.raises(Forbidden):
            create_exam(db, outsider, tenant.id, {'exam_name': 'X'})
        with pytest.raises(NotFound):
            get_exam(db, outsider, draft_exam.id)
        with pytest.raises(Forbidden):
            list_exams(db, outsider, tenant.id)


class TestListAndGet:

    def test_students_never_see_drafts(self, db, admin, student_user, tenant, exam_factory, scheduled_exam):
        draft = exam_factory(exam_name='Final 2024', exam_type='FINAL', start_date='2025-03-01', end_date='2025-03-10')
        assert [e.id for e in list_exams(db, admin, tenant.id)] == [draft.id, scheduled_exam.id]
        assert [e.id for e in list_exams(db, student_user, tenant.id)] == [scheduled_exam.id]
        with pytest.raises(NotFound):
            get_exam(db, student_user, draft.id)

    def test_filters(self, db, admin, tenant, exam_factory, scheduled_exam):
        exam_factory(exam_name='Final 2024', exam_type='FINAL', start_date='2025-03-01', end_date='2025-03-10')
        assert [e.exam_name for e in list_exams(db, admin, tenant.id, status='scheduled')] == ['Mid Term 2024']
        assert [e.exam_name for e in list_exams(db, admin, tenant.id, search='final')] == ['Final 2024']
        with pytest.raises(ValidationError):
            list_exams(db, admin, tenant.id, status='pending')


class TestUpdateDeleteArchive:

    def test_partial_update(self, db, admin, draft_exam):
        exam = update_exam(db, admin, draft_exam.id, {'exam_name': 'Mid Term (Revised)', 'show_rank': 'false'})
        assert exam.exam_name == 'Mid Term (Revised)'
        assert exam.show_rank is False
        assert exam.exam_type.name == 'MIDTERM'

    @pytest.mark.parametrize('patch,field', [
        ({}, None),
        ({'status': 'ARCHIVED'}, 'status'),
        ({'end_date': '2024-08-01'}, 'end_date'),
    ])
    def test_invalid_updates(self, db, admin, draft_exam, patch, field):
        with pytest.raises(ValidationError) as exc:
            update_exam(db, admin, draft_exam.id, patch)
        assert exc.value.field == field

    def test_published_exam_is_locked(self, db, admin, teacher, scheduled_exam, subjects, students):
        submit_everything(db, teacher, scheduled_exam, subjects, students)
        publish_results(db, admin, scheduled_exam.id)
        with pytest.raises(ConflictError):
            update_exam(db, admin, scheduled_exam.id, {'exam_name': 'Renamed'})

    def test_delete_draft(self, db, admin, draft_exam):
        delete_exam(db, admin, draft_exam.id)
        assert db.query(Examination).count() == 0

    def test_exam_with_results_must_be_archived(self, db, admin, teacher, scheduled_exam, subjects, students):
        submit_marks(db, teacher, scheduled_exam.id, subjects[0].id, [{'student_id': students[0].id, 'marks_obtained': 50}])
        with pytest.raises(PreconditionFailed) as exc:
            delete_exam(db, admin, scheduled_exam.id)
        assert 'archive' in exc.value.message

        exam = archive_exam(db, admin, scheduled_exam.id)
        assert exam.status == ExaminationStatus.ARCHIVED
        with pytest.raises(ConflictError):
            archive_exam(db, admin, scheduled_exam.id)


class TestGradingSettingsAfterMarks:

    PASS_FAIL_BANDS = [{'grade': 'P', 'min': 40, 'max': 100}, {'grade': 'F', 'min': 0, 'max': 40}]

    def fifty_everywhere(self, db, teacher, exam, subjects, students):
        marks = {(s.id, sub.id): 50 for s in students for sub in subjects}
        submit_everything(db, teacher, exam, subjects, students, marks=marks)

    def test_changed_bands_and_pass_mark_regrade_stored_results(self, db, admin, teacher, scheduled_exam,
                                                                subjects, students):
        self.fifty_everywhere(db, teacher, scheduled_exam, subjects, students)
        assert {(r.grade, r.is_passed) for r in db.query(ExaminationResult).all()} == {('C+', True)}

        update_exam(db, admin, scheduled_exam.id, {
            'grading_bands': self.PASS_FAIL_BANDS,
            'passing_percentage': 60,
            'subject_wise_passing': False,
        })
        assert {(r.percentage, r.grade, r.is_passed) for r in db.query(ExaminationResult).all()} == {(50, 'P', False)}

        publish_results(db, admin, scheduled_exam.id)
        assert {(r.grade, r.is_passed) for r in db.query(ExaminationResult).all()} == {('P', False)}

    def test_publication_derives_from_current_settings(self, db, admin, teacher, scheduled_exam, subjects, students):
        self.fifty_everywhere(db, teacher, scheduled_exam, subjects, students)
        # settings changed behind the helpers' back
        scheduled_exam.passing_percentage = 60
        scheduled_exam.subject_wise_passing = False
        db.commit()

        publish_results(db, admin, scheduled_exam.id)
        assert all(r.is_passed is False for r in db.query(ExaminationResult).all())

    def test_evaluation_type_is_fixed_once_marks_exist(self, db, admin, teacher, scheduled_exam, subjects, students):
        submit_marks(db, teacher, scheduled_exam.id, subjects[0].id, [{'student_id': students[0].id, 'marks_obtained': 50}])
        with pytest.raises(ConflictError) as exc:
            update_exam(db, admin, scheduled_exam.id, {'evaluation_type': 'PASS_FAIL'})
        assert 'evaluation_type' in exc.value.errors

    def test_evaluation_type_editable_before_marks(self, db, admin, draft_exam):
        exam = update_exam(db, admin, draft_exam.id, {'evaluation_type': 'PASS_FAIL'})
        assert exam.evaluation_type.name == 'PASS_FAIL'


class TestTargetClassChanges:

    def test_class_with_sittings_cannot_be_dropped(self, db, admin, scheduled_exam, classes):
        class_a, class_b = classes
        with pytest.raises(ConflictError) as exc:
            update_exam(db, admin, scheduled_exam.id, {'target_classes': [class_a.id]})
        assert exc.value.errors == {'target_classes': [class_b.id]}
        db.refresh(scheduled_exam)
        assert scheduled_exam.target_classes == [class_a.id, class_b.id]

    def test_unused_class_can_be_dropped_and_added(self, db, admin, draft_exam, classes):
        class_a, class_b = classes
        assert update_exam(db, admin, draft_exam.id, {'target_classes': [class_a.id]}).target_classes == [class_a.id]
        exam = update_exam(db, admin, draft_exam.id, {'target_classes': [class_a.id, class_b.id]})
        assert exam.target_classes == [class_a.id, class_b.id]


class TestPublishSchedule:

    def test_requires_schedules(self, db, admin, draft_exam):
        with pytest.raises(PreconditionFailed):
            publish_schedule(db, admin, draft_exam.id)
        db.refresh(draft_exam)
        assert draft_exam.status == ExaminationStatus.DRAFT

    def test_publication_stamps_and_notifies_everyone(self, db, admin, teacher, scheduled_exam, dispatcher):
        assert scheduled_exam.status == ExaminationStatus.SCHEDULED
        assert scheduled_exam.schedule_published_by == admin.id
        first_published = scheduled_exam.schedule_published_at

        # publishing again re-announces without a transition
        exam = publish_schedule(db, teacher, scheduled_exam.id)
        assert exam.status == ExaminationStatus.SCHEDULED
        assert exam.schedule_published_at == first_published

        last = dispatcher.calls[-1]
        assert last['type'] == NotificationType.SCHEDULE_PUBLISHED
        # five students, five guardians and one teacher
        assert last['count'] == 11

    def test_closed_once_marks_entry_starts(self, db, admin, teacher, scheduled_exam, subjects, students):
        submit_marks(db, teacher, scheduled_exam.id, subjects[0].id, [{'student_id': students[0].id, 'marks_obtained': 50}])
        with pytest.raises(ConflictError):
            publish_schedule(db, admin, scheduled_exam.id)

    def test_students_cannot_publish(self, db, student_user, scheduled_exam):
        with pytest.raises(Forbidden):
            publish_schedule(db, student_user, scheduled_exam.id)


class TestCompleteMarksEntry:

    def test_not_started(self, db, teacher, scheduled_exam):
        with pytest.raises(PreconditionFailed):
            complete_marks_entry(db, teacher, scheduled_exam.id)

    def test_drafts_block_completion(self, db, teacher, scheduled_exam, subjects, students):
        submit_marks(db, teacher, scheduled_exam.id, subjects[0].id, [{'student_id': students[0].id, 'marks_obtained': 50}])
        with pytest.raises(ConflictError) as exc:
            complete_marks_entry(db, teacher, scheduled_exam.id)
        assert exc.value.errors == {'draft_count': 1}

    def test_manual_completion_without_drafts(self, db, teacher, scheduled_exam, subjects, students):
        # only mathematics entered, all final
        submit_everything(db, teacher, scheduled_exam, subjects[:1], students)
        exam = complete_marks_entry(db, teacher, scheduled_exam.id)
        assert exam.status == ExaminationStatus.MARKS_ENTRY_COMPLETED
        with pytest.raises(ConflictError):
            complete_marks_entry(db, teacher, scheduled_exam.id)


class TestPublishResults:

    def test_nothing_to_publish(self, db, admin, scheduled_exam):
        with pytest.raises(PreconditionFailed):
            publish_results(db, admin, scheduled_exam.id)

    def test_teacher_cannot_publish(self, db, teacher, scheduled_exam, subjects, students):
        submit_everything(db, teacher, scheduled_exam, subjects, students)
        with pytest.raises(Forbidden):
            publish_results(db, teacher, scheduled_exam.id)

    def test_publish_ranks_stamps_logs_and_notifies(self, db, admin, teacher, scheduled_exam, subjects, students,
                                                    dispatcher):
        submit_everything(db, teacher, scheduled_exam, subjects, students)
        exam = publish_results(db, admin, scheduled_exam.id)

        assert exam.status == ExaminationStatus.RESULTS_PUBLISHED
        assert exam.results_published_by == admin.id
        assert exam.results_published_at is not None
        assert all(r.class_rank is not None for r in db.query(ExaminationResult).all())
        assert db.query(MarksEntryLog).filter_by(action=MarksEntryAction.RESULTS_PUBLISHED).count() == 1
        assert dispatcher.types()[-1] == NotificationType.RESULTS_PUBLISHED

        with pytest.raises(ConflictError):
            publish_results(db, admin, scheduled_exam.id)

    def test_ranks_skipped_when_hidden(self, db, admin, teacher, scheduled_exam, subjects, students):
        update_exam(db, admin, scheduled_exam.id, {'show_rank': False})
        submit_everything(db, teacher, scheduled_exam, subjects, students)
        publish_results(db, admin, scheduled_exam.id)
        assert all(r.class_rank is None for r in db.query(ExaminationResult).all())

    def test_unknown_tie_policy_falls_back(self, monkeypatch, app):
        monkeypatch.setattr(db_single.get_config(), 'EXAM_RANK_TIE_POLICY', 'coinflip')
        assert tie_policy() == 'sequential'


class TestRecompute:

    def test_only_published_results(self, db, admin, scheduled_exam):
        with pytest.raises(PreconditionFailed):
            recompute_results(db, admin, scheduled_exam.id)

    def test_recompute_logs_and_keeps_status(self, db, admin, teacher, scheduled_exam, subjects, students):
        submit_everything(db, teacher, scheduled_exam, subjects, students)
        published_at = publish_results(db, admin, scheduled_exam.id).results_published_at

        summary = recompute_results(db, admin, scheduled_exam.id)
        assert summary['analytics_scopes'] == 7
        db.refresh(scheduled_exam)
        assert scheduled_exam.status == ExaminationStatus.RESULTS_PUBLISHED
        assert scheduled_exam.results_published_at == published_at
        assert db.query(MarksEntryLog).filter_by(action=MarksEntryAction.RESULTS_RECOMPUTED).count() == 1


class TestFetchResults:

    def test_unpublished_results_are_hidden_from_students(self, db, teacher, student_user, scheduled_exam,
                                                          subjects, students):
        submit_everything(db, teacher, scheduled_exam, subjects, students)
        with pytest.raises(NotFound):
            fetch_results(db, student_user, scheduled_exam.id)
        assert len(fetch_results(db, teacher, scheduled_exam.id)) == 10

    def test_own_results_with_display_flags(self, db, admin, teacher, student_user, parent_user, scheduled_exam,
                                            subjects, students):
        update_exam(db, admin, scheduled_exam.id, {'show_percentage': False})
        submit_everything(db, teacher, scheduled_exam, subjects, students)
        publish_results(db, admin, scheduled_exam.id)

        own = fetch_results(db, student_user, scheduled_exam.id)
        assert {r['student_id'] for r in own} == {students[0].id}
        assert len(own) == 2
        assert 'percentage' not in own[0]
        assert own[0]['grade'] == 'B'
        assert 'class_rank' in own[0]
        assert {r['student_id'] for r in fetch_results(db, parent_user, scheduled_exam.id)} == {students[0].id}

        with pytest.raises(Forbidden):
            fetch_results(db, student_user, scheduled_exam.id, student_id=students[1].id)

        staff_view = fetch_results(db, teacher, scheduled_exam.id, subject_id=subjects[0].id)
        assert len(staff_view) == 5
        assert staff_view[0]['percentage'] == 60


class TestReminders:

    def test_reminds_students_of_sittings_in_window(self, db, teacher, scheduled_exam, dispatcher):
        outcome = send_exam_reminders(db, teacher, scheduled_exam.id, days_ahead=1, today=date(2024, 9, 1))
        # mathematics on 2 September for both classes
        assert outcome == {'sittings': 2, 'notified': 5}
        reminders = [c for c in dispatcher.calls if c['type'] == NotificationType.EXAM_REMINDER]
        assert len(reminders) == 2
        assert all(c['audiences'] == ('students',) for c in reminders)

    def test_nothing_due(self, db, teacher, scheduled_exam):
        outcome = send_exam_reminders(db, teacher, scheduled_exam.id, today=date(2024, 8, 1))
        assert outcome == {'sittings': 0, 'notified': 0}

    def test_window_bounds(self, db, teacher, scheduled_exam):
        with pytest.raises(ValidationError):
            send_exam_reminders(db, teacher, scheduled_exam.id, days_ahead=31)

    def test_draft_exam(self, db, teacher, draft_exam):
        with pytest.raises(PreconditionFailed):
            send_exam_reminders(db, teacher, draft_exam.id)
