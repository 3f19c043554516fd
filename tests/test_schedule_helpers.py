import pytest

from exam_errors import ConflictError, ValidationError, Forbidden, NotFound
from examination_models import ExaminationSchedule, ExaminationStatus
from schedule_helpers import (
    times_overlap, find_schedule_conflict, create_schedule, create_schedules_bulk, list_schedules
)
from examination_helpers import archive_exam
from tests.conftest import schedule_payload


class TestOverlap:

    @pytest.mark.parametrize('a,b,expected', [
        (('09:00', '10:00'), ('09:30', '10:30'), True),
        (('09:00', '10:00'), ('10:00', '11:00'), False),
        (('09:00', '10:00'), ('08:00', '09:00'), False),
        (('09:00', '12:00'), ('10:00', '11:00'), True),
        (('10:00', '11:00'), ('09:00', '12:00'), True),
    ])
    def test_half_open_intervals(self, a, b, expected):
        assert times_overlap(a[0], a[1], b[0], b[1]) is expected
        assert times_overlap(b[0], b[1], a[0], a[1]) is expected


class TestCreateSchedule:

    def test_overlapping_slot_rejected_and_adjacent_slot_accepted(self, db, teacher, draft_exam, classes, subjects):
        class_a, _ = classes
        maths, science = subjects
        create_schedule(db, teacher, draft_exam.id, schedule_payload(maths, class_a, '2024-09-04', '09:00', '10:00'))

        with pytest.raises(ConflictError) as exc:
            create_schedule(db, teacher, draft_exam.id,
                            schedule_payload(science, class_a, '2024-09-04', '09:30', '10:30'))
        assert exc.value.errors['conflict'] == {
            'exam_date': '2024-09-04', 'start_time': '09:00', 'end_time': '10:00'
        }
        assert '09:00' in exc.value.message

        adjacent = create_schedule(db, teacher, draft_exam.id,
                                   schedule_payload(science, class_a, '2024-09-04', '10:00', '11:00'))
        assert adjacent.id is not None
        assert adjacent.duration_minutes == 60

    def test_same_slot_in_another_class_is_fine(self, db, admin, draft_exam, classes, subjects):
        class_a, class_b = classes
        maths, _ = subjects
        create_schedule(db, admin, draft_exam.id, schedule_payload(maths, class_a, '2024-09-04'))
        other = create_schedule(db, admin, draft_exam.id, schedule_payload(maths, class_b, '2024-09-04'))
        assert other.class_id == class_b.id

    def test_duplicate_subject_for_class_rejected(self, db, admin, draft_exam, classes, subjects):
        class_a, _ = classes
        maths, _ = subjects
        create_schedule(db, admin, draft_exam.id, schedule_payload(maths, class_a, '2024-09-04'))
        with pytest.raises(ConflictError) as exc:
            create_schedule(db, admin, draft_exam.id, schedule_payload(maths, class_a, '2024-09-05'))
        assert 'already exists' in exc.value.message

    def test_default_passing_marks_follow_exam_percentage(self, db, admin, draft_exam, classes, subjects):
        schedule = create_schedule(db, admin, draft_exam.id,
                                   schedule_payload(subjects[0], classes[0], '2024-09-04', max_marks=80))
        assert schedule.passing_marks == pytest.approx(80 * 33 / 100)

    @pytest.mark.parametrize('overrides,field', [
        ({'start_time': '9am'}, 'start_time'),
        ({'start_time': '11:00', 'end_time': '10:00'}, 'end_time'),
        ({'exam_date': '2024-10-01'}, 'exam_date'),
        ({'passing_marks': 120}, 'passing_marks'),
        ({'max_marks': 0}, 'max_marks'),
        ({'theory_marks': 70, 'practical_marks': 20}, 'practical_marks'),
    ])
    def test_invalid_items_rejected(self, db, admin, draft_exam, classes, subjects, overrides, field):
        item = schedule_payload(subjects[0], classes[0], '2024-09-04')
        item.update(overrides)
        with pytest.raises(ValidationError) as exc:
            create_schedule(db, admin, draft_exam.id, item)
        assert field in exc.value.errors

    def test_class_outside_target_classes_rejected(self, db, admin, tenant, exam_factory, classes, subjects):
        exam = exam_factory(target_classes=[classes[0].id])
        with pytest.raises(ValidationError) as exc:
            create_schedule(db, admin, exam.id, schedule_payload(subjects[0], classes[1], '2024-09-04'))
        assert 'class_id' in exc.value.errors

    def test_students_cannot_create_schedules(self, db, student_user, draft_exam, classes, subjects):
        with pytest.raises(Forbidden):
            create_schedule(db, student_user, draft_exam.id, schedule_payload(subjects[0], classes[0], '2024-09-04'))

    def test_archived_exam_timetable_is_locked(self, db, admin, draft_exam, classes, subjects):
        archive_exam(db, admin, draft_exam.id)
        with pytest.raises(ConflictError):
            create_schedule(db, admin, draft_exam.id, schedule_payload(subjects[0], classes[0], '2024-09-04'))


class TestBulkCreate:

    def test_batch_is_all_or_nothing(self, db, admin, draft_exam, classes, subjects):
        class_a, class_b = classes
        maths, science = subjects
        items = [
            schedule_payload(maths, class_a, '2024-09-04', '09:00', '10:00'),
            schedule_payload(maths, class_b, '2024-09-04', '09:00', '10:00'),
            schedule_payload(science, class_a, '2024-09-04', '09:30', '10:30'),
        ]
        with pytest.raises(ConflictError) as exc:
            create_schedules_bulk(db, admin, draft_exam.id, items)
        assert exc.value.message.startswith('Schedule 3:')
        assert exc.value.errors['item'] == 2
        assert db.query(ExaminationSchedule).count() == 0

    def test_batch_checked_against_store(self, db, admin, draft_exam, classes, subjects):
        class_a, _ = classes
        maths, science = subjects
        create_schedule(db, admin, draft_exam.id, schedule_payload(maths, class_a, '2024-09-04', '09:00', '10:00'))
        with pytest.raises(ConflictError):
            create_schedules_bulk(db, admin, draft_exam.id, [
                schedule_payload(science, class_a, '2024-09-04', '09:59', '11:00'),
            ])
        assert db.query(ExaminationSchedule).count() == 1

    def test_valid_batch_written(self, db, admin, draft_exam, classes, subjects):
        class_a, class_b = classes
        maths, science = subjects
        created = create_schedules_bulk(db, admin, draft_exam.id, [
            schedule_payload(maths, class_a, '2024-09-04', '09:00', '10:00'),
            schedule_payload(science, class_a, '2024-09-04', '10:00', '11:00'),
            schedule_payload(maths, class_b, '2024-09-04', '09:00', '10:00'),
        ])
        assert len(created) == 3
        assert find_schedule_conflict(db, class_a.id, created[0].exam_date, '10:30', '10:45').id == created[1].id

    def test_empty_batch_rejected(self, db, admin, draft_exam):
        with pytest.raises(ValidationError):
            create_schedules_bulk(db, admin, draft_exam.id, [])


class TestListSchedules:

    def test_students_only_see_published_timetables_of_their_class(self, db, admin, student_user, draft_exam,
                                                                     classes, subjects, students):
        class_a, class_b = classes
        create_schedules_bulk(db, admin, draft_exam.id, [
            schedule_payload(subjects[0], class_a, '2024-09-04'),
            schedule_payload(subjects[0], class_b, '2024-09-04'),
        ])
        with pytest.raises(NotFound):
            list_schedules(db, student_user, draft_exam.id)

        draft_exam.status = ExaminationStatus.SCHEDULED
        db.commit()
        visible = list_schedules(db, student_user, draft_exam.id)
        assert [s.class_id for s in visible] == [class_a.id]
        assert len(list_schedules(db, admin, draft_exam.id)) == 2
