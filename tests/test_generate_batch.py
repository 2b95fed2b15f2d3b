"""
Tests for RotationService.generate_batch.

Eligibility filtering, batch persistence, rotation cursors and the
transient-conflict retry path.
"""

from datetime import timedelta

import pytest

from devmatch.domain.rotation.repository import RotationRepository
from devmatch.exceptions import (
    InvalidProjectState,
    NoEligibleCandidates,
    ProjectNotFound,
    TransientStoreConflict,
)
from devmatch.models import (
    BATCH_ACTIVE,
    BATCH_REPLACED,
    EXPERT,
    FRESHER,
    MID,
    PROJECT_ASSIGNING,
    PROJECT_DRAFT,
    RESPONSE_INVALIDATED,
    RESPONSE_PENDING,
    SOURCE_AUTO_ROTATION,
    AssignmentBatch,
    AssignmentCandidate,
    Project,
    RotationCursor,
)

ONE_EACH = {"fresher_count": 1, "mid_count": 1, "expert_count": 1}


class TestGenerateBatch:
    """Test batch creation."""

    def test_creates_active_batch_with_pending_candidates(self, db, rotation, clock, make_skill, make_developer, make_project):
        skill = make_skill()
        fresher = make_developer(FRESHER, [skill])
        mid = make_developer(MID, [skill])
        expert = make_developer(EXPERT, [skill])
        project = make_project([skill])

        result = rotation.generate_batch(project.id, ONE_EACH)

        assert result.batch_number == 1
        assert [c.developer_id for c in result.candidates] == [fresher.id, mid.id, expert.id]

        batch = db.get(AssignmentBatch, result.batch_id)
        assert batch.status == BATCH_ACTIVE
        assert batch.selection == {"fresherCount": 1, "midCount": 1, "expertCount": 1}

        rows = db.query(AssignmentCandidate).filter_by(batch_id=batch.id).all()
        assert len(rows) == 3
        for row in rows:
            assert row.response_status == RESPONSE_PENDING
            assert row.is_first_accepted is False
            assert row.source == SOURCE_AUTO_ROTATION
            assert row.acceptance_deadline == clock.now + timedelta(minutes=15)
            assert row.usual_response_time_ms_snapshot == 60000
            assert row.skill_ids == [skill.id]

        project = db.get(Project, project.id)
        assert project.current_batch_id == batch.id
        assert project.status == PROJECT_ASSIGNING

    def test_single_fresher_fills_batch_alone(self, rotation, make_skill, make_developer, make_project):
        skill = make_skill()
        fresher = make_developer(FRESHER, [skill])
        project = make_project([skill])

        result = rotation.generate_batch(project.id, ONE_EACH)

        assert [(c.developer_id, c.level) for c in result.candidates] == [(fresher.id, FRESHER)]

    def test_fresher_fills_expert_shortfall(self, rotation, make_skill, make_developer, make_project):
        skill = make_skill()
        freshers = [make_developer(FRESHER, [skill]) for _ in range(3)]
        project = make_project([skill])

        result = rotation.generate_batch(project.id, {"fresher_count": 1, "mid_count": 0, "expert_count": 2})

        assert len(result.candidates) == 3
        assert {c.developer_id for c in result.candidates} == {d.id for d in freshers}

    def test_developer_matching_two_skills_listed_once(self, rotation, make_skill, make_developer, make_project):
        python, django = make_skill("python"), make_skill("django")
        both = make_developer(MID, [python, django])
        project = make_project([python, django])

        result = rotation.generate_batch(project.id, {"fresher_count": 0, "mid_count": 2, "expert_count": 0})

        assert len(result.candidates) == 1
        assert result.candidates[0].developer_id == both.id
        assert result.candidates[0].skill_ids == [python.id, django.id]

    def test_batch_numbers_increase(self, db, rotation, make_skill, make_developer, make_project):
        skill = make_skill()
        for _ in range(2):
            make_developer(FRESHER, [skill])
        project = make_project([skill])
        one = {"fresher_count": 1, "mid_count": 0, "expert_count": 0}

        first = rotation.generate_batch(project.id, one)
        second = rotation.generate_batch(project.id, one)

        assert (first.batch_number, second.batch_number) == (1, 2)
        assert db.get(Project, project.id).current_batch_id == second.batch_id

    def test_new_batch_retires_active_batch(self, db, rotation, clock, make_skill, make_developer, make_project):
        skill = make_skill()
        for _ in range(2):
            make_developer(FRESHER, [skill])
        project = make_project([skill])
        one = {"fresher_count": 1, "mid_count": 0, "expert_count": 0}
        first = rotation.generate_batch(project.id, one)
        clock.advance(minutes=2)

        second = rotation.generate_batch(project.id, one)

        db.expire_all()
        old = db.get(AssignmentBatch, first.batch_id)
        assert old.status == BATCH_REPLACED
        assert old.status_reason == "superseded_by_new_batch"
        stale = db.query(AssignmentCandidate).filter_by(batch_id=first.batch_id).one()
        assert stale.response_status == RESPONSE_INVALIDATED
        assert stale.invalidated_at == clock.now
        active = db.query(AssignmentBatch).filter_by(project_id=project.id, status=BATCH_ACTIVE).all()
        assert [b.id for b in active] == [second.batch_id]

    def test_failed_generation_keeps_active_batch(self, db, rotation, make_skill, make_developer, make_project):
        skill = make_skill()
        make_developer(FRESHER, [skill])
        project = make_project([skill])
        first = rotation.generate_batch(project.id)

        with pytest.raises(NoEligibleCandidates):
            rotation.generate_batch(project.id)

        db.expire_all()
        assert db.get(AssignmentBatch, first.batch_id).status == BATCH_ACTIVE
        assert db.query(AssignmentCandidate).filter_by(batch_id=first.batch_id).one().response_status == RESPONSE_PENDING


class TestEligibility:
    """Test which developers may be offered a project."""

    def test_filters_ineligible_developers(self, rotation, make_skill, make_developer, make_project, make_user):
        skill = make_skill()
        other_skill = make_skill()
        client = make_user()
        eligible = make_developer(FRESHER, [skill])
        checking = make_developer(FRESHER, [skill], availability="checking")
        make_developer(FRESHER, [skill], approval="pending")
        make_developer(FRESHER, [skill], availability="not_available")
        make_developer(FRESHER, [skill], whatsapp_verified=False)
        make_developer(FRESHER, [other_skill])
        make_developer(FRESHER, [skill], user=client)
        project = make_project([skill], client=client)

        result = rotation.generate_batch(project.id, {"fresher_count": 10, "mid_count": 0, "expert_count": 0})

        assert {c.developer_id for c in result.candidates} == {eligible.id, checking.id}

    def test_excludes_developers_pending_elsewhere(self, rotation, make_skill, make_developer, make_project):
        skill = make_skill()
        busy = make_developer(FRESHER, [skill])
        free = make_developer(FRESHER, [skill])
        first = make_project([skill])
        rotation.generate_batch(first.id, {"fresher_count": 1, "mid_count": 0, "expert_count": 0})
        offered = rotation.repo.get_project(rotation.db, first.id).current_batch.candidates[0].developer_id
        assert offered in (busy.id, free.id)

        second = make_project([skill])
        result = rotation.generate_batch(second.id, {"fresher_count": 2, "mid_count": 0, "expert_count": 0})

        assert [c.developer_id for c in result.candidates] == [({busy.id, free.id} - {offered}).pop()]

    def test_excludes_developers_already_offered_this_project(self, db, rotation, make_skill, make_developer, make_project):
        skill = make_skill()
        dev = make_developer(FRESHER, [skill])
        project = make_project([skill])
        rotation.generate_batch(project.id)

        rotation.reject_candidate(
            db.query(AssignmentCandidate).filter_by(developer_id=dev.id).one().id, dev.user_id
        )

        with pytest.raises(NoEligibleCandidates):
            rotation.generate_batch(project.id)

    def test_no_eligible_candidates(self, db, rotation, make_skill, make_project):
        project = make_project([make_skill()])

        with pytest.raises(NoEligibleCandidates) as exc_info:
            rotation.generate_batch(project.id)

        assert exc_info.value.status_code == 422
        assert db.query(AssignmentBatch).count() == 0

    def test_unknown_project(self, rotation):
        with pytest.raises(ProjectNotFound):
            rotation.generate_batch("missing")

    def test_project_in_wrong_status(self, rotation, make_skill, make_developer, make_project):
        skill = make_skill()
        make_developer(FRESHER, [skill])
        project = make_project([skill], status=PROJECT_DRAFT)

        with pytest.raises(InvalidProjectState) as exc_info:
            rotation.generate_batch(project.id)

        assert exc_info.value.context["current_status"] == PROJECT_DRAFT


class TestRotationCursor:
    """Test post-commit cursor updates and round-robin order."""

    def test_cursor_records_last_selected(self, db, rotation, make_skill, make_developer, make_project):
        skill = make_skill()
        devs = sorted((make_developer(MID, [skill]) for _ in range(3)), key=lambda d: d.id)
        project = make_project([skill])

        result = rotation.generate_batch(project.id, {"fresher_count": 0, "mid_count": 2, "expert_count": 0})

        assert [c.developer_id for c in result.candidates] == [devs[0].id, devs[1].id]
        cursor = db.get(RotationCursor, (skill.id, MID))
        assert cursor.last_developer_id == devs[1].id

    def test_next_generation_starts_after_cursor(self, db, rotation, make_skill, make_developer, make_project):
        skill = make_skill()
        devs = sorted((make_developer(MID, [skill]) for _ in range(4)), key=lambda d: d.id)
        db.add(RotationCursor(skill_id=skill.id, level=MID, last_developer_id=devs[1].id))
        db.commit()
        project = make_project([skill])

        result = rotation.generate_batch(project.id, {"fresher_count": 0, "mid_count": 3, "expert_count": 0})

        assert [c.developer_id for c in result.candidates] == [devs[2].id, devs[3].id, devs[0].id]
        assert db.get(RotationCursor, (skill.id, MID)).last_developer_id == devs[0].id

    def test_cursor_failure_does_not_fail_generation(self, db, rotation, monkeypatch, make_skill, make_developer, make_project):
        skill = make_skill()
        make_developer(EXPERT, [skill])
        project = make_project([skill])

        def broken(*args, **kwargs):
            raise RuntimeError("write conflict")

        monkeypatch.setattr(rotation.repo, "upsert_rotation_cursor", broken)

        result = rotation.generate_batch(project.id)

        assert len(result.candidates) == 1
        assert db.get(AssignmentBatch, result.batch_id).status == BATCH_ACTIVE
        assert db.query(RotationCursor).count() == 0

    def test_cursor_falls_back_to_fresh_session(self, db, rotation, monkeypatch, make_skill, make_developer, make_project):
        skill = make_skill()
        dev = make_developer(EXPERT, [skill])
        project = make_project([skill])
        original = rotation._write_cursor

        def main_session_fails(session, *args):
            if session is db:
                raise RuntimeError("could not serialize access")
            return original(session, *args)

        monkeypatch.setattr(rotation, "_write_cursor", main_session_fails)

        rotation.generate_batch(project.id)

        db.expire_all()
        assert db.get(RotationCursor, (skill.id, EXPERT)).last_developer_id == dev.id


class TestTransientConflicts:
    """Test bounded retry of transaction conflicts."""

    def test_retries_then_succeeds(self, rotation, monkeypatch, make_skill, make_developer, make_project):
        skill = make_skill()
        make_developer(FRESHER, [skill])
        project = make_project([skill])
        calls = {"count": 0}

        def flaky(*args, **kwargs):
            calls["count"] += 1
            if calls["count"] == 1:
                raise RuntimeError("deadlock detected")
            return RotationRepository.find_eligible_developers(*args, **kwargs)

        monkeypatch.setattr(rotation.repo, "find_eligible_developers", flaky)

        result = rotation.generate_batch(project.id)

        assert result.batch_number == 1
        assert len(result.candidates) == 1

    def test_gives_up_after_max_attempts(self, db, rotation, monkeypatch, make_skill, make_developer, make_project):
        skill = make_skill()
        make_developer(FRESHER, [skill])
        project = make_project([skill])
        calls = {"count": 0}

        def always_conflicts(*args, **kwargs):
            calls["count"] += 1
            raise RuntimeError("could not serialize access due to concurrent update")

        monkeypatch.setattr(rotation.repo, "find_eligible_developers", always_conflicts)

        with pytest.raises(TransientStoreConflict) as exc_info:
            rotation.generate_batch(project.id)

        assert exc_info.value.status_code == 503
        assert exc_info.value.context["attempts"] == 3
        assert calls["count"] == 3
        assert db.query(AssignmentBatch).count() == 0

    def test_other_errors_are_not_retried(self, rotation, monkeypatch, make_skill, make_developer, make_project):
        skill = make_skill()
        make_developer(FRESHER, [skill])
        project = make_project([skill])
        calls = {"count": 0}

        def broken(*args, **kwargs):
            calls["count"] += 1
            raise ValueError("bad input")

        monkeypatch.setattr(rotation.repo, "find_eligible_developers", broken)

        with pytest.raises(ValueError):
            rotation.generate_batch(project.id)
        assert calls["count"] == 1


class TestBatchCap:
    """Test the per-project batch limit check."""

    def test_can_generate_until_limit(self, db, rotation, make_skill, make_project):
        project = make_project([make_skill()])
        for number in range(1, 8):
            db.add(AssignmentBatch(project_id=project.id, batch_number=number, status="replaced", selection={}))
        db.commit()
        assert rotation.can_generate_new_batch(project.id) is True

        db.add(AssignmentBatch(project_id=project.id, batch_number=8, status="replaced", selection={}))
        db.commit()
        assert rotation.can_generate_new_batch(project.id) is False
