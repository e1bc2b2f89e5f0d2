"""
Tests for activity history recording
"""
from datetime import date

from stablehub.models.models import ActivityHistoryEntry, HorseFeeding, HorseMedication, Notification
from stablehub.schemas.routines import RoutineStep, StepProgress, StepProgressUpdate
from stablehub.services import routine_instances as lifecycle
from stablehub.services.access import AccessResolver
from stablehub.services.activity_history import list_horse_history, list_instance_history_by_step, record_step_history

from conftest import make_step


def _care_setup(factory, org_setup, **step_flags):
    stable = org_setup["stable"]
    ajax = factory.horse(stable, name="Ajax", special_instructions="Kicks when startled",
                         current_blanket="light", blanket_info={"recommended_action": "add", "target_blanket": "medium"})
    bella = factory.horse(stable, name="Bella")
    factory.db.add_all([
        HorseFeeding(horse_id=ajax.id, stable_id=stable.id, feed_type_name="Hay", quantity=2, quantity_measure="kg"),
        HorseMedication(horse_id=bella.id, medication_name="Bute", dosage="1g", is_required=True),
    ])
    factory.db.commit()
    step = make_step(
        "Evening care",
        horse_context="all",
        category="feeding",
        show_feeding=True,
        show_medication=True,
        show_blanket_status=True,
        show_special_instructions=True,
        **step_flags,
    )
    template = factory.template(org_setup["org"], stable, steps=[step])
    instance = factory.instance(template, stable, scheduled_date=date(2025, 5, 2), status="started")
    return ajax, bella, step, template, instance


def _entries(db, instance_id):
    return {
        e.horse_name: e
        for e in db.query(ActivityHistoryEntry).filter(ActivityHistoryEntry.routine_instance_id == instance_id).all()
    }


class TestRecordStepHistory:
    def test_completed_step_writes_one_entry_per_horse(self, factory, org_setup):
        ajax, bella, step, _, instance = _care_setup(factory, org_setup)
        access = AccessResolver(factory.db, org_setup["groom"])

        lifecycle.update_step_progress(
            factory.db,
            instance,
            access,
            StepProgressUpdate(
                step_id=step["id"],
                status="completed",
                horse_updates={
                    ajax.id: {"completed": True, "notes": "Ate well", "blanket_action": "on"},
                    bella.id: {"skipped": True, "skip_reason": "Refused"},
                },
            ),
        )

        entries = _entries(factory.db, instance.id)
        assert set(entries) == {"Ajax", "Bella"}

        a = entries["Ajax"]
        assert a.execution_status == "completed"
        assert a.executed_by == org_setup["groom"].id
        assert a.executed_by_name == "Greta Groom"
        assert a.scheduled_date == date(2025, 5, 2)
        assert a.step_name == "Evening care"
        assert a.category == "feeding"
        assert a.version == 1
        assert a.feeding_snapshot["confirmed"] is True
        assert a.feeding_snapshot["instructions"]["feed_type_name"] == "Hay"
        assert a.medication_snapshot is None
        assert a.blanket_snapshot["action"] == "on"
        assert a.blanket_snapshot["instructions"]["target_blanket"] == "medium"
        assert a.horse_context_snapshot == {"special_instructions": "Kicks when startled", "notes": "Ate well"}

        b = entries["Bella"]
        assert b.execution_status == "skipped"
        assert b.skip_reason == "Refused"
        assert b.feeding_snapshot is None
        assert b.medication_snapshot["given"] is False
        assert b.medication_snapshot["skipped"] is True
        assert b.blanket_snapshot is None

    def test_recompleting_updates_in_place(self, factory, org_setup):
        ajax, _, step, _, instance = _care_setup(factory, org_setup)
        access = AccessResolver(factory.db, org_setup["groom"])
        update = StepProgressUpdate(step_id=step["id"], status="completed", horse_updates={ajax.id: {"completed": True}})

        instance = lifecycle.update_step_progress(factory.db, instance, access, update)
        lifecycle.update_step_progress(factory.db, instance, access, update)

        entries = _entries(factory.db, instance.id)
        assert len(entries) == 2
        assert {e.version for e in entries.values()} == {2}

    def test_skipped_required_medication_alerts_admins(self, factory, org_setup):
        _, bella, step, _, instance = _care_setup(factory, org_setup)

        lifecycle.update_step_progress(
            factory.db,
            instance,
            AccessResolver(factory.db, org_setup["groom"]),
            StepProgressUpdate(step_id=step["id"], status="completed", horse_updates={bella.id: {"skipped": True}}),
        )

        recipients = {
            n.user_id
            for n in factory.db.query(Notification).filter(Notification.template_key == "routine_medication_skipped").all()
        }
        assert recipients == {org_setup["owner"].id, org_setup["admin"].id}

    def test_step_without_horses_writes_nothing(self, factory, org_setup):
        factory.horse(org_setup["stable"], name="Ajax")
        step = make_step("Sweep aisle", category="cleaning")
        template = factory.template(org_setup["org"], org_setup["stable"], steps=[step])
        instance = factory.instance(template, org_setup["stable"], status="started")

        written = record_step_history(
            factory.db,
            instance,
            template,
            RoutineStep.model_validate(step),
            StepProgress(step_id=step["id"], status="completed"),
            executed_by=org_setup["groom"].id,
        )

        assert written == []
        assert factory.db.query(ActivityHistoryEntry).count() == 0

    def test_defaults_without_horse_progress(self, factory, org_setup):
        ajax, bella, step, template, instance = _care_setup(factory, org_setup)

        written = record_step_history(
            factory.db,
            instance,
            template,
            RoutineStep.model_validate(step),
            StepProgress(step_id=step["id"], status="completed"),
            executed_by=org_setup["groom"].id,
        )
        factory.db.commit()

        by_name = {e.horse_name: e for e in written}
        assert by_name["Ajax"].feeding_snapshot["confirmed"] is True
        assert by_name["Ajax"].blanket_snapshot["action"] == "unchanged"
        assert by_name["Bella"].medication_snapshot["given"] is True
        assert by_name["Bella"].medication_snapshot["skipped"] is False

    def test_grouped_by_step(self, factory, org_setup):
        ajax, _, step, template, instance = _care_setup(factory, org_setup)
        record_step_history(
            factory.db, instance, template, RoutineStep.model_validate(step),
            StepProgress(step_id=step["id"], status="completed"), executed_by=org_setup["groom"].id,
        )
        factory.db.commit()

        groups = list_instance_history_by_step(factory.db, instance.id)

        assert len(groups) == 1
        assert groups[0]["step_id"] == step["id"]
        assert [e["horse_name"] for e in groups[0]["entries"]] == ["Ajax", "Bella"]


class TestHistoryQueries:
    def test_cutoff_hides_older_entries(self, factory, org_setup):
        ajax = factory.horse(org_setup["stable"], name="Ajax")
        step = make_step("Turnout", horse_context="specific", horse_filter={"horse_ids": [ajax.id]}, category="turnout")
        template = factory.template(org_setup["org"], org_setup["stable"], steps=[step])
        for day in (date(2025, 1, 10), date(2025, 3, 10)):
            instance = factory.instance(template, org_setup["stable"], scheduled_date=day, status="started")
            record_step_history(
                factory.db, instance, template, RoutineStep.model_validate(step),
                StepProgress(step_id=step["id"], status="completed"), executed_by=org_setup["groom"].id,
            )
        factory.db.commit()

        assert len(list_horse_history(factory.db, ajax.id)) == 2
        visible = list_horse_history(factory.db, ajax.id, cutoff=date(2025, 3, 1))
        assert [e.scheduled_date for e in visible] == [date(2025, 3, 10)]
