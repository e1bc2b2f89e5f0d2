"""
Tests for the routine instance and horse endpoints
"""
from datetime import date

from stablehub.models.models import RoutineInstance, SelectionEntry, SelectionProcess

from conftest import auth_headers, make_step


class TestAuthAndErrors:
    def test_missing_token(self, client, org_setup):
        response = client.get(f"/routines/instances?stable_id={org_setup['stable'].id}")
        assert response.status_code == 401
        assert response.json()["error_code"] == "UNAUTHORIZED"

    def test_garbage_token(self, client, org_setup):
        response = client.get(
            f"/routines/instances?stable_id={org_setup['stable'].id}",
            headers={"Authorization": "Bearer not-a-jwt"},
        )
        assert response.status_code == 401

    def test_unknown_instance(self, client, org_setup):
        response = client.get("/routines/instances/does-not-exist", headers=auth_headers(org_setup["groom"]))
        assert response.status_code == 404
        assert response.json()["error_code"] == "NOT_FOUND"

    def test_validation_details(self, client, org_setup):
        response = client.post(
            "/routines/instances",
            json={"stable_id": org_setup["stable"].id, "scheduled_date": "not-a-date"},
            headers=auth_headers(org_setup["admin"]),
        )
        assert response.status_code == 400
        body = response.json()
        assert body["error_code"] == "VALIDATION_FAILED"
        fields = {tuple(d["loc"])[-1] for d in body["details"]}
        assert {"template_id", "scheduled_date"} <= fields

    def test_other_tenant_is_forbidden(self, client, factory, org_setup):
        template = factory.template(org_setup["org"], org_setup["stable"])
        instance = factory.instance(template, org_setup["stable"])
        outsider = factory.user()

        response = client.get(f"/routines/instances/{instance.id}", headers=auth_headers(outsider))

        assert response.status_code == 403
        assert response.json()["error_code"] == "FORBIDDEN"


class TestInstanceFlow:
    def test_run_routine(self, client, factory, org_setup):
        horse = factory.horse(org_setup["stable"], name="Ajax")
        step = make_step("Feed", horse_context="all", category="feeding")
        template = factory.template(org_setup["org"], org_setup["stable"], steps=[step])
        headers = auth_headers(org_setup["groom"])

        created = client.post(
            "/routines/instances",
            json={"template_id": template.id, "stable_id": org_setup["stable"].id, "scheduled_date": "2025-06-01"},
            headers=headers,
        )
        assert created.status_code == 201
        instance_id = created.json()["id"]

        detail = client.get(f"/routines/instances/{instance_id}", headers=headers).json()
        assert detail["template_snapshot"]["id"] == template.id
        assert detail["step_horses"][step["id"]] == [{"id": horse.id, "name": "Ajax"}]

        started = client.post(f"/routines/instances/{instance_id}/start", headers=headers)
        assert started.status_code == 200
        assert started.json()["status"] == "started"

        progressed = client.put(
            f"/routines/instances/{instance_id}/progress",
            json={"step_id": step["id"], "status": "completed", "horse_updates": {horse.id: {"completed": True}}},
            headers=headers,
        )
        assert progressed.status_code == 200
        assert progressed.json()["progress"]["percent_complete"] == 100

        completed = client.post(f"/routines/instances/{instance_id}/complete", json={"notes": "Done"}, headers=headers)
        assert completed.status_code == 200
        assert completed.json()["status"] == "completed"
        assert completed.json()["points_awarded"] == 3

        history = client.get(f"/routines/instances/{instance_id}/activity-history", headers=headers).json()
        assert history["steps"][0]["entries"][0]["horse_id"] == horse.id

        again = client.post(f"/routines/instances/{instance_id}/cancel", headers=headers)
        assert again.status_code == 400
        assert again.json()["error_code"] == "INVALID_STATE"

    def test_stale_version_conflict(self, client, factory, org_setup):
        step = make_step("Feed")
        template = factory.template(org_setup["org"], org_setup["stable"], steps=[step])
        instance = factory.instance(template, org_setup["stable"], status="started")

        response = client.put(
            f"/routines/instances/{instance.id}/progress",
            json={"step_id": step["id"], "status": "completed", "expected_version": instance.version + 1},
            headers=auth_headers(org_setup["groom"]),
        )

        assert response.status_code == 409
        assert response.json()["error_code"] == "CONFLICT"

    def test_list_and_bulk(self, client, factory, org_setup):
        template = factory.template(org_setup["org"], org_setup["stable"])
        headers = auth_headers(org_setup["admin"])

        bulk = client.post(
            "/routines/instances/bulk",
            json={
                "template_id": template.id,
                "stable_id": org_setup["stable"].id,
                "start_date": "2025-01-06",
                "end_date": "2025-01-12",
                "repeat_days": [1, 3],
            },
            headers=headers,
        )
        assert bulk.status_code == 201
        assert bulk.json()["created_count"] == 2

        listed = client.get(
            f"/routines/instances?stable_id={org_setup['stable'].id}&date=2025-01-08",
            headers=headers,
        ).json()
        assert [i["scheduled_date"] for i in listed["instances"]] == ["2025-01-08"]

    def test_delete(self, client, factory, org_setup):
        template = factory.template(org_setup["org"], org_setup["stable"])
        instance = factory.instance(template, org_setup["stable"])

        denied = client.delete(f"/routines/instances/{instance.id}", headers=auth_headers(org_setup["groom"]))
        assert denied.status_code == 403

        response = client.delete(f"/routines/instances/{instance.id}", headers=auth_headers(org_setup["admin"]))
        assert response.status_code == 200
        factory.db.expire_all()
        assert factory.db.query(RoutineInstance).count() == 0


class TestAssignDuringSelection:
    def test_not_your_turn(self, client, factory, org_setup):
        template = factory.template(org_setup["org"], org_setup["stable"])
        instance = factory.instance(template, org_setup["stable"])
        factory.selection_process(org_setup["stable"], [org_setup["admin"], org_setup["groom"]])
        version_before = instance.version

        response = client.post(
            f"/routines/instances/{instance.id}/assign",
            json={"assigned_to": org_setup["groom"].id},
            headers=auth_headers(org_setup["groom"]),
        )

        assert response.status_code == 403
        factory.db.expire_all()
        unchanged = factory.db.get(RoutineInstance, instance.id)
        assert unchanged.assigned_to is None
        assert unchanged.version == version_before
        assert factory.db.query(SelectionEntry).count() == 0

    def test_turn_holder_records_entry(self, client, factory, org_setup):
        template = factory.template(org_setup["org"], org_setup["stable"])
        instance = factory.instance(template, org_setup["stable"])
        process = factory.selection_process(org_setup["stable"], [org_setup["groom"], org_setup["admin"]])

        response = client.post(
            f"/routines/instances/{instance.id}/assign",
            json={"assigned_to": org_setup["groom"].id},
            headers=auth_headers(org_setup["groom"]),
        )

        assert response.status_code == 200
        assert response.json()["assigned_to"] == org_setup["groom"].id
        assert response.json()["assignment_type"] == "manual"
        factory.db.expire_all()
        entry = factory.db.query(SelectionEntry).one()
        assert entry.selected_by == org_setup["groom"].id
        assert entry.scheduled_date == date(2025, 1, 6)
        refreshed = factory.db.get(SelectionProcess, process.id)
        assert refreshed.turns[0]["selections_count"] == 1

    def test_assignee_must_belong_to_stable(self, client, factory, org_setup):
        template = factory.template(org_setup["org"], org_setup["stable"])
        instance = factory.instance(template, org_setup["stable"])
        outsider = factory.user()

        response = client.post(
            f"/routines/instances/{instance.id}/assign",
            json={"assigned_to": outsider.id},
            headers=auth_headers(org_setup["admin"]),
        )

        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_FAILED"
        assert response.json()["details"][0]["field"] == "assigned_to"


class TestHorseEndpoints:
    def test_access_context(self, client, factory, org_setup):
        horse = factory.horse(org_setup["stable"], name="Ajax")

        response = client.get(f"/horses/{horse.id}/access", headers=auth_headers(org_setup["groom"]))

        assert response.status_code == 200
        body = response.json()
        assert body["access_source"] == "stable"
        assert body["access_level"] == "basic_care"

    def test_no_access(self, client, factory, org_setup):
        horse = factory.horse(org_setup["stable"], name="Ajax")
        response = client.get(f"/horses/{horse.id}/access", headers=auth_headers(factory.user()))
        assert response.status_code == 403

    def test_unknown_horse(self, client, org_setup):
        response = client.get("/horses/nope/access", headers=auth_headers(org_setup["groom"]))
        assert response.status_code == 404
