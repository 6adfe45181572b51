"""
tests/test_workflow_api.py — HTTP surface of the workflow engine.

Covers: acting-user resolution (401/403), instance start/transition/cancel,
available transitions, task endpoints, definition administration, error
mapping (400/404), health probes and request-id headers.
"""

import pytest

from conftest import auth, make_document
from docflow.models import db
from docflow.models.registry import Document

BASE = "/api/v1"


# ═════════════════════════════════════════════════════════════════════════
# Helpers
# ═════════════════════════════════════════════════════════════════════════

def _start(client, user, document, definition, **kw):
    body = {"document_id": document.id, "workflow_definition_id": definition.id}
    body.update(kw)
    rv = client.post(f"{BASE}/workflow/start", json=body, headers=auth(user))
    assert rv.status_code == 201, rv.get_json()
    return rv.get_json()


def _transition(client, user, instance_id, transition_id, **kw):
    body = {"transition_id": transition_id}
    body.update(kw)
    return client.patch(f"{BASE}/workflow/instances/{instance_id}/transition", json=body, headers=auth(user))


def _task(client, user, **kw):
    rv = client.post(f"{BASE}/workflow-tasks", json=kw, headers=auth(user))
    assert rv.status_code == 201, rv.get_json()
    return rv.get_json()


# ═════════════════════════════════════════════════════════════════════════
# Acting user
# ═════════════════════════════════════════════════════════════════════════

class TestActingUser:
    def test_missing_header_is_401(self, client, invoice):
        rv = client.get(f"{BASE}/workflow/instances")
        assert rv.status_code == 401
        assert rv.get_json()["code"] == "ERR_UNAUTHENTICATED"

    def test_unknown_user_is_401(self, client, invoice):
        rv = client.get(f"{BASE}/workflow/instances", headers={"X-User-Id": "9999"})
        assert rv.status_code == 401

    def test_non_numeric_header_is_401(self, client, invoice):
        rv = client.get(f"{BASE}/workflow/instances", headers={"X-User-Id": "alice"})
        assert rv.status_code == 401

    def test_inactive_user_is_401(self, client, users):
        users.reviewer.status = "inactive"
        db.session.commit()
        rv = client.get(f"{BASE}/workflow/instances", headers=auth(users.reviewer))
        assert rv.status_code == 401


# ═════════════════════════════════════════════════════════════════════════
# Instances
# ═════════════════════════════════════════════════════════════════════════

class TestInstanceEndpoints:
    def test_start_returns_full_graph(self, client, invoice, document, users):
        data = _start(client, users.author, document, invoice.definition, metadata={"amount": 99})

        assert data["status"] == "active"
        assert data["current_step"]["name"] == "Draft"
        assert data["workflow_definition"]["code"] == "INVOICE_APPROVAL"
        assert len(data["workflow_definition"]["steps"]) == 3
        assert data["document"]["status"] == "draft"
        assert data["metadata"] == {"amount": 99}
        assert data["version"] == 1

    def test_start_requires_ids(self, client, users):
        rv = client.post(f"{BASE}/workflow/start", json={}, headers=auth(users.author))
        assert rv.status_code == 400
        assert rv.get_json()["code"] == "ERR_VALIDATION_REQUIRED"

    def test_start_rejects_non_object_metadata(self, client, invoice, document, users):
        rv = client.post(f"{BASE}/workflow/start", json={
            "document_id": document.id, "workflow_definition_id": invoice.definition.id, "metadata": [1],
        }, headers=auth(users.author))
        assert rv.status_code == 400

    def test_second_start_is_400_with_existing_id(self, client, invoice, document, users):
        first = _start(client, users.author, document, invoice.definition)
        rv = client.post(f"{BASE}/workflow/start", json={
            "document_id": document.id, "workflow_definition_id": invoice.definition.id,
        }, headers=auth(users.author))
        assert rv.status_code == 400
        body = rv.get_json()
        assert body["error"] == "Document already has an active workflow"
        assert body["details"]["workflow_instance_id"] == first["id"]

    def test_unknown_document_is_404(self, client, invoice, users):
        rv = client.post(f"{BASE}/workflow/start", json={
            "document_id": 9999, "workflow_definition_id": invoice.definition.id,
        }, headers=auth(users.author))
        assert rv.status_code == 404
        assert rv.get_json()["code"] == "ERR_NOT_FOUND"

    def test_transition_violations_joined(self, client, started, invoice, users):
        rv = _transition(client, users.reviewer, started.id, invoice.approve.id)
        assert rv.status_code == 400
        body = rv.get_json()
        assert body["error"] == (
            "Invalid transition for current step, "
            "Missing required role for this transition, "
            "A comment is required for this transition"
        )
        assert len(body["details"]["errors"]) == 3

    def test_transition_requires_id(self, client, started, users):
        rv = client.patch(f"{BASE}/workflow/instances/{started.id}/transition", json={},
                          headers=auth(users.author))
        assert rv.status_code == 400

    def test_invoice_walk_through(self, client, invoice, document, users):
        instance = _start(client, users.author, document, invoice.definition)

        rv = _transition(client, users.author, instance["id"], invoice.submit.id, comment="please review")
        assert rv.status_code == 200
        assert rv.get_json()["current_step"]["name"] == "Pending review"

        rv = client.get(f"{BASE}/workflow/instances/{instance['id']}/available-transitions",
                        headers=auth(users.reviewer))
        items = rv.get_json()["items"]
        assert [t["name"] for t in items] == ["Approve"]
        assert items[0]["allowed"] is False
        assert items[0]["errors"] == ["Missing required role for this transition"]

        rv = client.get(f"{BASE}/workflow/instances/{instance['id']}/available-transitions",
                        headers=auth(users.admin))
        assert rv.get_json()["items"][0]["allowed"] is True
        assert rv.get_json()["items"][0]["requires_comment"] is True

        rv = _transition(client, users.admin, instance["id"], invoice.approve.id, comment="Paid")
        assert rv.status_code == 200
        body = rv.get_json()
        assert body["status"] == "completed"
        assert body["completed_at"]
        assert body["metadata"]["lastTransition"]["comment"] == "Paid"
        assert db.session.get(Document, document.id).status == "approved"

    def test_get_instance_and_404(self, client, started, users):
        rv = client.get(f"{BASE}/workflow/instances/{started.id}", headers=auth(users.reviewer))
        assert rv.status_code == 200
        assert rv.get_json()["id"] == started.id

        rv = client.get(f"{BASE}/workflow/instances/9999", headers=auth(users.reviewer))
        assert rv.status_code == 404

    def test_list_active_with_filters(self, client, invoice, users):
        docs = [make_document(users.author, f"Invoice {i}") for i in range(3)]
        instances = [_start(client, users.author, d, invoice.definition) for d in docs]
        _transition(client, users.author, instances[2]["id"], invoice.submit.id)

        rv = client.get(f"{BASE}/workflow/instances", headers=auth(users.admin))
        assert rv.get_json()["total"] == 3

        rv = client.get(f"{BASE}/workflow/instances?current_step_id={invoice.review.id}",
                        headers=auth(users.admin))
        assert [i["id"] for i in rv.get_json()["items"]] == [instances[2]["id"]]

        rv = client.get(f"{BASE}/workflow/instances?document_id={docs[0].id}", headers=auth(users.admin))
        assert rv.get_json()["total"] == 1

        rv = client.get(f"{BASE}/workflow/instances?limit=2", headers=auth(users.admin))
        assert len(rv.get_json()["items"]) == 2
        assert rv.get_json()["total"] == 3

    def test_cancel(self, client, started, users):
        rv = client.patch(f"{BASE}/workflow/instances/{started.id}/cancel", json={},
                          headers=auth(users.admin))
        assert rv.status_code == 400

        rv = client.patch(f"{BASE}/workflow/instances/{started.id}/cancel",
                          json={"reason": "Supplier withdrew"}, headers=auth(users.admin))
        assert rv.status_code == 200
        body = rv.get_json()
        assert body["status"] == "cancelled"
        assert body["metadata"]["cancellationReason"] == "Supplier withdrew"

        rv = client.patch(f"{BASE}/workflow/instances/{started.id}/cancel",
                          json={"reason": "again"}, headers=auth(users.admin))
        assert rv.status_code == 400
        assert rv.get_json()["error"] == "Only active workflows can be cancelled"


# ═════════════════════════════════════════════════════════════════════════
# Tasks
# ═════════════════════════════════════════════════════════════════════════

class TestTaskEndpoints:
    def test_task_lifecycle(self, client, started, invoice, roles, users):
        task = _task(client, users.author, workflow_instance_id=started.id, step_id=invoice.draft.id,
                     assignee_role_id=roles.reviewer.id, due_date="2030-01-31")
        assert task["status"] == "pending"
        assert task["due_date"].startswith("2030-01-31")

        rv = client.patch(f"{BASE}/workflow-tasks/{task['id']}/assign",
                          json={"assignee_id": users.reviewer.id}, headers=auth(users.admin))
        assert rv.status_code == 200
        assert rv.get_json()["status"] == "in_progress"

        rv = client.get(f"{BASE}/workflow-tasks?status=in_progress,pending&assignee_id={users.reviewer.id}",
                        headers=auth(users.reviewer))
        assert [t["id"] for t in rv.get_json()["items"]] == [task["id"]]

        rv = client.patch(f"{BASE}/workflow-tasks/{task['id']}/complete",
                          json={"comment": "Verified"}, headers=auth(users.reviewer))
        assert rv.status_code == 200
        assert rv.get_json()["status"] == "completed"

        rv = client.get(f"{BASE}/workflow/instances/{started.id}", headers=auth(users.reviewer))
        assert rv.get_json()["current_task"] is None
        assert rv.get_json()["tasks"][0]["comments"] == "Verified"

    def test_complete_non_current_task_rejected(self, client, started, invoice, users):
        older = _task(client, users.author, workflow_instance_id=started.id, step_id=invoice.draft.id)
        _task(client, users.author, workflow_instance_id=started.id, step_id=invoice.draft.id)

        rv = client.patch(f"{BASE}/workflow-tasks/{older['id']}/complete", json={}, headers=auth(users.author))
        assert rv.status_code == 400
        assert rv.get_json()["error"] == "Task is not the current task of its workflow"

    def test_cancel_task(self, client, started, invoice, users):
        task = _task(client, users.author, workflow_instance_id=started.id, step_id=invoice.draft.id)
        rv = client.patch(f"{BASE}/workflow-tasks/{task['id']}/cancel",
                          json={"reason": "Superseded"}, headers=auth(users.author))
        assert rv.status_code == 200
        assert rv.get_json()["metadata"]["cancellationReason"] == "Superseded"

    def test_bad_due_date(self, client, started, invoice, users):
        rv = client.post(f"{BASE}/workflow-tasks", json={
            "workflow_instance_id": started.id, "step_id": invoice.draft.id, "due_date": "someday",
        }, headers=auth(users.author))
        assert rv.status_code == 400

    def test_missing_ids(self, client, users):
        rv = client.post(f"{BASE}/workflow-tasks", json={}, headers=auth(users.author))
        assert rv.status_code == 400

    def test_unknown_task_404(self, client, users):
        rv = client.get(f"{BASE}/workflow-tasks/9999", headers=auth(users.author))
        assert rv.status_code == 404


# ═════════════════════════════════════════════════════════════════════════
# Definitions
# ═════════════════════════════════════════════════════════════════════════

class TestDefinitionEndpoints:
    PAYLOAD = {
        "code": "NDA",
        "name": "NDA sign-off",
        "steps": [
            {"name": "Draft", "status_code": "draft"},
            {"name": "Signed", "status_code": "approved"},
        ],
        "transitions": [{"name": "Sign", "from_step": "Draft", "to_step": "Signed"}],
    }

    def test_create_requires_manage_permission(self, client, statuses, users):
        rv = client.post(f"{BASE}/workflow-definitions", json=self.PAYLOAD, headers=auth(users.reviewer))
        assert rv.status_code == 403
        assert rv.get_json()["details"] == {"required": "manage_workflow"}

    def test_create_as_manager(self, client, statuses, users):
        rv = client.post(f"{BASE}/workflow-definitions", json=self.PAYLOAD, headers=auth(users.manager))
        assert rv.status_code == 201
        body = rv.get_json()
        assert [s["name"] for s in body["steps"]] == ["Draft", "Signed"]
        assert body["transitions"][0]["from_step_id"] == body["steps"][0]["id"]

    def test_create_duplicate_code(self, client, invoice, users):
        rv = client.post(f"{BASE}/workflow-definitions",
                         json={**self.PAYLOAD, "code": "INVOICE_APPROVAL"}, headers=auth(users.admin))
        assert rv.status_code == 400
        assert "Workflow code must be unique" in rv.get_json()["details"]["errors"]

    def test_reads_open_to_any_user(self, client, invoice, users):
        rv = client.get(f"{BASE}/workflow-definitions", headers=auth(users.reviewer))
        assert rv.status_code == 200
        assert rv.get_json()["total"] == 1

        rv = client.get(f"{BASE}/workflow-definitions/{invoice.definition.id}", headers=auth(users.reviewer))
        assert rv.get_json()["code"] == "INVOICE_APPROVAL"

    def test_update_and_delete(self, client, invoice, users):
        rv = client.patch(f"{BASE}/workflow-definitions/{invoice.definition.id}",
                          json={"name": "AP approval"}, headers=auth(users.admin))
        assert rv.status_code == 200
        assert rv.get_json()["name"] == "AP approval"

        rv = client.delete(f"{BASE}/workflow-definitions/{invoice.definition.id}", headers=auth(users.admin))
        assert rv.status_code == 200
        assert rv.get_json() == {"message": "Workflow definition deleted", "id": invoice.definition.id}

    def test_delete_with_active_instance(self, client, started, invoice, users):
        rv = client.delete(f"{BASE}/workflow-definitions/{invoice.definition.id}", headers=auth(users.admin))
        assert rv.status_code == 400
        assert rv.get_json()["error"] == "Cannot delete workflow with active instances"

    def test_step_and_transition_management(self, client, invoice, users):
        did = invoice.definition.id
        rv = client.post(f"{BASE}/workflow-definitions/{did}/steps",
                         json={"name": "Rejected", "status_code": "rejected"}, headers=auth(users.admin))
        assert rv.status_code == 201
        step = rv.get_json()

        rv = client.patch(f"{BASE}/workflow-definitions/{did}/steps/{step['id']}",
                          json={"description": "Final rejection"}, headers=auth(users.admin))
        assert rv.get_json()["description"] == "Final rejection"

        rv = client.post(f"{BASE}/workflow-definitions/{did}/transitions",
                         json={"name": "Reject", "to_step_id": step["id"]}, headers=auth(users.admin))
        assert rv.status_code == 201
        transition = rv.get_json()
        assert transition["is_global"] is True

        rv = client.delete(f"{BASE}/workflow-definitions/{did}/steps/{step['id']}", headers=auth(users.admin))
        assert rv.status_code == 400

        rv = client.delete(f"{BASE}/workflow-definitions/{did}/transitions/{transition['id']}",
                           headers=auth(users.admin))
        assert rv.status_code == 200
        rv = client.delete(f"{BASE}/workflow-definitions/{did}/steps/{step['id']}", headers=auth(users.admin))
        assert rv.status_code == 200

    def test_unknown_definition_404(self, client, users):
        rv = client.get(f"{BASE}/workflow-definitions/9999", headers=auth(users.admin))
        assert rv.status_code == 404


# ═════════════════════════════════════════════════════════════════════════
# Plumbing
# ═════════════════════════════════════════════════════════════════════════

class TestPlumbing:
    def test_health_ready(self, client):
        rv = client.get(f"{BASE}/health/ready")
        assert rv.status_code == 200
        assert rv.get_json() == {"status": "ok"}

    def test_health_live_reports_listeners(self, client):
        rv = client.get(f"{BASE}/health/live")
        assert rv.status_code == 200
        checks = rv.get_json()["checks"]
        assert checks["database"]["status"] == "ok"
        assert checks["workflow_engine"]["listeners"]["workflow.task.assigned"] >= 1

    def test_request_id_header(self, client, users):
        rv = client.get(f"{BASE}/workflow-definitions", headers={**auth(users.admin), "X-Request-ID": "abc123"})
        assert rv.headers["X-Request-ID"] == "abc123"
        assert "X-Request-Duration-Ms" in rv.headers

    def test_unknown_route_json_404(self, client):
        rv = client.get("/api/v1/nothing-here")
        assert rv.status_code == 404
        assert rv.get_json()["error"] == "Not found"

    @pytest.mark.parametrize("method", ["put", "delete"])
    def test_method_not_allowed(self, client, method):
        rv = getattr(client, method)(f"{BASE}/workflow/start")
        assert rv.status_code == 405
