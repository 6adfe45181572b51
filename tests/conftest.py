"""
Shared pytest fixtures for the docflow test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - engine: the app's workflow engine bundle (event bus + services)
    - captured_events: list that receives every workflow event emitted
    - statuses / roles / users / document: registry rows
    - invoice: the INVOICE_APPROVAL definition (Draft -> Pending review -> Approved)

Fixtures commit (not just flush): a failing service call rolls the session
back and must not take the fixture rows with it.
"""

from types import SimpleNamespace

import pytest

from docflow import create_app
from docflow.models import db as _db
from docflow.models.registry import DOCUMENT_STATUSES, Document, Permission, Role, Status, User
from docflow.models.workflow import WorkflowDefinition, WorkflowStep, WorkflowTransition
from docflow.services.workflow_events import WorkflowEventType


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield _db.session
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def engine(app):
    return app.extensions["workflow"]


@pytest.fixture()
def captured_events(engine):
    """Every event emitted on the app's bus during the test, in order."""
    events = []

    def _capture(event):
        events.append(event)

    for event_type in WorkflowEventType:
        engine.events.on(event_type, _capture)
    yield events
    for event_type in WorkflowEventType:
        engine.events.off(event_type, _capture)


def events_of(events, event_type):
    return [e for e in events if e.type == event_type]


# ── Registry fixtures ────────────────────────────────────────────────────


@pytest.fixture()
def statuses():
    """One Status row per document status code, keyed by code."""
    rows = {}
    for code in sorted(DOCUMENT_STATUSES):
        rows[code] = Status(code=code, label=code.replace("_", " ").title())
        _db.session.add(rows[code])
    _db.session.commit()
    return rows


@pytest.fixture()
def roles():
    manage = Permission(codename="manage_workflow", description="Administer workflow definitions")
    admin = Role(name="admin")
    reviewer = Role(name="reviewer")
    editor = Role(name="editor")
    manager = Role(name="workflow_manager")
    manager.grant(manage)
    _db.session.add_all([manage, admin, reviewer, editor, manager])
    _db.session.commit()
    return SimpleNamespace(admin=admin, reviewer=reviewer, editor=editor, manager=manager,
                           manage_workflow=manage)


def make_user(email, role):
    user = User(email=email, full_name=email.split("@")[0].title(), role_id=role.id if role else None)
    _db.session.add(user)
    _db.session.commit()
    return user


@pytest.fixture()
def users(roles):
    return SimpleNamespace(
        admin=make_user("admin@docflow.test", roles.admin),
        reviewer=make_user("reviewer@docflow.test", roles.reviewer),
        author=make_user("author@docflow.test", roles.editor),
        manager=make_user("manager@docflow.test", roles.manager),
    )


def make_document(author, title="Invoice 2024-001"):
    doc = Document(title=title, doc_type="invoice", status="draft",
                   created_by_id=author.id if author else None)
    _db.session.add(doc)
    _db.session.commit()
    return doc


@pytest.fixture()
def document(users):
    return make_document(users.author)


# ── Workflow graph fixtures ──────────────────────────────────────────────


def make_definition(code, steps, transitions, created_by=None, is_active=True):
    """Build a definition from ``(name, status_row)`` steps and
    ``(name, from_name | None, to_name, extra_kwargs)`` transitions."""
    definition = WorkflowDefinition(
        code=code, name=code.replace("_", " ").title(), is_active=is_active,
        created_by_id=created_by.id if created_by else None,
    )
    _db.session.add(definition)
    _db.session.flush()

    by_name = {}
    for position, (name, status) in enumerate(steps):
        step = WorkflowStep(
            workflow_definition_id=definition.id, name=name, position=position,
            status_id=status.id if status else None,
        )
        _db.session.add(step)
        by_name[name] = step
    _db.session.flush()

    by_transition = {}
    for name, from_name, to_name, extra in transitions:
        transition = WorkflowTransition(
            workflow_definition_id=definition.id,
            name=name,
            from_step_id=by_name[from_name].id if from_name else None,
            to_step_id=by_name[to_name].id,
            **extra,
        )
        _db.session.add(transition)
        by_transition[name] = transition
    _db.session.commit()
    return definition, by_name, by_transition


@pytest.fixture()
def invoice(statuses, roles, users):
    """INVOICE_APPROVAL: Draft -> Pending review -> Approved (admin + comment)."""
    definition, steps, transitions = make_definition(
        "INVOICE_APPROVAL",
        steps=[
            ("Draft", statuses["draft"]),
            ("Pending review", statuses["pending_review"]),
            ("Approved", statuses["approved"]),
        ],
        transitions=[
            ("Submit", "Draft", "Pending review", {}),
            ("Approve", "Pending review", "Approved",
             {"required_role_id": roles.admin.id, "requires_comment": True}),
        ],
        created_by=users.admin,
    )
    return SimpleNamespace(
        definition=definition,
        draft=steps["Draft"],
        review=steps["Pending review"],
        approved=steps["Approved"],
        submit=transitions["Submit"],
        approve=transitions["Approve"],
    )


@pytest.fixture()
def started(engine, invoice, document, users):
    """An active INVOICE_APPROVAL instance on ``document``, sitting on Draft."""
    return engine.workflows.start_workflow(document.id, invoice.definition.id, users.author)


def auth(user):
    """Request headers identifying ``user``."""
    return {"X-User-Id": str(user.id)}
