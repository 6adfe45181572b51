"""
Workflow engine domain models.

Models:
    - WorkflowDefinition:  named, coded graph of steps and transitions
    - WorkflowStep:        graph node, binds a document Status
    - WorkflowTransition:  graph edge, optionally role-gated / conditional
    - WorkflowInstance:    live execution token bound to one document
    - WorkflowTask:        human task gating progress on an instance

State machines:
    WorkflowInstance (INSTANCE_TRANSITIONS)
        active -> completed | cancelled
        completed, cancelled -> (terminal)

    WorkflowTask (TASK_TRANSITIONS)
        pending     -> in_progress | completed | cancelled
        in_progress -> completed | cancelled
        completed, cancelled -> (terminal)

Wildcard transitions:
    A transition with ``from_step_id = NULL`` applies from any step. Code
    never compares ``from_step_id`` directly; it goes through
    ``WorkflowTransition.origin`` which returns ``AnyStep()`` or
    ``SpecificStep(step_id)``.
"""

from dataclasses import dataclass
from datetime import datetime, timezone

from docflow.models import db


# ── Constants ────────────────────────────────────────────────────────────────

INSTANCE_TRANSITIONS = {
    "active":    ["completed", "cancelled"],
    "completed": [],
    "cancelled": [],
}

TASK_TRANSITIONS = {
    "pending":     ["in_progress", "completed", "cancelled"],
    "in_progress": ["completed", "cancelled"],
    "completed":   [],
    "cancelled":   [],
}


def validate_instance_transition(old_status, new_status):
    """Return True if WorkflowInstance status transition is valid."""
    return new_status in INSTANCE_TRANSITIONS.get(old_status, [])


def validate_task_transition(old_status, new_status):
    """Return True if WorkflowTask status transition is valid."""
    return new_status in TASK_TRANSITIONS.get(old_status, [])


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ── Transition origin variant ────────────────────────────────────────────────


@dataclass(frozen=True)
class AnyStep:
    """Origin of a global transition: matches every current step."""

    def matches(self, step_id) -> bool:
        return True

    @property
    def step_id(self):
        return None


@dataclass(frozen=True)
class SpecificStep:
    """Origin bound to exactly one step."""

    step_id: int

    def matches(self, step_id) -> bool:
        return step_id is not None and step_id == self.step_id


# ═════════════════════════════════════════════════════════════════════════════
# WORKFLOW DEFINITION
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowDefinition(db.Model):
    __tablename__ = "workflow_definitions"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(50), unique=True, nullable=False)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.String(255))
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    steps = db.relationship(
        "WorkflowStep",
        back_populates="definition",
        cascade="all, delete-orphan",
        order_by="[WorkflowStep.position, WorkflowStep.id]",
        lazy="selectin",
    )
    transitions = db.relationship(
        "WorkflowTransition",
        back_populates="definition",
        cascade="all, delete-orphan",
        order_by="WorkflowTransition.id",
        lazy="selectin",
    )
    instances = db.relationship(
        "WorkflowInstance",
        back_populates="definition",
        cascade="all, delete-orphan",
        lazy="dynamic",
    )

    def initial_step(self):
        """Return the step no transition points to (lowest position wins), or None."""
        targets = {t.to_step_id for t in self.transitions}
        return next((s for s in self.steps if s.id not in targets), None)

    def is_terminal_step(self, step_id) -> bool:
        """A step with no outgoing transition of its own is terminal."""
        return not any(t.from_step_id == step_id for t in self.transitions)

    def to_dict(self, include_graph=True):
        d = {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "description": self.description,
            "is_active": self.is_active,
            "created_by_id": self.created_by_id,
            "updated_by_id": self.updated_by_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_graph:
            d["steps"] = [s.to_dict() for s in self.steps]
            d["transitions"] = [t.to_dict() for t in self.transitions]
        return d

    def __repr__(self):
        return f"<WorkflowDefinition {self.id}: {self.code}>"


# ═════════════════════════════════════════════════════════════════════════════
# WORKFLOW STEP
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowStep(db.Model):
    __tablename__ = "workflow_steps"

    id = db.Column(db.Integer, primary_key=True)
    workflow_definition_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_definitions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.String(255))
    position = db.Column(db.Integer, nullable=False, default=0)
    status_id = db.Column(
        db.Integer,
        db.ForeignKey("statuses.id", ondelete="SET NULL"),
        nullable=True,
        comment="Status the bound document adopts while the instance sits on this step",
    )
    assignee_role_id = db.Column(db.Integer, db.ForeignKey("roles.id", ondelete="SET NULL"), nullable=True)
    config = db.Column(db.JSON, default=dict)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    definition = db.relationship("WorkflowDefinition", back_populates="steps")
    status = db.relationship("Status", lazy="joined")
    assignee_role = db.relationship("Role")

    @property
    def status_code(self):
        return self.status.code if self.status else None

    def to_dict(self):
        return {
            "id": self.id,
            "workflow_definition_id": self.workflow_definition_id,
            "name": self.name,
            "description": self.description,
            "position": self.position,
            "status_id": self.status_id,
            "status": self.status.to_dict() if self.status else None,
            "assignee_role_id": self.assignee_role_id,
            "config": self.config or {},
            "is_active": self.is_active,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<WorkflowStep {self.id}: {self.name}>"


# ═════════════════════════════════════════════════════════════════════════════
# WORKFLOW TRANSITION
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowTransition(db.Model):
    __tablename__ = "workflow_transitions"

    id = db.Column(db.Integer, primary_key=True)
    workflow_definition_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_definitions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.String(255))
    from_step_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_steps.id", ondelete="CASCADE"),
        nullable=True,
        comment="NULL = global transition, applicable from any step",
    )
    to_step_id = db.Column(
        db.Integer, db.ForeignKey("workflow_steps.id", ondelete="CASCADE"), nullable=False
    )
    required_role_id = db.Column(db.Integer, db.ForeignKey("roles.id", ondelete="SET NULL"), nullable=True)
    requires_comment = db.Column(db.Boolean, nullable=False, default=False)
    conditions = db.Column(
        db.JSON,
        nullable=True,
        comment="Predicate bag: requiredMetadata: [field, ...], documentStatus: <code>",
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.Index("ix_workflow_transition_edge", "workflow_definition_id", "from_step_id", "to_step_id"),
    )

    definition = db.relationship("WorkflowDefinition", back_populates="transitions")
    from_step = db.relationship("WorkflowStep", foreign_keys=[from_step_id])
    to_step = db.relationship("WorkflowStep", foreign_keys=[to_step_id], lazy="joined")
    required_role = db.relationship("Role")

    @property
    def origin(self):
        """``AnyStep()`` for global transitions, ``SpecificStep(id)`` otherwise."""
        if self.from_step_id is None:
            return AnyStep()
        return SpecificStep(self.from_step_id)

    @property
    def is_global(self) -> bool:
        return isinstance(self.origin, AnyStep)

    def to_dict(self):
        return {
            "id": self.id,
            "workflow_definition_id": self.workflow_definition_id,
            "name": self.name,
            "description": self.description,
            "from_step_id": self.from_step_id,
            "to_step_id": self.to_step_id,
            "is_global": self.is_global,
            "required_role_id": self.required_role_id,
            "requires_comment": self.requires_comment,
            "conditions": self.conditions or {},
            "is_active": self.is_active,
        }

    def __repr__(self):
        src = self.from_step_id if self.from_step_id is not None else "*"
        return f"<WorkflowTransition {self.id}: {src}->{self.to_step_id}>"


# ═════════════════════════════════════════════════════════════════════════════
# WORKFLOW INSTANCE
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowInstance(db.Model):
    """
    Live execution token.

    Business rules:
    - At most one ``active`` instance per document (enforced by the service
      inside the start transaction).
    - ``version`` is SQLAlchemy's optimistic-concurrency counter: every
      UPDATE is issued as ``WHERE id = :id AND version = :seen`` and a lost
      race surfaces as ``StaleDataError`` at flush time.
    - ``current_task_id`` is written directly (never through a relationship
      assignment) so the instance <-> task cycle needs no post-update pass.
    """

    __tablename__ = "workflow_instances"

    id = db.Column(db.Integer, primary_key=True)
    workflow_definition_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_definitions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    document_id = db.Column(
        db.Integer, db.ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    current_step_id = db.Column(db.Integer, db.ForeignKey("workflow_steps.id"), nullable=False)
    current_task_id = db.Column(
        db.Integer,
        db.ForeignKey(
            "workflow_tasks.id",
            ondelete="SET NULL",
            use_alter=True,
            name="fk_workflow_instance_current_task",
        ),
        nullable=True,
    )
    status = db.Column(db.String(20), nullable=False, default="active", index=True)
    metadata_json = db.Column("metadata", db.JSON, default=dict)
    version = db.Column(db.Integer, nullable=False, default=1)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        db.Index("ix_workflow_instance_document_status", "document_id", "status"),
    )

    definition = db.relationship("WorkflowDefinition", back_populates="instances")
    document = db.relationship("Document")
    current_step = db.relationship("WorkflowStep", foreign_keys=[current_step_id])
    current_task = db.relationship(
        "WorkflowTask", foreign_keys=[current_task_id], viewonly=True
    )
    tasks = db.relationship(
        "WorkflowTask",
        back_populates="instance",
        foreign_keys="WorkflowTask.workflow_instance_id",
        cascade="all, delete-orphan",
        order_by="WorkflowTask.id",
    )

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def merge_metadata(self, extra):
        """Shallow-merge ``extra`` into metadata (reassigned so the JSON column is flagged dirty)."""
        merged = dict(self.metadata_json or {})
        merged.update(extra or {})
        self.metadata_json = merged

    def to_dict(self, include_graph=False):
        d = {
            "id": self.id,
            "workflow_definition_id": self.workflow_definition_id,
            "document_id": self.document_id,
            "current_step_id": self.current_step_id,
            "current_task_id": self.current_task_id,
            "status": self.status,
            "metadata": self.metadata_json or {},
            "version": self.version,
            "completed_at": _iso(self.completed_at),
            "created_by_id": self.created_by_id,
            "updated_by_id": self.updated_by_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_graph:
            d["workflow_definition"] = self.definition.to_dict() if self.definition else None
            d["document"] = self.document.to_dict() if self.document else None
            d["current_step"] = self.current_step.to_dict() if self.current_step else None
            d["current_task"] = self.current_task.to_dict() if self.current_task else None
            d["tasks"] = [t.to_dict() for t in self.tasks]
        return d

    def __repr__(self):
        return f"<WorkflowInstance {self.id}: doc={self.document_id} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# WORKFLOW TASK
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowTask(db.Model):
    __tablename__ = "workflow_tasks"

    id = db.Column(db.Integer, primary_key=True)
    workflow_instance_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_instances.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    step_id = db.Column(
        db.Integer, db.ForeignKey("workflow_steps.id", ondelete="CASCADE"), nullable=False
    )
    assignee_role_id = db.Column(db.Integer, db.ForeignKey("roles.id", ondelete="SET NULL"), nullable=True)
    assignee_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    status = db.Column(db.String(20), nullable=False, default="pending", index=True)
    comments = db.Column(db.Text, nullable=True)
    due_date = db.Column(db.DateTime(timezone=True), nullable=True)
    metadata_json = db.Column("metadata", db.JSON, default=dict)

    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    instance = db.relationship(
        "WorkflowInstance", back_populates="tasks", foreign_keys=[workflow_instance_id]
    )
    step = db.relationship("WorkflowStep")
    assignee_role = db.relationship("Role")
    assignee = db.relationship("User", foreign_keys=[assignee_id])

    def merge_metadata(self, extra):
        merged = dict(self.metadata_json or {})
        merged.update(extra or {})
        self.metadata_json = merged

    def to_dict(self):
        return {
            "id": self.id,
            "workflow_instance_id": self.workflow_instance_id,
            "step_id": self.step_id,
            "step_name": self.step.name if self.step else None,
            "assignee_role_id": self.assignee_role_id,
            "assignee_id": self.assignee_id,
            "status": self.status,
            "comments": self.comments,
            "due_date": _iso(self.due_date),
            "metadata": self.metadata_json or {},
            "created_by_id": self.created_by_id,
            "updated_by_id": self.updated_by_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<WorkflowTask {self.id}: instance={self.workflow_instance_id} [{self.status}]>"
