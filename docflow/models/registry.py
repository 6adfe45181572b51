"""
Registry models consumed by the workflow engine.

These tables are owned by neighbouring subsystems (documents, identity,
status catalogue, configuration). The workflow engine only reads them by id
and writes a single field, ``Document.status``, inside its own transactions.

Models:
    - Status:          document lifecycle status catalogue (code + label)
    - Permission:      named capability (e.g. "manage_workflow")
    - Role:            named role holding a set of permissions
    - RolePermission:  junction table role <-> permission
    - User:            acting user, exactly one role
    - Document:        the artefact a workflow drives
    - Configuration:   typed key/value settings store
"""

import json
from datetime import datetime, timezone

from docflow.models import db


# ── Constants ────────────────────────────────────────────────────────────────

DOCUMENT_STATUSES = frozenset({
    "draft",
    "pending_review",
    "under_revision",
    "approved",
    "rejected",
    "archived",
})

CONFIGURATION_TYPES = frozenset({"string", "number", "boolean", "json"})


# ═══════════════════════════════════════════════════════════════
# 1. STATUSES
# ═══════════════════════════════════════════════════════════════
class Status(db.Model):
    __tablename__ = "statuses"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(50), unique=True, nullable=False)
    label = db.Column(db.String(100), nullable=False)
    description = db.Column(db.String(255))
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "label": self.label,
            "description": self.description,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<Status {self.code}>"


# ═══════════════════════════════════════════════════════════════
# 2. PERMISSIONS
# ═══════════════════════════════════════════════════════════════
class Permission(db.Model):
    __tablename__ = "permissions"

    id = db.Column(db.Integer, primary_key=True)
    codename = db.Column(db.String(100), unique=True, nullable=False)  # e.g. "manage_workflow"
    description = db.Column(db.Text)

    role_permissions = db.relationship("RolePermission", back_populates="permission")

    def to_dict(self):
        return {"id": self.id, "codename": self.codename, "description": self.description}


# ═══════════════════════════════════════════════════════════════
# 3. ROLES
# ═══════════════════════════════════════════════════════════════
class Role(db.Model):
    __tablename__ = "roles"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    role_permissions = db.relationship(
        "RolePermission", back_populates="role", lazy="selectin", cascade="all, delete-orphan"
    )
    users = db.relationship("User", back_populates="role", lazy="dynamic")

    @property
    def permissions(self):
        """Permissions granted to this role."""
        return [rp.permission for rp in self.role_permissions]

    def grant(self, permission):
        """Attach a permission to this role (no-op if already granted)."""
        if permission.id is not None and permission.id in {p.id for p in self.permissions}:
            return
        self.role_permissions.append(RolePermission(permission=permission))

    def to_dict(self, include_permissions=False):
        d = {"id": self.id, "name": self.name, "description": self.description}
        if include_permissions:
            d["permissions"] = [p.codename for p in self.permissions]
        return d


# ═══════════════════════════════════════════════════════════════
# 4. ROLE_PERMISSIONS (Junction table)
# ═══════════════════════════════════════════════════════════════
class RolePermission(db.Model):
    __tablename__ = "role_permissions"

    id = db.Column(db.Integer, primary_key=True)
    role_id = db.Column(db.Integer, db.ForeignKey("roles.id", ondelete="CASCADE"), nullable=False)
    permission_id = db.Column(
        db.Integer, db.ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False
    )

    __table_args__ = (
        db.UniqueConstraint("role_id", "permission_id", name="uq_role_permission"),
    )

    role = db.relationship("Role", back_populates="role_permissions")
    permission = db.relationship("Permission", back_populates="role_permissions", lazy="joined")


# ═══════════════════════════════════════════════════════════════
# 5. USERS
# ═══════════════════════════════════════════════════════════════
class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), unique=True, nullable=False)
    full_name = db.Column(db.String(200))
    status = db.Column(db.String(20), default="active")  # active, inactive
    role_id = db.Column(db.Integer, db.ForeignKey("roles.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    role = db.relationship("Role", back_populates="users", lazy="joined")

    @property
    def role_name(self):
        return self.role.name if self.role else None

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "status": self.status,
            "role": self.role.to_dict() if self.role else None,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.email}>"


# ═══════════════════════════════════════════════════════════════
# 6. DOCUMENTS
# ═══════════════════════════════════════════════════════════════
class Document(db.Model):
    """
    Managed document.

    ``status`` holds one of DOCUMENT_STATUSES in a healthy configuration, but
    the workflow engine assigns whatever code the current step's Status
    carries, so the column is a plain string.
    """

    __tablename__ = "documents"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    doc_type = db.Column(db.String(50), default="generic")
    status = db.Column(db.String(50), nullable=False, default="draft")
    metadata_json = db.Column("metadata", db.JSON, default=dict)
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    created_by = db.relationship("User", foreign_keys=[created_by_id])

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "type": self.doc_type,
            "status": self.status,
            "metadata": self.metadata_json or {},
            "created_by_id": self.created_by_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Document {self.id}: {self.title[:40]} [{self.status}]>"


# ═══════════════════════════════════════════════════════════════
# 7. CONFIGURATIONS
# ═══════════════════════════════════════════════════════════════
class Configuration(db.Model):
    """Typed key/value setting. ``value`` is stored as text and cast on read."""

    __tablename__ = "configurations"

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(100), unique=True, nullable=False)
    value = db.Column(db.Text, nullable=True)
    value_type = db.Column(db.String(20), nullable=False, default="string")
    description = db.Column(db.String(255))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def get_value(self):
        """Return ``value`` cast according to ``value_type``."""
        raw = self.value
        if raw is None:
            return None
        if self.value_type == "boolean":
            return str(raw).strip().lower() in ("1", "true", "yes", "on")
        if self.value_type == "number":
            num = float(raw)
            return int(num) if num.is_integer() else num
        if self.value_type == "json":
            return json.loads(raw)
        return raw

    def to_dict(self):
        return {
            "id": self.id,
            "key": self.key,
            "value": self.get_value(),
            "value_type": self.value_type,
            "description": self.description,
        }
