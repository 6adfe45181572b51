"""
Workflow rule checks.

Pure predicates: nothing here writes to the database. Every rule is
evaluated so that a caller gets the full list of violations in one round
trip; ``ValidationResult.raise_if_invalid`` turns them into a single
``ValidationError`` whose message joins the violations with ", ".
"""

from dataclasses import dataclass, field

from docflow.core.exceptions import ValidationError
from docflow.models.workflow import WorkflowDefinition
from docflow.services.permission import can_manage_workflows, user_holds_role

MSG_NOT_ACTIVE = "Only active workflows can transition"
MSG_INVALID_FOR_STEP = "Invalid transition for current step"
MSG_FOREIGN_TRANSITION = "Transition does not belong to this workflow"
MSG_TRANSITION_INACTIVE = "Transition is not active"
MSG_MISSING_ROLE = "Missing required role for this transition"
MSG_COMMENT_REQUIRED = "A comment is required for this transition"

MSG_CODE_TAKEN = "Workflow code must be unique"
MSG_NO_STEPS = "Workflow must have at least one step"
MSG_NO_TRANSITIONS = "Workflow must have at least one transition"
MSG_NO_PERMISSION = "User does not have permission to manage workflows"


@dataclass
class ValidationResult:
    is_valid: bool = True
    errors: list[str] = field(default_factory=list)

    def add(self, message):
        self.errors.append(message)
        self.is_valid = False

    def raise_if_invalid(self):
        if not self.is_valid:
            raise ValidationError.from_errors(self.errors)


def _condition_errors(conditions, instance):
    """Evaluate the transition's condition bag. Unknown keys are ignored."""
    errors = []
    if not conditions:
        return errors

    metadata = instance.metadata_json or {}
    required = conditions.get("requiredMetadata") or []
    missing = [name for name in required if not metadata.get(name)]
    if missing:
        errors.append(f"Missing required metadata: {', '.join(missing)}")

    if "documentStatus" in conditions:
        expected = conditions["documentStatus"]
        actual = instance.document.status if instance.document else None
        if actual != expected:
            errors.append(f"Document status must be '{expected}'")
    return errors


def validate_workflow_transition(instance, transition, user, comment=None):
    """Check whether ``user`` may fire ``transition`` on ``instance`` now."""
    result = ValidationResult()

    if not instance.is_active:
        result.add(MSG_NOT_ACTIVE)

    if not transition.origin.matches(instance.current_step_id):
        result.add(MSG_INVALID_FOR_STEP)

    if transition.workflow_definition_id != instance.workflow_definition_id:
        result.add(MSG_FOREIGN_TRANSITION)

    if not transition.is_active:
        result.add(MSG_TRANSITION_INACTIVE)

    if transition.required_role_id is not None and not user_holds_role(user, transition.required_role_id):
        result.add(MSG_MISSING_ROLE)

    if transition.requires_comment and not (comment or "").strip():
        result.add(MSG_COMMENT_REQUIRED)

    for message in _condition_errors(transition.conditions, instance):
        result.add(message)

    return result


def validate_workflow_definition(data, user, exclude_id=None):
    """Check a definition payload (``code``, ``steps``, ``transitions``)."""
    result = ValidationResult()

    code = (data.get("code") or "").strip()
    if code:
        q = WorkflowDefinition.query.filter(WorkflowDefinition.code == code)
        if exclude_id is not None:
            q = q.filter(WorkflowDefinition.id != exclude_id)
        if q.first() is not None:
            result.add(MSG_CODE_TAKEN)

    if not data.get("steps"):
        result.add(MSG_NO_STEPS)

    if not data.get("transitions"):
        result.add(MSG_NO_TRANSITIONS)

    if not can_manage_workflows(user):
        result.add(MSG_NO_PERMISSION)

    return result
