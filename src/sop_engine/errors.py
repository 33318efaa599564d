from typing import Iterable, Optional


class SOPEngineError(Exception):
    """Base class for recoverable engine errors reported to the caller."""


class ProcedureNotFound(SOPEngineError):
    """Raised when a procedure id (or a pinned version of it) is not in the store."""

    def __init__(self, procedure_id: str, version: Optional[int] = None):
        self.procedure_id = procedure_id
        self.version = version
        suffix = f" (version {version})" if version is not None else ""
        super().__init__(f"Procedure {procedure_id}{suffix} not found")


class CompletionNotFound(SOPEngineError):
    """Raised when a completion id is not in the store."""

    def __init__(self, completion_id: str):
        self.completion_id = completion_id
        super().__init__(f"Completion {completion_id} not found")


class TemplateNotFound(SOPEngineError):
    """Raised when a template id is not in the store."""

    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__(f"Template {template_id} not found")


class CompositionCycle(SOPEngineError):
    """Raised when the embedding graph between procedures is not acyclic."""

    def __init__(self, cycle: Iterable[str]):
        self.cycle = list(cycle)
        super().__init__("Procedure embedding cycle: " + " -> ".join(self.cycle))


class DependencyCycle(SOPEngineError):
    """Raised when step dependencies within one procedure level form a cycle."""

    def __init__(self, procedure_id: str, step_ids: Iterable[str]):
        self.procedure_id = procedure_id
        self.step_ids = sorted(step_ids)
        super().__init__(
            f"Dependency cycle in procedure {procedure_id} among steps {self.step_ids}"
        )


class EmbeddingNotAllowed(SOPEngineError):
    """Raised when a step embeds a procedure that does not allow embedding."""

    def __init__(self, procedure_id: str, embedded_id: str):
        self.procedure_id = procedure_id
        self.embedded_id = embedded_id
        super().__init__(
            f"Procedure {embedded_id} cannot be embedded in procedure {procedure_id}"
        )


class UnknownStep(SOPEngineError):
    """Raised when an operation names a step absent from the resolved flattening."""

    def __init__(self, completion_id: str, step_id: str):
        self.completion_id = completion_id
        self.step_id = step_id
        super().__init__(f"Step {step_id} is not part of completion {completion_id}")


class UnknownListItem(SOPEngineError):
    """Raised when a checklist item id is not part of the pinned list step."""

    def __init__(self, completion_id: str, step_id: str, item_id: str):
        self.completion_id = completion_id
        self.step_id = step_id
        self.item_id = item_id
        super().__init__(
            f"List item {item_id} is not part of step {step_id} in completion {completion_id}"
        )


class InvalidTransition(SOPEngineError):
    """Raised when an event is not allowed from the completion's current status."""

    def __init__(self, completion_id: str, status: str, event: str, reason: str = ""):
        self.completion_id = completion_id
        self.status = status
        self.event = event
        msg = f"Cannot {event} completion {completion_id} while {status}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class ConfirmationRequired(InvalidTransition):
    """Raised when finishing a procedure that needs an explicit human confirmer."""

    def __init__(self, completion_id: str, status: str):
        super().__init__(
            completion_id,
            status,
            "finish",
            reason="procedure requires confirmation by a member",
        )


class StaleVersion(SOPEngineError):
    """Raised when an operation targets a procedure version other than the pinned one."""

    def __init__(self, completion_id: str, pinned: int, requested: int):
        self.completion_id = completion_id
        self.pinned = pinned
        self.requested = requested
        super().__init__(
            f"Completion {completion_id} is pinned to procedure version {pinned}, "
            f"got version {requested}"
        )


class ProcedureNotSchedulable(SOPEngineError):
    """Raised when scheduling an archived or non-recurring procedure."""

    def __init__(self, procedure_id: str, reason: str):
        self.procedure_id = procedure_id
        self.reason = reason
        super().__init__(f"Procedure {procedure_id} cannot be scheduled: {reason}")


class DuplicateOccurrence(SOPEngineError):
    """Raised when a (procedure, date, assignee) slot already holds an occurrence."""

    def __init__(self, procedure_id: str, scheduled_date: str, assigned_to: Optional[str]):
        self.procedure_id = procedure_id
        self.scheduled_date = scheduled_date
        self.assigned_to = assigned_to
        super().__init__(
            f"Procedure {procedure_id} already has an occurrence on {scheduled_date} "
            f"for {assigned_to or 'unassigned'}"
        )


class ProcedureInUse(SOPEngineError):
    """Raised when deleting a procedure that completions still reference."""

    def __init__(self, procedure_id: str, completions: int):
        self.procedure_id = procedure_id
        self.completions = completions
        super().__init__(
            f"Procedure {procedure_id} has {completions} completion(s); archive it instead"
        )


class InvalidRating(SOPEngineError, ValueError):
    """Raised when a completion rating is outside 1-5."""

    def __init__(self, rating):
        self.rating = rating
        super().__init__(f"Rating must be between 1 and 5, got {rating}")


# Mapping of engine exceptions to HTTP status codes
ERROR_STATUS_CODES = {
    ProcedureNotFound: 404,
    CompletionNotFound: 404,
    TemplateNotFound: 404,
    CompositionCycle: 409,
    DependencyCycle: 409,
    EmbeddingNotAllowed: 409,
    InvalidTransition: 409,
    ConfirmationRequired: 409,
    StaleVersion: 409,
    ProcedureNotSchedulable: 409,
    DuplicateOccurrence: 409,
    ProcedureInUse: 409,
    UnknownStep: 422,
    UnknownListItem: 422,
    InvalidRating: 422,
}


def status_code_for(exc: SOPEngineError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return 400
