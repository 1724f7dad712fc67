class TrainingLogError(ValueError):
    """Base class for failures raised by the training log core."""

    code = "error"


class NotFoundError(TrainingLogError):
    """Raised when an entity id is not present in the store."""

    code = "not_found"

    def __init__(self, kind: str, entity_id: str) -> None:
        super().__init__(f"{kind} not found")
        self.kind = kind
        self.entity_id = entity_id


class ReferentialIntegrityError(TrainingLogError):
    """Raised when a delete or update is blocked by a live reference."""

    code = "referential_integrity"


class InvalidInputError(TrainingLogError):
    """Raised for malformed input such as negative reps or a blank name."""

    code = "validation"


class CorruptionError(TrainingLogError):
    """Raised when the durable document is unreadable or unsupported."""

    code = "corruption"


class AlreadyActiveError(TrainingLogError):
    """Raised when a session is started while another one occupies the slot."""

    code = "already_active"

    def __init__(self, session_id: str) -> None:
        super().__init__("a session is already in progress")
        self.session_id = session_id


class PersistenceError(TrainingLogError):
    """Raised when the state document could not be written."""

    code = "persistence_failure"
