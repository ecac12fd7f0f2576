"""LifeSign error taxonomy."""


class LifeSignError(Exception):
    """Base class for domain errors."""


class CodeNotFound(LifeSignError):
    """Connection code is expired or was never issued."""

    def __init__(self, code: str):
        super().__init__(f"Connection code not found: {code}")
        self.code = code


class CodeSpaceExhausted(LifeSignError):
    """No free connection code could be reserved."""


class ApprovalAlreadyDecided(LifeSignError):
    """A pairing decision was already recorded for this code.

    Callers of the pairing service never see this raised; a repeated decision
    is reported as an unchanged result instead.
    """


class FamilyNotFound(LifeSignError):
    def __init__(self, family_id: str):
        super().__init__(f"Family not found: {family_id}")
        self.family_id = family_id


class PersistenceUnavailable(LifeSignError):
    """The document store could not be reached. Usually transient."""


class NotificationDeliveryFailed(LifeSignError):
    """A single push send failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
