class SpendGuardError(ValueError):
    """Base class for errors surfaced by single-entity operations."""


class NotFound(SpendGuardError):
    def __init__(self, resource: str, identifier: object = None) -> None:
        self.resource = resource
        self.identifier = identifier
        if identifier is None:
            super().__init__(f"{resource} not found")
        else:
            super().__init__(f"{resource} {identifier} not found")


class InvalidState(SpendGuardError):
    pass


class ValidationFailure(SpendGuardError):
    pass
