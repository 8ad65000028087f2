"""Exception taxonomy for the analysis pipeline."""


class PersonaSimError(Exception):
    """Base class for all persona-sim errors."""


class PreconditionError(PersonaSimError):
    """A batch cannot start, e.g. no active model pool is available."""


class GatewayError(PersonaSimError):
    """A model call failed, returned non-success, or returned no content."""


class ParseError(PersonaSimError):
    """Model output could not be turned into a behavior record."""


class StoreError(PersonaSimError):
    """A durable record store read or write failed."""


class ContentNotFoundError(PersonaSimError):
    """The referenced upload does not exist (never uploaded or expired)."""


class SessionExistsError(PersonaSimError):
    """A session with this id was already started; retries need a fresh session."""
