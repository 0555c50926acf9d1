"""Errors raised by the service layer. The API maps each one to a status code."""


class TrackerError(Exception):
    """Base class. `message` is safe to show to the user."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class ValidationError(TrackerError):
    """Bad or missing input. Raised before anything is written."""


class NotFound(TrackerError):
    """A referenced entity does not exist. Raised before anything is written."""


class ExtractionFailed(TrackerError):
    """The identity-document extraction call failed, timed out or returned garbage."""


class StorageError(TrackerError):
    """
    Uploaded bytes or a record could not be persisted.

    Writes committed earlier in the same workflow are not rolled back.
    """
