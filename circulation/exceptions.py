from fastapi import status


class LibraryError(Exception):
    """
    Base class for errors the API reports back to the caller.

    Each subclass carries the HTTP status it maps to, so endpoints can let
    these propagate and a single exception handler renders them.
    """

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(LibraryError):
    status_code = status.HTTP_404_NOT_FOUND


class PolicyNotConfiguredError(LibraryError):
    """Raised when an operation needs the policy row and none exists yet."""

    status_code = status.HTTP_409_CONFLICT

    def __init__(self, message: str = "Library policy is not configured. Create the variables first."):
        super().__init__(message)


class PolicyAlreadyExistsError(LibraryError):
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, message: str = "Variables are already created. You can only update them now."):
        super().__init__(message)


class NothingToProcessError(LibraryError):
    """Return or renew matched no active loans for the member."""


class ReturnAbortedError(LibraryError):
    """A return batch was rolled back because one of its updates matched no rows."""

    status_code = status.HTTP_409_CONFLICT


class InventoryError(LibraryError):
    pass
