"""
Error taxonomy for the billing server.

Services raise these; the HTTP layer maps them to status codes and a short
message. StorageError is raised by storage backends only and is translated
by the services into InternalError or a logged degradation.
"""


class BillingError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(BillingError):
    status_code = 404


class InvalidRequestError(BillingError):
    status_code = 400


class ConflictError(InvalidRequestError):
    status_code = 409


class InternalError(BillingError):
    status_code = 500


class StorageError(Exception):
    """A storage backend could not complete a read or write."""
