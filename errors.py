class RegistrationError(Exception):
    """Base class for every error raised by the registration flow."""


class UnrecoverableError(RegistrationError):
    """Fatal for one task: bad credentials, ineligible term, unknown CRN, protocol mismatch."""


class TaskCancelled(RegistrationError):
    def __init__(self, message="The task was manually cancelled."):
        super().__init__(message)


class ConfigError(RegistrationError):
    """A configuration file was rejected before its task could start."""


class PortalRequestError(RegistrationError):
    """Recoverable portal failure (HTTP error, network error, unexpected response shape)."""

    # The portal reboots around 2:05/3:05 AM and answers 502/504 while it does
    TRANSIENT_STATUS_CODES = (502, 504)

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_transient(self):
        return self.status_code in self.TRANSIENT_STATUS_CODES
