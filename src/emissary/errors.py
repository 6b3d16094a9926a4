"""Custom error types for emissary."""


class EmissaryError(Exception):
    """Base class for all emissary errors."""


class ExposureValidationError(EmissaryError):
    """Raised when an entity offered for exposure is not a function, class, or object."""


class EmissaryProtocolError(EmissaryError):
    """Raised for malformed envelopes, unknown actions, and closed channels."""


class StaleReferenceError(EmissaryError):
    """Raised for any operation against a destroyed slot or a released stand-in."""


class TeardownTimeoutError(EmissaryError, TimeoutError):
    """Raised for invocations still in flight when the teardown deadline elapses."""


class RemoteExecutionError(EmissaryError):
    """Raised when the worker reports an exception while serving a request."""

    remote_kind: str
    remote_message: str
    remote_traceback: str

    def __init__(
        self,
        remote_kind: str,
        remote_message: str,
        remote_traceback: str,
    ) -> None:
        """Initialize a remote exception wrapper.

        :param remote_kind: Original remote exception class name.
        :param remote_message: Original remote exception message.
        :param remote_traceback: Original remote traceback text.
        """
        self.remote_kind = remote_kind
        self.remote_message = remote_message
        self.remote_traceback = remote_traceback
        formatted: str = (
            f"Remote side raised {remote_kind}: {remote_message}\n"
            + f"Remote traceback:\n{remote_traceback}"
        )
        super().__init__(formatted)

    @property
    def kind(self) -> str:
        """Return the remote exception class name.

        :returns: Remote exception kind.
        """
        return self.remote_kind

    @property
    def message(self) -> str:
        """Return the remote exception message.

        :returns: Remote exception message.
        """
        return self.remote_message
