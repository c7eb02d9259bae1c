"""Exceptions raised by the call orchestration core and its collaborators."""


class OrchestratorError(Exception):
    """Base class for call orchestration errors."""


class AdapterUnavailable(OrchestratorError):
    """A provider adapter is unconfigured or unreachable."""


class NotConnected(OrchestratorError):
    """A streaming adapter was used before open() completed or after close()."""


class AlreadyActive(OrchestratorError):
    """A live session already exists for the call identifier."""

    def __init__(self, call_id: str):
        super().__init__(f"Call {call_id} already has an active session")
        self.call_id = call_id


class SynthesisError(OrchestratorError):
    """Speech synthesis failed mid-stream."""


class TelephonyError(OrchestratorError):
    """The telephony provider rejected a request."""
