"""Error taxonomy shared by the webhook service and the protocol proxy."""


class CallBridgeError(Exception):
    """Base exception for callbridge errors."""

    pass


class InvalidArgument(CallBridgeError):
    """A synthetic tool was called without its required fields."""

    pass


class DownstreamUnavailable(CallBridgeError):
    """The subordinate tool provider or the internal query endpoint failed."""

    pass


class NotFound(CallBridgeError):
    """No result has been observed for the call yet.

    This is a soft condition: callers should poll again later.
    """

    def __init__(self, call_control_id: str) -> None:
        super().__init__(f"No result recorded for call {call_control_id}")
        self.call_control_id = call_control_id


class CallControlError(CallBridgeError):
    """Raised when a Telnyx call-control request fails."""

    def __init__(self, action: str, status_code: int | None, detail: str = "") -> None:
        status = status_code if status_code is not None else "no response"
        super().__init__(f"Telnyx {action} failed: {status} - {detail}")
        self.action = action
        self.status_code = status_code
        self.detail = detail


class SynthesisFailed(CallBridgeError):
    """Raised when any stage of speaking text on a call fails."""

    def __init__(self, stage: str, status_code: int | None = None, detail: str = "") -> None:
        status = f" ({status_code})" if status_code is not None else ""
        super().__init__(f"Synthesis failed at {stage}{status}: {detail}")
        self.stage = stage
        self.status_code = status_code
        self.detail = detail
