class BkashError(Exception):
    pass


class AuthenticationError(BkashError):
    """Token grant (and the refresh before it) failed."""


class TransportError(BkashError):
    """The call did not produce a usable answer: timeout, connection, HTTP or JSON failure.

    The gateway-side outcome is unknown when this is raised.
    """


class GatewayBusinessError(BkashError):
    def __init__(self, message, status_code="", status_message="", raw=None):
        super().__init__(message)
        self.status_code = status_code
        self.status_message = status_message
        self.raw = raw or {}
