"""Errors raised by provider adapters."""


class AdapterError(Exception):
    """Base class for provider adapter failures."""


class InvalidURLError(AdapterError):
    """No valid endpoint could be built for the request."""

    def __init__(self, detail: str = "invalid URL"):
        super().__init__(detail)


class InvalidResponseError(AdapterError):
    """The provider answered with something that is not a response."""

    def __init__(self, detail: str = "invalid response"):
        super().__init__(detail)


class EncodingError(AdapterError):
    """The request body could not be serialised."""


class DecodingError(AdapterError):
    """A provider payload did not have the expected shape."""

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Decoding error: {detail}")


class NetworkError(AdapterError):
    """The request failed at the transport or HTTP status level."""

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Network error: {detail}")
