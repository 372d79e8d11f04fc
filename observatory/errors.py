"""Error types shared across the observatory."""


class ObservatoryError(Exception):
    """Base class for all observatory errors."""


class ConfigError(ObservatoryError):
    """Configuration is missing, malformed or contains unknown fields."""


class RpcError(ObservatoryError):
    """An RPC request failed (network, HTTP status or decode error)."""

    def __init__(self, url: str, message: str):
        super().__init__(f"{url}: {message}")
        self.url = url


class RpcResponseError(RpcError):
    """The node answered with a JSON-RPC error object.

    CometBFT nodes return these for heights that have not been produced yet,
    which is the expected outcome of polling slightly ahead of the chain.
    """

    def __init__(self, url: str, code: int, message: str, data: str = ""):
        detail = f"{message} ({data})" if data else message
        super().__init__(url, f"RPC error {code}: {detail}")
        self.code = code
        self.data = data


class ChainIdMismatch(ObservatoryError):
    """A node reported a chain ID other than the one it was configured for."""

    def __init__(self, expected: str, actual: str):
        super().__init__(f"unexpected chain ID '{actual}'! (expecting {expected})")
        self.expected = expected
        self.actual = actual


class PagerUnavailable(ObservatoryError):
    """The pager service could not accept or answer a request."""
