"""Baseline provider errors."""


class BaselineNotFoundError(FileNotFoundError):
    """The baseline source does not exist yet (a first run can create it)."""


class ProtocolClientUnavailable(RuntimeError):
    """No protocol client implementation is installed."""
