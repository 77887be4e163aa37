"""Error taxonomy for the security gate."""


class SecGateError(Exception):
    """Base class for all gate errors."""


class MalformedInputError(SecGateError):
    """A raw scanner record cannot be mapped to a Finding."""


class InvalidPolicyError(SecGateError):
    """A policy references an unknown severity or carries a malformed ignore rule."""


class BaselineUnavailableError(SecGateError):
    """The baseline persistence layer cannot be reached or holds a corrupt document."""
