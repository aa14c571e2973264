"""Error taxonomy for the compliance engine."""


class ComplianceError(Exception):
    """Base class for all compliance engine errors."""


class ConfigError(ValueError):
    """Configuration could not be loaded or validated."""


class DecodeError(ComplianceError):
    """A remote write payload could not be decompressed or parsed."""


class AssertionFailure(ComplianceError, AssertionError):
    """An expectation about the received samples was not met."""


class ProtocolInvariantViolation(AssertionFailure):
    """A well-formed payload carried labels that break the remote write rules."""


class TargetError(ComplianceError):
    """The sender under test could not be run to completion."""
