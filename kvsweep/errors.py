"""
Error types raised by the maintenance engine.

TransientIOError aborts an invocation without touching the checkpoint,
ParseError is recovered per record, ConfigurationError only ever skips an
archive flush.
"""


class MaintenanceError(Exception):
    """Base class for maintenance errors."""
    pass


class TransientIOError(MaintenanceError):
    """A store or sink call failed; the same unit of work is retried next run."""
    pass


class ParseError(MaintenanceError):
    """A stored value could not be decoded."""
    pass


class ConfigurationError(MaintenanceError):
    """The archive sink cannot be used with the current configuration."""
    pass
