"""Exceptions raised by depfuzz. The CLI maps each one to an exit code."""


class DepfuzzError(Exception):
    """Base class for every fatal depfuzz condition."""


class InvalidMode(DepfuzzError):
    """The requested mode is not one of minimal, all, random."""


class TargetUnreadable(DepfuzzError):
    """The target script does not exist or cannot be read."""


class ReportChannelError(DepfuzzError):
    """The private report channel (or a decision pipe) could not be set up."""


class BashNotFound(DepfuzzError):
    """No bash executable to run the instrumented target with."""
