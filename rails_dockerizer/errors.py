"""Exception types raised by rails-dockerizer."""


class RailsDockerizerError(Exception):
    """Base class for errors that stop generation."""


class ScanError(RailsDockerizerError):
    """The project tree itself could not be read."""


class LockfileParseError(RailsDockerizerError):
    """Gemfile.lock content could not be understood."""
