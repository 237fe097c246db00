"""
Exceptions thrown by barflow that are specific to this package only
"""


class BarflowError(Exception):
    """Base class for every error raised by barflow"""
    pass

class ConfigurationError(BarflowError, ValueError):
    """Raised when a configuration value is outside its accepted domain"""
    pass

class InvalidPeriod(ConfigurationError):
    """Raised when a look-back period string such as '60d' cannot be parsed"""
    pass

class SignalError(BarflowError, ValueError):
    """Raised when a signal callable returns a malformed trade setup"""
    pass
