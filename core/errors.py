"""Custom exceptions for the pattern recognition engines"""


class PatternRecognitionError(Exception):
    """Base exception for pattern recognition errors"""
    pass


class InvalidTransactionError(PatternRecognitionError):
    """A transaction violates the caller contract (negative or non-finite
    amount, unknown type/status, unparseable date)"""
    pass


class ConfigurationError(PatternRecognitionError):
    """Configuration loading errors"""
    pass
