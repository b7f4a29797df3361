"""
Exception Definitions - Custom exceptions for rulebot
=====================================================

This module defines all custom exceptions used throughout the application,
providing clear error handling and meaningful error messages.
"""

from typing import Optional


class RulebotError(Exception):
    """
    Base exception for all rulebot errors.

    All custom exceptions in this application inherit from this base class,
    allowing for easy catching of all application-specific errors.

    Attributes:
        message (str): Human-readable error description
        details (dict): Additional error details for debugging
    """

    def __init__(self, message: str, details: dict = None):
        """
        Initialize the exception.

        Args:
            message: Human-readable error description
            details: Optional dictionary with additional error context
        """
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        """Return formatted error message with details if present."""
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigError(RulebotError):
    """
    Configuration-related errors.

    Raised when there are issues with:
    - Missing configuration files
    - Invalid configuration values
    - Environment variable issues
    - Configuration parsing errors
    """
    pass


class RuleError(RulebotError):
    """
    Rule declaration errors.

    Raised synchronously to the registering caller when:
    - A registration call carries no rule
    - A wait rule name is registered twice
    - A rule spec, pattern or regex cannot be normalized
    - A wait target is neither a rule nor a rule name
    """
    pass


class StoreError(RulebotError):
    """
    Session store errors.

    Raised by store backends for genuine I/O failures. A missing
    session is never an error.
    """
    pass


class DispatchError(RulebotError):
    """
    Turn-level condition carrying a status code.

    The dispatcher maps ``code`` to a human readable reply through the
    configured code replies.

    Attributes:
        code: Status code (usually an int such as 404)
    """

    default_code = 500

    def __init__(self, message: str = "", code=None, details: dict = None):
        """
        Initialize with a status code.

        Args:
            message: Human-readable error description
            code: Status code, defaults to the class default
            details: Optional dictionary with additional error context
        """
        self.code = self.default_code if code is None else code
        super().__init__(message or f"dispatch error {self.code}", details)


class NotFoundError(DispatchError):
    """No rule produced a reply for the message."""
    default_code = 404


class NoReplyError(DispatchError):
    """A handler ended the turn without producing a reply."""
    default_code = 500


class HandlerError(DispatchError):
    """
    A rule handler raised or reported an error.

    Attributes:
        rule_name (str): Name of the failing rule
        original (Exception): The exception raised by the handler
    """

    def __init__(self, rule_name: str, original: Optional[BaseException] = None):
        """
        Wrap a handler failure.

        Args:
            rule_name: Name of the rule whose handler failed
            original: Exception raised by the handler
        """
        self.rule_name = rule_name
        self.original = original
        code = getattr(original, "code", None)
        if not isinstance(code, int) or isinstance(code, bool):
            code = self.default_code
        super().__init__(
            f"handler of rule [{rule_name}] failed: {original}",
            code=code,
        )
