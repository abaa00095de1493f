"""Custom exceptions for Inbox Reports."""


class InboxReportsError(Exception):
    """Base exception for all Inbox Reports errors."""


class ConfigurationError(InboxReportsError):
    """Settings are missing or unusable for the requested operation."""


class InvalidInputError(InboxReportsError):
    """A caller passed arguments that violate an operation's contract."""


class TaskNotFoundError(InboxReportsError):
    """No task record exists for the given task ID."""


class InvalidTransitionError(InboxReportsError):
    """A task status change is not allowed by the task state machine."""


class ExternalCallError(InboxReportsError):
    """An email source, language model, or persistence call failed."""


class ExternalCallTimeoutError(ExternalCallError):
    """An external call did not finish before its deadline."""


class AuthenticationError(ExternalCallError):
    """Failed to authenticate with an external service."""


class RateLimitError(ExternalCallError):
    """An external API rate limit was exceeded."""


class ParseError(InboxReportsError):
    """Failed to parse email MIME content."""


class ConversionError(InboxReportsError):
    """Failed to convert email content to plain text."""
