"""Exception hierarchy shared by the session engine and its collaborators."""

from __future__ import annotations


class ExaminerError(Exception):
    """Base class for every error raised by the examiner package."""


class BankLoadError(ExaminerError):
    """The question bank or test-type catalogue could not be loaded."""


class StoreError(ExaminerError):
    """A read or write against the session store failed."""


class StoreLoadError(StoreError):
    """The store's backing file is unreadable or malformed at startup."""


class SessionError(ExaminerError):
    """A candidate action was rejected; session state is left untouched."""


class NoActiveSession(SessionError):
    pass


class StaleAnswer(SessionError):
    pass


class InvalidOption(SessionError):
    pass


class NotAssigned(SessionError):
    pass


class SessionAlreadyActive(SessionError):
    pass


class UnknownCategory(SessionError):
    pass


class MessagingError(ExaminerError):
    """Delivering, editing or deleting a message failed."""


class MessageNotModified(MessagingError):
    """An edit carried the same text as the message already shows."""


class MessageNotFound(MessagingError):
    pass
