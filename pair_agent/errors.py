"""
Error taxonomy - exceptions raised across the conversation core
"""

from __future__ import annotations


class PairAgentError(Exception):
    """Base class for all pair-agent errors"""


class ConversationError(PairAgentError):
    """A turn could not be started; always shown to the user"""


class InvalidIntentError(ConversationError):
    """Empty or unparseable input"""


class ProcessingError(ConversationError):
    """Context assembly failed and the turn was aborted"""

    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.cause = cause


class TurnInProgressError(ConversationError):
    """A new turn was requested while the previous one is still streaming"""


class ProviderError(PairAgentError):
    """Model provider failure at the stream level"""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        transient: bool = False,
        retry_after: float | None = None,
    ):
        super().__init__(message)
        self.status = status
        self.transient = transient
        self.retry_after = retry_after

    @classmethod
    def from_status(cls, status: int, body: str, provider: str = "API") -> "ProviderError":
        """Classify an HTTP failure: 5xx and 429 are transient, the rest are not"""
        transient = status >= 500 or status == 429
        return cls(f"{provider} API error ({status}): {body[:500]}", status=status, transient=transient)


class FileSystemError(PairAgentError):
    """A filesystem collaborator operation failed"""

    def __init__(self, path: str, message: str):
        super().__init__(f"{path}: {message}")
        self.path = path


class NoPendingConfirmationError(PairAgentError):
    """apply/discard was requested with no batch awaiting confirmation"""
