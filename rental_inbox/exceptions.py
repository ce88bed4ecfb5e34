class InboxError(Exception):
    """Base class for inbox aggregation errors."""


class SourceQueryError(InboxError):
    """A conversation source failed badly enough to surface to the caller."""

    def __init__(self, source: str, cause: BaseException) -> None:
        super().__init__(f"Conversation source '{source}' failed: {cause}")
        self.source = source
        self.cause = cause


class InboxUnavailableError(InboxError):
    """Both legacy conversation queries failed for a one-shot inbox read."""
