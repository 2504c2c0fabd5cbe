"""
Error taxonomy for crawl and analysis operations.

Transient fetch failures never surface here: they are recorded on the page
row by the orchestrator. These exceptions signal misuse (unknown session,
analysis before the crawl finished) or structural problems the caller must
handle.
"""

from uuid import UUID


class CrawlGraphError(Exception):
    """Base class for all crawlgraph errors."""


class SessionNotFoundError(CrawlGraphError):
    def __init__(self, session_id: UUID):
        self.session_id = session_id
        super().__init__(f"Crawl session {session_id} not found")


class CrawlNotFinishedError(CrawlGraphError):
    def __init__(self, session_id: UUID, status: str):
        self.session_id = session_id
        self.status = status
        super().__init__(
            f"Crawl session {session_id} is {status}; analysis requires a completed or failed crawl"
        )


class CrossSessionLinkError(CrawlGraphError):
    """An edge would connect pages belonging to different crawl sessions."""


class SessionStatusConflictError(CrawlGraphError):
    """A guarded session write found the session in a status it does not expect."""

    def __init__(self, session_id: UUID, actual: str, expected: list[str]):
        self.session_id = session_id
        self.actual = actual
        self.expected = expected
        super().__init__(
            f"Crawl session {session_id} is {actual}; expected {' or '.join(expected)}"
        )
