"""Exceptions raised by a segmentation run.

The engine never retries. ``retryable`` tells the caller whether re-running the
same session later can succeed; a run that raises has written nothing.
"""


class SegmentationError(Exception):
    retryable = False


class SessionNotFoundError(SegmentationError):
    """The work session does not exist (or was deleted mid-run)."""

    retryable = True

    def __init__(self, session_id: int):
        super().__init__(f"Work session not found: {session_id}")
        self.session_id = session_id


class FixSourceUnavailableError(SegmentationError):
    """The fix store could not be read."""

    retryable = True


class FixOrderError(SegmentationError):
    """Fixes reached the tracker out of chronological order."""

    def __init__(self, previous_at, captured_at, fix_id=None):
        super().__init__(
            f"Fix {fix_id} captured at {captured_at.isoformat()} "
            f"arrived after a fix captured at {previous_at.isoformat()}"
        )
        self.previous_at = previous_at
        self.captured_at = captured_at
        self.fix_id = fix_id
