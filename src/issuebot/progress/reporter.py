"""Throttled progress narration for a running change agent.

The reporter is asked to flush after every output chunk, but only posts
when the throttle interval has elapsed since the previous post (or since
it was created) and at least one stream has non-blank output. Silent
stretches reset the timer without posting, so the thread never gets empty
updates.
"""

import logging
import time
from typing import Awaitable, Callable

from src.issuebot.progress.formatting import (
    DEFAULT_SNIPPET_LENGTH,
    format_progress_update,
)

logger = logging.getLogger(__name__)

DEFAULT_THROTTLE_INTERVAL_SECONDS = 45.0

PostFunction = Callable[[str], Awaitable[object]]


class ProgressReporter:
    """Posts throttled progress updates to one issue or pull request.

    Attributes:
        number: Issue or pull request number the updates refer to.
        interval: Minimum seconds between two posts.
        snippet_length: Trailing characters shown as the recent snippet.
        last_post_time: Clock reading of the last post (or timer reset).
    """

    def __init__(
        self,
        post: PostFunction,
        number: int,
        interval: float = DEFAULT_THROTTLE_INTERVAL_SECONDS,
        snippet_length: int = DEFAULT_SNIPPET_LENGTH,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the reporter.

        Args:
            post: Coroutine function that publishes a markdown body.
            number: Issue or pull request number.
            interval: Throttle interval in seconds.
            snippet_length: Length of the recent-output snippet.
            clock: Monotonic time source, injectable for tests.
        """
        self._post = post
        self.number = number
        self.interval = interval
        self.snippet_length = snippet_length
        self._clock = clock
        self.last_post_time = clock()
        self.posts_made = 0

    async def maybe_flush(self, stdout: str, stderr: str) -> bool:
        """Post a progress update if the throttle allows it.

        The timer is updated before the post is awaited, so overlapping
        calls scheduled from concurrent chunks post at most once per
        interval.

        Args:
            stdout: Full accumulated standard output.
            stderr: Full accumulated standard error.

        Returns:
            True if an update was posted.
        """
        now = self._clock()
        if now - self.last_post_time <= self.interval:
            return False

        self.last_post_time = now

        if not stdout.strip() and not stderr.strip():
            return False

        body = format_progress_update(
            self.number, stdout, stderr, self.snippet_length
        )

        try:
            await self._post(body)
        except Exception:
            logger.exception(
                "Failed to post progress update",
                extra={"number": self.number},
            )
            return False

        self.posts_made += 1
        logger.info(
            "Posted progress update",
            extra={"number": self.number, "posts_made": self.posts_made},
        )
        return True
