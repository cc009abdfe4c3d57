"""Exception types shared across the research engine."""

from __future__ import annotations


class RelevxError(Exception):
    """Base class for research engine errors."""


class MalformedResponseError(RelevxError):
    """An LLM response could not be parsed into the expected schema."""

    def __init__(self, task: str, message: str, raw: str = ""):
        super().__init__(f"{task}: {message}")
        self.task = task
        self.raw = raw[:500]


class SearchRateLimitError(RelevxError):
    """The search provider rejected a request for exceeding its rate limit."""


class ProjectNotFoundError(RelevxError):
    """No project exists for the given (user_id, project_id)."""

    def __init__(self, user_id: str, project_id: str):
        super().__init__(f"Project {project_id} not found for user {user_id}")
        self.user_id = user_id
        self.project_id = project_id
