"""
Post-commit side effects collected during a request
"""
import logging
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from subsidy_crm.services.audit import log_audit
from subsidy_crm.services.notifier import broadcast_event

logger = logging.getLogger(__name__)


class PostCommitHooks:
    """
    Queue of audit and broadcast calls run after the main transaction commits.

    A failing hook is logged and skipped; it never turns a successful write
    into an error response.
    """

    def __init__(self, request: Optional[Request] = None):
        self.request = request
        self._hooks: List[Tuple[Callable[..., Awaitable[Any]], dict]] = []

    def __len__(self) -> int:
        return len(self._hooks)

    def audit(self, action: str, entity_type: str, entity_id, actor_id: Optional[int] = None, **kwargs) -> None:
        self._hooks.append((log_audit, dict(
            action=action, entity_type=entity_type, entity_id=entity_id,
            actor_id=actor_id, request=self.request, **kwargs,
        )))

    def broadcast(self, type: str, title: str, message: str, **kwargs) -> None:
        self._hooks.append((broadcast_event, dict(type=type, title=title, message=message, **kwargs)))

    async def run(self, db: AsyncSession) -> None:
        hooks, self._hooks = self._hooks, []
        for func, kwargs in hooks:
            try:
                await func(db, **kwargs)
            except Exception as e:
                await db.rollback()
                logger.error(f"Post-commit hook {func.__name__} failed: {e}")


def get_post_commit_hooks(request: Request) -> PostCommitHooks:
    """FastAPI dependency: one hook queue per request"""
    return PostCommitHooks(request)
