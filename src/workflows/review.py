"""
Review Workflow - human decisions as a state machine over Content.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from core.entities import (
    Content,
    ContentReview,
    ContentStatus,
    ContentTag,
    ReviewAction,
    Source,
    SourceStatus,
    UserActivity,
    utcnow,
)
from core.errors import ContentNotFound, ContentNotReady, InvalidTransition, SourceNotFound
from services.config import PipelineTunables, load_tunables
from services.store import Store

logger = logging.getLogger(__name__)

NOT_READY = (ContentStatus.RAW, ContentStatus.PROCESSING)
# REVIEWED is reviewed-but-unpublished and accepts the same decisions as PROCESSED
PENDING_REVIEW = (ContentStatus.PROCESSED, ContentStatus.REVIEWED)
MODERATABLE = (ContentStatus.PROCESSED, ContentStatus.REVIEWED, ContentStatus.PUBLISHED)
RETIRABLE = (ContentStatus.RAW, ContentStatus.PROCESSING, ContentStatus.PROCESSED, ContentStatus.REVIEWED)

EDITABLE_FIELDS = ("title", "description", "content", "tags", "category", "image_url")

ALLOWED_FROM = {
    ReviewAction.APPROVE: PENDING_REVIEW,
    ReviewAction.REJECT: PENDING_REVIEW,
    ReviewAction.EDIT: PENDING_REVIEW,
    ReviewAction.FLAG: MODERATABLE,
    ReviewAction.PRIORITY_BOOST: MODERATABLE,
    ReviewAction.PRIORITY_LOWER: MODERATABLE,
}


class ReviewWorkflow:
    """
    Applies review actions. Each accepted action writes the content change,
    one ContentReview row and one UserActivity row in a single transaction;
    a rejected action writes nothing.
    """

    def __init__(
        self,
        store: Store,
        tunables: Optional[PipelineTunables] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.base_tunables = tunables or PipelineTunables()
        self.clock = clock

    async def apply(
        self,
        content_id: str,
        user_id: str,
        action: ReviewAction | str,
        comment: Optional[str] = None,
        edits: Optional[Dict[str, Any]] = None,
    ) -> Content:
        """
        Apply one review action and return the content as it now stands.

        Raises:
            ContentNotFound: no content with that id.
            ContentNotReady: content is still RAW or PROCESSING.
            InvalidTransition: unknown action, or not allowed from the current status.
        """
        try:
            action = ReviewAction(action)
        except ValueError:
            raise InvalidTransition(f"Unknown review action {action!r}") from None
        tunables = await load_tunables(self.store, self.base_tunables)

        async with self.store.transaction() as store:
            content = await store.get_by_id(Content, content_id)
            if content is None:
                raise ContentNotFound(f"Content {content_id} not found")
            if content.status in NOT_READY:
                raise ContentNotReady(f"Content {content_id} is {content.status.value}, not reviewable yet")
            if content.status not in ALLOWED_FROM[action]:
                raise InvalidTransition(f"Cannot {action.value} content in status {content.status.value}")

            changes = self._changes_for(action, content, tunables, edits, user_id, comment)
            expected: Dict[str, Any] = {"status": content.status}
            if action in (ReviewAction.PRIORITY_BOOST, ReviewAction.PRIORITY_LOWER):
                expected["priority"] = content.priority

            updated = await store.update(Content, content.id, changes, expected=expected) if changes else content
            if updated is None:
                raise InvalidTransition(f"Content {content_id} changed while {action.value} was being applied")

            if action == ReviewAction.EDIT and "tags" in changes:
                await store.delete_where(ContentTag, {"content_id": content.id})
                for tag in changes["tags"]:
                    await store.upsert(ContentTag, {"content_id": content.id, "tag": tag}, {})

            await store.create(ContentReview(
                content_id=content.id,
                user_id=user_id,
                action=action,
                comment=comment,
            ))
            await store.create(UserActivity(
                user_id=user_id,
                action=f"review.{action.value.lower()}",
                details={
                    "content_id": content.id,
                    "from_status": content.status.value,
                    "to_status": updated.status.value,
                },
            ))

        logger.info(
            f"{user_id} applied {action.value} to {content.title} ({content.status.value} -> {updated.status.value})",
            extra={"content_id": content.id},
        )
        return updated

    def _changes_for(
        self,
        action: ReviewAction,
        content: Content,
        tunables: PipelineTunables,
        edits: Optional[Dict[str, Any]],
        user_id: str,
        comment: Optional[str],
    ) -> Dict[str, Any]:
        if action == ReviewAction.APPROVE:
            return {"status": ContentStatus.PUBLISHED, "published_at": self.clock()}

        if action == ReviewAction.REJECT:
            return {"status": ContentStatus.REJECTED}

        if action == ReviewAction.EDIT:
            return self._validate_edits(edits or {})

        if action == ReviewAction.FLAG:
            metadata = dict(content.metadata or {})
            metadata["flagged"] = {
                "by": user_id,
                "at": self.clock().isoformat(),
                "comment": comment,
            }
            return {"metadata": metadata}

        step = tunables.review_priority_step
        if action == ReviewAction.PRIORITY_BOOST:
            return {"priority": content.priority + step}

        lowered = max(tunables.review_priority_floor, content.priority - step)
        return {"priority": lowered} if lowered != content.priority else {}

    @staticmethod
    def _validate_edits(edits: Dict[str, Any]) -> Dict[str, Any]:
        unknown = set(edits) - set(EDITABLE_FIELDS)
        if unknown:
            raise InvalidTransition(f"Fields not editable by review: {', '.join(sorted(unknown))}")
        if not edits:
            raise InvalidTransition("EDIT requires at least one field")
        if "title" in edits and not str(edits["title"] or "").strip():
            raise InvalidTransition("Title cannot be empty")

        changes = dict(edits)
        if "tags" in changes:
            tags = []
            for tag in changes["tags"] or []:
                tag = str(tag).strip().lower()
                if tag and tag not in tags:
                    tags.append(tag)
            changes["tags"] = tags
        return changes

    async def retire_source(self, source_id: str, user_id: str) -> int:
        """
        Take a source out of rotation and reject its unpublished content.
        Published content is kept so existing digests stay valid.

        Returns:
            Number of content rows rejected.
        """
        rejected = 0
        async with self.store.transaction() as store:
            source = await store.get_by_id(Source, source_id)
            if source is None:
                raise SourceNotFound(f"Source {source_id} not found")

            await store.update(Source, source_id, {"status": SourceStatus.INACTIVE, "fetch_lease_until": None})

            for content in await store.find_many(Content, {"source_id": source_id, "status__in": list(RETIRABLE)}):
                metadata = {**(content.metadata or {}), "rejected_reason": "source_retired"}
                done = await store.update(
                    Content,
                    content.id,
                    {"status": ContentStatus.REJECTED, "metadata": metadata},
                    expected={"status": content.status},
                )
                if done:
                    rejected += 1

            await store.create(UserActivity(
                user_id=user_id,
                action="source.retire",
                details={"source_id": source_id, "rejected_content": rejected},
            ))

        logger.info(f"Retired source {source.name}, rejected {rejected} items", extra={"source_id": source_id})
        return rejected

    async def content_stats(self) -> Dict[str, int]:
        return {status.value: await self.store.count(Content, {"status": status}) for status in ContentStatus}
