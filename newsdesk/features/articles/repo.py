from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from newsdesk.db.models import Article
from newsdesk.features.shared.errors import NotFound


async def get_article(session: AsyncSession, article_id: UUID) -> Article | None:
    return await session.get(Article, article_id)


async def ensure_article(session: AsyncSession, article_id: UUID) -> Article:
    article = await get_article(session, article_id)
    if article is None:
        raise NotFound(f"Article '{article_id}' was not found.")
    return article


async def _lock_article(session: AsyncSession, article_id: UUID) -> Article:
    # Row lock so concurrent appends to one article serialize instead of
    # overwriting each other's list.
    stmt = (
        select(Article)
        .where(Article.id == article_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    article = (await session.execute(stmt)).scalar_one_or_none()
    if article is None:
        raise NotFound(f"Article '{article_id}' was not found.")
    return article


async def append_attachment(session: AsyncSession, *, article_id: UUID, attachment_id: UUID) -> Article:
    article = await _lock_article(session, article_id)
    ids = list(article.attachment_ids or [])
    if str(attachment_id) not in ids:
        ids.append(str(attachment_id))
    article.attachment_ids = ids
    await session.commit()
    return article


async def remove_attachment(session: AsyncSession, *, article_id: UUID, attachment_id: UUID | str) -> bool:
    """Drop an id from the article list. Returns whether it was present."""
    article = await _lock_article(session, article_id)
    ids = list(article.attachment_ids or [])
    remaining = [item for item in ids if item != str(attachment_id)]
    article.attachment_ids = remaining
    await session.commit()
    return len(remaining) != len(ids)


async def list_attachment_links(session: AsyncSession) -> dict[UUID, list[str]]:
    rows = (await session.execute(select(Article.id, Article.attachment_ids))).all()
    return {row.id: list(row.attachment_ids or []) for row in rows}
