from __future__ import annotations

import math
import re
from datetime import datetime
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from errors import NotFoundError
from models import BlogCategory, BlogTag, Post, PostStatus
from schemas import PostIn, TaxonomyIn
from slugs import unique_slug


WORDS_PER_MINUTE = 200

_TAG_RE = re.compile(r"<[^>]+>")


def reading_time(content: str) -> int:
    words = len(_TAG_RE.sub(" ", content or "").split())
    return max(1, math.ceil(words / WORDS_PER_MINUTE))


class TaxonomyService:
    """CRUD for the name/slug lookup tables (blog and product categories and tags)."""

    def __init__(self, session: Session, model, label: str) -> None:
        self.session = session
        self.model = model
        self.label = label

    def list(self) -> list:
        return list(self.session.scalars(select(self.model).order_by(self.model.name)))

    def get(self, item_id: int):
        item = self.session.get(self.model, item_id)
        if item is None:
            raise NotFoundError(f"{self.label} not found")
        return item

    def create(self, data: TaxonomyIn):
        item = self.model(
            name=data.name.strip(),
            slug=unique_slug(self.session, self.model, data.slug or data.name),
        )
        if hasattr(self.model, "description"):
            item.description = data.description
        self.session.add(item)
        self.session.commit()
        return item

    def update(self, item_id: int, data: TaxonomyIn):
        item = self.get(item_id)
        item.name = data.name.strip()
        if data.slug and data.slug != item.slug:
            item.slug = unique_slug(self.session, self.model, data.slug, exclude_id=item.id)
        if hasattr(self.model, "description"):
            item.description = data.description
        self.session.commit()
        return item

    def delete(self, item_id: int) -> None:
        self.session.delete(self.get(item_id))
        self.session.commit()


def blog_categories(session: Session) -> TaxonomyService:
    return TaxonomyService(session, BlogCategory, "Category")


def blog_tags(session: Session) -> TaxonomyService:
    return TaxonomyService(session, BlogTag, "Tag")


class PostService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, post_id: int, *, include_deleted: bool = False) -> Post:
        post = self.session.get(Post, post_id)
        if post is None or (post.is_deleted and not include_deleted):
            raise NotFoundError("Post not found")
        return post

    def get_published(self, slug: str) -> Post:
        post = self.session.scalar(
            select(Post).where(
                Post.slug == slug,
                Post.status == PostStatus.published,
                Post.deleted_at.is_(None),
            )
        )
        if post is None:
            raise NotFoundError("Post not found")
        post.views_count += 1
        self.session.commit()
        return post

    def list(
        self,
        *,
        status: Optional[PostStatus] = None,
        category_id: Optional[int] = None,
        tag_id: Optional[int] = None,
        query: Optional[str] = None,
        featured: Optional[bool] = None,
        limit: int = 15,
        offset: int = 0,
    ) -> tuple[list[Post], int]:
        stmt = select(Post).where(Post.deleted_at.is_(None))
        if status is not None:
            stmt = stmt.where(Post.status == status)
        if category_id is not None:
            stmt = stmt.where(Post.category_id == category_id)
        if tag_id is not None:
            stmt = stmt.where(Post.tags.any(BlogTag.id == tag_id))
        if featured is not None:
            stmt = stmt.where(Post.is_featured.is_(featured))
        if query:
            pattern = f"%{query.strip()}%"
            stmt = stmt.where(or_(Post.title.ilike(pattern), Post.excerpt.ilike(pattern)))
        total = self.session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        stmt = stmt.order_by(Post.created_at.desc(), Post.id.desc()).limit(limit).offset(offset)
        return list(self.session.scalars(stmt)), int(total)

    def _tags(self, tag_ids: list[int]) -> list[BlogTag]:
        if not tag_ids:
            return []
        tags = list(self.session.scalars(select(BlogTag).where(BlogTag.id.in_(tag_ids))))
        if len(tags) != len(set(tag_ids)):
            raise NotFoundError("Tag not found")
        return tags

    def _apply(self, post: Post, data: PostIn) -> None:
        if data.category_id is not None:
            blog_categories(self.session).get(data.category_id)
        post.title = data.title.strip()
        post.excerpt = data.excerpt
        if post.content != data.content:
            post.content = data.content
            post.reading_time = reading_time(data.content)
        post.status = data.status
        post.published_at = data.published_at
        if data.status == PostStatus.published and post.published_at is None:
            post.published_at = datetime.utcnow()
        post.category_id = data.category_id
        post.meta_title = data.meta_title
        post.meta_description = data.meta_description
        post.is_featured = data.is_featured
        post.tags = self._tags(data.tag_ids)

    def create(self, data: PostIn) -> Post:
        post = Post(
            user_id=self.user_id,
            slug=unique_slug(self.session, Post, data.slug or data.title),
            content="",
        )
        self._apply(post, data)
        self.session.add(post)
        self.session.commit()
        return post

    def update(self, post_id: int, data: PostIn) -> Post:
        post = self.get(post_id)
        if data.slug and data.slug != post.slug:
            post.slug = unique_slug(self.session, Post, data.slug, exclude_id=post.id)
        self._apply(post, data)
        self.session.commit()
        return post

    def publish(self, post_id: int) -> Post:
        post = self.get(post_id)
        post.status = PostStatus.published
        post.published_at = post.published_at or datetime.utcnow()
        self.session.commit()
        return post

    def archive(self, post_id: int) -> Post:
        post = self.get(post_id)
        post.status = PostStatus.archived
        self.session.commit()
        return post

    def soft_delete(self, post_id: int) -> None:
        post = self.get(post_id)
        post.deleted_at = datetime.utcnow()
        self.session.commit()

    def restore(self, post_id: int) -> Post:
        post = self.get(post_id, include_deleted=True)
        post.deleted_at = None
        self.session.commit()
        return post
