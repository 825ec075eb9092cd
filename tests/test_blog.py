from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from blog import PostService, blog_categories, blog_tags, reading_time
from database import Base
from errors import NotFoundError
from models import PostStatus, User
from schemas import PostIn, TaxonomyIn
from slugs import slugify


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _author(session: Session) -> User:
    user = User(name="Writer", email="writer@example.com", password_hash="x")
    session.add(user)
    session.commit()
    return user


def test_slugify():
    assert slugify("Hello, World!") == "hello-world"
    assert slugify("  Café   Déjà vu_2 ") == "cafe-deja-vu-2"
    assert slugify("!!!") == "item"


def test_reading_time_ignores_markup_and_rounds_up():
    assert reading_time("") == 1
    assert reading_time("<p>" + "word " * 200 + "</p>") == 1
    assert reading_time("<p>" + "word " * 201 + "</p>") == 2
    assert reading_time("<b>a</b><i>b</i>") == 1


def test_taxonomy_slugs_stay_unique():
    with _session() as session:
        categories = blog_categories(session)
        news = categories.create(TaxonomyIn(name="News"))
        duplicate = categories.create(TaxonomyIn(name="news"))
        custom = categories.create(TaxonomyIn(name="Other", slug="News"))

        assert (news.slug, duplicate.slug, custom.slug) == ("news", "news-1", "news-2")

        renamed = categories.update(duplicate.id, TaxonomyIn(name="Updates", slug="updates"))
        assert (renamed.name, renamed.slug) == ("Updates", "updates")
        assert [c.name for c in categories.list()] == ["News", "Other", "Updates"]

        categories.delete(news.id)
        with pytest.raises(NotFoundError, match="Category not found"):
            categories.get(news.id)


def test_create_post_sets_slug_reading_time_and_tags():
    with _session() as session:
        author = _author(session)
        python = blog_tags(session).create(TaxonomyIn(name="Python"))
        service = PostService(session, author.id)

        post = service.create(
            PostIn(title="Hello World", content="word " * 450, tag_ids=[python.id])
        )
        again = service.create(PostIn(title="Hello World", content="short"))

        assert post.slug == "hello-world"
        assert again.slug == "hello-world-1"
        assert post.reading_time == 3
        assert post.status == PostStatus.draft
        assert post.published_at is None
        assert [tag.name for tag in post.tags] == ["Python"]

        with pytest.raises(NotFoundError):
            service.create(PostIn(title="Broken", content="x", tag_ids=[python.id, 42]))
        with pytest.raises(NotFoundError):
            service.create(PostIn(title="Broken", content="x", category_id=42))


def test_publish_stamps_date_once():
    with _session() as session:
        author = _author(session)
        service = PostService(session, author.id)
        post = service.create(PostIn(title="Draft", content="text"))

        published = service.publish(post.id)
        first_stamp = published.published_at
        assert published.status == PostStatus.published
        assert isinstance(first_stamp, datetime)
        assert service.publish(post.id).published_at == first_stamp

        direct = service.create(
            PostIn(title="Live", content="text", status=PostStatus.published)
        )
        assert direct.published_at is not None


def test_published_lookup_counts_views_and_hides_drafts():
    with _session() as session:
        author = _author(session)
        service = PostService(session, author.id)
        live = service.create(PostIn(title="Live", content="x", status=PostStatus.published))
        service.create(PostIn(title="Hidden", content="x"))

        assert service.get_published("live").views_count == 1
        assert service.get_published("live").views_count == 2
        with pytest.raises(NotFoundError):
            service.get_published("hidden")

        service.archive(live.id)
        with pytest.raises(NotFoundError):
            service.get_published("live")


def test_list_filters_and_soft_delete():
    with _session() as session:
        author = _author(session)
        tag = blog_tags(session).create(TaxonomyIn(name="Release"))
        category = blog_categories(session).create(TaxonomyIn(name="News"))
        service = PostService(session, author.id)
        tagged = service.create(
            PostIn(
                title="Version 2 released",
                content="x",
                tag_ids=[tag.id],
                category_id=category.id,
                is_featured=True,
            )
        )
        service.create(PostIn(title="Roadmap", content="x", excerpt="What comes next"))

        assert service.list(tag_id=tag.id)[1] == 1
        assert service.list(category_id=category.id)[0][0].id == tagged.id
        assert service.list(featured=True)[1] == 1
        assert [p.title for p in service.list(query="next")[0]] == ["Roadmap"]

        service.soft_delete(tagged.id)
        assert service.list()[1] == 1
        with pytest.raises(NotFoundError):
            service.get(tagged.id)
        assert service.restore(tagged.id).deleted_at is None
        assert service.list()[1] == 2


def test_update_recomputes_reading_time_and_keeps_slug():
    with _session() as session:
        author = _author(session)
        service = PostService(session, author.id)
        post = service.create(PostIn(title="Notes", content="short"))

        updated = service.update(post.id, PostIn(title="Longer notes", content="word " * 600))

        assert updated.slug == "notes"
        assert updated.title == "Longer notes"
        assert updated.reading_time == 3
