import re
import unicodedata
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session


def slugify(text: str) -> str:
    value = unicodedata.normalize("NFKD", text or "").encode("ascii", "ignore").decode("ascii")
    value = re.sub(r"[^\w\s-]", "", value.lower())
    value = re.sub(r"[\s_-]+", "-", value).strip("-")
    return value or "item"


def unique_slug(
    session: Session, model, source: str, exclude_id: Optional[int] = None
) -> str:
    """Slugify ``source`` and suffix ``-1``, ``-2`` ... until no other row uses it."""
    base = slugify(source)
    slug = base
    count = 1
    while True:
        stmt = select(model.id).where(model.slug == slug)
        if exclude_id is not None:
            stmt = stmt.where(model.id != exclude_id)
        if session.execute(stmt).first() is None:
            return slug
        slug = f"{base}-{count}"
        count += 1
