# routers/knowledge.py — Knowledge bases, categories and versioned articles
"""
Bases and categories are managed by workspace owners/admins. Articles are
written by owners/admins and edited by their author or an admin; every
title/content change appends a KnowledgeArticleVersion.

Readers see published articles. Drafts and archived articles are visible to
their author and to admins only. Guests never see non-public bases or
articles.
"""
import re
import secrets
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import Field
from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from access import require_workspace_member, require_workspace_admin, get_or_404, is_privileged
from audit import diff_fields
from auth import get_current_user, CurrentUser, RequestModel
from database import get_db_session
from models import (
    KnowledgeBase, KnowledgeArticle, KnowledgeArticleVersion, User, UserWorkspace,
    WorkspaceRole, utcnow, iso,
)

router = APIRouter(prefix="/api/v1", tags=["Knowledge"])

ARTICLE_STATUS_PATTERN = r"^(draft|published|archived)$"
COLOR_PATTERN = r"^#[0-9a-fA-F]{6}$"
TRACKED_FIELDS = ("title", "content")


# ============================================================
# SCHEMAS
# ============================================================

class BaseCreate(RequestModel):
    workspace_id: str
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    parent_id: Optional[str] = None
    is_category: bool = False
    icon: Optional[str] = Field(default=None, max_length=50)
    color: Optional[str] = Field(default=None, pattern=COLOR_PATTERN)
    sort_order: int = Field(default=0, ge=0)
    is_public: bool = True


class ArticleCreate(RequestModel):
    base_id: str
    title: str = Field(..., min_length=1, max_length=300)
    content: str = Field(default="", max_length=1_000_000)
    excerpt: Optional[str] = Field(default=None, max_length=1000)
    category_id: Optional[str] = None
    status: str = Field(default="draft", pattern=ARTICLE_STATUS_PATTERN)
    tags: List[str] = Field(default_factory=list, max_length=20)
    sort_order: int = Field(default=0, ge=0)
    is_featured: bool = False
    is_public: bool = True


class ArticleUpdate(RequestModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=300)
    content: Optional[str] = Field(default=None, max_length=1_000_000)
    excerpt: Optional[str] = Field(default=None, max_length=1000)
    category_id: Optional[str] = None
    status: Optional[str] = Field(default=None, pattern=ARTICLE_STATUS_PATTERN)
    tags: Optional[List[str]] = Field(default=None, max_length=20)
    sort_order: Optional[int] = Field(default=None, ge=0)
    is_featured: Optional[bool] = None
    is_public: Optional[bool] = None


# ============================================================
# HELPERS
# ============================================================

def article_slug(title: str) -> str:
    slug = re.sub(r"[^\w]+", "-", title.lower()).strip("-_")
    return slug[:80] or "article"


def _is_guest(membership: UserWorkspace) -> bool:
    return WorkspaceRole(membership.role) == WorkspaceRole.GUEST


def _clean_tags(tags: List[str]) -> List[str]:
    seen = []
    for tag in tags:
        tag = tag.strip().lower()[:50]
        if tag and tag not in seen:
            seen.append(tag)
    return seen


async def _base_out(db: AsyncSession, base: KnowledgeBase) -> dict:
    article_count = (await db.execute(
        select(func.count(KnowledgeArticle.id)).where(KnowledgeArticle.base_id == base.id)
    )).scalar() or 0
    child_count = (await db.execute(
        select(func.count(KnowledgeBase.id)).where(
            KnowledgeBase.parent_id == base.id, KnowledgeBase.is_archived.is_(False))
    )).scalar() or 0
    return {
        "id": base.id,
        "workspace_id": base.workspace_id,
        "parent_id": base.parent_id,
        "name": base.name,
        "description": base.description,
        "is_category": bool(base.is_category),
        "icon": base.icon,
        "color": base.color,
        "sort_order": base.sort_order,
        "is_public": bool(base.is_public),
        "article_count": article_count,
        "child_count": child_count,
        "created_at": iso(base.created_at),
    }


async def _article_out(db: AsyncSession, article: KnowledgeArticle, with_content: bool = True) -> dict:
    author = await db.get(User, article.author_id)
    version_count = (await db.execute(
        select(func.count(KnowledgeArticleVersion.id)).where(KnowledgeArticleVersion.article_id == article.id)
    )).scalar() or 0
    out = {
        "id": article.id,
        "base_id": article.base_id,
        "category_id": article.category_id,
        "title": article.title,
        "slug": article.slug,
        "excerpt": article.excerpt,
        "status": article.status,
        "tags": article.tags or [],
        "sort_order": article.sort_order,
        "is_featured": bool(article.is_featured),
        "is_public": bool(article.is_public),
        "author": {"id": author.id, "name": author.name} if author else None,
        "version_count": version_count,
        "published_at": iso(article.published_at),
        "created_at": iso(article.created_at),
        "updated_at": iso(article.updated_at),
    }
    if with_content:
        out["content"] = article.content
    return out


async def _live_base(db: AsyncSession, base_id: str, workspace_id: Optional[str] = None,
                     label: str = "Knowledge base", category: bool = False) -> KnowledgeBase:
    base = await db.get(KnowledgeBase, base_id)
    if (
        base is None or base.is_archived
        or (workspace_id and base.workspace_id != workspace_id)
        or (category and not base.is_category)
    ):
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return base


def _can_read(article: KnowledgeArticle, base: KnowledgeBase, membership: UserWorkspace, user: CurrentUser) -> bool:
    if _is_guest(membership) and not (article.is_public and base.is_public):
        return False
    if article.status == "published":
        return True
    return article.author_id == user.id or is_privileged(membership)


async def _readable_article(db: AsyncSession, article_id: str, user: CurrentUser):
    article = await get_or_404(db, KnowledgeArticle, article_id, "Article")
    base = await db.get(KnowledgeBase, article.base_id)
    membership = await require_workspace_member(db, user, base.workspace_id)
    if base.is_archived or not _can_read(article, base, membership, user):
        raise HTTPException(status_code=404, detail="Article not found")
    return article, base, membership


# ============================================================
# KNOWLEDGE BASES
# ============================================================

@router.get("/knowledge-bases")
async def list_bases(
    workspace_id: str = Query(...),
    parent_id: Optional[str] = None,
    top_level: bool = False,
    is_category: Optional[bool] = None,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    membership = await require_workspace_member(db, user, workspace_id)
    stmt = select(KnowledgeBase).where(
        KnowledgeBase.workspace_id == workspace_id, KnowledgeBase.is_archived.is_(False),
    )
    if parent_id:
        stmt = stmt.where(KnowledgeBase.parent_id == parent_id)
    elif top_level:
        stmt = stmt.where(KnowledgeBase.parent_id.is_(None))
    if is_category is not None:
        stmt = stmt.where(KnowledgeBase.is_category.is_(is_category))
    if _is_guest(membership):
        stmt = stmt.where(KnowledgeBase.is_public.is_(True))

    bases = (await db.execute(
        stmt.order_by(KnowledgeBase.sort_order.asc(), KnowledgeBase.name.asc())
    )).scalars().all()
    return [await _base_out(db, b) for b in bases]


@router.post("/knowledge-bases", status_code=201)
async def create_base(
    data: BaseCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_admin(db, user, data.workspace_id)
    if data.parent_id:
        await _live_base(db, data.parent_id, data.workspace_id, "Parent knowledge base")

    base = KnowledgeBase(created_by=user.id, **data.model_dump())
    db.add(base)
    await db.commit()
    return await _base_out(db, base)


@router.delete("/knowledge-bases/{base_id}")
async def archive_base(
    base_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Archive a base; its articles drop out of every listing"""
    base = await _live_base(db, base_id)
    await require_workspace_admin(db, user, base.workspace_id)
    base.is_archived = True
    await db.commit()
    return {"status": "archived", "base_id": base_id}


# ============================================================
# ARTICLES
# ============================================================

@router.get("/knowledge-articles")
async def list_articles(
    workspace_id: str = Query(...),
    base_id: Optional[str] = None,
    category_id: Optional[str] = None,
    status: str = Query(default="published", pattern=ARTICLE_STATUS_PATTERN),
    search: Optional[str] = Query(default=None, max_length=200),
    tag: Optional[str] = Query(default=None, max_length=50),
    featured: bool = False,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    membership = await require_workspace_member(db, user, workspace_id)
    live_bases = select(KnowledgeBase.id).where(
        KnowledgeBase.workspace_id == workspace_id, KnowledgeBase.is_archived.is_(False),
    )
    if _is_guest(membership):
        live_bases = live_bases.where(KnowledgeBase.is_public.is_(True))

    stmt = select(KnowledgeArticle).where(
        KnowledgeArticle.base_id.in_(live_bases), KnowledgeArticle.status == status,
    )
    if status != "published" and not is_privileged(membership):
        stmt = stmt.where(KnowledgeArticle.author_id == user.id)
    if _is_guest(membership):
        stmt = stmt.where(KnowledgeArticle.is_public.is_(True))
    if base_id:
        stmt = stmt.where(KnowledgeArticle.base_id == base_id)
    if category_id:
        stmt = stmt.where(KnowledgeArticle.category_id == category_id)
    if featured:
        stmt = stmt.where(KnowledgeArticle.is_featured.is_(True))
    if search:
        pattern = f"%{search}%"
        stmt = stmt.where(or_(
            KnowledgeArticle.title.ilike(pattern),
            KnowledgeArticle.content.ilike(pattern),
            KnowledgeArticle.excerpt.ilike(pattern),
        ))

    articles = (await db.execute(stmt.order_by(
        KnowledgeArticle.sort_order.asc(),
        KnowledgeArticle.is_featured.desc(),
        KnowledgeArticle.published_at.desc(),
        KnowledgeArticle.created_at.desc(),
    ))).scalars().all()
    if tag:
        wanted = tag.strip().lower()
        articles = [a for a in articles if any(wanted in t for t in (a.tags or []))]
    return [await _article_out(db, a, with_content=False) for a in articles]


@router.post("/knowledge-articles", status_code=201)
async def create_article(
    data: ArticleCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    base = await _live_base(db, data.base_id)
    await require_workspace_admin(db, user, base.workspace_id)
    if data.category_id:
        await _live_base(db, data.category_id, base.workspace_id, "Category", category=True)

    slug = article_slug(data.title)
    taken = (await db.execute(
        select(KnowledgeArticle.id).where(KnowledgeArticle.base_id == base.id, KnowledgeArticle.slug == slug)
    )).scalar_one_or_none()
    if taken:
        slug = f"{slug}-{secrets.token_hex(3)}"

    article = KnowledgeArticle(
        base_id=base.id,
        category_id=data.category_id,
        title=data.title,
        slug=slug,
        content=data.content,
        excerpt=data.excerpt,
        status=data.status,
        tags=_clean_tags(data.tags),
        sort_order=data.sort_order,
        is_featured=data.is_featured,
        is_public=data.is_public,
        author_id=user.id,
        published_at=utcnow() if data.status == "published" else None,
    )
    db.add(article)
    await db.flush()
    db.add(KnowledgeArticleVersion(
        article_id=article.id, version=1, title=article.title, content=article.content, author_id=user.id,
    ))
    await db.commit()
    return await _article_out(db, article)


@router.get("/knowledge-articles/{article_id}")
async def get_article(
    article_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    article, _, _ = await _readable_article(db, article_id, user)
    return await _article_out(db, article)


@router.put("/knowledge-articles/{article_id}")
async def update_article(
    article_id: str,
    data: ArticleUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    article, base, membership = await _readable_article(db, article_id, user)
    if article.author_id != user.id and not is_privileged(membership):
        raise HTTPException(status_code=403, detail="Only the author or an admin can edit this article")

    updates = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}
    if "category_id" in updates:
        await _live_base(db, updates["category_id"], base.workspace_id, "Category", category=True)
    if "tags" in updates:
        updates["tags"] = _clean_tags(updates["tags"])
    if "status" in updates and updates["status"] != article.status:
        article.published_at = utcnow() if updates["status"] == "published" else None

    changes = diff_fields(article, updates, TRACKED_FIELDS)
    for key, value in updates.items():
        setattr(article, key, value)

    if changes:
        latest = (await db.execute(
            select(func.max(KnowledgeArticleVersion.version))
            .where(KnowledgeArticleVersion.article_id == article.id)
        )).scalar() or 0
        db.add(KnowledgeArticleVersion(
            article_id=article.id, version=latest + 1,
            title=article.title, content=article.content, author_id=user.id,
        ))
    article.updated_at = utcnow()
    await db.commit()
    return await _article_out(db, article)


@router.get("/knowledge-articles/{article_id}/versions")
async def list_article_versions(
    article_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await _readable_article(db, article_id, user)
    versions = (await db.execute(
        select(KnowledgeArticleVersion)
        .where(KnowledgeArticleVersion.article_id == article_id)
        .order_by(KnowledgeArticleVersion.version.desc())
    )).scalars().all()
    return [
        {
            "version": v.version, "title": v.title, "content": v.content,
            "author_id": v.author_id, "created_at": iso(v.created_at),
        }
        for v in versions
    ]
