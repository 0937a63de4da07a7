import asyncio
import logging
import os
import shutil
import time
from dataclasses import asdict
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.responses import FileResponse, PlainTextResponse

import config
from cache import LRUCache
from image_generation import (
    ImageGenerationError,
    build_prompt,
    default_image_generator,
    image_extension,
)
from library import (
    ANNOTATION_CATEGORIES,
    DEFAULT_ANNOTATION_COLOR,
    MAX_TITLE_LENGTH,
    Annotation,
    ImageGenerationLog,
    LibraryStore,
    Novel,
    SharedContent,
    TextSelection,
    User,
    generate_id,
    generate_share_id,
)
from paginator import (
    EPUB_FILE,
    TEXT_FILE,
    DocumentParseError,
    IndexCache,
    InvalidPageNumber,
    Paginator,
    page_text,
)
from social_card import render_passage_card
from summarizer import TextSummarizer

config.setup_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="VisNovel API")

UPLOADS_DIR = config.UPLOADS_DIR
PUBLIC_UPLOAD_FOLDERS = ("images", "social")
NOVEL_EXTENSIONS = {".txt": TEXT_FILE, ".epub": EPUB_FILE}

store = LibraryStore(config.DATA_DIR)

paginator = Paginator(
    words_per_page=config.WORDS_PER_PAGE,
    index_cache=IndexCache(LRUCache(config.INDEX_CACHE_SIZE)),
    text_cache=IndexCache(LRUCache(config.INDEX_CACHE_SIZE)),
    parse_timeout=config.EPUB_PARSE_TIMEOUT,
    strict_bounds=config.PAGE_OVERFLOW == "error",
)

summarizer = TextSummarizer(
    account_id=config.CLOUDFLARE_ACCOUNT_ID,
    api_token=config.CLOUDFLARE_API_TOKEN,
    cache=LRUCache(config.SUMMARY_CACHE_SIZE),
)

image_generator = default_image_generator(
    cloudflare_account_id=config.CLOUDFLARE_ACCOUNT_ID,
    cloudflare_api_token=config.CLOUDFLARE_API_TOKEN,
    huggingface_api_token=config.HUGGINGFACE_API_TOKEN,
)

logger.info("Data directory: %s", os.path.abspath(config.DATA_DIR))
logger.info("Uploads directory: %s", os.path.abspath(UPLOADS_DIR))


# ============================================================================
# Helpers
# ============================================================================


def get_current_user(authorization: Optional[str] = Header(None)) -> User:
    """Resolve the bearer token to a user."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Authentication invalid")

    user = store.get_user_by_token(authorization[len("Bearer "):].strip())
    if not user:
        raise HTTPException(status_code=401, detail="Authentication invalid")
    return user


def get_optional_user(authorization: Optional[str] = Header(None)) -> Optional[User]:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return store.get_user_by_token(authorization[len("Bearer "):].strip())


def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Unauthorized to access this route")
    return user


async def read_json(request: Request) -> dict:
    """Request body as a dict; empty when there is no JSON object."""
    try:
        data = await request.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def as_int(value) -> Optional[int]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def load_novel(novel_id: str, user: User, action: str, allow_admin: bool = True) -> Novel:
    """Fetch a novel, enforcing that the user owns it (or is an admin)."""
    novel = store.get_novel(novel_id)
    if not novel:
        raise HTTPException(status_code=404, detail="Novel not found")

    if novel.owner_id != user.id and not (allow_admin and user.is_admin):
        raise HTTPException(status_code=403, detail=f"Not authorized to {action} this novel")
    return novel


def check_page(novel: Novel, page: Optional[int]) -> int:
    if page is None or page < 1 or page > novel.total_pages:
        raise HTTPException(status_code=400, detail="Invalid page number")
    return page


def upload_path(url: Optional[str]) -> Optional[str]:
    """Map an 'uploads/<folder>/<name>' URL to its file on disk."""
    if not url:
        return None
    folder = os.path.basename(os.path.dirname(url))
    return os.path.join(UPLOADS_DIR, folder, os.path.basename(url))


def remove_file(path: Optional[str]):
    if not path:
        return
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.error("Error deleting file %s: %s", path, e)


def user_json(user: User) -> dict:
    data = asdict(user)
    data.pop("token", None)
    return data


def reading_progress(novel: Novel) -> int:
    if novel.total_pages <= 0:
        return 0
    return round(novel.last_read_page / novel.total_pages * 100)


def share_json(share: SharedContent) -> dict:
    data = asdict(share)
    novel = store.get_novel(share.novel_id)
    owner = store.get_user(share.user_id)
    data["novel_title"] = novel.title if novel else None
    data["user_name"] = owner.name if owner else None
    return data


def expiry_from(hours) -> Optional[str]:
    hours = as_int(hours)
    if not hours:
        return None
    return (datetime.now() + timedelta(hours=hours)).isoformat()


@app.get("/", response_class=PlainTextResponse)
async def root():
    return "VisNovel API is running"


@app.get("/uploads/{folder}/{file_name}")
async def serve_upload(folder: str, file_name: str):
    """Serves generated illustrations and social cards."""
    safe_folder = os.path.basename(folder)
    if safe_folder not in PUBLIC_UPLOAD_FOLDERS:
        raise HTTPException(status_code=404, detail="File not found")

    file_path = os.path.join(UPLOADS_DIR, safe_folder, os.path.basename(file_name))
    if not os.path.exists(file_path):
        raise HTTPException(status_code=404, detail="File not found")

    return FileResponse(file_path)


# ============================================================================
# Novels API
# ============================================================================


@app.post("/api/novels", status_code=201)
async def upload_novel(
    file: UploadFile = File(..., alias="novel"),
    title: str = Form(""),
    user: User = Depends(get_current_user),
):
    """Store an uploaded .txt/.epub novel and count its pages."""
    suffix = os.path.splitext(file.filename or "")[1].lower()
    if suffix not in NOVEL_EXTENSIONS:
        raise HTTPException(status_code=400, detail="Only .txt and .epub files are allowed!")

    title = title.strip()
    if not title:
        raise HTTPException(status_code=400, detail="Title is required")
    if len(title) > MAX_TITLE_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"Title cannot be more than {MAX_TITLE_LENGTH} characters",
        )

    novels_dir = os.path.join(UPLOADS_DIR, "novels")
    os.makedirs(novels_dir, exist_ok=True)
    file_path = os.path.join(novels_dir, f"{int(time.time() * 1000)}-{generate_id()}{suffix}")

    try:
        with open(file_path, "wb") as out:
            shutil.copyfileobj(file.file, out)
    except OSError as e:
        logger.error("Error saving upload %s: %s", file.filename, e)
        raise HTTPException(status_code=500, detail=f"Failed to store novel: {e}")

    file_type = NOVEL_EXTENSIONS[suffix]
    logger.info("File uploaded: %s -> %s (%s)", file.filename, file_path, file_type)

    try:
        total_pages = await paginator.count_pages(file_path, file_type)
    except DocumentParseError as e:
        logger.warning("Could not count pages of %s, defaulting to 1: %s", file_path, e)
        total_pages = 1
    except Exception:
        logger.exception("Error counting pages of %s", file_path)
        remove_file(file_path)
        raise

    novel = store.add_novel(Novel(
        id=generate_id(),
        title=title,
        file_path=file_path,
        file_type=file_type,
        total_pages=total_pages,
        owner_id=user.id,
    ))
    return {"novel": asdict(novel)}


@app.get("/api/novels")
async def get_user_novels(user: User = Depends(get_current_user)):
    """List the current user's novels, newest first."""
    return {"novels": [asdict(n) for n in store.list_novels(owner_id=user.id)]}


@app.get("/api/novels/admin/all")
async def get_all_novels(admin: User = Depends(require_admin)):
    """List every novel with its owner's name and email."""
    novels = []
    for novel in store.list_novels():
        owner = store.get_user(novel.owner_id)
        data = asdict(novel)
        data["owner"] = {"id": novel.owner_id,
                         "name": owner.name if owner else None,
                         "email": owner.email if owner else None}
        novels.append(data)
    return {"novels": novels}


@app.get("/api/novels/{novel_id}")
async def get_novel(novel_id: str, user: User = Depends(get_current_user)):
    novel = load_novel(novel_id, user, "access")
    return {"novel": asdict(novel)}


@app.get("/api/novels/{novel_id}/page/{page}")
async def get_novel_page(novel_id: str, page: int, user: User = Depends(get_current_user)):
    """Return one page of a novel and remember it as the last page read."""
    novel = load_novel(novel_id, user, "access")
    check_page(novel, page)

    try:
        resolved = await paginator.get_page(novel.file_path, novel.file_type, page)
    except InvalidPageNumber:
        raise HTTPException(status_code=400, detail="Invalid page number")
    except DocumentParseError as e:
        logger.error("Error reading page %d of %s: %s", page, novel.id, e)
        raise HTTPException(status_code=500, detail=f"Failed to read novel: {e}")
    except OSError as e:
        logger.error("Novel file unreadable for %s: %s", novel.id, e)
        raise HTTPException(status_code=500, detail="Novel file could not be read")

    novel.last_read_page = page
    store.save_novel(novel)

    return {
        "page": page,
        "content": resolved.content,
        "total_pages": novel.total_pages,
        "metadata": resolved.metadata(),
    }


@app.delete("/api/novels/{novel_id}")
async def delete_novel(novel_id: str, user: User = Depends(get_current_user)):
    """Delete a novel, its file and everything attached to it."""
    novel = load_novel(novel_id, user, "delete")

    generated = [upload_path(log.image_url) for log in store.list_image_logs(novel_id=novel.id)]
    cards = [upload_path(s.social_image_url) for s in store.load().shares.values()
             if s.novel_id == novel.id]

    store.delete_novel(novel.id)
    for path in [novel.file_path] + generated + cards:
        remove_file(path)

    return {"message": "Novel deleted successfully"}


# ============================================================================
# Bookmarks & Notes API
# ============================================================================


@app.post("/api/novels/{novel_id}/bookmarks")
async def add_bookmark(novel_id: str, request: Request, user: User = Depends(get_current_user)):
    """Bookmark a page."""
    data = await read_json(request)
    novel = load_novel(novel_id, user, "add bookmarks to", allow_admin=False)
    page = check_page(novel, as_int(data.get("page")))

    if store.add_bookmark(novel, page, data.get("name", "") or "") is None:
        raise HTTPException(status_code=400, detail="Bookmark already exists for this page")
    return {"bookmarks": [asdict(b) for b in novel.bookmarks]}


@app.delete("/api/novels/{novel_id}/bookmarks/{bookmark_id}")
async def remove_bookmark(novel_id: str, bookmark_id: str, user: User = Depends(get_current_user)):
    novel = load_novel(novel_id, user, "remove bookmarks from", allow_admin=False)
    store.remove_bookmark(novel, bookmark_id)
    return {"bookmarks": [asdict(b) for b in novel.bookmarks]}


@app.post("/api/novels/{novel_id}/notes")
async def add_note(novel_id: str, request: Request, user: User = Depends(get_current_user)):
    """Attach a note to a page."""
    data = await read_json(request)
    novel = load_novel(novel_id, user, "add notes to", allow_admin=False)
    page = check_page(novel, as_int(data.get("page")))

    content = data.get("content")
    if not content:
        raise HTTPException(status_code=400, detail="Note content is required")

    store.add_note(novel, page, content)
    return {"notes": [asdict(n) for n in novel.notes]}


@app.patch("/api/novels/{novel_id}/notes/{note_id}")
async def update_note(novel_id: str, note_id: str, request: Request,
                      user: User = Depends(get_current_user)):
    data = await read_json(request)
    novel = load_novel(novel_id, user, "update notes for", allow_admin=False)

    content = data.get("content")
    if not content:
        raise HTTPException(status_code=400, detail="Note content is required")

    if not store.update_note(novel, note_id, content):
        raise HTTPException(status_code=404, detail="Note not found")
    return {"notes": [asdict(n) for n in novel.notes]}


@app.delete("/api/novels/{novel_id}/notes/{note_id}")
async def delete_note(novel_id: str, note_id: str, user: User = Depends(get_current_user)):
    novel = load_novel(novel_id, user, "delete notes for", allow_admin=False)
    store.delete_note(novel, note_id)
    return {"notes": [asdict(n) for n in novel.notes]}


# ============================================================================
# Reading Progress API
# ============================================================================


@app.patch("/api/novels/{novel_id}/progress")
async def update_reading_progress(novel_id: str, request: Request,
                                  user: User = Depends(get_current_user)):
    """
    Update the last page read, add reading time (minutes) and mark the
    novel completed. The user's reading stats follow along.
    """
    data = await read_json(request)
    novel = load_novel(novel_id, user, "update progress for", allow_admin=False)

    if data.get("page") is not None:
        novel.last_read_page = check_page(novel, as_int(data.get("page")))

    reading_time = as_int(data.get("reading_time"))
    if reading_time:
        novel.total_reading_time += reading_time
        user.reading_stats.total_reading_time += reading_time
        user.reading_stats.pages_read += 1

    completed = data.get("completed")
    if completed is not None:
        if completed and not novel.completed:
            user.reading_stats.novels_completed += 1
        novel.completed = bool(completed)

    store.save_user(user)
    store.save_novel(novel)
    return {"novel": asdict(novel)}


# ============================================================================
# Annotations API
# ============================================================================


@app.get("/api/annotations/novels/{novel_id}")
async def get_annotations(novel_id: str, user: User = Depends(get_current_user)):
    """All of the user's annotations on a novel."""
    load_novel(novel_id, user, "access annotations for")
    annotations = store.list_annotations(novel_id, user.id)
    return {"annotations": [asdict(a) for a in annotations]}


@app.get("/api/annotations/novels/{novel_id}/pages/{page}")
async def get_page_annotations(novel_id: str, page: int, user: User = Depends(get_current_user)):
    load_novel(novel_id, user, "access annotations for")
    annotations = store.list_annotations(novel_id, user.id, page=page)
    return {"annotations": [asdict(a) for a in annotations]}


@app.post("/api/annotations/novels/{novel_id}", status_code=201)
async def create_annotation(novel_id: str, request: Request,
                            user: User = Depends(get_current_user)):
    """Highlight or annotate a text selection on a page."""
    data = await read_json(request)
    selection = data.get("text_selection") or {}
    page = as_int(data.get("page"))
    start_offset = as_int(selection.get("start_offset"))
    end_offset = as_int(selection.get("end_offset"))
    selected_text = selection.get("selected_text")

    if page is None or start_offset is None or end_offset is None or not selected_text:
        raise HTTPException(status_code=400, detail="Missing required fields")

    category = data.get("category") or "highlight"
    if category not in ANNOTATION_CATEGORIES:
        raise HTTPException(status_code=400, detail=f"Invalid category '{category}'")

    novel = load_novel(novel_id, user, "add annotations to", allow_admin=False)
    check_page(novel, page)

    annotation = store.add_annotation(Annotation(
        id=generate_id(),
        user_id=user.id,
        novel_id=novel.id,
        page=page,
        text_selection=TextSelection(start_offset, end_offset, selected_text),
        color=data.get("color") or DEFAULT_ANNOTATION_COLOR,
        note=data.get("note"),
        category=category,
    ))
    return {"annotation": asdict(annotation)}


def load_own_annotation(annotation_id: str, user: User, action: str) -> Annotation:
    annotation = store.get_annotation(annotation_id)
    if not annotation:
        raise HTTPException(status_code=404, detail="Annotation not found")
    if annotation.user_id != user.id:
        raise HTTPException(status_code=403, detail=f"Not authorized to {action} this annotation")
    return annotation


@app.patch("/api/annotations/{annotation_id}")
async def update_annotation(annotation_id: str, request: Request,
                            user: User = Depends(get_current_user)):
    data = await read_json(request)
    annotation = load_own_annotation(annotation_id, user, "update")

    if data.get("color"):
        annotation.color = data["color"]
    if "note" in data:
        annotation.note = data["note"]
    if data.get("category"):
        if data["category"] not in ANNOTATION_CATEGORIES:
            raise HTTPException(status_code=400, detail=f"Invalid category '{data['category']}'")
        annotation.category = data["category"]

    store.save_annotation(annotation)
    return {"annotation": asdict(annotation)}


@app.delete("/api/annotations/{annotation_id}")
async def delete_annotation(annotation_id: str, user: User = Depends(get_current_user)):
    annotation = load_own_annotation(annotation_id, user, "delete")
    store.delete_annotation(annotation.id)
    return {"message": "Annotation deleted successfully"}


# ============================================================================
# Images API
# ============================================================================


@app.get("/api/images/logs")
async def get_all_image_logs(admin: User = Depends(require_admin)):
    """Every image generation, with user and novel names."""
    logs = []
    for log in store.list_image_logs():
        data = asdict(log)
        owner = store.get_user(log.user_id)
        novel = store.get_novel(log.novel_id)
        data["user_name"] = owner.name if owner else None
        data["novel_title"] = novel.title if novel else None
        logs.append(data)
    return {"logs": logs}


@app.post("/api/images/{novel_id}/page/{page}")
async def generate_image(novel_id: str, page: int, request: Request,
                         user: User = Depends(get_current_user)):
    """
    Illustrate a page. The page text is condensed into a scene
    description, styled into a prompt and sent down the provider chain.
    """
    data = await read_json(request)
    style = data.get("style") or "default"
    novel = load_novel(novel_id, user, "generate images for")
    check_page(novel, page)

    try:
        resolved = await paginator.get_page(novel.file_path, novel.file_type, page)
    except (DocumentParseError, OSError) as e:
        logger.error("Error reading page %d of %s for illustration: %s", page, novel.id, e)
        raise HTTPException(status_code=500, detail=f"Failed to read novel: {e}")

    text = page_text(resolved)
    description = await summarizer.summarize(text, novel.title, resolved.chapter_title or "")
    prompt = build_prompt(description or f"Scene from {novel.title}", style, novel.title)

    try:
        result = await image_generator.generate(prompt)
    except ImageGenerationError as e:
        raise HTTPException(status_code=502, detail=f"Image generation failed: {e}")

    images_dir = os.path.join(UPLOADS_DIR, "images")
    os.makedirs(images_dir, exist_ok=True)
    image_name = f"{novel.id}_p{page}_{generate_id()}.{image_extension(result.image)}"
    with open(os.path.join(images_dir, image_name), "wb") as f:
        f.write(result.image)

    log = store.add_image_log(ImageGenerationLog(
        id=generate_id(),
        novel_id=novel.id,
        user_id=user.id,
        page=page,
        image_url=f"uploads/images/{image_name}",
        prompt=prompt,
        style=style,
        error="; ".join(result.fallback_errors) or None,
        generation_method=result.method,
    ))

    user.reading_stats.images_generated += 1
    store.save_user(user)

    return {"image": asdict(log)}


@app.get("/api/images/{novel_id}/page/{page}")
async def get_images_for_page(novel_id: str, page: int, user: User = Depends(get_current_user)):
    load_novel(novel_id, user, "view images for")
    images = store.list_image_logs(novel_id=novel_id, page=page, user_id=user.id)
    return {"images": [asdict(i) for i in images]}


# ============================================================================
# Sharing API
# ============================================================================


def check_share_visible(share: Optional[SharedContent], user: Optional[User]) -> SharedContent:
    if not share:
        raise HTTPException(status_code=404, detail="Shared content not found")
    if share.is_expired():
        raise HTTPException(status_code=410, detail="This shared content has expired")
    if not share.is_public and (user is None or share.user_id != user.id):
        raise HTTPException(status_code=403,
                            detail="You do not have permission to view this content")
    return share


@app.get("/api/share/user/all")
async def get_user_shared_content(user: User = Depends(get_current_user)):
    return {"shared_content": [share_json(s) for s in store.list_shares(user.id)]}


@app.get("/api/share/{share_id}")
async def get_shared_content(share_id: str, user: Optional[User] = Depends(get_optional_user)):
    """Public view of a shared passage or progress card."""
    share = check_share_visible(store.get_share(share_id), user)
    return {"shared_content": share_json(share)}


@app.post("/api/share/novels/{novel_id}/passage", status_code=201)
async def share_passage(novel_id: str, request: Request, user: User = Depends(get_current_user)):
    data = await read_json(request)
    content = data.get("content")
    page = as_int(data.get("page"))
    if not content or not page:
        raise HTTPException(status_code=400, detail="Content and page are required")

    novel = load_novel(novel_id, user, "share content from")

    image_url = None
    if data.get("image_id"):
        image = store.get_image_log(data["image_id"])
        if not image or image.novel_id != novel.id:
            raise HTTPException(status_code=400, detail="Image not found for this novel")
        image_url = image.image_url

    share_id = generate_share_id()
    share = store.add_share(SharedContent(
        id=generate_id(),
        share_id=share_id,
        type="passage",
        user_id=user.id,
        novel_id=novel.id,
        share_url=f"{config.FRONTEND_URL}/share/{share_id}",
        content=content,
        page=page,
        image_url=image_url,
        expires_at=expiry_from(data.get("expires_in")),
        is_public=bool(data.get("is_public", True)),
    ))
    return {"shared_content": share_json(share)}


@app.post("/api/share/novels/{novel_id}/progress", status_code=201)
async def share_progress(novel_id: str, request: Request, user: User = Depends(get_current_user)):
    data = await read_json(request)
    novel = load_novel(novel_id, user, "share progress for", allow_admin=False)

    stats = {
        "current_page": novel.last_read_page or 1,
        "total_pages": novel.total_pages,
        "percent_complete": reading_progress(novel),
        "total_reading_time": novel.total_reading_time,
        "bookmarks_count": len(novel.bookmarks),
        "notes_count": len(novel.notes),
    }

    share_id = generate_share_id()
    share = store.add_share(SharedContent(
        id=generate_id(),
        share_id=share_id,
        type="progress",
        user_id=user.id,
        novel_id=novel.id,
        share_url=f"{config.FRONTEND_URL}/share/{share_id}",
        stats=stats,
        expires_at=expiry_from(data.get("expires_in")),
        is_public=bool(data.get("is_public", True)),
    ))
    return {"shared_content": share_json(share)}


@app.post("/api/share/{share_id}/social-image")
async def generate_social_image(share_id: str, user: User = Depends(get_current_user)):
    """Render a passage share as a 1200x630 social media card."""
    share = check_share_visible(store.get_share(share_id), user)
    if share.type != "passage":
        raise HTTPException(status_code=400, detail="Can only generate images for passages")

    novel = store.get_novel(share.novel_id)
    owner = store.get_user(share.user_id)
    card = await asyncio.to_thread(
        render_passage_card,
        novel.title if novel else "",
        share.content or "",
        owner.name if owner else "",
        share.share_url,
        upload_path(share.image_url),
    )

    social_dir = os.path.join(UPLOADS_DIR, "social")
    os.makedirs(social_dir, exist_ok=True)
    image_name = f"social_{share.share_id}.png"
    with open(os.path.join(social_dir, image_name), "wb") as f:
        f.write(card)

    share.social_image_url = f"uploads/social/{image_name}"
    store.save_share(share)

    return {
        "social_image_url": share.social_image_url,
        "full_url": f"{config.BACKEND_URL}/{share.social_image_url}",
    }


@app.delete("/api/share/{share_id}")
async def delete_shared_content(share_id: str, user: User = Depends(get_current_user)):
    share = store.get_share(share_id)
    if not share:
        raise HTTPException(status_code=404, detail="Shared content not found")
    if share.user_id != user.id and not user.is_admin:
        raise HTTPException(status_code=403, detail="Not authorized to delete this shared content")

    remove_file(upload_path(share.social_image_url))
    store.delete_share(share.share_id)
    return {"message": "Shared content deleted successfully"}


# ============================================================================
# Users API
# ============================================================================


def profile_json(user: User) -> dict:
    data = user_json(user)
    data["stats"] = {**asdict(user.reading_stats),
                     "total_novels": len(store.list_novels(owner_id=user.id))}
    return data


@app.get("/api/users/profile")
async def get_user_profile(user: User = Depends(get_current_user)):
    return {"user": profile_json(user)}


@app.patch("/api/users/profile")
async def update_user_profile(request: Request, user: User = Depends(get_current_user)):
    data = await read_json(request)
    if data.get("name"):
        user.name = data["name"]
    if "bio" in data:
        user.bio = data["bio"] or ""
    store.save_user(user)
    return {"user": profile_json(user)}


@app.get("/api/users/stats")
async def get_user_stats(user: User = Depends(get_current_user)):
    """Reading stats plus per-novel progress."""
    novels = store.list_novels(owner_id=user.id)
    return {
        "stats": asdict(user.reading_stats),
        "total_novels": len(novels),
        "novels_with_progress": [
            {
                "id": n.id,
                "title": n.title,
                "progress": reading_progress(n),
                "last_read_page": n.last_read_page,
                "total_pages": n.total_pages,
                "completed": n.completed,
            }
            for n in novels
        ],
    }


@app.patch("/api/users/stats")
async def update_reading_stats(request: Request, user: User = Depends(get_current_user)):
    data = await read_json(request)
    stats = user.reading_stats
    stats.total_reading_time += as_int(data.get("reading_time")) or 0
    stats.pages_read += as_int(data.get("pages_read")) or 0
    stats.novels_completed += 1 if data.get("novel_completed") else 0
    stats.images_generated += as_int(data.get("images_generated")) or 0
    store.save_user(user)
    return {"stats": asdict(stats)}


@app.get("/api/users/preferences")
async def get_reading_preferences(user: User = Depends(get_current_user)):
    return {"preferences": asdict(user.reading_preferences)}


@app.patch("/api/users/preferences")
async def update_reading_preferences(request: Request, user: User = Depends(get_current_user)):
    data = await read_json(request)
    preferences = user.reading_preferences

    for key in ("theme", "font_size", "font_family"):
        if data.get(key):
            setattr(preferences, key, data[key])
    for key in ("line_spacing", "letter_spacing", "dyslexia_friendly"):
        if data.get(key) is not None:
            setattr(preferences, key, data[key])

    store.save_user(user)
    return {"preferences": asdict(preferences)}


@app.get("/api/users/all")
async def get_all_users(admin: User = Depends(require_admin)):
    users = []
    for u in store.list_users():
        users.append({
            "id": u.id,
            "name": u.name,
            "email": u.email,
            "role": u.role,
            "novel_count": len(store.list_novels(owner_id=u.id)),
            "image_count": len(store.list_image_logs(user_id=u.id)),
            "reading_stats": asdict(u.reading_stats),
            "created_at": u.created_at,
        })
    return {"users": users}


@app.delete("/api/users/{user_id}")
async def delete_user(user_id: str, admin: User = Depends(require_admin)):
    """Delete a user together with their novels, files and logs."""
    if not store.get_user(user_id):
        raise HTTPException(status_code=404, detail="User not found")

    # Files of everything the store cascade drops: the user's own records
    # and whatever other users attached to the user's novels
    novel_ids = {n.id for n in store.list_novels(owner_id=user_id)}
    generated = [upload_path(log.image_url) for log in store.list_image_logs()
                 if log.user_id == user_id or log.novel_id in novel_ids]
    cards = [upload_path(s.social_image_url) for s in store.load().shares.values()
             if s.user_id == user_id or s.novel_id in novel_ids]

    for novel in store.delete_user(user_id):
        remove_file(novel.file_path)
    for path in generated + cards:
        remove_file(path)

    return {"message": "User deleted successfully"}


if __name__ == "__main__":
    import uvicorn

    logger.info("Starting server at http://%s:%d", config.HOST, config.PORT)
    uvicorn.run(app, host=config.HOST, port=config.PORT)
