"""
Record storage for VisNovel.
Handles users, novels (with bookmarks and notes), annotations,
image generation logs and shared content.
"""

import json
import logging
import os
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional
import hashlib

logger = logging.getLogger(__name__)

ROLES = ['user', 'admin']
FILE_TYPES = ['txt', 'epub']
ANNOTATION_CATEGORIES = ['highlight', 'note', 'question', 'important', 'vocabulary', 'custom']
GENERATION_METHODS = ['cloudflare', 'huggingface', 'mock']
SHARE_TYPES = ['passage', 'progress']
MAX_TITLE_LENGTH = 100
DEFAULT_ANNOTATION_COLOR = '#ffff00'


def _now() -> str:
    return datetime.now().isoformat()


@dataclass
class ReadingStats:
    """Totals shown on a user's profile."""
    total_reading_time: int = 0  # minutes
    pages_read: int = 0
    novels_completed: int = 0
    images_generated: int = 0


@dataclass
class ReadingPreferences:
    theme: str = "light"
    font_size: int = 18
    font_family: str = "serif"
    line_spacing: float = 1.5
    letter_spacing: float = 0.0
    dyslexia_friendly: bool = False


@dataclass
class User:
    id: str
    name: str
    email: str
    token: str  # bearer token presented on every request
    role: str = "user"  # user or admin
    bio: str = ""
    reading_stats: ReadingStats = field(default_factory=ReadingStats)
    reading_preferences: ReadingPreferences = field(default_factory=ReadingPreferences)
    created_at: str = field(default_factory=_now)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass
class Bookmark:
    id: str
    page: int
    name: str = ""
    created_at: str = field(default_factory=_now)


@dataclass
class Note:
    id: str
    page: int
    content: str
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)


@dataclass
class Novel:
    """An uploaded document and its owner's reading state."""
    id: str
    title: str
    file_path: str
    file_type: str  # txt or epub
    total_pages: int
    owner_id: str
    bookmarks: List[Bookmark] = field(default_factory=list)
    notes: List[Note] = field(default_factory=list)
    last_read_page: int = 1
    total_reading_time: int = 0  # minutes
    completed: bool = False
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)


@dataclass
class TextSelection:
    start_offset: int
    end_offset: int
    selected_text: str


@dataclass
class Annotation:
    """A highlight or note attached to a text selection on a page."""
    id: str
    user_id: str
    novel_id: str
    page: int
    text_selection: TextSelection
    color: str = DEFAULT_ANNOTATION_COLOR
    note: Optional[str] = None
    category: str = "highlight"
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)


@dataclass
class ImageGenerationLog:
    id: str
    novel_id: str
    user_id: str
    page: int
    image_url: str
    prompt: str
    style: str = "default"
    error: Optional[str] = None
    generation_method: str = "cloudflare"
    created_at: str = field(default_factory=_now)


@dataclass
class SharedContent:
    """A shared passage or progress card, addressed by its share_id."""
    id: str
    share_id: str
    type: str  # passage or progress
    user_id: str
    novel_id: str
    share_url: str
    content: Optional[str] = None
    page: Optional[int] = None
    image_url: Optional[str] = None
    stats: Optional[Dict[str, Any]] = None
    social_image_url: Optional[str] = None
    expires_at: Optional[str] = None
    is_public: bool = True
    created_at: str = field(default_factory=_now)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if not self.expires_at:
            return False
        return (now or datetime.now()) > datetime.fromisoformat(self.expires_at)


@dataclass
class LibraryData:
    """Everything persisted in library.json."""
    users: Dict[str, User] = field(default_factory=dict)
    novels: Dict[str, Novel] = field(default_factory=dict)
    annotations: Dict[str, Annotation] = field(default_factory=dict)
    images: Dict[str, ImageGenerationLog] = field(default_factory=dict)
    shares: Dict[str, SharedContent] = field(default_factory=dict)  # share_id -> share
    version: str = "1.0"


def generate_id() -> str:
    """Generate a unique ID."""
    return hashlib.md5(
        f"{datetime.now().isoformat()}-{os.urandom(8).hex()}".encode()
    ).hexdigest()[:12]


def generate_share_id() -> str:
    return os.urandom(8).hex()


def generate_token() -> str:
    return os.urandom(24).hex()


def _user_from_dict(raw: dict) -> User:
    return User(**{
        **raw,
        'reading_stats': ReadingStats(**raw.get('reading_stats', {})),
        'reading_preferences': ReadingPreferences(**raw.get('reading_preferences', {})),
    })


def _novel_from_dict(raw: dict) -> Novel:
    return Novel(**{
        **raw,
        'bookmarks': [Bookmark(**b) for b in raw.get('bookmarks', [])],
        'notes': [Note(**n) for n in raw.get('notes', [])],
    })


def _annotation_from_dict(raw: dict) -> Annotation:
    return Annotation(**{
        **raw,
        'text_selection': TextSelection(**raw['text_selection']),
    })


class LibraryStore:
    """Manages record persistence."""

    def __init__(self, data_dir: str):
        self.data_dir = data_dir
        self.data_file = os.path.join(data_dir, "library.json")
        self._data: Optional[LibraryData] = None

    def _ensure_dir(self):
        """Ensure data directory exists."""
        if not os.path.exists(self.data_dir):
            os.makedirs(self.data_dir, exist_ok=True)

    def load(self) -> LibraryData:
        """Load records from disk."""
        if self._data is not None:
            return self._data

        self._ensure_dir()

        if not os.path.exists(self.data_file):
            self._data = LibraryData()
            return self._data

        try:
            with open(self.data_file, 'r', encoding='utf-8') as f:
                raw = json.load(f)
        except (OSError, ValueError):
            logger.exception("Error loading library data from %s", self.data_file)
            raise

        self._data = LibraryData(
            users={uid: _user_from_dict(u) for uid, u in raw.get('users', {}).items()},
            novels={nid: _novel_from_dict(n) for nid, n in raw.get('novels', {}).items()},
            annotations={
                aid: _annotation_from_dict(a)
                for aid, a in raw.get('annotations', {}).items()
            },
            images={
                iid: ImageGenerationLog(**i)
                for iid, i in raw.get('images', {}).items()
            },
            shares={
                sid: SharedContent(**s)
                for sid, s in raw.get('shares', {}).items()
            },
            version=raw.get('version', '1.0'),
        )
        return self._data

    def save(self):
        """Save records to disk."""
        if self._data is None:
            return

        self._ensure_dir()

        data = {
            'users': {uid: asdict(u) for uid, u in self._data.users.items()},
            'novels': {nid: asdict(n) for nid, n in self._data.novels.items()},
            'annotations': {aid: asdict(a) for aid, a in self._data.annotations.items()},
            'images': {iid: asdict(i) for iid, i in self._data.images.items()},
            'shares': {sid: asdict(s) for sid, s in self._data.shares.items()},
            'version': self._data.version,
        }

        # Write then rename so a crash never leaves half a file behind
        tmp_file = self.data_file + ".tmp"
        with open(tmp_file, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp_file, self.data_file)

    # Users
    def add_user(self, user: User) -> User:
        data = self.load()
        data.users[user.id] = user
        self.save()
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        return self.load().users.get(user_id)

    def get_user_by_token(self, token: str) -> Optional[User]:
        if not token:
            return None
        for user in self.load().users.values():
            if user.token == token:
                return user
        return None

    def get_user_by_email(self, email: str) -> Optional[User]:
        for user in self.load().users.values():
            if user.email.lower() == email.lower():
                return user
        return None

    def list_users(self) -> List[User]:
        return sorted(self.load().users.values(), key=lambda u: u.created_at)

    def save_user(self, user: User) -> User:
        self.load().users[user.id] = user
        self.save()
        return user

    def delete_user(self, user_id: str) -> List[Novel]:
        """
        Delete a user and everything they own.
        Returns the removed novels so their files can be cleaned up.
        """
        data = self.load()
        if user_id not in data.users:
            return []

        owned = [n for n in data.novels.values() if n.owner_id == user_id]
        for novel in owned:
            self._drop_novel(data, novel.id)
        data.annotations = {
            aid: a for aid, a in data.annotations.items() if a.user_id != user_id
        }
        data.images = {iid: i for iid, i in data.images.items() if i.user_id != user_id}
        data.shares = {sid: s for sid, s in data.shares.items() if s.user_id != user_id}
        del data.users[user_id]
        self.save()
        return owned

    # Novels
    def add_novel(self, novel: Novel) -> Novel:
        data = self.load()
        data.novels[novel.id] = novel
        self.save()
        return novel

    def get_novel(self, novel_id: str) -> Optional[Novel]:
        return self.load().novels.get(novel_id)

    def list_novels(self, owner_id: Optional[str] = None) -> List[Novel]:
        """Novels newest first, optionally only those of one owner."""
        novels = self.load().novels.values()
        if owner_id is not None:
            novels = [n for n in novels if n.owner_id == owner_id]
        return sorted(novels, key=lambda n: n.created_at, reverse=True)

    def save_novel(self, novel: Novel) -> Novel:
        novel.updated_at = _now()
        self.load().novels[novel.id] = novel
        self.save()
        return novel

    def delete_novel(self, novel_id: str) -> Optional[Novel]:
        """Delete a novel with its annotations, images and shares."""
        data = self.load()
        novel = self._drop_novel(data, novel_id)
        if novel is not None:
            self.save()
        return novel

    @staticmethod
    def _drop_novel(data: LibraryData, novel_id: str) -> Optional[Novel]:
        novel = data.novels.pop(novel_id, None)
        if novel is None:
            return None
        data.annotations = {
            aid: a for aid, a in data.annotations.items() if a.novel_id != novel_id
        }
        data.images = {iid: i for iid, i in data.images.items() if i.novel_id != novel_id}
        data.shares = {sid: s for sid, s in data.shares.items() if s.novel_id != novel_id}
        return novel

    # Bookmarks
    def add_bookmark(self, novel: Novel, page: int, name: str = "") -> Optional[Bookmark]:
        """Add a bookmark; returns None if the page is already bookmarked."""
        if any(b.page == page for b in novel.bookmarks):
            return None
        bookmark = Bookmark(id=generate_id(), page=page, name=name)
        novel.bookmarks.append(bookmark)
        self.save_novel(novel)
        return bookmark

    def remove_bookmark(self, novel: Novel, bookmark_id: str) -> bool:
        original_len = len(novel.bookmarks)
        novel.bookmarks = [b for b in novel.bookmarks if b.id != bookmark_id]
        if len(novel.bookmarks) < original_len:
            self.save_novel(novel)
            return True
        return False

    # Notes
    def add_note(self, novel: Novel, page: int, content: str) -> Note:
        note = Note(id=generate_id(), page=page, content=content)
        novel.notes.append(note)
        self.save_novel(novel)
        return note

    def update_note(self, novel: Novel, note_id: str, content: str) -> bool:
        for note in novel.notes:
            if note.id == note_id:
                note.content = content
                note.updated_at = _now()
                self.save_novel(novel)
                return True
        return False

    def delete_note(self, novel: Novel, note_id: str) -> bool:
        original_len = len(novel.notes)
        novel.notes = [n for n in novel.notes if n.id != note_id]
        if len(novel.notes) < original_len:
            self.save_novel(novel)
            return True
        return False

    # Annotations
    def add_annotation(self, annotation: Annotation) -> Annotation:
        data = self.load()
        data.annotations[annotation.id] = annotation
        self.save()
        return annotation

    def get_annotation(self, annotation_id: str) -> Optional[Annotation]:
        return self.load().annotations.get(annotation_id)

    def list_annotations(self, novel_id: str, user_id: str,
                         page: Optional[int] = None) -> List[Annotation]:
        """A user's annotations on a novel, by page then selection start."""
        annotations = [
            a for a in self.load().annotations.values()
            if a.novel_id == novel_id and a.user_id == user_id
            and (page is None or a.page == page)
        ]
        return sorted(annotations, key=lambda a: (a.page, a.text_selection.start_offset))

    def save_annotation(self, annotation: Annotation) -> Annotation:
        annotation.updated_at = _now()
        self.load().annotations[annotation.id] = annotation
        self.save()
        return annotation

    def delete_annotation(self, annotation_id: str) -> bool:
        data = self.load()
        if data.annotations.pop(annotation_id, None) is None:
            return False
        self.save()
        return True

    # Image generation logs
    def add_image_log(self, log: ImageGenerationLog) -> ImageGenerationLog:
        data = self.load()
        data.images[log.id] = log
        self.save()
        return log

    def get_image_log(self, log_id: str) -> Optional[ImageGenerationLog]:
        return self.load().images.get(log_id)

    def list_image_logs(self, novel_id: Optional[str] = None, page: Optional[int] = None,
                        user_id: Optional[str] = None) -> List[ImageGenerationLog]:
        """Image logs newest first, filtered by whichever fields are given."""
        logs = [
            i for i in self.load().images.values()
            if (novel_id is None or i.novel_id == novel_id)
            and (page is None or i.page == page)
            and (user_id is None or i.user_id == user_id)
        ]
        return sorted(logs, key=lambda i: i.created_at, reverse=True)

    # Shared content
    def add_share(self, share: SharedContent) -> SharedContent:
        data = self.load()
        data.shares[share.share_id] = share
        self.save()
        return share

    def get_share(self, share_id: str) -> Optional[SharedContent]:
        return self.load().shares.get(share_id)

    def list_shares(self, user_id: str) -> List[SharedContent]:
        shares = [s for s in self.load().shares.values() if s.user_id == user_id]
        return sorted(shares, key=lambda s: s.created_at, reverse=True)

    def save_share(self, share: SharedContent) -> SharedContent:
        self.load().shares[share.share_id] = share
        self.save()
        return share

    def delete_share(self, share_id: str) -> bool:
        data = self.load()
        if data.shares.pop(share_id, None) is None:
            return False
        self.save()
        return True
