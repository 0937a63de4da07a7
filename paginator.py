"""
Splits plain-text and EPUB novels into fixed-size pages by word count,
and resolves any page number back to its content.
"""

import asyncio
import logging
import os
import re
from bisect import bisect_right
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Hashable, List, Optional
from urllib.parse import unquote

import ebooklib
from ebooklib import epub
from bs4 import BeautifulSoup, Comment

from cache import LRUCache

logger = logging.getLogger(__name__)

DEFAULT_WORDS_PER_PAGE = 600
TEXT_FILE = "txt"
EPUB_FILE = "epub"

_WORD_RE = re.compile(r"\S+")


# --- Errors ---

class PaginatorError(Exception):
    """Base class for pagination failures."""


class DocumentParseError(PaginatorError):
    """The EPUB container or one of its chapters could not be read."""


class InvalidPageNumber(PaginatorError):
    """A page was requested outside the document's page range."""

    def __init__(self, page_number: int, total_pages: Optional[int] = None):
        self.page_number = page_number
        self.total_pages = total_pages
        if total_pages is None:
            message = f"Invalid page number {page_number}"
        else:
            message = f"Invalid page number {page_number} (document has {total_pages} pages)"
        super().__init__(message)


# --- Data structures ---

@dataclass(frozen=True)
class WordToken:
    """A whitespace-delimited word and where it sits in the source text."""
    text: str
    start: int        # offset of the first character
    end: int          # offset just past the last character


@dataclass(frozen=True)
class PageWindow:
    """Half-open range [start, end) of word indices covered by a page."""
    page_number: int
    start: int
    end: int
    total_words: int

    @property
    def past_end(self) -> bool:
        return self.start >= self.total_words


@dataclass
class TextIndex:
    """Word boundaries of a plain-text document."""
    word_starts: List[int]
    length: int       # character length of the decoded text

    @property
    def total_words(self) -> int:
        return len(self.word_starts)


@dataclass
class IndexedChapter:
    """
    One document in the EPUB spine, with its share of the book's words.
    """
    order: int               # position in the spine (reading order)
    id: str                  # manifest id (e.g., 'chapter_1')
    href: str                # file name inside the container
    title: str               # TOC title, empty when the TOC has none
    content: str             # cleaned inner HTML of <body>
    word_count: int
    cumulative_words: int = 0  # words in all earlier chapters


@dataclass
class ChapterIndex:
    """Cumulative word-count table over an EPUB's chapters."""
    chapters: List[IndexedChapter] = field(default_factory=list)
    source_file: str = ""

    @classmethod
    def from_chapters(cls, chapters: List[IndexedChapter],
                      source_file: str = "") -> "ChapterIndex":
        """Sort chapters into reading order and fill in cumulative counts."""
        ordered = sorted(chapters, key=lambda c: c.order)
        running = 0
        for chapter in ordered:
            chapter.cumulative_words = running
            running += chapter.word_count
        return cls(chapters=ordered, source_file=source_file)

    @property
    def total_words(self) -> int:
        if not self.chapters:
            return 0
        last = self.chapters[-1]
        return last.cumulative_words + last.word_count

    @property
    def total_chapters(self) -> int:
        return len(self.chapters)

    def locate(self, word_index: int) -> Optional[int]:
        """
        Position of the chapter holding the given global word index,
        or None when the index lies outside the book.
        """
        if word_index < 0 or word_index >= self.total_words:
            return None
        starts = [c.cumulative_words for c in self.chapters]
        # Rightmost chapter starting at or before the word; empty chapters
        # share their start with the next one and are skipped this way.
        return bisect_right(starts, word_index) - 1


@dataclass
class ResolvedPage:
    """Content of one page plus where it came from."""
    content: str
    is_html: bool
    chapter_index: Optional[int] = None
    chapter_title: Optional[str] = None
    word_offset: Optional[int] = None
    words_to_take: Optional[int] = None
    total_chapters: Optional[int] = None

    def metadata(self) -> Dict[str, object]:
        """Positional fields for API responses (empty ones left out)."""
        data: Dict[str, object] = {"is_html": self.is_html}
        for key in ("chapter_index", "chapter_title", "word_offset",
                    "words_to_take", "total_chapters"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data


# --- Word tokenizer ---

def tokenize(content: str) -> List[WordToken]:
    """Split text into non-empty whitespace-delimited words with offsets."""
    return [WordToken(m.group(), m.start(), m.end()) for m in _WORD_RE.finditer(content)]


def count_words(content: str) -> int:
    return sum(1 for _ in _WORD_RE.finditer(content))


def locate_token(content: str, token: str, start: int = 0, occurrence: int = 1) -> int:
    """
    Offset of the Nth whole-word occurrence of `token` at or after `start`.
    Returns -1 when there are fewer than `occurrence` matches.
    """
    if occurrence < 1:
        raise ValueError("occurrence must be at least 1")
    seen = 0
    for match in _WORD_RE.finditer(content, start):
        if match.group() == token:
            seen += 1
            if seen == occurrence:
                return match.start()
    return -1


# --- Page windows ---

def _check_words_per_page(words_per_page: int):
    if words_per_page <= 0:
        raise ValueError("words_per_page must be positive")


def count_pages(total_words: int, words_per_page: int = DEFAULT_WORDS_PER_PAGE) -> int:
    """ceil(total_words / words_per_page); an empty document has 0 pages."""
    _check_words_per_page(words_per_page)
    return (total_words + words_per_page - 1) // words_per_page


def page_window(page_number: int, words_per_page: int, total_words: int) -> PageWindow:
    _check_words_per_page(words_per_page)
    if page_number < 1:
        raise InvalidPageNumber(page_number, count_pages(total_words, words_per_page))
    start = (page_number - 1) * words_per_page
    end = min(start + words_per_page, total_words)
    return PageWindow(page_number=page_number, start=start, end=end, total_words=total_words)


# --- Plain text ---

def build_text_index(content: str) -> TextIndex:
    return TextIndex(
        word_starts=[m.start() for m in _WORD_RE.finditer(content)],
        length=len(content),
    )


def count_pages_in_text(content: str, words_per_page: int = DEFAULT_WORDS_PER_PAGE) -> int:
    return count_pages(count_words(content), words_per_page)


def slice_text_page(content: str, text_index: TextIndex, page_number: int,
                    words_per_page: int = DEFAULT_WORDS_PER_PAGE,
                    strict: bool = False) -> str:
    """
    Return the exact substring of a page, original whitespace included.

    A page runs from its first word up to the first word of the next page
    (or the end of the text). The first page also keeps any leading
    whitespace, so the pages concatenate back into the whole document.
    """
    window = page_window(page_number, words_per_page, text_index.total_words)
    if window.past_end:
        if strict:
            raise InvalidPageNumber(page_number, count_pages(text_index.total_words, words_per_page))
        return ""

    begin = 0 if window.start == 0 else text_index.word_starts[window.start]
    if window.end < text_index.total_words:
        stop = text_index.word_starts[window.end]
    else:
        stop = len(content)
    return content[begin:stop]


def get_text_page(content: str, page_number: int,
                  words_per_page: int = DEFAULT_WORDS_PER_PAGE,
                  strict: bool = False) -> str:
    return slice_text_page(content, build_text_index(content), page_number,
                           words_per_page, strict)


def read_text_file(file_path: str) -> str:
    with open(file_path, "r", encoding="utf-8", errors="replace") as f:
        return f.read()


# --- EPUB ---

def clean_html_content(soup: BeautifulSoup) -> BeautifulSoup:

    # Remove dangerous/useless tags
    for tag in soup(['script', 'style', 'iframe', 'video', 'nav', 'form', 'button', 'input']):
        tag.decompose()

    # Remove HTML comments
    for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
        comment.extract()

    return soup


def extract_plain_text(soup) -> str:
    """Text used for word counting, whitespace collapsed."""
    text = soup.get_text(separator=' ')
    return ' '.join(text.split())


def collect_toc_titles(toc_list, titles: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """
    Walk ebooklib's TOC and map each chapter file to its first title.
    """
    if titles is None:
        titles = {}

    for item in toc_list:
        # ebooklib TOC items are either `Link` objects or tuples (Section, [Children])
        if isinstance(item, tuple):
            section, children = item
            _remember_title(titles, section)
            collect_toc_titles(children, titles)
        elif isinstance(item, (epub.Link, epub.Section)):
            _remember_title(titles, item)

    return titles


def _remember_title(titles: Dict[str, str], entry):
    href = getattr(entry, 'href', None) or ''
    title = (getattr(entry, 'title', None) or '').strip()
    if not href or not title:
        return
    file_href = unquote(href.split('#')[0])
    titles.setdefault(file_href, title)


def _read_epub(file_path: str):
    try:
        return epub.read_epub(file_path)
    except OSError:
        raise
    except Exception as e:
        raise DocumentParseError(f"Cannot open EPUB container {file_path}: {e}") from e


def _extract_chapter(item, order: int, title: str) -> IndexedChapter:
    try:
        raw_content = item.get_content().decode('utf-8', errors='ignore')
        soup = clean_html_content(BeautifulSoup(raw_content, 'html.parser'))
    except Exception as e:
        raise DocumentParseError(f"Cannot parse chapter {item.get_name()}: {e}") from e

    body = soup.find('body')
    if body:
        markup = "".join(str(x) for x in body.contents)
        text = extract_plain_text(body)
    else:
        markup = str(soup)
        text = extract_plain_text(soup)

    return IndexedChapter(
        order=order,
        id=item.get_id(),
        href=item.get_name(),
        title=title,
        content=markup,
        word_count=count_words(text),
    )


async def build_chapter_index(file_path: str) -> ChapterIndex:
    """
    Parse an EPUB and build its chapter index.

    Chapters are extracted concurrently, one task per spine document, and
    only assembled once every task has finished. Any failure aborts the
    whole build.
    """
    book = await asyncio.to_thread(_read_epub, file_path)
    titles = collect_toc_titles(book.toc)

    jobs = []
    for order, spine_item in enumerate(book.spine):
        item_id, _linear = spine_item
        item = book.get_item_with_id(item_id)
        if not item or item.get_type() != ebooklib.ITEM_DOCUMENT:
            continue
        title = titles.get(unquote(item.get_name()), "")
        jobs.append(asyncio.to_thread(_extract_chapter, item, order, title))

    try:
        chapters = await asyncio.gather(*jobs)
    except PaginatorError:
        raise
    except Exception as e:
        raise DocumentParseError(f"Cannot index {file_path}: {e}") from e

    index = ChapterIndex.from_chapters(list(chapters), source_file=os.path.basename(file_path))
    logger.info("Indexed %s: %d chapters, %d words",
                index.source_file, index.total_chapters, index.total_words)
    return index


def resolve_epub_page(index: ChapterIndex, page_number: int,
                      words_per_page: int = DEFAULT_WORDS_PER_PAGE,
                      strict: bool = False) -> ResolvedPage:
    """
    Find the chapter holding a page's first word.

    The whole chapter markup is returned; `word_offset` and `words_to_take`
    tell the client which part of it belongs to the page.
    """
    window = page_window(page_number, words_per_page, index.total_words)
    position = index.locate(window.start)
    if position is None:
        if strict:
            raise InvalidPageNumber(page_number, count_pages(index.total_words, words_per_page))
        return ResolvedPage(content="", is_html=True)

    chapter = index.chapters[position]
    word_offset = window.start - chapter.cumulative_words
    return ResolvedPage(
        content=chapter.content,
        is_html=True,
        chapter_index=position,
        chapter_title=chapter.title or f"Chapter {position + 1}",
        word_offset=word_offset,
        words_to_take=min(words_per_page, chapter.word_count - word_offset),
        total_chapters=index.total_chapters,
    )


def page_text(page: ResolvedPage) -> str:
    """
    Plain text of a resolved page. For EPUB pages this is narrowed to the
    page's own words inside the chapter.
    """
    if not page.is_html:
        return page.content
    words = extract_plain_text(BeautifulSoup(page.content, 'html.parser')).split()
    if page.word_offset is None:
        return ' '.join(words)
    return ' '.join(words[page.word_offset:page.word_offset + (page.words_to_take or 0)])


# --- Caching ---

class IndexCache:
    """
    Per-file indices keyed by file identity (path, mtime, size).

    Concurrent requests for the same uncached file wait on a single build.
    """

    def __init__(self, cache: LRUCache):
        self._cache = cache
        self._pending: Dict[Hashable, asyncio.Future] = {}

    @staticmethod
    def file_key(file_path: str) -> Hashable:
        stat = os.stat(file_path)
        return (os.path.abspath(file_path), stat.st_mtime_ns, stat.st_size)

    def __len__(self) -> int:
        return len(self._cache)

    async def get_or_build(self, file_path: str,
                           build: Callable[[str], Awaitable]):
        key = self.file_key(file_path)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        task = self._pending.get(key)
        if task is None:
            task = asyncio.ensure_future(build(file_path))
            self._pending[key] = task
            task.add_done_callback(lambda done: self._finish_build(key, done))

        # A cancelled caller must not cancel the build other callers share
        return await asyncio.shield(task)

    def _finish_build(self, key: Hashable, task: asyncio.Future):
        self._pending.pop(key, None)
        if task.cancelled() or task.exception() is not None:
            return
        self._cache.put(key, task.result())

    def clear(self):
        self._cache.clear()


# --- Service ---

class Paginator:
    """
    Page counting and page resolution for uploaded novels.

    Upload-time counting and read-time resolution go through the same
    tokenizer and index builder, so their totals always agree.
    """

    def __init__(self, words_per_page: int = DEFAULT_WORDS_PER_PAGE,
                 index_cache: Optional[IndexCache] = None,
                 text_cache: Optional[IndexCache] = None,
                 parse_timeout: Optional[float] = 30.0,
                 strict_bounds: bool = False):
        _check_words_per_page(words_per_page)
        self.words_per_page = words_per_page
        self.index_cache = index_cache or IndexCache(LRUCache(32))
        self.text_cache = text_cache or IndexCache(LRUCache(32))
        self.parse_timeout = parse_timeout
        self.strict_bounds = strict_bounds

    def _words_per_page(self, words_per_page: Optional[int]) -> int:
        if words_per_page is None:
            return self.words_per_page
        _check_words_per_page(words_per_page)
        return words_per_page

    # Plain text

    async def _load_text(self, file_path: str):
        content = await asyncio.to_thread(read_text_file, file_path)
        text_index = await self.text_cache.get_or_build(
            file_path, lambda _path: asyncio.to_thread(build_text_index, content)
        )
        return content, text_index

    async def count_pages_in_text_file(self, file_path: str,
                                       words_per_page: Optional[int] = None) -> int:
        _content, text_index = await self._load_text(file_path)
        return count_pages(text_index.total_words, self._words_per_page(words_per_page))

    async def get_text_page_content(self, file_path: str, page_number: int,
                                    words_per_page: Optional[int] = None) -> str:
        content, text_index = await self._load_text(file_path)
        return slice_text_page(content, text_index, page_number,
                               self._words_per_page(words_per_page),
                               self.strict_bounds)

    # EPUB

    async def _build_index(self, file_path: str) -> ChapterIndex:
        try:
            return await asyncio.wait_for(build_chapter_index(file_path), self.parse_timeout)
        except asyncio.TimeoutError as e:
            raise DocumentParseError(
                f"Timed out after {self.parse_timeout}s parsing {file_path}"
            ) from e

    async def load_chapter_index(self, file_path: str) -> ChapterIndex:
        return await self.index_cache.get_or_build(file_path, self._build_index)

    async def count_pages_in_epub_file(self, file_path: str,
                                       words_per_page: Optional[int] = None) -> int:
        index = await self.load_chapter_index(file_path)
        return count_pages(index.total_words, self._words_per_page(words_per_page))

    async def get_epub_page_content(self, file_path: str, page_number: int,
                                    words_per_page: Optional[int] = None) -> ResolvedPage:
        index = await self.load_chapter_index(file_path)
        return resolve_epub_page(index, page_number,
                                 self._words_per_page(words_per_page),
                                 self.strict_bounds)

    # Dispatch on document type

    async def count_pages(self, file_path: str, file_type: str) -> int:
        if file_type == EPUB_FILE:
            return await self.count_pages_in_epub_file(file_path)
        return await self.count_pages_in_text_file(file_path)

    async def get_page(self, file_path: str, file_type: str, page_number: int) -> ResolvedPage:
        if file_type == EPUB_FILE:
            return await self.get_epub_page_content(file_path, page_number)
        content = await self.get_text_page_content(file_path, page_number)
        return ResolvedPage(content=content, is_html=False)
