from __future__ import annotations

from collections.abc import Collection

from bookocr.core.models import PageRef, Task
from bookocr.core.storage_layout import DirectoryTree, iter_pages
from bookocr.runtime.object_store import ObjectStore, load_tree


BookKey = tuple[str, str]


def find_unfinished_pages(tree: DirectoryTree) -> list[PageRef]:
    return [page for page, done in iter_pages(tree) if not done]


def first_unfinished_task(tree: DirectoryTree, exclude: Collection[BookKey] = ()) -> Task | None:
    current: BookKey | None = None
    pages: list[PageRef] = []

    for page, done in iter_pages(tree):
        key = (page.owner, page.book)
        if done or key in exclude:
            continue
        if current is None:
            current = key
        if key == current:
            pages.append(page)

    if current is None:
        return None
    return Task(owner=current[0], book=current[1], pages=tuple(pages))


class TaskDiscovery:
    """Derives the next unit of OCR work from the object store.

    Nothing is cached between calls: every query lists the store again, so the
    queue always reflects which ``ocr.json`` artifacts exist right now.
    """

    def __init__(self, store: ObjectStore):
        self.store = store

    def has_unfinished_work(self, exclude: Collection[BookKey] = ()) -> bool:
        return self.next_task(exclude) is not None

    def next_task(self, exclude: Collection[BookKey] = ()) -> Task | None:
        tree = load_tree(self.store)
        return first_unfinished_task(tree, exclude=exclude)
