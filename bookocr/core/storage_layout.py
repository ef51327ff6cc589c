from __future__ import annotations

import unicodedata
from collections.abc import Iterable, Iterator
from typing import Union

from bookocr.core.models import IMAGE_PREFIX, OCR_RESULT_NAME, PageRef


DirectoryTree = dict[str, Union["DirectoryTree", str]]


def build_directory_tree(keys: Iterable[str]) -> DirectoryTree:
    """Nest flat ``/``-joined keys into a tree whose leaves hold the full key."""
    tree: DirectoryTree = {}
    for key in keys:
        parts = [part for part in key.split("/") if part]
        current = tree
        for index, part in enumerate(parts):
            is_leaf = index == len(parts) - 1
            if part not in current:
                current[part] = key if is_leaf else {}
            if is_leaf:
                break
            child = current[part]
            if not isinstance(child, dict):
                # a plain object shadows a "directory" of the same name
                break
            current = child
    return tree


def sort_key(name: str) -> tuple[str, str]:
    return (unicodedata.normalize("NFKC", name).casefold(), name)


def sorted_names(node: DirectoryTree) -> list[str]:
    return sorted(node, key=sort_key)


def find_image_name(page_node: DirectoryTree) -> str | None:
    for name in sorted_names(page_node):
        if name.startswith(IMAGE_PREFIX) and not isinstance(page_node[name], dict):
            return name
    return None


def has_ocr_result(page_node: DirectoryTree) -> bool:
    return isinstance(page_node.get(OCR_RESULT_NAME), str)


def iter_pages(tree: DirectoryTree) -> Iterator[tuple[PageRef, bool]]:
    """Yield ``(page, done)`` for every page directory, owners, books and pages in stable order.

    A page is a directory holding an ``img.*`` object. Its book is the path between the
    owner and the page, so nested book folders are supported. Directories without any
    image are never pages, and pages sitting directly under an owner have no book and
    are ignored.
    """
    for owner in sorted_names(tree):
        owner_node = tree[owner]
        if isinstance(owner_node, dict):
            yield from _walk(owner, [], owner_node)


def _walk(owner: str, parts: list[str], node: DirectoryTree) -> Iterator[tuple[PageRef, bool]]:
    for name in sorted_names(node):
        child = node[name]
        if not isinstance(child, dict):
            continue

        image_name = find_image_name(child)
        if image_name is None:
            yield from _walk(owner, [*parts, name], child)
            continue
        if not parts:
            continue

        page = PageRef(owner=owner, book="/".join(parts), page=name, image_name=image_name)
        yield page, has_ocr_result(child)
