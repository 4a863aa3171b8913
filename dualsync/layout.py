"""
Key namespaces for each category in both stores.
"""

from __future__ import annotations

import time
import uuid
from typing import Optional

from dualsync.types import SETTINGS_KEY, Category

SETTINGS_COLLECTION = "config"

# FastStore has no place for test results; they only live in the durable store.
FAST_NAMESPACES = {
    Category.USER: "users",
    Category.SETTINGS: SETTINGS_KEY,
    Category.CONTENT: "content_data",
}

DURABLE_COLLECTIONS = {
    Category.USER: "users",
    Category.SETTINGS: SETTINGS_COLLECTION,
    Category.CONTENT: "content_data",
}


def fast_path(category: Category, key: Optional[str] = None) -> str:
    """Return the FastStore path for a record, or its namespace if no key."""
    namespace = FAST_NAMESPACES.get(category)
    if namespace is None:
        raise KeyError(f"{category.value} is not stored in the fast store")
    if category == Category.SETTINGS or key is None:
        return namespace
    return f"{namespace}/{key}"


def durable_collection(category: Category, scope: Optional[str] = None) -> str:
    if category == Category.TEST_RESULT:
        if not scope:
            raise ValueError("test results are scoped under a user id")
        return f"users/{scope}/test_results"
    return DURABLE_COLLECTIONS[category]


def durable_doc_id(category: Category, key: str) -> str:
    if category == Category.SETTINGS:
        return SETTINGS_KEY
    return key


def split_scoped_key(category: Category, key: str) -> tuple[Optional[str], str]:
    """Split ``user_id/doc_id`` keys used for scoped categories."""
    if category != Category.TEST_RESULT:
        return None, key
    scope, _, doc_id = key.partition("/")
    if not doc_id:
        raise ValueError(f"expected '<user_id>/<result_id>', got {key!r}")
    return scope, doc_id


def make_result_id(test_id: str, now: Optional[float] = None) -> str:
    """Build a test result key: test id, submission millis, random suffix.

    The suffix keeps two submissions within the same millisecond apart.
    """
    millis = int((now if now is not None else time.time()) * 1000)
    return f"{test_id}_{millis}_{uuid.uuid4().hex[:8]}"
