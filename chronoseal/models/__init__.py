from __future__ import annotations

from chronoseal.models.index_state import KeywordCounter, PendingInsert  # noqa: F401
from chronoseal.models.store import IndexEntry, StoredDocument  # noqa: F401
