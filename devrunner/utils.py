"""
DevRunner Utilities

Small helpers shared by the pipeline: input fingerprinting, slugs, branch
names and feature tags.
"""

import hashlib
import json
import re
import uuid
from datetime import datetime, timezone
from typing import Any

_SLUG_INVALID = re.compile(r"[^a-z0-9]+")


def hash_input(payload: Any) -> str:
    """Stable sha256 over the canonical JSON form of an agent payload."""
    canonical = json.dumps(
        payload if payload is not None else {},
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def slugify(value: str) -> str:
    return _SLUG_INVALID.sub("-", (value or "").lower()).strip("-")[:50]


def to_branch_name(run_id: str, iteration_index: int, name: str) -> str:
    """iter/<first 8 chars of run id>-<index>-<slug>"""
    return f"iter/{run_id[:8]}-{iteration_index}-{slugify(name) or 'scope'}"


def to_feature_tag(name: str) -> str:
    return f"@iter-{slugify(name).replace('-', '_') or 'scope'}"


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()

