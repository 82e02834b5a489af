"""Content fingerprints used to detect drift between passes."""

from __future__ import annotations

import copy
import hashlib
import json
from typing import Any, Optional

from operands.constants import FINGERPRINT_ANNOTATION


def content_hash(value: Any) -> str:
    """Deterministic hash of any JSON-serialisable value."""
    canonical = json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


def fingerprint(obj: dict[str, Any]) -> str:
    """Hash of an object's full specification, ignoring its own fingerprint annotation."""
    subject = copy.deepcopy(obj)
    annotations = (subject.get("metadata") or {}).get("annotations")
    if annotations is not None:
        annotations.pop(FINGERPRINT_ANNOTATION, None)
        if not annotations:
            del subject["metadata"]["annotations"]
    return content_hash(subject)


def stamp(obj: dict[str, Any]) -> str:
    """Record the fingerprint of *obj* in its annotations and return it."""
    value = fingerprint(obj)
    obj.setdefault("metadata", {}).setdefault("annotations", {})[FINGERPRINT_ANNOTATION] = value
    return value


def stored_fingerprint(obj: dict[str, Any]) -> Optional[str]:
    return ((obj.get("metadata") or {}).get("annotations") or {}).get(FINGERPRINT_ANNOTATION)
