from __future__ import annotations

import json
import logging
import re
from datetime import UTC, datetime
from typing import Any

from conductor.errors import ConductorError
from conductor.safety import SafetyValidator
from conductor.state import StateStore

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.5


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _pattern_key(text: str) -> str:
    words = re.findall(r"[a-z0-9]+", text.lower())
    return "-".join(words[:8]) or "pattern"


class PatternLibrary:
    """Learned behavioral patterns fed back into the gateway system prompt.

    New patterns are screened by the safety validator and stored unvalidated;
    only validated, non-harmful patterns are ever surfaced.
    """

    def __init__(self, store: StateStore, validator: SafetyValidator) -> None:
        self.store = store
        self.validator = validator

    def learn(
        self,
        pattern_type: str,
        instruction: str,
        *,
        keywords: list[str] | None = None,
        learned_by: str = "user",
    ) -> dict[str, Any]:
        verdict = self.validator.validate(instruction)
        key = _pattern_key(instruction)
        existing = self.store.get_pattern(pattern_type, key) or {}
        now = _utcnow_iso()
        pattern = {
            "pattern_type": pattern_type,
            "pattern_key": key,
            "pattern_data": {"instruction": instruction, "keywords": list(keywords or [])},
            "confidence": float(existing.get("confidence", DEFAULT_CONFIDENCE)),
            "success_count": int(existing.get("success_count", 0)),
            "failure_count": int(existing.get("failure_count", 0)),
            "is_validated": False,
            "is_harmful": not verdict.safe,
            "safety": verdict.to_dict(),
            "learned_by": learned_by,
            "created_at": existing.get("created_at", now),
            "updated_at": now,
        }
        self.store.put_pattern(pattern)
        if verdict.safe:
            logger.info("stored pattern %s:%s pending validation", pattern_type, key)
        else:
            logger.warning(
                "stored pattern %s:%s flagged harmful: %s", pattern_type, key, verdict.flags
            )
        return pattern

    def approve(self, pattern_type: str, pattern_key: str) -> dict[str, Any]:
        pattern = self.store.get_pattern(pattern_type, pattern_key)
        if pattern is None:
            raise ConductorError(f"Pattern not found: {pattern_type}:{pattern_key}")
        if pattern.get("is_harmful"):
            raise ConductorError(
                f"Refusing to validate harmful pattern {pattern_type}:{pattern_key}"
            )
        pattern["is_validated"] = True
        pattern["updated_at"] = _utcnow_iso()
        self.store.put_pattern(pattern)
        return pattern

    def record_outcome(self, pattern_type: str, pattern_key: str, *, success: bool) -> None:
        pattern = self.store.get_pattern(pattern_type, pattern_key)
        if pattern is None:
            return
        field_name = "success_count" if success else "failure_count"
        pattern[field_name] = int(pattern.get(field_name, 0)) + 1
        total = int(pattern.get("success_count", 0)) + int(pattern.get("failure_count", 0))
        pattern["confidence"] = round(int(pattern.get("success_count", 0)) / total, 2)
        pattern["last_used_at"] = _utcnow_iso()
        self.store.put_pattern(pattern)

    def active(self, limit: int = 10) -> list[dict[str, Any]]:
        patterns = [
            item
            for item in self.store.list_patterns()
            if item.get("is_validated") and not item.get("is_harmful")
        ]
        patterns.sort(key=lambda item: float(item.get("confidence", 0.0)), reverse=True)
        return patterns[:limit]

    def search(self, query: str, limit: int = 5) -> list[dict[str, Any]]:
        terms = {word for word in re.findall(r"[a-z0-9]+", query.lower()) if len(word) > 2}
        scored: list[tuple[int, dict[str, Any]]] = []
        for pattern in self.active(limit=100):
            data = pattern.get("pattern_data", {})
            haystack = " ".join(
                [str(data.get("instruction", "")), *[str(k) for k in data.get("keywords", [])]]
            ).lower()
            hits = sum(1 for term in terms if term in haystack)
            if hits:
                scored.append((hits, pattern))
        scored.sort(key=lambda item: item[0], reverse=True)
        return [pattern for _, pattern in scored[:limit]]

    def render_prompt_section(self, limit: int = 10) -> str:
        patterns = self.active(limit=limit)
        if not patterns:
            return ""
        lines = ["## LEARNED PATTERNS"]
        for pattern in patterns:
            lines.append(
                f"- {pattern['pattern_type']}: "
                f"{json.dumps(pattern.get('pattern_data', {}), ensure_ascii=False)}"
            )
        return "\n".join(lines)
