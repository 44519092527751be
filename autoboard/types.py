from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class ParsedShot:
    shot_name: str
    description: str
    nano_prompt: str


@dataclass(frozen=True)
class ShotSpec:
    id: str
    shot_name: str
    description: str
    generation_prompt: str


@dataclass(frozen=True)
class ImagePayload:
    data: bytes
    mime_type: str = "image/png"
    text: Optional[str] = None


@dataclass
class CritiqueResult:
    has_issues: bool
    issues: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    summary: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hasIssues": self.has_issues,
            "issues": list(self.issues),
            "suggestions": list(self.suggestions),
            "summary": self.summary,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> CritiqueResult:
        flag = data.get("hasIssues", data.get("has_issues", False))
        if isinstance(flag, str):
            flag = flag.strip().lower() in ("true", "yes", "1")
        return cls(
            has_issues=bool(flag),
            issues=_strings(data.get("issues")),
            suggestions=_strings(data.get("suggestions")),
            summary=str(data.get("summary") or ""),
        )


def _strings(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


EVENT_TYPES = ("parse", "generate", "analyze", "regenerate", "done", "error")


@dataclass(frozen=True)
class ProgressEvent:
    type: str
    message: str
    shot_id: Optional[str] = None
    shot_name: Optional[str] = None
    iteration: Optional[int] = None
    analysis: Optional[CritiqueResult] = None

    @property
    def is_terminal(self) -> bool:
        """True for the events that close a scene run (no shot attached)."""
        return self.type == "error" or (self.type == "done" and self.shot_id is None)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": self.type}
        if self.shot_id is not None:
            out["shotId"] = self.shot_id
        if self.shot_name is not None:
            out["shotName"] = self.shot_name
        if self.iteration is not None:
            out["iteration"] = self.iteration
        out["message"] = self.message
        if self.analysis is not None:
            out["analysis"] = self.analysis.to_dict()
        return out
