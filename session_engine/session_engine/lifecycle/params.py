"""Session creation/edit parameters and their bounds."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

DIFFICULTIES: tuple[str, ...] = ("beginner", "intermediate", "advanced", "easy", "medium", "hard", "expert")
SESSION_TYPES: tuple[str, ...] = ("behavioral", "technical", "mixed")

JOB_TITLE_MIN = 2
JOB_TITLE_MAX = 100
JOB_DESCRIPTION_MAX = 2000
DURATION_MIN = 5
DURATION_MAX = 120

# Public field name -> sessions column, for partial edits.
EDITABLE_FIELDS: dict[str, str] = {
    "job_title": "job_title",
    "session_name": "session_name",
    "job_description": "job_description",
    "difficulty": "difficulty",
    "duration_minutes": "duration_minutes",
    "session_type": "session_type",
}


def _check(field: str, value: Any) -> None:
    if field == "job_title":
        if not isinstance(value, str) or not JOB_TITLE_MIN <= len(value.strip()) <= JOB_TITLE_MAX:
            raise ValueError(f"job_title must be {JOB_TITLE_MIN}-{JOB_TITLE_MAX} characters")
    elif field == "job_description":
        if value is not None and len(value) > JOB_DESCRIPTION_MAX:
            raise ValueError(f"job_description must be at most {JOB_DESCRIPTION_MAX} characters")
    elif field == "difficulty":
        if value not in DIFFICULTIES:
            raise ValueError(f"difficulty must be one of {', '.join(DIFFICULTIES)}")
    elif field == "duration_minutes":
        if isinstance(value, bool) or not isinstance(value, int) or not DURATION_MIN <= value <= DURATION_MAX:
            raise ValueError(f"duration_minutes must be {DURATION_MIN}-{DURATION_MAX}")
    elif field == "session_type":
        if value not in SESSION_TYPES:
            raise ValueError(f"session_type must be one of {', '.join(SESSION_TYPES)}")


@dataclass(frozen=True)
class SessionParams:
    """Job/interview parameters.  Opaque to the engine beyond their bounds.

    Invalid values raise ``ValueError``; the HTTP layer validates first,
    so reaching this is a programming error.
    """

    job_title: str
    job_description: str | None = None
    difficulty: str = "medium"
    duration_minutes: int = 30
    session_type: str = "mixed"
    resume_id: str | None = None
    session_name: str | None = None

    def __post_init__(self) -> None:
        for name in ("job_title", "job_description", "difficulty", "duration_minutes", "session_type"):
            _check(name, getattr(self, name))

    def to_columns(self) -> dict[str, Any]:
        return {
            "job_title": self.job_title.strip(),
            "session_name": self.session_name or self.job_title.strip(),
            "job_description": self.job_description,
            "difficulty": self.difficulty,
            "duration_minutes": self.duration_minutes,
            "session_type": self.session_type,
            "resume_id": self.resume_id,
        }


def edit_columns(changes: dict[str, Any]) -> dict[str, Any]:
    """Translate a partial edit into column values.

    Unknown keys and ``None`` values are dropped.  A new ``job_title``
    also renames the session unless ``session_name`` is given explicitly.
    """
    columns: dict[str, Any] = {}
    for name, value in changes.items():
        if value is None or name not in EDITABLE_FIELDS:
            continue
        _check(name, value)
        columns[EDITABLE_FIELDS[name]] = value.strip() if name == "job_title" else value
    if "job_title" in columns and "session_name" not in columns:
        columns["session_name"] = columns["job_title"]
    return columns
