"""Pydantic models for GitHub payloads crossing the tracker boundary."""

from __future__ import annotations

import datetime as dt
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..config import parse_timestamp

_EPOCH = dt.datetime(1970, 1, 1, tzinfo=dt.timezone.utc)


def _clean_str(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = value.strip()
    return cleaned or None


def _normalize_number(value: object) -> object:
    if isinstance(value, bool):
        raise ValueError("number must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise ValueError("number must be an integer")


class GithubAuthorBoundary(BaseModel):
    """Normalized GitHub user/author payload."""

    model_config = ConfigDict(extra="allow")

    login: str | None = None

    @field_validator("login", mode="before")
    @classmethod
    def _normalize_login(cls, value: object) -> object:
        return _clean_str(value)


class GithubIssueBoundary(BaseModel):
    """Validated issue payload from ``gh issue list/view``."""

    model_config = ConfigDict(extra="allow")

    number: int
    title: str = ""
    body: str = ""
    state: str | None = None
    url: str | None = None
    labels: tuple[str, ...] = ()

    @field_validator("number", mode="before")
    @classmethod
    def _normalize_number(cls, value: object) -> object:
        return _normalize_number(value)

    @field_validator("title", "body", mode="before")
    @classmethod
    def _normalize_text(cls, value: object) -> str:
        return value if isinstance(value, str) else ""

    @field_validator("labels", mode="before")
    @classmethod
    def _normalize_labels(cls, value: object) -> tuple[str, ...]:
        if not isinstance(value, list):
            return ()
        names: list[str] = []
        for entry in value:
            raw = entry.get("name") if isinstance(entry, dict) else entry
            name = _clean_str(raw)
            if name and name not in names:
                names.append(name)
        return tuple(names)


class GithubCommentBoundary(BaseModel):
    """PR conversation comment."""

    model_config = ConfigDict(extra="allow")

    body: str = ""
    created_at: str | None = Field(default=None, alias="createdAt")
    author: GithubAuthorBoundary | None = None

    @field_validator("body", mode="before")
    @classmethod
    def _normalize_body(cls, value: object) -> str:
        return value if isinstance(value, str) else ""

    @field_validator("created_at", mode="before")
    @classmethod
    def _normalize_timestamp(cls, value: object) -> object:
        return _clean_str(value)


class GithubReviewBoundary(BaseModel):
    """PR review event payload."""

    model_config = ConfigDict(extra="allow")

    state: str | None = None
    body: str = ""
    submitted_at: str | None = Field(default=None, alias="submittedAt")
    author: GithubAuthorBoundary | None = None

    @field_validator("state", "submitted_at", mode="before")
    @classmethod
    def _normalize_optional_text(cls, value: object) -> object:
        return _clean_str(value)

    @field_validator("body", mode="before")
    @classmethod
    def _normalize_body(cls, value: object) -> str:
        return value if isinstance(value, str) else ""


class GithubCommitBoundary(BaseModel):
    """Commit entry from ``gh pr list --json commits``."""

    model_config = ConfigDict(extra="allow")

    oid: str | None = None
    committed_date: str | None = Field(default=None, alias="committedDate")

    @field_validator("oid", "committed_date", mode="before")
    @classmethod
    def _normalize_optional_text(cls, value: object) -> object:
        return _clean_str(value)


class GithubPullRequestBoundary(BaseModel):
    """Validated GitHub PR payload used for gating and iteration decisions."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    number: int
    title: str = ""
    body: str = ""
    url: str | None = None
    state: str | None = None
    head_ref_name: str | None = Field(default=None, alias="headRefName")
    is_draft: bool = Field(default=False, alias="isDraft")
    mergeable: str | None = None
    merge_state_status: str | None = Field(default=None, alias="mergeStateStatus")
    review_decision: str | None = Field(default=None, alias="reviewDecision")
    merged_at: str | None = Field(default=None, alias="mergedAt")
    reviews: tuple[GithubReviewBoundary, ...] = ()
    comments: tuple[GithubCommentBoundary, ...] = ()
    commits: tuple[GithubCommitBoundary, ...] = ()

    @field_validator("number", mode="before")
    @classmethod
    def _normalize_number(cls, value: object) -> object:
        return _normalize_number(value)

    @field_validator("title", "body", mode="before")
    @classmethod
    def _normalize_text(cls, value: object) -> str:
        return value if isinstance(value, str) else ""

    @field_validator(
        "url",
        "state",
        "head_ref_name",
        "mergeable",
        "merge_state_status",
        "review_decision",
        "merged_at",
        mode="before",
    )
    @classmethod
    def _normalize_optional_text(cls, value: object) -> object:
        return _clean_str(value)

    @field_validator("is_draft", mode="before")
    @classmethod
    def _normalize_draft(cls, value: object) -> bool:
        return bool(value)

    @field_validator("reviews", "comments", "commits", mode="before")
    @classmethod
    def _normalize_sequence(cls, value: object) -> object:
        if value is None:
            return ()
        # `gh pr view --json commits` wraps entries as {"nodes": [...]} on some versions.
        if isinstance(value, dict) and isinstance(value.get("nodes"), list):
            return value["nodes"]
        return value

    @property
    def is_merged(self) -> bool:
        return bool(self.merged_at) or str(self.state or "").upper() == "MERGED"

    @property
    def is_open(self) -> bool:
        return str(self.state or "OPEN").upper() == "OPEN"

    def last_commit_at(self) -> dt.datetime:
        """Return the newest commit timestamp, or the epoch without commits."""
        latest: dt.datetime | None = None
        for commit in self.commits:
            parsed = parse_timestamp(commit.committed_date)
            if parsed is not None and (latest is None or parsed > latest):
                latest = parsed
        return latest or _EPOCH

    @property
    def payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class GithubInlineCommentBoundary(BaseModel):
    """Inline review comment from the REST ``pulls/{n}/comments`` endpoint."""

    model_config = ConfigDict(extra="allow")

    body: str = ""
    path: str | None = None
    line: int | None = None
    created_at: str | None = None
    user: GithubAuthorBoundary | None = None

    @field_validator("body", mode="before")
    @classmethod
    def _normalize_body(cls, value: object) -> str:
        return value if isinstance(value, str) else ""

    @field_validator("path", "created_at", mode="before")
    @classmethod
    def _normalize_optional_text(cls, value: object) -> object:
        return _clean_str(value)

    @field_validator("line", mode="before")
    @classmethod
    def _normalize_line(cls, value: object) -> object:
        return value if isinstance(value, int) and not isinstance(value, bool) else None


def parse_issue_boundary(raw_issue: object, *, source: str) -> GithubIssueBoundary:
    """Validate a GitHub issue payload."""
    try:
        return GithubIssueBoundary.model_validate(raw_issue)
    except ValidationError as exc:
        raise ValueError(f"invalid github issue payload ({source}): {exc}") from exc


def parse_pr_boundary(raw_payload: object, *, source: str) -> GithubPullRequestBoundary:
    """Validate a GitHub PR payload and return the normalized boundary model."""
    try:
        return GithubPullRequestBoundary.model_validate(raw_payload)
    except ValidationError as exc:
        raise ValueError(f"invalid github PR payload ({source}): {exc}") from exc


def parse_inline_comment_boundary(
    raw_payload: object, *, source: str
) -> GithubInlineCommentBoundary:
    try:
        return GithubInlineCommentBoundary.model_validate(raw_payload)
    except ValidationError as exc:
        raise ValueError(f"invalid inline comment payload ({source}): {exc}") from exc
