"""Diff and commit value objects.

All models use Pydantic v2 BaseModel with frozen=True for immutability.
Stats are derived per query and never mutated in place; build a new
instance instead.
"""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ChangeKind(StrEnum):
    """How a file changed between the two sides of a diff."""

    ADDED = "added"
    DELETED = "deleted"
    MODIFIED = "modified"
    RENAMED = "renamed"


class ChangeStats(BaseModel):
    """Aggregate line and file counts."""

    model_config = ConfigDict(frozen=True)

    additions: int = Field(default=0, ge=0, description="Lines added")
    deletions: int = Field(default=0, ge=0, description="Lines deleted")
    files_changed: int = Field(default=0, ge=0, description="Number of files touched")

    def __add__(self, other: "ChangeStats") -> "ChangeStats":
        return ChangeStats(
            additions=self.additions + other.additions,
            deletions=self.deletions + other.deletions,
            files_changed=self.files_changed + other.files_changed,
        )


class FileChange(BaseModel):
    """A single file section of a unified diff."""

    model_config = ConfigDict(frozen=True)

    path: str = Field(..., description="Canonical path (new path, or old path when new is empty)")
    old_path: str = Field(default="", description="Path on the old side (differs from path for renames)")
    change_kind: ChangeKind = Field(default=ChangeKind.MODIFIED, description="Kind of change")
    is_binary: bool = Field(default=False, description="Whether git reported the file as binary")
    additions: int = Field(default=0, ge=0, description="Added lines")
    deletions: int = Field(default=0, ge=0, description="Deleted lines")
    too_large: bool = Field(default=False, description="Section exceeded the size guard; content not kept")
    approx_size_bytes: int = Field(default=0, ge=0, description="Length of the raw section text")
    old_content: str = Field(default="", description="Reconstructed old side of the hunks")
    new_content: str = Field(default="", description="Reconstructed new side of the hunks")

    @model_validator(mode="after")
    def _check_invariants(self) -> "FileChange":
        if self.is_binary and (self.additions or self.deletions):
            raise ValueError("binary file changes cannot carry line counts")
        if self.too_large and (self.old_content or self.new_content):
            raise ValueError("oversized file changes must not carry content")
        return self


class DiffResult(BaseModel):
    """Raw diff text plus the stats and file list derived from it."""

    model_config = ConfigDict(frozen=True)

    raw_text: str = Field(default="", description="Unified diff text")
    stats: ChangeStats = Field(default_factory=ChangeStats, description="Aggregate stats")
    changed_files: list[str] = Field(default_factory=list, description="Changed paths, in order")
    before_revision: str | None = Field(default=None, description="Revision on the old side")
    after_revision: str | None = Field(default=None, description="Revision on the new side")

    @property
    def is_empty(self) -> bool:
        return not self.raw_text.strip() and not self.changed_files


class CommitRecord(BaseModel):
    """One commit of a branch history."""

    model_config = ConfigDict(frozen=True)

    revision_id: str = Field(..., description="Full commit hash")
    message: str = Field(default="", description="Full commit message, possibly multi-line")
    authored_at: datetime = Field(..., description="Author date")
    author: str = Field(default="", description="Author name")
    stats: ChangeStats = Field(default_factory=ChangeStats, description="Numstat totals for the commit")
