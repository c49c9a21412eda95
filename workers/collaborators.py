"""
External collaborators consumed by the post worker.

The concrete destination API client and media storage live outside this
repository; they plug in by implementing these interfaces.
"""
from __future__ import annotations

import abc
from typing import Optional

from models.schemas import (
    EligibilityResult, MediaAsset, SubmissionRequest, SubmissionResult,
)


class SubmissionClient(abc.ABC):
    """An authenticated client for one owner's destination account."""

    @abc.abstractmethod
    async def submit(self, request: SubmissionRequest) -> SubmissionResult:
        ...


class SubmissionClientProvider(abc.ABC):

    @abc.abstractmethod
    async def resolve_for_owner(self, owner_id: int) -> Optional[SubmissionClient]:
        """Return the owner's active client, or None when no account is linked."""
        ...

    @abc.abstractmethod
    async def check_eligibility(self, owner_id: int, destination: str) -> EligibilityResult:
        """Destination posting rules (karma, account age, cooldowns, bans)."""
        ...


class MediaResolver(abc.ABC):

    @abc.abstractmethod
    async def resolve(self, media_key: str, owner_id: int) -> Optional[MediaAsset]:
        ...
