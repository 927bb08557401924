# Copyright (C) 2026 grodz
#
# This file is part of Encore.
#
# Encore is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""
Control Jobs

Remote-control requests written by the web panel into the control_jobs table.
The raw JSON payload is parsed once, at the boundary, into a typed variant per
action. Anything that doesn't fit fails the job before any side effect.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Union

from core.errors import InvalidPayload, UnsupportedAction
from core.session import MAX_VOLUME, MIN_VOLUME, FilterPreset
from core.track import Requester


class ControlAction(str, Enum):
    PLAY = "play"
    PAUSE = "pause"
    STOP = "stop"
    SKIP = "skip"
    PREVIOUS = "previous"
    ADD = "add"
    REMOVE = "remove"
    REORDER = "reorder"
    CLEAR = "clear"
    VOLUME = "volume"
    AUTOPLAY = "autoplay"
    FILTER = "filter"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_STATUSES = (JobStatus.SUCCEEDED, JobStatus.FAILED)


# =============================================================================
# PAYLOAD VARIANTS
# =============================================================================

@dataclass(frozen=True)
class NoPayload:
    """play / pause / stop / skip / previous / clear."""


@dataclass(frozen=True)
class AddPayload:
    query: str
    requester: Requester | None = None
    # Voice channel to join when the guild has no session yet
    voice_channel_id: int | None = None


@dataclass(frozen=True)
class RemovePayload:
    track_id: str | None = None
    index: int | None = None


@dataclass(frozen=True)
class ReorderPayload:
    order: tuple[str, ...]


@dataclass(frozen=True)
class VolumePayload:
    level: int


@dataclass(frozen=True)
class AutoplayPayload:
    enabled: bool


@dataclass(frozen=True)
class FilterPayload:
    preset: FilterPreset


Payload = Union[
    NoPayload, AddPayload, RemovePayload, ReorderPayload,
    VolumePayload, AutoplayPayload, FilterPayload,
]


@dataclass
class ControlJob:
    """A claimed row from control_jobs."""

    job_id: str
    community_id: int
    action: str
    payload: Any = None
    requested_by: str | None = None
    status: JobStatus = JobStatus.PENDING
    created_at: datetime | None = None
    updated_at: datetime | None = None
    error_message: str | None = None


def parse_action(raw: str) -> ControlAction:
    try:
        return ControlAction(str(raw).strip().lower())
    except ValueError:
        raise UnsupportedAction(action=raw) from None


def _as_object(payload: Any) -> dict:
    # null payload is fine for actions without fields
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise InvalidPayload(reason="payload must be an object")
    return payload


def _parse_snowflake(value: Any, name: str) -> int | None:
    # JSON producers send discord ids as strings (they overflow JS numbers)
    if value is None:
        return None
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if isinstance(value, int) and not isinstance(value, bool) and value > 0:
        return value
    raise InvalidPayload(reason=f"{name} must be a discord id")


def parse_payload(action: ControlAction, payload: Any) -> Payload:
    """Validate a raw payload against the action's field contract."""
    data = _as_object(payload)

    if action == ControlAction.ADD:
        query = data.get("query")
        if not isinstance(query, str) or not query.strip():
            raise InvalidPayload("enter something to search for", reason="missing query")
        return AddPayload(
            query=query.strip(),
            requester=Requester.from_dict(data.get("requester")),
            voice_channel_id=_parse_snowflake(data.get("voiceChannelId"), "voiceChannelId"),
        )

    if action == ControlAction.REMOVE:
        track_id = data.get("trackId")
        index = data.get("index")
        if track_id is not None and (not isinstance(track_id, str) or not track_id.strip()):
            raise InvalidPayload(reason="trackId must be a non-empty string")
        # bool is an int subclass, reject it explicitly
        if index is not None and (isinstance(index, bool) or not isinstance(index, int) or index < 0):
            raise InvalidPayload(reason="index must be a non-negative integer")
        if track_id is None and index is None:
            raise InvalidPayload(reason="trackId or index is required")
        return RemovePayload(track_id=track_id.strip() if track_id else None, index=index)

    if action == ControlAction.REORDER:
        order = data.get("order")
        if not isinstance(order, list):
            raise InvalidPayload("nothing to reorder", reason="order must be a list")
        ids = tuple(item for item in order if isinstance(item, str) and item)
        if not ids:
            raise InvalidPayload("nothing to reorder", reason="order is empty")
        return ReorderPayload(order=ids)

    if action == ControlAction.VOLUME:
        level = data.get("level")
        if isinstance(level, bool) or not isinstance(level, int) or not MIN_VOLUME <= level <= MAX_VOLUME:
            raise InvalidPayload(reason=f"level must be an integer {MIN_VOLUME}-{MAX_VOLUME}")
        return VolumePayload(level=level)

    if action == ControlAction.AUTOPLAY:
        enabled = data.get("enabled")
        if not isinstance(enabled, bool):
            raise InvalidPayload(reason="enabled must be true or false")
        return AutoplayPayload(enabled=enabled)

    if action == ControlAction.FILTER:
        try:
            preset = FilterPreset.parse(data.get("preset"))
        except ValueError:
            raise InvalidPayload(reason=f"unknown filter preset {data.get('preset')!r}") from None
        return FilterPayload(preset=preset)

    return NoPayload()
