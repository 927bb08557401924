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
Music Control Errors

Every failure a control request can end in. Each error carries a message key
(looked up in messages.yaml via ConfigManager.msg) plus format fields, so the
worker can record a short human-readable reason without exposing exception text.

Categories:
- Validation: bad or missing job payload fields, unknown actions
- Precondition: expected outcomes of racing user intent against session state
- External: search returned nothing, unsupported source, Lavalink unreachable
"""


class MusicControlError(Exception):
    """Base class for all expected control failures."""

    key = "error_generic"
    default_text = "something broke, try again"

    def __init__(self, text: str | None = None, **fields) -> None:
        self.fields = fields
        # Explicit text wins over the configured message for this key
        self.custom = text is not None
        self.text = text or self.default_text.format(**fields)
        super().__init__(self.text)


# =============================================================================
# VALIDATION
# =============================================================================

class InvalidPayload(MusicControlError):
    key = "invalid_payload"
    default_text = "invalid request: {reason}"


class UnsupportedAction(MusicControlError):
    key = "unsupported_action"
    default_text = "unsupported action: {action}"


class InvalidTrackRef(ValueError):
    """Raised when a track reference has no identifying field."""


# =============================================================================
# PRECONDITIONS
# =============================================================================

class NoActiveSession(MusicControlError):
    key = "no_active_session"
    default_text = "nothing is playing right now"


class NothingPlaying(MusicControlError):
    key = "nothing_playing"
    default_text = "nothing is playing right now"


class NothingToPlay(MusicControlError):
    key = "nothing_to_play"
    default_text = "nothing queued to play"


class AlreadyPlaying(MusicControlError):
    key = "already_playing"
    default_text = "already playing"


class AlreadyPaused(MusicControlError):
    key = "already_paused"
    default_text = "already paused"


class NoNextTrack(MusicControlError):
    key = "no_next_track"
    default_text = "no next track"


class NoPreviousTrack(MusicControlError):
    key = "no_previous_track"
    default_text = "no previous track"


class EmptyQueue(MusicControlError):
    key = "queue_empty"
    default_text = "the queue is already empty"


class TrackNotFound(MusicControlError):
    key = "track_not_found"
    default_text = "that track isn't in the queue"


# =============================================================================
# EXTERNAL DEPENDENCIES
# =============================================================================

class NoSearchResults(MusicControlError):
    key = "no_search_results"
    default_text = "no results for that search"


class UnsupportedSource(MusicControlError):
    key = "unsupported_source"
    default_text = "spotify links aren't supported yet, use a youtube or soundcloud link"


class BackendUnavailable(MusicControlError):
    key = "backend_unavailable"
    default_text = "music backend is offline"


class VoiceUnavailable(MusicControlError):
    key = "voice_unavailable"
    default_text = "can't join that voice channel"


class NoVoiceChannel(MusicControlError):
    key = "no_voice_channel"
    default_text = "join a voice channel first"
