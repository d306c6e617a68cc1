"""Failure taxonomy shared by the hub, page agents and observers.

Most of these never propagate: the hub drops unresolvable or unknown
traffic after logging it, and agents turn failures into ``{"ok": False,
"error": code}`` acks.  The classes exist so every boundary names the
failure it absorbs the same way, and so the two that do cross a boundary
(``PlaybackRejected`` from elements, ``DispatchUnreachable`` from the page
directory) can be caught precisely.
"""


class MediaHubError(Exception):
    code = "error"


class UnresolvableIdentity(MediaHubError):
    """Update/Remove without a page id or element id."""
    code = "unresolvable-identity"


class UnknownSession(MediaHubError):
    """Command for a session id the registry does not hold."""
    code = "unknown-session"


class UnknownElement(MediaHubError):
    """Addressed command for an untracked element or unsupported command."""
    code = "unknown-element"


class PlaybackRejected(MediaHubError):
    """The host refused to start playback (autoplay policy, no source...)."""
    code = "playback-rejected"


class DispatchUnreachable(MediaHubError):
    """An addressed command could not be delivered to its page."""
    code = "dispatch-unreachable"


class ChannelClosed(MediaHubError):
    """A push went to an observer channel that is already gone."""
    code = "channel-closed"
