"""Exception types for CrowdQueue."""


class CrowdQueueError(Exception):
    """Base class for all CrowdQueue errors."""


class InvalidInputError(CrowdQueueError):
    """A request was malformed and was rejected before touching any state."""


class ProviderError(CrowdQueueError):
    """The playback provider could not complete a call."""


class ProviderUnauthorizedError(ProviderError):
    """No valid credential could be obtained.

    Never retried: the owner has to authorize again.
    """


class ProviderTransientError(ProviderError):
    """Network or provider hiccup; safe to log and try again on the next cycle."""
