"""Error taxonomy for the conversation core."""


class RecruiterError(Exception):
    """Base class for all recruiter errors."""


class ClassifierError(RecruiterError):
    """Intent classification could not produce a usable result."""


class ClassifierUnavailable(ClassifierError):
    """Classifier is not configured (missing credentials). Permanent until fixed."""


class ClassifierTransportError(ClassifierError):
    """Network or service error while calling the classifier."""


class ClassifierMalformedResponse(ClassifierError):
    """Classifier answered with invalid JSON or missing required fields."""


class PersistenceError(RecruiterError):
    """Record store read or write failed."""


class PlatformActionError(RecruiterError):
    """A chat-platform action (message, channel, role) failed."""

    def __init__(self, action: str, message: str, transient: bool = False):
        super().__init__(f"{action} failed: {message}")
        self.action = action
        self.transient = transient
