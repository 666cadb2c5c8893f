"""Error taxonomy shared by the provisioning and teardown sequencers."""


class BootstrapError(Exception):
    """Raised when a recoverable bootstrap error occurs."""


class TransientExternalError(BootstrapError):
    """The external control plane failed in a way worth retrying."""


class NotReadyTimeout(BootstrapError):
    """A readiness wait ran out of time."""


class PreconditionMissing(BootstrapError):
    """A required local file or tool is absent. Never retried."""


class AlreadySatisfied(BootstrapError):
    """The target state already exists; recorded as success."""


class StageOrderError(BootstrapError):
    """The stage graph is not a valid dependency ordering."""


class RunInterrupted(BootstrapError):
    """An external cancellation signal was observed at a checkpoint."""
