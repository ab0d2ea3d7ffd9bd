"""Domain errors for selfupgrade."""


class UpgraderError(RuntimeError):
    """Raised when the upgrade cannot continue safely."""


class FeedError(UpgraderError):
    """Raised when a package feed cannot be queried or downloaded from."""


class FeedAuthenticationError(FeedError):
    """Raised when a feed rejects the request because of missing or bad credentials."""


class PackageVerificationError(FeedError):
    """Raised when a downloaded package does not match what was requested."""


class InstallerError(UpgraderError):
    """Raised when an installer cannot be started or exits with a failure."""
