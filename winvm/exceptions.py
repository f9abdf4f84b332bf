"""Custom exceptions for winvm."""


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ValidationError(ManagerError):
    """Bad or missing flag, missing install media, or conflicting UEFI request."""


class DependencyMissingError(ManagerError):
    """A required external binary is not installed."""


class LaunchError(ManagerError):
    """The emulator failed to start or could not bind a required port."""


class FilesystemError(ManagerError):
    """Disk image creation failed."""


class CapabilityWarning(UserWarning):
    """Non-fatal accelerator or firmware degradation; logged, never raised."""
