"""Error kinds raised by the uploader."""


class UploadError(Exception):
    """Base class for every uploader failure."""


class ConfigError(UploadError, ValueError):
    """Parameters file or environment is missing, unreadable or invalid."""


class RestartRecordError(UploadError):
    """A restart record exists but cannot be parsed."""


class LocalReadError(UploadError):
    """The source file could not be read as planned (short read, permissions)."""


class TransferError(UploadError):
    """The block store rejected a request or could not be reached.

    Recoverable: the restart record is kept so a later run can resume.
    """


class VerificationError(UploadError):
    """The committed block list does not match the blocks that were sent."""
