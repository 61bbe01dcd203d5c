class ClipProcessingError(RuntimeError):
    """Base class for failures that abort a clip extraction job."""


class InvalidSourceUrl(ClipProcessingError, ValueError):
    """No 11-character video id could be parsed from the source URL."""


class DownloadFailed(ClipProcessingError):
    pass


class WriteFailed(ClipProcessingError):
    """The raw download could not be written to local disk."""


class TranscodeFailed(ClipProcessingError):
    pass


class UploadFailed(ClipProcessingError):
    pass
