"""Exception hierarchy for the transcoding pipeline.

Two failure classes exist:

Hard failures abort the whole pipeline run and propagate to the caller
(the queue applies its retry policy):
    DownloadError, ProbeError, DurationLimitExceeded

Soft failures affect a single artifact. They are caught inside the
pipeline, logged, and the artifact is left out of the manifest:
    RenditionError, ThumbnailError, UploadError
"""


class TranscodeError(Exception):
    """Base class for all pipeline errors."""


class DownloadError(TranscodeError):
    """Source media could not be fetched into the scratch directory."""


class ProbeError(TranscodeError):
    """Source media is unreadable or has no video stream."""


class DurationLimitExceeded(TranscodeError):
    """Source duration is longer than the allowed maximum."""

    def __init__(self, duration: float, max_duration: float):
        self.duration = duration
        self.max_duration = max_duration
        super().__init__(
            f"Video duration {duration:.2f}s exceeds limit of {max_duration:.2f}s"
        )


class RenditionError(TranscodeError):
    """A single rendition failed to encode."""


class ThumbnailError(TranscodeError):
    """A single thumbnail failed to extract."""


class UploadError(TranscodeError):
    """An artifact failed to upload or the blob store returned an unusable result."""
