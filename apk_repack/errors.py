"""Error types shared across apk-repack."""


class RepackError(RuntimeError):
    """Base class for failures that abort an apk-repack run."""
