"""Project-wide constants for Parley."""

_MB = 1024 * 1024

# PDFs smaller than this are sent inline; larger ones go through the file store.
PDF_INLINE_LIMIT_BYTES = 20 * _MB

# Trailing messages kept as context is this plus two (the ask and its reply slot).
DEFAULT_CONTEXT_COUNT = 5
CONTEXT_WINDOW_PADDING = 2

# Image MIME type used when the file extension gives no hint.
DEFAULT_IMAGE_MIME_TYPE = "image/png"

# Gemini file-store readiness polling.
FILE_ACTIVE_TIMEOUT_S = 300.0
FILE_ACTIVE_POLL_INTERVAL_S = 2.0
