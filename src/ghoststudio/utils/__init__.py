"""
Ghoststudio utilities for image references, upload caching and genai responses.
"""

from .image_refs import (
    decode_data_url,
    encode_data_url,
    fetch_image_bytes,
    is_data_url,
    is_http_url,
    prepare_image,
    sha16,
)

from .upload_cache import (
    ContentHashCache,
    GeminiFileUploader,
    process_upload_cache,
)

__all__ = [
    "decode_data_url",
    "encode_data_url",
    "fetch_image_bytes",
    "is_data_url",
    "is_http_url",
    "prepare_image",
    "sha16",
    "ContentHashCache",
    "GeminiFileUploader",
    "process_upload_cache",
]
