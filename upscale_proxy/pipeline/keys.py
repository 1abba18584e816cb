"""
Cache key derivation.

A key is the unpadded URL-safe base64 MD5 of the exact source URL string,
followed by the lower-cased file extension of the URL's final path segment.
"""

import base64
import hashlib
import re

from upscale_proxy.core.exceptions import InvalidInputError

_EXTENSION_RE = re.compile(r"^[a-z0-9]{1,10}$")


def extract_extension(url: str) -> str:
    """Lower-cased text after the last '.' of the final path segment."""
    path = url.split("?", 1)[0].split("#", 1)[0]
    segment = path.rsplit("/", 1)[-1]
    if "." not in segment:
        raise InvalidInputError("URL has no file extension", details={"url": url})

    extension = segment.rsplit(".", 1)[1].lower()
    if not _EXTENSION_RE.match(extension):
        raise InvalidInputError("URL has an unusable file extension", details={"url": url})
    return extension


def derive_key(url: str) -> str:
    """Map a source URL to a stable, filesystem-safe cache key."""
    digest = hashlib.md5(url.encode("utf-8")).digest()
    encoded = base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
    return f"{encoded}.{extract_extension(url)}"
