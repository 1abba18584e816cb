"""
Request validation for the image endpoint.

Parses the WIDTHxHEIGHT segment and checks the source path against the
host and extension allow-lists before the pipeline is invoked.
"""

import re
from dataclasses import dataclass, field
from typing import List, Tuple

from upscale_proxy.core.exceptions import InvalidInputError

_DIMENSIONS_RE = re.compile(r"^(\d+)x(\d+)$")


def parse_dimensions(segment: str) -> Tuple[int, int]:
    """Parse '1920x1080' into (1920, 1080)."""
    match = _DIMENSIONS_RE.match(segment)
    if not match:
        raise InvalidInputError("Invalid dimensions", details={"dimensions": segment})

    width, height = int(match.group(1)), int(match.group(2))
    if width <= 0 or height <= 0:
        raise InvalidInputError("Invalid dimensions", details={"dimensions": segment})
    return width, height


@dataclass
class SourcePolicy:
    """Allow-lists applied to the source path (host/path/file.ext)."""

    allowed_hosts: List[str] = field(default_factory=list)
    allowed_extensions: List[str] = field(default_factory=lambda: ["jpg", "jpeg", "png"])

    def validate(self, source: str) -> str:
        """
        Validate a scheme-relative source and return it unchanged.

        Raises:
            InvalidInputError: 404 for malformed paths or extensions,
                400 for hosts outside the allow-list.
        """
        if not source or "://" in source or source.startswith("/"):
            raise InvalidInputError("URL is not valid", details={"source": source})

        segments = source.split("/")
        if len(segments) < 2 or not segments[0] or not segments[-1]:
            raise InvalidInputError("URL is not valid", details={"source": source})
        if any(segment in ("", ".", "..") for segment in segments):
            raise InvalidInputError("URL is not valid", details={"source": source})

        host = segments[0]
        if host not in self.allowed_hosts:
            raise InvalidInputError("Host is not allowed", code=400, details={"host": host})

        lowered = source.lower()
        if not any(lowered.endswith("." + ext) for ext in self.allowed_extensions):
            raise InvalidInputError("Not allowed file extension", details={"source": source})

        return source
