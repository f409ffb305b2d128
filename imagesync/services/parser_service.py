"""Command parser: turns free-form chat text into image sync requests."""

from __future__ import annotations

import re
from dataclasses import dataclass

DEFAULT_TAG = "latest"

_PLATFORM_RE = re.compile(r"--platform=(\S+)", re.IGNORECASE)
_PLATFORM_STRIP_RE = re.compile(r"--platform=\S+\s*", re.IGNORECASE)
_PULL_RE = re.compile(r"pull\s+(\S+)\s+to\s+(\S+):(\S+)", re.IGNORECASE)
_SYNC_IMAGE_RE = re.compile(r"sync\s+image\s+(\S+)\s+to\s+(\S+):(\S+)", re.IGNORECASE)


@dataclass(frozen=True)
class SyncRequest:
    """Instruction to copy ``source_image`` to ``target_image:tag``."""

    source_image: str
    target_image: str
    tag: str
    platform: str = ""

    @property
    def target_ref(self) -> str:
        return f"{self.target_image}:{self.tag}"

    @property
    def line(self) -> str:
        """Canonical pending-queue line for this request."""
        base = f"{self.source_image} to {self.target_ref}"
        if self.platform:
            return f"--platform={self.platform} {base}"
        return base


def _split_references(content: str) -> list[str]:
    """Split the short form into references: comma, newline, whitespace, or whole."""
    if "," in content:
        return [ref.strip() for ref in content.split(",") if ref.strip()]
    if "\n" in content:
        refs = [ref.strip() for ref in content.split("\n")]
        return [ref for ref in refs if ref and not ref.startswith("#")]
    words = content.split()
    if len(words) > 1:
        return words
    return [content] if content else []


def build_request(reference: str, registry: str, namespace: str, platform: str = "") -> SyncRequest:
    """Build a request for a short image reference such as ``nginx`` or ``library/redis:7``."""
    source = reference.strip()
    if ":" not in source:
        source += f":{DEFAULT_TAG}"
    image_name = source.rsplit("/", 1)[-1].split(":", 1)[0]
    tag = source.partition(":")[2] or DEFAULT_TAG
    return SyncRequest(
        source_image=source,
        target_image=f"{registry}/{namespace}/{image_name}",
        tag=tag,
        platform=platform,
    )


def parse_message(text: str, registry: str, namespace: str) -> list[SyncRequest]:
    """Parse a chat message into sync requests, in the order they were written.

    Recognized forms, tried in order after an optional ``--platform=<value>``
    token has been extracted (it applies to every request of the message):

    - ``pull <source> to <target>:<tag>``
    - ``sync image <source> to <target>:<tag>``
    - one or more short references separated by commas, newlines (``#`` lines
      are comments) or whitespace; targets are built as
      ``<registry>/<namespace>/<name>``.

    Returns an empty list when nothing usable was found.
    """
    content = text.strip()
    platform = ""
    platform_match = _PLATFORM_RE.search(content)
    if platform_match:
        platform = platform_match.group(1)
        content = _PLATFORM_STRIP_RE.sub("", content).strip()

    for pattern in (_PULL_RE, _SYNC_IMAGE_RE):
        match = pattern.search(content)
        if match:
            return [
                SyncRequest(
                    source_image=match.group(1),
                    target_image=match.group(2),
                    tag=match.group(3),
                    platform=platform,
                )
            ]

    return [
        build_request(ref, registry, namespace, platform) for ref in _split_references(content)
    ]


def usage_text(registry: str, namespace: str) -> str:
    """Help text sent when a message contains no recognizable image."""
    return (
        "📖 Usage\n\n"
        "Supported formats:\n\n"
        "1️⃣ Single image:\n"
        "nginx:latest\nnginx\nalpine:3.18\n\n"
        "2️⃣ Several images, comma separated:\n"
        "nginx, redis, mysql\nnginx:latest, redis:7.0\n\n"
        "3️⃣ Several images, space separated:\n"
        "nginx redis mysql\nnginx:latest redis:7.0 mysql:8.0\n\n"
        "4️⃣ Several images, one per line:\n"
        "nginx:latest\nredis:latest\nmysql:8.0\n\n"
        "5️⃣ Specific platform:\n"
        "--platform=linux/amd64 nginx:latest\n\n"
        "6️⃣ Explicit target:\n"
        "pull nginx:1.25 to registry.example.com/ns/nginx:1.25\n\n"
        f"Default target: {registry}/{namespace}/<image>"
    )
