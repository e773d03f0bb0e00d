"""Remote URL normalization and repository key derivation."""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

from auditsync.exceptions import GitCommandError

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from auditsync.services.git_service import GitRunner

logger = logging.getLogger(__name__)

DEFAULT_PREFERRED_ORG = "trailofbits"

_SCP_LIKE_RE = re.compile(r"^[^@]+@([^:]+):(.+)$")
_SCHEME_RE = re.compile(r"^[a-z]+://", re.IGNORECASE)
_UNSAFE_KEY_CHARS_RE = re.compile(r"[^a-zA-Z0-9._-]+")
_TRAILING_SLASHES_RE = re.compile(r"/+$")


class NormalizationOutcome(StrEnum):
    """How a remote URL was handled by the normalizer."""

    NORMALIZED = "normalized"
    PASS_THROUGH = "pass_through"


@dataclass(frozen=True)
class NormalizedRemoteUrl:
    """Result of normalizing a remote URL.

    ``PASS_THROUGH`` means the URL could not be parsed and ``value`` holds
    the input as far as it had been rewritten at that point.
    """

    value: str
    outcome: NormalizationOutcome


def hash_value(value: str) -> str:
    """Return a stable 12-character SHA-256 prefix for a string."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:12]


def _https_host_and_path(value: str) -> str | None:
    """Re-parse a URL and keep only host and path, or None if unparseable."""
    try:
        parsed = urlsplit(value)
        parsed.port  # noqa: B018 - raises ValueError on a malformed port
    except ValueError:
        return None
    host = parsed.netloc.rpartition("@")[2].lower()
    if not host:
        return None
    return f"https://{host}{parsed.path}"


def normalize_remote_url_outcome(remote_url: str) -> NormalizedRemoteUrl:
    """Normalize a git remote URL to a credential-free https form.

    SCP-like ``user@host:path`` becomes ``https://host/path``; ``ssh://``,
    ``git://`` and ``http://`` become ``https://``; userinfo is dropped and a
    trailing ``.git`` and slashes are stripped.
    """
    value = remote_url.strip()
    if not value:
        return NormalizedRemoteUrl("", NormalizationOutcome.NORMALIZED)

    # user@host:path only; scheme URLs may also contain "@host:port"
    scp_like = None if "://" in value else _SCP_LIKE_RE.match(value)
    if scp_like:
        value = f"https://{scp_like.group(1)}/{scp_like.group(2)}"

    if value.startswith("ssh://"):
        rewritten = _https_host_and_path(value)
        if rewritten is None:
            return NormalizedRemoteUrl(value, NormalizationOutcome.PASS_THROUGH)
        value = rewritten

    if value.startswith("git://"):
        value = "https://" + value[len("git://") :]

    if value.startswith(("http://", "https://")):
        rewritten = _https_host_and_path(value)
        if rewritten is None:
            return NormalizedRemoteUrl(value, NormalizationOutcome.PASS_THROUGH)
        value = rewritten

    if value.endswith(".git"):
        value = value[: -len(".git")]

    return NormalizedRemoteUrl(
        _TRAILING_SLASHES_RE.sub("", value), NormalizationOutcome.NORMALIZED
    )


def normalize_remote_url(remote_url: str) -> str:
    """Normalize a git remote URL; unparseable input passes through."""
    return normalize_remote_url_outcome(remote_url).value


def format_repo_key(normalized_url: str) -> str:
    """Convert a normalized remote URL into a filesystem-safe repo key."""
    without_scheme = _SCHEME_RE.sub("", normalized_url, count=1)
    sanitized = _UNSAFE_KEY_CHARS_RE.sub("_", without_scheme).strip("_")
    return sanitized if sanitized else hash_value(normalized_url)


def is_preferred_org_remote(normalized_url: str, org_name: str) -> bool:
    """Check whether a normalized URL points into ``github.com/<org>/``."""
    org = org_name.lower()
    try:
        parsed = urlsplit(normalized_url)
        hostname = parsed.hostname
    except ValueError:
        return f"github.com/{org}/" in normalized_url.lower()
    if not parsed.scheme or hostname is None:
        return f"github.com/{org}/" in normalized_url.lower()
    return hostname == "github.com" and parsed.path.lower().startswith(f"/{org}/")


def select_preferred_remote_url(
    normalized_remotes: Sequence[str], org_name: str
) -> str | None:
    """Pick the remote in the preferred org, else the first one, else None."""
    for remote in normalized_remotes:
        if is_preferred_org_remote(remote, org_name):
            return remote
    return normalized_remotes[0] if normalized_remotes else None


async def list_remote_urls(runner: GitRunner, repo_root: Path) -> list[str]:
    """List every remote URL configured for a repository."""
    try:
        output = await runner.run(
            ["config", "--get-regexp", r"^remote\..*\.url$"], cwd=repo_root
        )
    except GitCommandError:
        # git exits 1 when no key matches
        return []
    urls: list[str] = []
    for line in output.splitlines():
        parts = line.strip().split()
        if len(parts) > 1:
            urls.append(" ".join(parts[1:]))
    return urls


async def derive_repo_key(
    runner: GitRunner,
    repo_root: Path,
    repo_key_override: str,
    preferred_org: str = DEFAULT_PREFERRED_ORG,
) -> str:
    """Derive the central-repo namespace for an audited repository.

    An explicit override wins; otherwise the preferred remote is formatted;
    otherwise the key is a hash of the repository root path.
    """
    override = repo_key_override.strip()
    if override:
        return format_repo_key(override)

    remotes = await list_remote_urls(runner, repo_root)
    normalized = [url for url in (normalize_remote_url(r) for r in remotes) if url]
    preferred = select_preferred_remote_url(normalized, preferred_org)
    if preferred is not None:
        return format_repo_key(preferred)

    logger.info("Central sync repo key fallback for %s (no remotes found)", repo_root)
    return hash_value(str(repo_root))
