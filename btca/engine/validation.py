"""Input validators for resource definitions and requests.

Every value that later reaches a git invocation, a filesystem path or
the agent process goes through one of these functions first. Each
validator is pure and returns a ValidationResult; ``require`` turns a
rejection into a ValidationError for callers that want to raise.
"""
from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit

from .errors import ValidationError

RESOURCE_NAME_MAX = 64
BRANCH_NAME_MAX = 128
PROVIDER_NAME_MAX = 100
MODEL_NAME_MAX = 100
NOTES_MAX = 500
SEARCH_PATH_MAX = 256
QUESTION_MAX = 100_000
MAX_RESOURCES_PER_REQUEST = 20

# Must start with a letter: blocks "-" option injection and "../".
_RESOURCE_NAME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9-]*$")
_BRANCH_NAME_RE = re.compile(r"^[a-zA-Z0-9/_.-]+$")
_SAFE_NAME_RE = re.compile(r"^[a-zA-Z0-9._+\-/:]+$")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0B-\x0C\x0E-\x1F\x7F]")
_DRIVE_LETTER_RE = re.compile(r"^[a-zA-Z]:\\")
_PRIVATE_172_RE = re.compile(r"^172\.(1[6-9]|2[0-9]|3[0-1])\.")


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of a single validator.

    ``value`` carries the normalized form of the input when the
    validator normalizes (e.g. git URLs).
    """
    valid: bool
    error: str | None = None
    value: Any = None

    def __bool__(self) -> bool:
        return self.valid


def _ok(value: Any = None) -> ValidationResult:
    return ValidationResult(valid=True, value=value)


def _fail(error: str) -> ValidationResult:
    return ValidationResult(valid=False, error=error)


def require(result: ValidationResult, field: str) -> Any:
    """Return the validated value or raise ValidationError."""
    if not result.valid:
        raise ValidationError(field, result.error or f"Invalid {field}")
    return result.value


def validate_resource_name(name: str) -> ValidationResult:
    if not name or not name.strip():
        return _fail("Resource name cannot be empty")
    if len(name) > RESOURCE_NAME_MAX:
        return _fail(
            f"Resource name too long: {len(name)} chars (max {RESOURCE_NAME_MAX})"
        )
    if not _RESOURCE_NAME_RE.match(name):
        return _fail(
            f'Invalid resource name: "{name}". Must start with a letter and '
            "contain only alphanumeric characters and hyphens"
        )
    return _ok(name)


def validate_branch_name(branch: str) -> ValidationResult:
    if not branch or not branch.strip():
        return _fail("Branch name cannot be empty")
    if len(branch) > BRANCH_NAME_MAX:
        return _fail(
            f"Branch name too long: {len(branch)} chars (max {BRANCH_NAME_MAX})"
        )
    if branch.startswith("-"):
        return _fail(
            f'Invalid branch name: "{branch}". Must not start with \'-\' '
            "to prevent git option injection"
        )
    if not _BRANCH_NAME_RE.match(branch):
        return _fail(
            f'Invalid branch name: "{branch}". Must contain only alphanumeric '
            "characters, forward slashes, dots, underscores, and hyphens"
        )
    return _ok(branch)


def _is_blocked_host(hostname: str) -> bool:
    if hostname == "localhost" or hostname.endswith(".localhost"):
        return True
    if (
        hostname.startswith("127.")
        or hostname.startswith("10.")
        or hostname.startswith("192.168.")
        or _PRIVATE_172_RE.match(hostname)
    ):
        return True
    try:
        ip = ipaddress.ip_address(hostname)
    except ValueError:
        return False
    return (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_unspecified
        or ip.is_reserved
    )


def normalize_github_url(url: str) -> str:
    """Reduce a GitHub URL to ``https://github.com/<owner>/<repo>``.

    Strips ``.git`` and anything after the repository segment
    (``/blob/...``, ``/tree/...``, trailing slashes). Other hosts pass
    through unchanged.
    """
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if (parts.hostname or "").lower() != "github.com":
        return url
    segments = [s for s in parts.path.split("/") if s]
    if len(segments) < 2:
        return url
    owner, repo = segments[0], segments[1]
    if repo.endswith(".git"):
        repo = repo[:-4]
    return f"https://github.com/{owner}/{repo}"


def validate_git_url(url: str) -> ValidationResult:
    """Accept only credential-free HTTPS URLs to public hosts.

    The returned value is the normalized URL.
    """
    if not url or not url.strip():
        return _fail("Git URL cannot be empty")
    try:
        parts = urlsplit(url)
        hostname = (parts.hostname or "").lower()
        # Accessing .port validates it
        parts.port
    except ValueError:
        return _fail(f'Invalid URL format: "{url}"')
    if parts.scheme != "https":
        scheme = f"{parts.scheme}:" if parts.scheme else "(none)"
        return _fail(
            f"Invalid URL protocol: {scheme}. Only HTTPS URLs are allowed "
            "for security reasons"
        )
    if not hostname:
        return _fail(f'Invalid URL format: "{url}"')
    if parts.username or parts.password:
        return _fail("URL must not contain embedded credentials")
    if _is_blocked_host(hostname):
        return _fail(
            f"URL must not point to localhost or private IP addresses: {hostname}"
        )
    return _ok(normalize_github_url(url))


def validate_search_path(search_path: str | None) -> ValidationResult:
    # Absent means "no sparse checkout".
    if not search_path or not search_path.strip():
        return _ok(None)
    if len(search_path) > SEARCH_PATH_MAX:
        return _fail(
            f"Search path too long: {len(search_path)} chars (max {SEARCH_PATH_MAX})"
        )
    if "\n" in search_path or "\r" in search_path:
        return _fail("Search path must not contain newline characters")
    if ".." in search_path:
        return _fail("Search path must not contain path traversal sequences (..)")
    if search_path.startswith("/") or _DRIVE_LETTER_RE.match(search_path):
        return _fail("Search path must not be an absolute path")
    return _ok(search_path)


def validate_search_paths(search_paths: list[str] | None) -> ValidationResult:
    if search_paths is None:
        return _ok([])
    if len(search_paths) == 0:
        return _fail("searchPaths must include at least one path")
    for path in search_paths:
        result = validate_search_path(path)
        if not result.valid:
            return result
    return _ok(list(search_paths))


def validate_local_path(path: str) -> ValidationResult:
    if not path or not path.strip():
        return _fail("Local path cannot be empty")
    if "\0" in path:
        return _fail("Path must not contain null bytes")
    if not path.startswith("/") and not _DRIVE_LETTER_RE.match(path):
        return _fail("Local path must be an absolute path")
    return _ok(path)


def validate_notes(notes: str | None) -> ValidationResult:
    if not notes or not notes.strip():
        return _ok(notes or "")
    if len(notes) > NOTES_MAX:
        return _fail(f"Notes too long: {len(notes)} chars (max {NOTES_MAX})")
    if _CONTROL_CHARS_RE.search(notes):
        return _fail("Notes contain invalid control characters")
    return _ok(notes)


def _validate_safe_name(value: str, label: str, max_len: int) -> ValidationResult:
    if not value or not value.strip():
        return _fail(f"{label} name cannot be empty")
    if len(value) > max_len:
        return _fail(f"{label} name too long: {len(value)} chars (max {max_len})")
    if not _SAFE_NAME_RE.match(value):
        return _fail(
            f'Invalid {label.lower()} name: "{value}". Must contain only '
            "letters, numbers, and: . _ + - / :"
        )
    return _ok(value)


def validate_provider_name(name: str) -> ValidationResult:
    return _validate_safe_name(name, "Provider", PROVIDER_NAME_MAX)


def validate_model_name(name: str) -> ValidationResult:
    return _validate_safe_name(name, "Model", MODEL_NAME_MAX)


def validate_question(question: str) -> ValidationResult:
    if not question or not question.strip():
        return _fail("Question cannot be empty")
    if len(question) > QUESTION_MAX:
        return _fail(f"Question too long: {len(question)} chars (max {QUESTION_MAX})")
    return _ok(question)


def validate_resources_array(resources: list[str] | None) -> ValidationResult:
    if resources is None:
        return _ok(None)
    if len(resources) > MAX_RESOURCES_PER_REQUEST:
        return _fail(
            f"Too many resources: {len(resources)} (max {MAX_RESOURCES_PER_REQUEST})"
        )
    for name in resources:
        if not isinstance(name, str):
            return _fail(f"Invalid resource name: {name!r}")
        result = validate_resource_name(name)
        if not result.valid:
            return result
    return _ok(list(resources))


def validate_git_resource(
    name: str,
    url: str,
    branch: str,
    search_paths: list[str] | None = None,
    notes: str | None = None,
) -> ValidationResult:
    """Validate every field of a git resource; value is the normalized URL."""
    for result in (
        validate_resource_name(name),
        validate_branch_name(branch),
        validate_search_paths(search_paths),
        validate_notes(notes),
    ):
        if not result.valid:
            return result
    return validate_git_url(url)


def validate_local_resource(
    name: str, path: str, notes: str | None = None,
) -> ValidationResult:
    for result in (
        validate_resource_name(name),
        validate_local_path(path),
        validate_notes(notes),
    ):
        if not result.valid:
            return result
    return _ok(path)
