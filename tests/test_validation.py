"""Tests for input validators."""
from __future__ import annotations

import pytest

from btca.engine.errors import ValidationError
from btca.engine.validation import (
    MAX_RESOURCES_PER_REQUEST,
    NOTES_MAX,
    QUESTION_MAX,
    normalize_github_url,
    require,
    validate_branch_name,
    validate_git_resource,
    validate_git_url,
    validate_local_path,
    validate_model_name,
    validate_notes,
    validate_question,
    validate_resource_name,
    validate_resources_array,
    validate_search_path,
    validate_search_paths,
)


@pytest.mark.parametrize("name", ["svelte", "next-js", "A1", "x" * 64])
def test_resource_name_accepts(name):
    assert validate_resource_name(name).valid


@pytest.mark.parametrize(
    "name",
    ["", "   ", "-rf", "../etc", "1abc", "has space", "under_score", "x" * 65],
)
def test_resource_name_rejects(name):
    result = validate_resource_name(name)
    assert not result.valid
    assert result.error


def test_branch_name_blocks_option_injection():
    result = validate_branch_name("--upload-pack=evil")
    assert not result.valid
    assert "'-'" in result.error
    assert validate_branch_name("release/v1.2_x").valid
    assert not validate_branch_name("main;rm").valid


@pytest.mark.parametrize(
    "url",
    [
        "http://github.com/a/b",
        "git@github.com:a/b.git",
        "file:///etc/passwd",
        "https://user:pw@github.com/a/b",
        "https://localhost/a/b",
        "https://127.0.0.1/a/b",
        "https://10.1.2.3/a/b",
        "https://172.20.0.1/a/b",
        "https://192.168.1.1/a/b",
        "https://169.254.169.254/latest",
        "https://[::1]/a/b",
        "",
    ],
)
def test_git_url_rejects(url):
    assert not validate_git_url(url).valid


def test_git_url_allows_public_https_and_normalizes_github():
    result = validate_git_url("https://github.com/sveltejs/svelte.dev.git")
    assert result.valid
    assert result.value == "https://github.com/sveltejs/svelte.dev"

    assert validate_git_url("https://172.32.0.1/a/b").valid
    assert validate_git_url("https://gitlab.com/a/b.git").value == "https://gitlab.com/a/b.git"


def test_normalize_github_url_strips_tree_and_blob():
    assert (
        normalize_github_url("https://github.com/vercel/next.js/tree/canary/docs")
        == "https://github.com/vercel/next.js"
    )
    assert (
        normalize_github_url("https://github.com/owner/repo/blob/main/README.md")
        == "https://github.com/owner/repo"
    )
    assert normalize_github_url("https://github.com/owner") == "https://github.com/owner"


def test_search_path_rules():
    assert validate_search_path(None).valid
    assert validate_search_path("").value is None
    assert validate_search_path("docs/content").valid
    assert not validate_search_path("../secret").valid
    assert not validate_search_path("/etc").valid
    assert not validate_search_path("C:\\Windows").valid
    assert not validate_search_path("docs\nother").valid


def test_search_paths_empty_list_rejected():
    assert validate_search_paths(None).value == []
    result = validate_search_paths([])
    assert not result.valid
    assert "at least one path" in result.error
    assert not validate_search_paths(["docs", "../x"]).valid


def test_git_resource_rejects_explicit_empty_search_paths():
    result = validate_git_resource("svelte", "https://github.com/a/b", "main", search_paths=[])
    assert not result.valid


def test_local_path_must_be_absolute():
    assert validate_local_path("/srv/docs").valid
    assert not validate_local_path("relative/docs").valid
    assert not validate_local_path("/srv/\0docs").valid


def test_notes_limits():
    assert validate_notes(None).value == ""
    assert validate_notes("x" * NOTES_MAX).valid
    assert not validate_notes("x" * (NOTES_MAX + 1)).valid
    assert not validate_notes("bell\x07").valid
    assert validate_notes("line one\nline two\ttab").valid


def test_model_name_charset():
    assert validate_model_name("anthropic/claude-haiku-4.5:latest").valid
    assert not validate_model_name("model; rm -rf").valid


def test_question_limits():
    assert not validate_question("").valid
    assert not validate_question("   ").valid
    assert validate_question("x" * QUESTION_MAX).valid
    assert not validate_question("x" * (QUESTION_MAX + 1)).valid


def test_resources_array():
    assert validate_resources_array(None).valid
    assert validate_resources_array(["svelte", "effect"]).value == ["svelte", "effect"]
    too_many = [f"r{i}" for i in range(MAX_RESOURCES_PER_REQUEST + 1)]
    assert not validate_resources_array(too_many).valid
    assert not validate_resources_array(["ok", "../bad"]).valid
    assert not validate_resources_array(["ok", 3]).valid


def test_require_raises_validation_error():
    with pytest.raises(ValidationError) as exc_info:
        require(validate_resource_name("-x"), "resource")
    assert exc_info.value.field == "resource"
    assert exc_info.value.tag == "ValidationError"
    assert require(validate_resource_name("svelte"), "resource") == "svelte"
