"""Tests for logical path validation."""

import pytest

from app.errors import PathValidationError
from app.services.paths import basename_of, is_root, join_logical, validate_path


@pytest.mark.parametrize(
    "path",
    [
        "",
        "   ",
        None,
        "src/index.js",
        "/workspace/../etc/passwd",
        "/workspace/src/..",
        "~/notes.txt",
        "/workspace/~backup",
        "/etc/passwd",
        "/etc/shadow",
        "/root/.ssh/id_rsa",
        "/proc/self/environ",
        "/sys/kernel",
        "/tmp/outside",
        "/workspacefoo/file",
        "/workspace/a\x00b",
    ],
)
def test_rejects_unsafe_paths(path):
    with pytest.raises(PathValidationError):
        validate_path(path)


@pytest.mark.parametrize(
    ("path", "expected"),
    [
        ("/workspace", "/workspace"),
        ("/workspace/", "/workspace"),
        ("/workspace//src///index.js", "/workspace/src/index.js"),
        ("/workspace/./docs/README.md", "/workspace/docs/README.md"),
        ("//workspace/src", "/workspace/src"),
    ],
)
def test_normalizes_confined_paths(path, expected):
    assert validate_path(path) == expected


def test_path_validation_error_is_a_value_error():
    with pytest.raises(ValueError):
        validate_path("relative")


def test_join_logical_rejects_names_with_separators():
    assert join_logical("/workspace/src", "app.py") == "/workspace/src/app.py"
    for bad in ("", ".", "..", "a/b"):
        with pytest.raises(PathValidationError):
            join_logical("/workspace", bad)


def test_path_helpers():
    assert is_root("/workspace")
    assert not is_root("/workspace/src")
    assert basename_of("/workspace/src/app.py") == "app.py"
