"""
Tests for the path_resolver module
"""

import os

import pytest

from panel_errors import InvalidPathInput, PathTraversal
from path_resolver import PathResolver


def test_empty_and_dot_resolve_to_root(resolver):
    assert resolver.resolve("") == resolver.root
    assert resolver.resolve(None) == resolver.root
    assert resolver.resolve(".") == resolver.root
    assert resolver.resolve("./") == resolver.root


def test_lexical_normalization(resolver):
    assert resolver.resolve("a/b/") == resolver.root / "a" / "b"
    assert resolver.resolve("a/./b/../c") == resolver.root / "a" / "c"
    assert resolver.resolve("a//b") == resolver.root / "a" / "b"
    assert resolver.resolve("a/..") == resolver.root


@pytest.mark.parametrize("raw", [
    "../../etc/passwd",
    "..",
    "../",
    "a/../../b",
    "a/b/../../../c",
])
def test_dotdot_escape_is_rejected(resolver, raw):
    with pytest.raises(PathTraversal):
        resolver.resolve(raw)


@pytest.mark.parametrize("raw", ["/etc/passwd", "/", "C:\\Windows", "c:relative", "\\\\server\\share", "//host/x"])
def test_absolute_input_is_rejected(resolver, raw):
    with pytest.raises(PathTraversal):
        resolver.resolve(raw)


def test_null_byte_is_invalid_input(resolver):
    with pytest.raises(InvalidPathInput):
        resolver.resolve("a.txt\x00.jpg")


def test_non_string_is_invalid_input(resolver):
    with pytest.raises(InvalidPathInput):
        resolver.resolve(b"a.txt")


def test_symlink_escaping_root_is_rejected(resolver, root_dir, tmp_path):
    outside = tmp_path / "outside"
    outside.mkdir()
    (outside / "secret.txt").write_text("top secret")
    os.symlink(outside, root_dir / "escape")

    with pytest.raises(PathTraversal):
        resolver.resolve("escape")
    with pytest.raises(PathTraversal):
        resolver.resolve("escape/secret.txt")


def test_symlink_to_file_outside_root_is_rejected(resolver, root_dir, tmp_path):
    target = tmp_path / "passwd"
    target.write_text("root:x:0:0")
    os.symlink(target, root_dir / "passwd")

    with pytest.raises(PathTraversal):
        resolver.resolve("passwd")


def test_symlink_inside_root_is_followed(resolver, root_dir):
    (root_dir / "real").mkdir()
    os.symlink(root_dir / "real", root_dir / "alias")

    assert resolver.resolve("alias/x.txt") == resolver.root / "real" / "x.txt"


def test_locate_keeps_final_symlink(resolver, root_dir):
    (root_dir / "data.txt").write_text("data")
    os.symlink(root_dir / "data.txt", root_dir / "link.txt")

    assert resolver.resolve("link.txt") == resolver.root / "data.txt"
    assert resolver.locate("link.txt") == resolver.root / "link.txt"
    assert resolver.locate("") == resolver.root


def test_root_given_through_symlink(tmp_path):
    real = tmp_path / "real-root"
    real.mkdir()
    os.symlink(real, tmp_path / "root-link")

    resolver = PathResolver(str(tmp_path / "root-link"))
    assert resolver.root == real.resolve()
    assert resolver.resolve("a.txt") == real.resolve() / "a.txt"


def test_sibling_with_common_prefix_is_outside(tmp_path):
    (tmp_path / "root").mkdir()
    (tmp_path / "root-other").mkdir()
    os.symlink(tmp_path / "root-other", tmp_path / "root" / "sneaky")

    resolver = PathResolver(str(tmp_path / "root"))
    with pytest.raises(PathTraversal):
        resolver.resolve("sneaky/file")


def test_missing_root_is_a_configuration_error(tmp_path):
    with pytest.raises(ValueError):
        PathResolver(str(tmp_path / "does-not-exist"))


def test_relative(resolver):
    assert resolver.relative(resolver.root) == "."
    assert resolver.relative(resolver.root / "a" / "b.txt") == "a/b.txt"


def test_traversal_message_is_generic(resolver):
    with pytest.raises(PathTraversal) as exc_info:
        resolver.resolve("../../etc/passwd")

    body = exc_info.value.to_dict()
    assert body == {"code": "PATH_TRAVERSAL", "detail": "Access denied"}
    assert "passwd" in exc_info.value.detail
