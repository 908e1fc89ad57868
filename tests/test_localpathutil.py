import os

import pytest

from limacfg.localpathutil import expand


@pytest.fixture
def home(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path))
    return os.path.abspath(str(tmp_path))


def test_expand_tilde(home):
    assert expand("~") == home


def test_expand_tilde_slash(home):
    assert expand("~/") == home


def test_expand_tilde_subpath_is_normalised(home):
    assert expand("~/a/../b") == os.path.join(home, "b")


def test_expand_relative_is_made_absolute(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert expand("relative") == os.path.join(os.getcwd(), "relative")


def test_expand_absolute_unchanged(home):
    target = os.path.join(home, "x")
    assert expand(target) == target


def test_expand_empty():
    with pytest.raises(ValueError, match="empty path"):
        expand("")


def test_expand_other_user_unsupported(home):
    with pytest.raises(ValueError, match="unexpandable path"):
        expand("~foo/bar")