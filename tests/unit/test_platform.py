"""Tests for the platform helpers module."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from kvbackup.platform import (
    default_manifest_path,
    home_dir,
    is_windows,
    restore_path,
)


class TestIsWindows:
    def test_true_on_win32(self) -> None:
        with patch("kvbackup.platform.sys") as mock_sys:
            mock_sys.platform = "win32"
            assert is_windows() is True

    def test_false_on_linux(self) -> None:
        with patch("kvbackup.platform.sys") as mock_sys:
            mock_sys.platform = "linux"
            assert is_windows() is False

    def test_false_on_darwin(self) -> None:
        with patch("kvbackup.platform.sys") as mock_sys:
            mock_sys.platform = "darwin"
            assert is_windows() is False


class TestHomeDir:
    def test_posix_uses_home(self) -> None:
        with patch("kvbackup.platform.sys") as mock_sys:
            mock_sys.platform = "linux"
            assert home_dir() == Path.home()

    def test_windows_home_drive_and_path(self) -> None:
        env = {"HOMEDRIVE": "C:", "HOMEPATH": "\\Users\\me", "USERPROFILE": "X"}
        with patch("kvbackup.platform.sys") as mock_sys, patch.dict(os.environ, env):
            mock_sys.platform = "win32"
            assert home_dir() == Path("C:\\Users\\me")

    def test_windows_userprofile_fallback(self) -> None:
        with patch("kvbackup.platform.sys") as mock_sys, patch.dict(
            os.environ, {"USERPROFILE": "D:\\profile"}
        ):
            os.environ.pop("HOMEDRIVE", None)
            os.environ.pop("HOMEPATH", None)
            mock_sys.platform = "win32"
            assert home_dir() == Path("D:\\profile")


class TestDefaultManifestPath:
    def test_is_dot_backup_in_home(self) -> None:
        with patch("kvbackup.platform.home_dir", return_value=Path("/home/me")):
            assert default_manifest_path() == Path("/home/me/.backup")


@pytest.mark.skipif(os.name == "nt", reason="POSIX path layout")
class TestRestorePath:
    def test_absolute_key_nested_under_output(self) -> None:
        assert (
            restore_path("/tmp/out", "/home/me/notes.txt")
            == "/tmp/out/home/me/notes.txt"
        )

    def test_repeated_leading_slashes(self) -> None:
        assert restore_path("/tmp/out", "//srv/a") == "/tmp/out/srv/a"

    def test_relative_output_dir(self) -> None:
        assert restore_path("out", "/a/b") == os.path.join("out", "a", "b")
