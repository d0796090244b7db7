"""Tests for shared utility functions."""

from __future__ import annotations

import subprocess
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from pulito.utils import bytes_to_human, dir_info, format_elapsed, format_relative_time, item_type_of, path_size

from conftest import write_file


class TestBytesToHuman:
    def test_values(self):
        assert bytes_to_human(0) == "0 B"
        assert bytes_to_human(512) == "512 B"
        assert bytes_to_human(1536) == "1.5 KB"
        assert bytes_to_human(3 * 1024 ** 3) == "3.0 GB"
        assert bytes_to_human(-2048) == "-2.0 KB"


class TestRelativeTime:
    def test_past_and_future(self):
        now = datetime.now(timezone.utc)
        assert format_relative_time((now - timedelta(seconds=5)).isoformat()) == "just now"
        assert format_relative_time((now - timedelta(hours=2, minutes=1)).isoformat()) == "2 hours ago"
        assert format_relative_time((now + timedelta(days=3, hours=1)).isoformat()) == "in 3 days"

    def test_elapsed(self):
        assert format_elapsed(0.25) == "250 ms"
        assert format_elapsed(12.34) == "12.3s"
        assert format_elapsed(125) == "2m 5s"


class TestPathHelpers:
    def test_dir_info(self, tmp_path):
        write_file(tmp_path / "d" / "a", 10)
        write_file(tmp_path / "d" / "sub" / "b", 5)
        assert dir_info(tmp_path / "d") == (15, 2)

    def test_dir_info_without_find(self, tmp_path):
        write_file(tmp_path / "d" / "a", 10)
        (tmp_path / "d" / "link").symlink_to(tmp_path / "d" / "a")
        with patch("pulito.utils.subprocess.run", side_effect=FileNotFoundError("find")):
            assert dir_info(tmp_path / "d") == (10, 1)

    def test_path_size_and_type(self, tmp_path):
        f = write_file(tmp_path / "f", 7)
        link = tmp_path / "link"
        link.symlink_to(tmp_path / "d")
        write_file(tmp_path / "d" / "x", 100)
        assert (path_size(f), item_type_of(f)) == (7, "file")
        assert path_size(tmp_path / "d") == 100
        assert item_type_of(tmp_path / "d") == "directory"
        assert item_type_of(link) == "symlink"
        assert path_size(link) == link.lstat().st_size

    def test_find_failure_falls_back(self, tmp_path):
        write_file(tmp_path / "d" / "a", 3)
        err = subprocess.CalledProcessError(1, "find")
        with patch("pulito.utils.subprocess.run", side_effect=err):
            assert dir_info(tmp_path / "d") == (3, 1)
