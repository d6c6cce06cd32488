"""Tests for cookie materialization (``extraction.materialize_cookies``)."""

from __future__ import annotations

from pathlib import Path

import pytest

from extraction import (
    NETSCAPE_HEADER,
    CookieKind,
    cookie_header_value,
    materialize_cookies,
)

NETSCAPE_LINE = ".youtube.com\tTRUE\t/\tTRUE\t1761678950\tVISITOR_INFO1_LIVE\tabc"


class TestNoCookies:
    @pytest.mark.parametrize("cookies", [None, "", "   \n"])
    def test_nothing_materialized(self, tmp_path: Path, cookies: str | None) -> None:
        with materialize_cookies(cookies, tmp_path) as material:
            assert material.kind is CookieKind.NONE
            assert material.args() == []
        assert list(tmp_path.iterdir()) == []


class TestNetscapeCookies:
    def test_tabbed_text_gets_header_prefixed(self, tmp_path: Path) -> None:
        with materialize_cookies(NETSCAPE_LINE, tmp_path) as material:
            assert material.kind is CookieKind.FILE
            assert material.path is not None
            assert material.path.parent == tmp_path
            assert material.path.suffix == ".txt"
            assert material.path.read_text(encoding="utf-8") == f"{NETSCAPE_HEADER}\n{NETSCAPE_LINE}"

    def test_existing_header_written_verbatim(self, tmp_path: Path) -> None:
        content = f"{NETSCAPE_HEADER}\n# comment\n{NETSCAPE_LINE}\n"
        with materialize_cookies(content, tmp_path) as material:
            assert material.path.read_text(encoding="utf-8") == content

    def test_marker_without_tabs_is_netscape(self, tmp_path: Path) -> None:
        content = "# Netscape HTTP Cookie File\n# empty export key=value\n"
        with materialize_cookies(content, tmp_path) as material:
            assert material.kind is CookieKind.FILE
            assert material.path.read_text(encoding="utf-8") == content

    def test_args_point_at_file(self, tmp_path: Path) -> None:
        with materialize_cookies(NETSCAPE_LINE, tmp_path) as material:
            assert material.args() == ["--cookies", str(material.path)]

    def test_file_removed_after_block(self, tmp_path: Path) -> None:
        with materialize_cookies(NETSCAPE_LINE, tmp_path) as material:
            path = material.path
            assert path.exists()
        assert not path.exists()

    def test_file_removed_when_block_raises(self, tmp_path: Path) -> None:
        with pytest.raises(RuntimeError):
            with materialize_cookies(NETSCAPE_LINE, tmp_path):
                raise RuntimeError("boom")
        assert list(tmp_path.iterdir()) == []

    def test_unrecognized_text_still_uses_file(self, tmp_path: Path) -> None:
        with materialize_cookies("garbage without separators", tmp_path) as material:
            assert material.kind is CookieKind.FILE
        assert list(tmp_path.iterdir()) == []


class TestHeaderCookies:
    def test_key_value_text_becomes_header(self, tmp_path: Path) -> None:
        with materialize_cookies("PREF=f6=40000000; SID=abc", tmp_path) as material:
            assert material.kind is CookieKind.HEADER
            assert material.header == "Cookie:PREF=f6=40000000; SID=abc"
            assert material.args() == ["--add-header", "Cookie:PREF=f6=40000000; SID=abc"]

    def test_no_file_written(self, tmp_path: Path) -> None:
        with materialize_cookies("a=1; b=2", tmp_path) as material:
            assert material.path is None
            assert list(tmp_path.iterdir()) == []

    def test_newlines_stripped(self) -> None:
        header = cookie_header_value("  a=1;\r\n b=2;\n\nc=3  \n")
        assert header == "Cookie:a=1; b=2;c=3"
        assert "\n" not in header and "\r" not in header
