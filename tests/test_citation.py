"""Tests for stable citation links."""

from __future__ import annotations

import pytest

from opencontext.citation import Citation, build_citation, markdown_link, parse_citation


class TestBuildCitation:
    def test_plain(self) -> None:
        assert build_citation("abc-123") == "oc://doc/abc-123"

    def test_fallback_path_is_url_encoded(self) -> None:
        """Slashes stay readable; spaces and reserved characters are escaped."""
        url = build_citation("abc", "my notes/plan & risks.md")
        assert url == "oc://doc/abc?path=my%20notes/plan%20%26%20risks.md"

    def test_requires_stable_id(self) -> None:
        with pytest.raises(ValueError):
            build_citation("")


class TestParseCitation:
    def test_parse_with_fallback(self) -> None:
        citation = parse_citation("oc://doc/abc?path=my%20notes/plan.md")

        assert citation == Citation(stable_id="abc", fallback_path="my notes/plan.md")
        assert citation.url == "oc://doc/abc?path=my%20notes/plan.md"

    def test_parse_plain(self) -> None:
        assert parse_citation("oc://doc/abc") == Citation(stable_id="abc")

    @pytest.mark.parametrize(
        "url",
        ["https://doc/abc", "oc://folder/abc", "oc://doc/", "oc://doc/a/b", "plan.md"],
    )
    def test_rejects_other_urls(self, url: str) -> None:
        with pytest.raises(ValueError):
            parse_citation(url)


def test_markdown_link() -> None:
    assert markdown_link("Plan", "abc") == "[Plan](oc://doc/abc)"
