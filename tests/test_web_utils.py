from __future__ import annotations

from atlas.tools.content_fetcher import html_to_text
from atlas.tools.web_utils import clean_content, extract_hostname, is_valid_url


def test_is_valid_url():
    assert is_valid_url("https://example.com/page")
    assert not is_valid_url("ftp://example.com")
    assert not is_valid_url("not a url")


def test_clean_content_collapses_whitespace_and_truncates():
    assert clean_content("a \n\n  b\tc") == "a b c"
    assert clean_content("x" * 20, max_length=5) == "xxxxx"


def test_extract_hostname_lowercases():
    assert extract_hostname("https://WWW.Nature.com/articles/1") == "www.nature.com"
    assert extract_hostname("garbage") == ""


def test_html_to_text_strips_scripts_and_styles():
    html = "<html><head><style>p{}</style></head><body><script>var x=1;</script><p>Hello</p> <p>world</p></body></html>"

    assert html_to_text(html, max_chars=100) == "Hello world"
