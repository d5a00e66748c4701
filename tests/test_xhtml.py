"""
Tests for HTML parsing and XHTML serialization.

These cover the escaping rules, void element handling, the idempotence of
serializing already-clean markup, and the plain-text fallback used when
HTML cannot be parsed at all.
"""

import pytest
from bs4.builder import ParserRejectedMarkup

from app.services import xhtml
from app.services.xhtml import (
    escape_attribute,
    escape_node_text,
    escape_text,
    html_to_xhtml,
    parse_html,
    plain_text_fallback,
    serialize,
)


class TestEscaping:
    """Test text and attribute escaping."""

    def test_bare_ampersand_is_escaped(self):
        assert escape_text("Fish & chips") == "Fish &amp; chips"

    def test_existing_entities_are_kept(self):
        """Numeric and XML entities must not be double escaped."""
        assert escape_text("&amp; &#38; &#x26; &lt;") == "&amp; &#38; &#x26; &lt;"

    def test_html_named_entity_becomes_numeric(self):
        """XML parsers only know five named entities."""
        assert escape_text("a&nbsp;b&copy;") == "a&#160;b&#169;"

    def test_unknown_entity_like_text_is_escaped(self):
        assert escape_text("&notanentity;") == "&amp;notanentity;"

    def test_angle_brackets_are_escaped(self):
        assert escape_text("<special>") == "&lt;special&gt;"

    def test_non_breaking_space_becomes_numeric_entity(self):
        assert escape_text("a\xa0b") == "a&#160;b"

    def test_multiple_newlines_are_collapsed(self):
        assert escape_text("one\n\n\ntwo\nthree") == "one\ntwo\nthree"

    def test_control_characters_are_dropped(self):
        assert escape_text("a\x00b\x0bc") == "abc"

    def test_parsed_text_escapes_every_ampersand(self):
        """Text from the tree is already decoded, so entity-shaped text is literal."""
        assert escape_node_text("&copy; & &amp; <b>\xa0") == "&amp;copy; &amp; &amp;amp; &lt;b&gt;&#160;"

    def test_attribute_escaping(self):
        assert escape_attribute('a "b" & <c>\xa0') == "a &quot;b&quot; &amp; &lt;c&gt;&#160;"


class TestSerializer:
    """Test tree serialization to XHTML."""

    @pytest.mark.parametrize("markup", ["<br>", "<br/>", "<br />", "<br></br>"])
    def test_br_is_always_self_closed(self, markup):
        """Every spelling of a line break serializes to one self-closed element."""
        assert html_to_xhtml(f"<p>a{markup}b</p>") == "<p>a<br/>b</p>"

    def test_img_is_self_closed_with_attributes(self):
        assert html_to_xhtml('<img src="a.png" alt="A">') == '<img src="a.png" alt="A"/>'

    def test_void_elements_never_get_closing_tags(self):
        output = html_to_xhtml("<p>x<hr>y<wbr>z</p>")
        assert "</hr>" not in output
        assert "</wbr>" not in output
        assert "<hr/>" in output
        assert "<wbr/>" in output

    def test_clean_markup_round_trips_unchanged(self):
        """Serializing allow-listed, already-escaped content is byte-identical."""
        clean = (
            '<h1 id="t">Title</h1>'
            '<p class="lead">Fish &amp; chips&#160;<em>now</em><br/>next &lt;line&gt;</p>'
            '<ul><li><a href="a.xhtml?x=1&amp;y=2">link</a></li></ul>'
            '<img src="../images/a.png" alt="A"/>'
        )
        assert html_to_xhtml(clean) == clean

    def test_escaped_entity_text_round_trips(self):
        """Literal entity text written as &amp;... keeps its meaning."""
        html = "<p>Write &amp;amp; or &amp;copy; literally, R&amp;D</p>"
        assert html_to_xhtml(html) == html

    def test_decoded_named_entity_is_written_as_character(self):
        assert html_to_xhtml("<p>&copy; 2024</p>") == "<p>\u00a9 2024</p>"

    def test_deep_nesting_is_serialized(self):
        """Nesting deeper than the recursion limit still serializes."""
        depth = 1500
        output = html_to_xhtml("<div>" * depth + "deep" + "</div>" * depth)

        assert output == "<div>" * depth + "deep" + "</div>" * depth

    def test_serializing_twice_is_stable(self):
        once = html_to_xhtml("<div><p>unclosed <b>bold<p>next &copy; 2024")
        assert html_to_xhtml(once) == once

    def test_unclosed_inline_is_closed_by_parent(self):
        assert html_to_xhtml("<p>one<b>two</p>") == "<p>one<b>two</b></p>"

    def test_full_document_contributes_body_only(self):
        html = "<html><head><title>Ignored</title></head><body><p>Kept</p></body></html>"
        assert html_to_xhtml(html) == "<p>Kept</p>"

    def test_document_without_body_drops_head(self):
        html = "<html><head><title>Ignored</title></head><p>Kept</p></html>"
        assert html_to_xhtml(html) == "<p>Kept</p>"

    def test_comments_are_serialized_as_xml_comments(self):
        """Unsanitized trees keep comments in XML-safe form."""
        tree = parse_html("<p>a<!-- a--b --></p>").tree
        assert serialize(tree) == "<p>a<!-- a- -b --></p>"

    def test_invalid_attribute_names_are_dropped(self):
        tree = parse_html('<p data-ok="1">x</p>').tree
        tree.p.attrs['bad"name'] = "v"
        assert serialize(tree) == '<p data-ok="1">x</p>'


class TestParseFallback:
    """Test the explicit plain-text fallback branch."""

    def test_parse_success_result(self):
        result = parse_html("<p>x</p>")
        assert result.ok
        assert result.failure is None

    def test_parse_failure_result(self, monkeypatch):
        def reject(*args, **kwargs):
            raise ParserRejectedMarkup("cannot parse")

        monkeypatch.setattr(xhtml, "BeautifulSoup", reject)
        result = parse_html("<p>x</p>")

        assert not result.ok
        assert result.failure.reason == "cannot parse"
        with pytest.raises(ValueError):
            result.body

    def test_html_to_xhtml_falls_back_to_plain_text(self, monkeypatch):
        """Unparseable HTML keeps its text and loses all markup."""
        def reject(*args, **kwargs):
            raise ParserRejectedMarkup("cannot parse")

        monkeypatch.setattr(xhtml, "BeautifulSoup", reject)
        output = html_to_xhtml("<p>Fish & <b>chips</b></p><script>steal()</script>")

        assert output == "Fish &amp; chips"

    def test_plain_text_fallback_keeps_entities(self):
        assert plain_text_fallback("<p>A &amp; B &copy;</p>") == "A &amp; B &#169;"
