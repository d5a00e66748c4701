"""HTML parsing and well-formed XHTML serialization."""

import logging
import re
from dataclasses import dataclass
from html import escape
from html.entities import html5
from typing import Optional

from bs4 import (
    BeautifulSoup,
    Comment,
    Declaration,
    Doctype,
    NavigableString,
    ProcessingInstruction,
    Tag,
)
from bs4.builder import ParserRejectedMarkup

from app.services.sanitizer import Sanitizer

logger = logging.getLogger(__name__)

VOID_ELEMENTS = frozenset({
    'area', 'base', 'br', 'col', 'embed', 'hr', 'img', 'input', 'link',
    'meta', 'param', 'source', 'track', 'wbr',
})

XML_PREDEFINED_ENTITIES = frozenset({'amp', 'lt', 'gt', 'quot', 'apos'})

MULTIPLE_NEWLINES_PATTERN = re.compile(r'\n{2,}')
ENTITY_PATTERN = re.compile(r'&(#[0-9]+;|#[xX][0-9a-fA-F]+;|[A-Za-z][A-Za-z0-9]*;)?')
INVALID_XML_CHARS_PATTERN = re.compile('[\x00-\x08\x0b\x0c\x0e-\x1f\ufffe\uffff]')
XML_NAME_PATTERN = re.compile(r'^[A-Za-z_:][-A-Za-z0-9_:.]*$')
TAG_PATTERN = re.compile(r'<[^>]*>')
STRIPPED_BLOCK_PATTERN = re.compile(r'(?is)<(script|style)[^>]*>.*?</\1\s*>')


@dataclass
class ParseFailure:
    """Why a piece of HTML could not be turned into a tree."""

    reason: str


@dataclass
class ParseResult:
    """Outcome of parsing: either a tree or a failure, never both."""

    tree: Optional[BeautifulSoup] = None
    failure: Optional[ParseFailure] = None

    @property
    def ok(self) -> bool:
        return self.tree is not None

    @property
    def body(self) -> Tag:
        """The node whose children are the document content."""
        if self.tree is None:
            raise ValueError("Parse failed; there is no body to return")
        if self.tree.body is not None:
            return self.tree.body
        if self.tree.html is not None:
            if self.tree.head is not None:
                self.tree.head.decompose()
            return self.tree.html
        return self.tree


def parse_html(html: str) -> ParseResult:
    """Parse an HTML fragment or document."""
    try:
        tree = BeautifulSoup(html, 'html.parser', multi_valued_attributes=None)
    except ParserRejectedMarkup as e:
        return ParseResult(failure=ParseFailure(str(e)))
    return ParseResult(tree=tree)


def _escape_entity(match: re.Match) -> str:
    entity = match.group(1)
    if entity is None:
        return '&amp;'
    if entity.startswith('#'):
        return match.group(0)
    name = entity[:-1]
    if name in XML_PREDEFINED_ENTITIES:
        return match.group(0)
    replacement = html5.get(entity)
    if replacement is None:
        # Looks like an entity but is not one
        return '&amp;' + entity
    return ''.join(f'&#{ord(ch)};' for ch in replacement)


def escape_text(text: str) -> str:
    """Escape raw HTML source text for XHTML output.

    Bare ampersands are escaped; ampersands that already start a numeric or
    XML entity are kept. HTML-only named entities become numeric references.
    """
    text = MULTIPLE_NEWLINES_PATTERN.sub('\n', text)
    text = INVALID_XML_CHARS_PATTERN.sub('', text)
    text = ENTITY_PATTERN.sub(_escape_entity, text)
    text = text.replace('<', '&lt;').replace('>', '&gt;')
    return text.replace('\xa0', '&#160;')


def escape_node_text(text: str) -> str:
    """Escape text taken from a parsed tree.

    The parser already decoded entities, so every ``&`` is literal here.
    """
    text = MULTIPLE_NEWLINES_PATTERN.sub('\n', text)
    text = INVALID_XML_CHARS_PATTERN.sub('', text)
    return escape(text, quote=False).replace('\xa0', '&#160;')


def escape_attribute(value: str) -> str:
    """Escape an attribute value for a double-quoted XML attribute."""
    value = INVALID_XML_CHARS_PATTERN.sub('', value)
    return escape(value, quote=False).replace('"', '&quot;').replace('\xa0', '&#160;')


def _serialize_attributes(element: Tag) -> str:
    parts = []
    for name, value in element.attrs.items():
        if not XML_NAME_PATTERN.match(name):
            continue
        if isinstance(value, (list, tuple)):
            value = ' '.join(value)
        if value is None:
            value = ''
        parts.append(f' {name}="{escape_attribute(str(value))}"')
    return ''.join(parts)


@dataclass
class _EndTag:
    name: str


def serialize(node) -> str:
    """Serialize a node (and its subtree) as XHTML.

    Walks the tree with an explicit stack so nesting depth is not bounded
    by the interpreter recursion limit.
    """
    parts = []
    stack = [node]
    while stack:
        current = stack.pop()
        if isinstance(current, _EndTag):
            parts.append(f'</{current.name}>')
            continue
        if isinstance(current, (Doctype, Declaration, ProcessingInstruction)):
            continue
        if isinstance(current, Comment):
            parts.append('<!--' + str(current).replace('--', '- -') + '-->')
            continue
        if isinstance(current, NavigableString):
            parts.append(escape_node_text(str(current)))
            continue

        if not isinstance(current, BeautifulSoup):
            name = current.name.lower()
            attrs = _serialize_attributes(current)
            if name in VOID_ELEMENTS:
                parts.append(f'<{name}{attrs}/>')
                continue
            parts.append(f'<{name}{attrs}>')
            stack.append(_EndTag(name))
        stack.extend(reversed(list(current.children)))
    return ''.join(parts)


def serialize_children(node: Tag) -> str:
    """Serialize the contents of ``node`` without the node itself."""
    return ''.join(serialize(child) for child in node.children)


def plain_text_fallback(html: str) -> str:
    """Lossy recovery: drop every tag and keep only escaped text content."""
    text = STRIPPED_BLOCK_PATTERN.sub('', html)
    text = TAG_PATTERN.sub('', text)
    return escape_text(text)


def html_to_xhtml(html: str, sanitizer: Optional[Sanitizer] = None) -> str:
    """Convert arbitrary HTML into sanitized, well-formed XHTML body markup."""
    result = parse_html(html)
    if not result.ok:
        logger.warning(f"HTML could not be parsed, falling back to plain text: {result.failure.reason}")
        return plain_text_fallback(html)

    body = result.body
    (sanitizer or Sanitizer()).clean(body)
    return serialize_children(body).strip()
