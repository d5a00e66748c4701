"""Allow-list based cleaning of parsed HTML trees for EPUB content documents."""

import logging
import re
from typing import Dict, FrozenSet, Optional

from bs4 import BeautifulSoup, Comment, Tag
from bs4.element import PreformattedString

logger = logging.getLogger(__name__)

ALLOWED_ELEMENTS = frozenset({
    'a', 'abbr', 'address', 'article', 'aside', 'audio', 'b', 'bdi', 'bdo',
    'blockquote', 'br', 'caption', 'cite', 'code', 'col', 'colgroup', 'dd',
    'del', 'details', 'dfn', 'div', 'dl', 'dt', 'em', 'figcaption', 'figure',
    'footer', 'h1', 'h2', 'h3', 'h4', 'h5', 'h6', 'header', 'hgroup', 'hr',
    'i', 'img', 'ins', 'kbd', 'li', 'main', 'mark', 'nav', 'ol', 'p', 'pre',
    'q', 'rp', 'rt', 'ruby', 's', 'samp', 'section', 'small', 'source',
    'span', 'strong', 'sub', 'summary', 'sup', 'table', 'tbody', 'td',
    'tfoot', 'th', 'thead', 'time', 'tr', 'track', 'u', 'ul', 'var', 'video',
    'wbr',
})

ALLOWED_GLOBAL_ATTRIBUTES = frozenset({
    'id', 'class', 'style', 'title', 'lang', 'xml:lang', 'dir', 'role',
    'epub:type', 'hidden',
})

ALLOWED_ATTRIBUTE_PREFIXES = ('data-', 'aria-')

ALLOWED_TAG_ATTRIBUTES: Dict[str, FrozenSet[str]] = {
    'a': frozenset({'href', 'hreflang', 'rel', 'type'}),
    'audio': frozenset({'src', 'controls', 'loop', 'muted', 'preload'}),
    'blockquote': frozenset({'cite'}),
    'col': frozenset({'span'}),
    'colgroup': frozenset({'span'}),
    'del': frozenset({'cite', 'datetime'}),
    'details': frozenset({'open'}),
    'img': frozenset({'src', 'alt', 'srcset', 'sizes'}),
    'ins': frozenset({'cite', 'datetime'}),
    'li': frozenset({'value'}),
    'ol': frozenset({'start', 'reversed', 'type'}),
    'q': frozenset({'cite'}),
    'source': frozenset({'src', 'srcset', 'type', 'media', 'sizes'}),
    'td': frozenset({'colspan', 'rowspan', 'headers'}),
    'th': frozenset({'colspan', 'rowspan', 'headers', 'scope', 'abbr'}),
    'time': frozenset({'datetime'}),
    'track': frozenset({'src', 'kind', 'srclang', 'label', 'default'}),
    'video': frozenset({'src', 'controls', 'loop', 'muted', 'poster', 'preload'}),
}

# Dropped together with everything inside them.
REMOVED_WITH_CONTENT = frozenset({
    'script', 'style', 'noscript', 'template', 'iframe', 'object', 'embed',
    'frame', 'frameset', 'applet',
})

PHRASING_ELEMENTS = frozenset({
    'a', 'abbr', 'b', 'bdi', 'bdo', 'cite', 'code', 'del', 'dfn', 'em',
    'h1', 'h2', 'h3', 'h4', 'h5', 'h6', 'i', 'ins', 'kbd', 'mark', 'p',
    'pre', 'q', 'rp', 'rt', 'ruby', 's', 'samp', 'small', 'span', 'strong',
    'sub', 'sup', 'time', 'u', 'var', 'caption', 'dt', 'figcaption',
    'summary',
})

URL_ATTRIBUTES = frozenset({'href', 'src', 'poster', 'cite'})
SCRIPT_URL_PATTERN = re.compile(r'^\s*(?:javascript|vbscript)\s*:', re.IGNORECASE)


class Sanitizer:
    """Clean a parsed tree so only EPUB-safe elements and attributes remain."""

    def __init__(
        self,
        elements: FrozenSet[str] = ALLOWED_ELEMENTS,
        global_attributes: FrozenSet[str] = ALLOWED_GLOBAL_ATTRIBUTES,
        tag_attributes: Optional[Dict[str, FrozenSet[str]]] = None,
    ):
        self.elements = elements
        self.global_attributes = global_attributes
        self.tag_attributes = ALLOWED_TAG_ATTRIBUTES if tag_attributes is None else tag_attributes

    def clean(self, root: Tag) -> Tag:
        """Sanitize every descendant of ``root`` in place and return it.

        The root itself (a ``BeautifulSoup`` document or ``body`` tag) is
        left untouched; only its contents are rewritten.
        """
        pending = [root]
        while pending:
            parent = pending.pop()
            for child in list(parent.children):
                if isinstance(child, Tag):
                    if self._clean_element(child, parent):
                        pending.append(child)
                elif isinstance(child, PreformattedString):
                    # Comments, doctypes, CDATA and processing instructions
                    child.extract()
        return root

    def is_allowed_attribute(self, tag_name: str, attr_name: str) -> bool:
        if attr_name in self.global_attributes:
            return True
        if attr_name.startswith(ALLOWED_ATTRIBUTE_PREFIXES):
            return True
        return attr_name in self.tag_attributes.get(tag_name, ())

    def _clean_element(self, element: Tag, parent: Tag) -> bool:
        """Clean one element in place. Returns False when it was removed."""
        name = (element.name or '').lower()

        if name in REMOVED_WITH_CONTENT:
            element.decompose()
            return False

        if name not in self.elements:
            if not self._has_content(element):
                element.decompose()
                return False
            container = 'span' if self._in_phrasing_context(parent) else 'div'
            logger.debug(f"Replacing disallowed <{name}> with <{container}>")
            element.name = container
            element.attrs = {
                key: value for key, value in element.attrs.items()
                if key in self.global_attributes
            }
            name = container

        self._strip_attributes(element, name)
        return True

    def _strip_attributes(self, element: Tag, name: str) -> None:
        for attr_name in list(element.attrs):
            key = attr_name.lower()
            if not self.is_allowed_attribute(name, key):
                del element.attrs[attr_name]
                continue
            value = element.attrs[attr_name]
            if key in URL_ATTRIBUTES and isinstance(value, str) and SCRIPT_URL_PATTERN.match(value):
                del element.attrs[attr_name]

    @staticmethod
    def _has_content(element: Tag) -> bool:
        return any(
            isinstance(child, Tag) or not isinstance(child, PreformattedString)
            for child in element.children
        )

    @staticmethod
    def _in_phrasing_context(parent: Tag) -> bool:
        if isinstance(parent, BeautifulSoup):
            return False
        return (parent.name or '').lower() in PHRASING_ELEMENTS


def is_clean(root: Tag, sanitizer: Optional[Sanitizer] = None) -> bool:
    """Return True when no element or attribute under ``root`` violates the allow-lists."""
    sanitizer = sanitizer or Sanitizer()
    for element in root.find_all(True):
        if element.name not in sanitizer.elements:
            return False
        for attr_name in element.attrs:
            if not sanitizer.is_allowed_attribute(element.name, attr_name):
                return False
    for node in root.descendants:
        if isinstance(node, Comment):
            return False
    return True
