"""OPML subscription list reader for bulk imports."""

from io import BytesIO

from lxml import etree
from pydantic import BaseModel, Field

from feedline.errors import EmptyFeed, MalformedXML


class OPMLFeed(BaseModel):
    """One subscription entry from an OPML file."""

    feed_url: str
    title: str | None = None
    homepage_url: str | None = None


class OPMLDocument(BaseModel):
    title: str | None = None
    feeds: list[OPMLFeed] = Field(default_factory=list)


def _attr(elem: etree._Element, name: str) -> str | None:
    """Case-insensitive attribute lookup; OPML exporters disagree on xmlUrl casing."""
    wanted = name.lower()
    for key, value in elem.attrib.items():
        if key.lower() == wanted:
            return value.strip() or None
    return None


def parse_opml(data: bytes) -> OPMLDocument:
    """Read feed subscriptions from OPML bytes.

    Outlines without an xmlUrl are treated as folders and descended into.
    Duplicate feed URLs keep their first occurrence.

    Raises:
        MalformedXML: If the document is not well formed.
        EmptyFeed: If no feed outlines were found.
    """
    document = OPMLDocument()
    seen: set[str] = set()
    in_head = False

    try:
        for event, elem in etree.iterparse(
            BytesIO(data), events=("start", "end"), resolve_entities=False, no_network=True
        ):
            if not isinstance(elem.tag, str):
                continue
            name = etree.QName(elem).localname.lower()
            if event == "start":
                if name == "head":
                    in_head = True
                elif name == "outline":
                    feed_url = _attr(elem, "xmlUrl")
                    if feed_url and feed_url not in seen:
                        seen.add(feed_url)
                        document.feeds.append(
                            OPMLFeed(
                                feed_url=feed_url,
                                title=_attr(elem, "text") or _attr(elem, "title"),
                                homepage_url=_attr(elem, "htmlUrl"),
                            )
                        )
            elif name == "head":
                in_head = False
            elif name == "title" and in_head and document.title is None:
                document.title = "".join(elem.itertext()).strip() or None
    except etree.XMLSyntaxError as e:
        raise MalformedXML(f"Failed to parse OPML: {e}") from e

    if not document.feeds:
        raise EmptyFeed("No podcast feeds found in the OPML file")
    return document
