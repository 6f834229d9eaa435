"""RSS feed generation and publishing.

The feed is a derived artifact: it is rebuilt from the database and
re-uploaded whenever episode state changes. Apart from lastBuildDate, the
document depends only on stored rows, so republishing an unchanged podcast
produces the same episode list.
"""
import logging
from datetime import datetime, timezone
from email.utils import format_datetime
from typing import List, Optional
from xml.sax.saxutils import escape, quoteattr

from sqlalchemy.orm import Session

from config import settings
from database import Episode, Podcast, get_episodes_by_podcast, get_podcast_by_id, update_podcast
from errors import FeedError
from utils.formatting import format_itunes_duration
from utils.s3_storage import storage

logger = logging.getLogger(__name__)

ITUNES_NS = "http://www.itunes.com/dtds/podcast-1.0.dtd"
FEED_CONTENT_TYPE = "application/rss+xml"


def feed_key(podcast_id: str) -> str:
    return f"{podcast_id}/feed.xml"


def _rfc822(value: Optional[datetime]) -> str:
    value = value or datetime.now(timezone.utc)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return format_datetime(value, usegmt=True)


def _cdata(text: Optional[str]) -> str:
    # "]]>" cannot appear inside a CDATA section
    return "<![CDATA[" + (text or "").replace("]]>", "]]]]><![CDATA[>") + "]]>"


def build_feed_xml(podcast: Podcast, episodes: List[Episode],
                   build_date: Optional[datetime] = None) -> str:
    """Render the podcast's RSS 2.0 document with iTunes tags.

    Episodes without an audio URL are still processing and are left out.
    """
    site_url = settings.site_url.rstrip("/")
    feed_link = f"{site_url}/api/podcasts/{podcast.id}/rss"
    author = podcast.author or ""
    description = podcast.description or ""
    published = [e for e in episodes if e.audio_url]
    last_published = max((e.created_at for e in published if e.created_at), default=podcast.created_at)

    lines = []
    lines.append('<?xml version="1.0" encoding="UTF-8"?>')
    lines.append(f'<rss version="2.0" xmlns:itunes="{ITUNES_NS}">')
    lines.append('<channel>')
    lines.append(f'  <title>{escape(podcast.title or "")}</title>')
    lines.append(f'  <link>{escape(site_url)}</link>')
    lines.append(f'  <description>{_cdata(description)}</description>')
    lines.append(f'  <language>{escape(podcast.language or "en")}</language>')
    lines.append(f'  <pubDate>{_rfc822(last_published)}</pubDate>')
    lines.append(f'  <lastBuildDate>{_rfc822(build_date)}</lastBuildDate>')
    lines.append('  <generator>podcast-jobs</generator>')
    lines.append(f'  <itunes:author>{escape(author)}</itunes:author>')
    lines.append(f'  <itunes:summary>{_cdata(description)}</itunes:summary>')
    lines.append(f'  <itunes:explicit>{"yes" if podcast.explicit else "no"}</itunes:explicit>')

    if podcast.artwork:
        lines.append('  <image>')
        lines.append(f'    <url>{escape(podcast.artwork)}</url>')
        lines.append(f'    <title>{escape(podcast.title or "")}</title>')
        lines.append(f'    <link>{escape(site_url)}</link>')
        lines.append('  </image>')
        lines.append(f'  <itunes:image href={quoteattr(podcast.artwork)} />')

    if podcast.category:
        lines.append(f'  <category>{escape(podcast.category)}</category>')
        lines.append(f'  <itunes:category text={quoteattr(podcast.category)} />')

    for episode in published:
        lines.append('  <item>')
        lines.append(f'    <title>{escape(episode.title or "")}</title>')
        lines.append(f'    <description>{_cdata(episode.description)}</description>')
        lines.append(f'    <link>{escape(feed_link)}</link>')
        lines.append(f'    <guid isPermaLink="false">{escape(episode.id)}</guid>')
        lines.append(f'    <pubDate>{_rfc822(episode.created_at)}</pubDate>')
        lines.append(
            f'    <enclosure url={quoteattr(episode.audio_url)} '
            f'length="{episode.file_size or 0}" type="audio/mpeg" />'
        )
        lines.append(f'    <itunes:duration>{format_itunes_duration(episode.duration or 0)}</itunes:duration>')
        lines.append(f'    <itunes:summary>{_cdata(episode.description)}</itunes:summary>')
        if episode.image_url:
            lines.append(f'    <itunes:image href={quoteattr(episode.image_url)} />')
        lines.append('  </item>')

    lines.append('</channel>')
    lines.append('</rss>')
    return "\n".join(lines) + "\n"


def generate_feed(db: Session, podcast_id: str) -> str:
    podcast = get_podcast_by_id(db, podcast_id)
    if not podcast:
        raise FeedError(f"Podcast {podcast_id} not found")
    episodes = get_episodes_by_podcast(db, podcast_id, published_only=True)
    return build_feed_xml(podcast, episodes)


async def publish_feed(db: Session, podcast_id: str) -> str:
    """Regenerate the feed, upload it and return its public URL."""
    xml = generate_feed(db, podcast_id)
    key = feed_key(podcast_id)
    url = await storage.upload_content(xml, key, FEED_CONTENT_TYPE)
    if get_podcast_by_id(db, podcast_id).feed_url != url:
        update_podcast(db, podcast_id, feed_url=url)
    logger.info(f"Published feed for podcast {podcast_id}: {url}")

    # Best-effort: a stale CDN copy expires on its own
    try:
        await storage.invalidate_cache([key])
    except Exception as e:
        logger.warning(f"Cache invalidation for {key} failed (non-fatal): {e}")

    return url


async def delete_feed(db: Session, podcast_id: str) -> None:
    key = feed_key(podcast_id)
    await storage.delete_file(key)
    update_podcast(db, podcast_id, feed_url=None)
    logger.info(f"Deleted feed for podcast {podcast_id}")

    # Best-effort, as above
    try:
        await storage.invalidate_cache([key])
    except Exception as e:
        logger.warning(f"Cache invalidation for {key} failed (non-fatal): {e}")
