import asyncio
import pytest

from database import create_episode, get_episodes_by_podcast, get_podcast_by_id, update_episode
from errors import FeedError
from feed import build_feed_xml, delete_feed, feed_key, generate_feed, publish_feed


def without_build_date(xml):
    return "\n".join(line for line in xml.splitlines() if "<lastBuildDate>" not in line)


def publish(db, podcast_id):
    return asyncio.run(publish_feed(db, podcast_id))


@pytest.fixture
def episodes(db, podcast):
    first = create_episode(db, podcast.id, "First & Best", description="Intro <b>bold</b>",
                           audio_url="https://cdn.example.com/p/1.mp3", duration=3725, file_size=1000)
    pending = create_episode(db, podcast.id, "Still processing")
    second = create_episode(db, podcast.id, "Second", audio_url="https://cdn.example.com/p/2.mp3",
                            duration=59, file_size=2000, image_url="https://cdn.example.com/p/2.jpg")
    return first, pending, second


class TestFeedDocument:

    def test_only_published_episodes_in_order(self, db, podcast, episodes):
        first, pending, second = episodes
        xml = generate_feed(db, podcast.id)

        assert xml.count("<item>") == 2
        assert "Still processing" not in xml
        assert xml.index(first.id) < xml.index(second.id)

    def test_explicit_order_wins_over_creation_time(self, db, podcast, episodes):
        first, _, second = episodes
        update_episode(db, first.id, order=10)

        xml = generate_feed(db, podcast.id)
        assert xml.index(second.id) < xml.index(first.id)

    def test_escaping_and_itunes_fields(self, db, podcast, episodes):
        xml = generate_feed(db, podcast.id)

        assert "<title>First &amp; Best</title>" in xml
        assert "<![CDATA[Intro <b>bold</b>]]>" in xml
        assert "<itunes:duration>1:02:05</itunes:duration>" in xml
        assert "<itunes:duration>0:59</itunes:duration>" in xml
        assert 'length="1000" type="audio/mpeg"' in xml
        assert '<itunes:image href="https://cdn.example.com/p/2.jpg" />' in xml
        assert "<itunes:author>Tester</itunes:author>" in xml
        assert '<guid isPermaLink="false">' in xml

    def test_cdata_terminator_in_description(self, db, podcast):
        create_episode(db, podcast.id, "Tricky", description="a]]>b", audio_url="https://x/1.mp3")
        xml = generate_feed(db, podcast.id)
        assert "a]]]]><![CDATA[>b" in xml

    def test_empty_podcast(self, db, podcast):
        xml = build_feed_xml(podcast, get_episodes_by_podcast(db, podcast.id, published_only=True))
        assert "<item>" not in xml
        assert xml.startswith('<?xml version="1.0" encoding="UTF-8"?>')

    def test_missing_podcast(self, db):
        with pytest.raises(FeedError):
            generate_feed(db, "does-not-exist")


class TestPublishFeed:

    def test_republish_is_idempotent(self, db, podcast, episodes, fakes):
        """Two publishes with no change differ only in lastBuildDate"""
        key = feed_key(podcast.id)

        url = publish(db, podcast.id)
        first = fakes.storage.contents[key]
        publish(db, podcast.id)
        second = fakes.storage.contents[key]

        assert url == f"https://cdn.example.com/{podcast.id}/feed.xml"
        assert without_build_date(first) == without_build_date(second)
        assert fakes.storage.invalidated == [key, key]

    def test_stores_feed_url(self, db, podcast, fakes):
        url = publish(db, podcast.id)
        db.expire_all()
        assert get_podcast_by_id(db, podcast.id).feed_url == url

    def test_invalidation_failure_is_not_fatal(self, db, podcast, fakes):
        async def broken(paths):
            raise RuntimeError("AccessDenied")

        fakes.storage.invalidate_cache = broken
        assert publish(db, podcast.id).endswith("/feed.xml")

    def test_delete_feed(self, db, podcast, fakes):
        publish(db, podcast.id)
        asyncio.run(delete_feed(db, podcast.id))

        db.expire_all()
        assert get_podcast_by_id(db, podcast.id).feed_url is None
        assert fakes.storage.deleted == [feed_key(podcast.id)]
        assert feed_key(podcast.id) not in fakes.storage.contents
