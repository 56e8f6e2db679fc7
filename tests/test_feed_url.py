"""Unit tests for feed URL helpers."""
import pytest

from processor.feed_url import InvalidFeedUrl, feed_display_name, normalize_feed_url


@pytest.mark.parametrize('url,expected', [
    ('webcal://example.com/cal.ics', 'http://example.com/cal.ics'),
    ('WEBCAL://Example.com/cal.ics', 'http://Example.com/cal.ics'),
    ('  https://example.com/cal.ics  ', 'https://example.com/cal.ics'),
    ('http://example.com/feed?token=abc', 'http://example.com/feed?token=abc'),
])
def test_normalize_feed_url(url, expected):
    assert normalize_feed_url(url) == expected


def test_normalize_is_idempotent():
    once = normalize_feed_url('webcal://example.com/cal.ics')

    assert normalize_feed_url(once) == once


@pytest.mark.parametrize('url', [
    None,
    '',
    '   ',
    'example.com/cal.ics',
    'ftp://example.com/cal.ics',
    'file:///etc/passwd',
    'https://',
])
def test_normalize_rejects_invalid(url):
    with pytest.raises(InvalidFeedUrl):
        normalize_feed_url(url)


@pytest.mark.parametrize('url,expected', [
    ('https://www.amion.com/cgi-bin/ocs/schedule.ics', 'amion.com (schedule)'),
    ('https://calendar.google.com/calendar/ical/basic', 'calendar.google.com'),
    ('not a url', 'not a url'),
])
def test_feed_display_name(url, expected):
    assert feed_display_name(url) == expected
