import time
from unittest.mock import MagicMock, patch

import requests

import ping_helper
from ping_helper import PingHelper, format_status_content


def test_no_webhook_never_pings(tmp_path):
    helper = PingHelper(str(tmp_path))

    assert helper.should_send_ping() is False
    assert helper.send_ping("hello") is False


def test_send_ping_records_state(tmp_path):
    helper = PingHelper(str(tmp_path), webhook_url="https://discord.com/api/webhooks/1/x")

    with patch.object(ping_helper.requests, "post", return_value=MagicMock()) as post:
        assert helper.send_ping("all good", frequency_days=1) is True

    payload = post.call_args.kwargs["json"]
    assert payload["content"].startswith("**Daily Ping** - Mint Watcher")
    assert payload["content"].endswith("all good")
    assert helper.ping_state_file.exists()
    # just pinged, so the next slot is in the future
    assert helper.should_send_ping(frequency_days=1) is False


def test_failed_ping_is_not_recorded(tmp_path):
    helper = PingHelper(str(tmp_path), webhook_url="https://discord.com/api/webhooks/1/x")

    with patch.object(ping_helper.requests, "post", side_effect=requests.ConnectionError("down")):
        assert helper.send_ping("all good") is False

    assert not helper.ping_state_file.exists()


def test_next_ping_is_after_last_ping(tmp_path):
    helper = PingHelper(str(tmp_path), webhook_url="https://discord.com/api/webhooks/1/x")
    last_ping = time.time() - 3600

    next_ping = helper.get_next_ping_time(7, last_ping)

    assert next_ping.timestamp() > last_ping
    assert next_ping.weekday() == 1
    assert next_ping.hour == 9


def test_format_status_content():
    statuses = [{"name": "apes", "minted_seen": 3, "sold_seen": 1, "notifications_sent": 2, "skipped_cycles": 0}]

    content = format_status_content(statuses, 12345)

    assert "**Latest block seen:** 12345" in content
    assert "**Contracts watched:** 1" in content
    assert "`apes`: 3 minted, 1 sold, 2 alerts sent, 0 skipped blocks" in content
    assert "N/A" in format_status_content([], None)
