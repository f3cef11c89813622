"""Tests for tolerant parsing of backend records."""
from datetime import datetime, timezone

import pytest

from krishi_chat.chat_models import Direction
from krishi_chat.reconnect_policy import FixedDelayPolicy, ScheduledDelayPolicy
from krishi_chat.utils.record_parsing import (
    clean_envelope,
    initials,
    normalize_history_record,
    parse_counterpart_id,
    parse_counterpart_ids,
    parse_timestamp,
    strip_quotes,
)


class TestCleanEnvelope:
    def test_unwraps_data_field(self):
        assert clean_envelope('{"success":true,"data":"Ram Pande"}') == "Ram Pande"

    def test_unwraps_message_when_no_data(self):
        assert clean_envelope('{"message":"hello"}') == "hello"

    def test_plain_text_is_unchanged(self):
        assert clean_envelope("hello {world}") == "hello {world}"

    def test_invalid_json_is_unchanged(self):
        assert clean_envelope("{oops") == "{oops"

    def test_non_string_is_unchanged(self):
        assert clean_envelope(42) == 42


class TestParseTimestamp:
    def test_iso_with_z_suffix(self):
        assert parse_timestamp("2024-05-01T10:00:00Z") == datetime(2024, 5, 1, 10, tzinfo=timezone.utc)

    def test_seven_fraction_digits(self):
        parsed = parse_timestamp("2024-05-01T10:00:00.1234567")
        assert parsed.microsecond == 123456
        assert parsed.tzinfo == timezone.utc

    def test_epoch_seconds_and_milliseconds(self):
        expected = datetime(2024, 5, 1, 10, tzinfo=timezone.utc)
        assert parse_timestamp(1714557600) == expected
        assert parse_timestamp(1714557600000) == expected

    @pytest.mark.parametrize("value", [None, "", "yesterday", True, [1]])
    def test_unusable_values(self, value):
        assert parse_timestamp(value) is None


class TestNormalizeHistoryRecord:
    def test_own_record_uses_local_name(self):
        message = normalize_history_record(
            {"text": "hi", "fromUserId": 7, "sentAt": "2024-05-01T10:00:00Z"},
            local_user_id="7",
            local_display_name="Ram",
        )
        assert message.direction == Direction.OWN
        assert message.sender_display_name == "Ram"
        assert message.sender_id == "7"

    def test_counterpart_name_fallbacks(self):
        record = {"message": "hi", "senderId": "C1"}
        named = normalize_history_record(dict(record, senderName="Sita"), local_user_id="B1", local_display_name="Asha")
        directory = normalize_history_record(record, local_user_id="B1", local_display_name="Asha", counterpart_display_name="Farmer Sita")
        unknown = normalize_history_record(record, local_user_id="B1", local_display_name="Asha")
        assert named.sender_display_name == "Sita"
        assert directory.sender_display_name == "Farmer Sita"
        assert unknown.sender_display_name == "Unknown"

    def test_missing_timestamp_sorts_first(self):
        message = normalize_history_record({"content": "hi"}, local_user_id="B1", local_display_name="Asha")
        assert message.timestamp is None
        assert message.effective_timestamp.year == 1970

    def test_wrapped_text_is_cleaned(self):
        message = normalize_history_record(
            {"message": '{"data":"Namaste"}', "senderId": "C1"}, local_user_id="B1", local_display_name="Asha"
        )
        assert message.text == "Namaste"


class TestCounterpartIds:
    def test_list_and_envelope(self):
        assert parse_counterpart_ids(["a", "", 3, "b"]) == ["a", "b"]
        assert parse_counterpart_ids({"data": ["a"]}) == ["a"]
        assert parse_counterpart_ids("nope") == []

    @pytest.mark.parametrize("body,expected", [
        ('"F9"', "F9"),
        (["F9", "F10"], "F9"),
        ({"farmerId": "F9"}, "F9"),
        ({"data": {"farmerId": "F9"}}, "F9"),
        ({"data": "F9"}, "F9"),
        ({}, None),
        ([], None),
    ])
    def test_single_id_shapes(self, body, expected):
        assert parse_counterpart_id(body) == expected


def test_strip_quotes():
    assert strip_quotes('  "Ram"  ') == "Ram"


def test_initials():
    assert initials("ram prasad pande") == "RP"
    assert initials("Sita") == "S"
    assert initials("  ") == "?"
    assert initials(None) == "?"


def test_fixed_delay_policy_never_gives_up():
    policy = FixedDelayPolicy(delay=1.5)
    assert [policy.next_delay(n) for n in (0, 5, 500)] == [1.5, 1.5, 1.5]


def test_scheduled_delay_policy_gives_up_after_schedule():
    policy = ScheduledDelayPolicy()
    assert [policy.next_delay(n) for n in range(5)] == [0.0, 2.0, 10.0, 30.0, None]
