from __future__ import annotations

import asyncio
import datetime as dt
import socket
from pathlib import Path

import pytest

import utils
from config import Config
from utils import (
    FileReserver,
    ReservationRequest,
    Continue,
    Final,
    is_network_reachable,
    normalize_path,
    render_filename,
    sanitize,
    substitute_tokens,
    template_values,
)


# ───── templating ───── #
def test_render_replaces_slash_in_title(session_start):
    config = Config(streamer="Foo", output_template=":streamer -- :title")
    assert render_filename(config, session_start, "Bar/Baz", platform="linux") == "Foo -- Bar-Baz"


def test_substitution_is_case_insensitive():
    values = {"streamer": "Foo", "title": "Bar", "shortyear": "21"}
    out = substitute_tokens(":STREAMER :Title :shortyear :ShortYear", values)
    assert out == "Foo Bar 21 21"


def test_unknown_tokens_are_left_alone():
    assert substitute_tokens(":foo :streamer :bar", {"streamer": "Foo"}) == ":foo Foo :bar"


def test_tokens_without_values_are_left_alone():
    assert substitute_tokens(":title", {}) == ":title"


def test_every_occurrence_is_replaced():
    assert substitute_tokens(":day/:day/:DAY", {"day": "05"}) == "05/05/05"


def test_date_fields_use_configured_timezone(session_start):
    # 12:30:05 UTC is 13:30:05 in London during summer time
    values = template_values(Config(timezone="Europe/London"), session_start, "t")
    assert values["date"] == "15.06.2021"
    assert values["time"] == "13-30-05"
    assert values["day"] == "15"
    assert values["month"] == "06"
    assert values["year"] == "2021"
    assert values["shortyear"] == "21"
    assert values["period"] == "PM"


def test_us_time_format_is_twelve_hour(session_start):
    values = template_values(
        Config(timezone="Europe/London", timezone_format="en-US"), session_start, "t"
    )
    assert values["time"] == "1-30-05"
    assert values["period"] == "PM"


def test_morning_period_and_winter_offset():
    start = dt.datetime(2021, 1, 5, 9, 5, 0, tzinfo=dt.timezone.utc)
    values = template_values(Config(timezone="America/New_York"), start, "t")
    assert values["date"] == "05.01.2021"
    assert values["time"] == "04-05-00"
    assert values["period"] == "AM"


def test_naive_session_start_is_treated_as_utc():
    start = dt.datetime(2021, 6, 15, 12, 30, 5)
    values = template_values(Config(timezone="UTC"), start, "t")
    assert values["time"] == "12-30-05"


def test_streamer_and_title_use_separate_substitutes(session_start):
    config = Config(streamer="a:b", streamer_substitute="_", title_substitute="#")
    values = template_values(config, session_start, "c|d")
    assert values["streamer"] == "a_b"
    assert values["title"] == "c#d"


@pytest.mark.parametrize("text", ['a/b', 'a\\b', 'a?b', 'a%b', 'a*b', 'a:b', 'a|b', 'a"b', 'a<b>', '/\\?%*:|"<>'])
def test_sanitize_removes_reserved_characters(text):
    cleaned = sanitize(text, "_")
    assert not any(ch in cleaned for ch in '/\\?%*:|"<>')


def test_posix_path_normalization():
    assert normalize_path("rec\\a: b!'c", platform="linux") == "rec/a- b--c"


def test_windows_path_normalization_keeps_drive_letter():
    assert normalize_path("C:/recordings/a:b", platform="win32") == "C:\\recordings\\a-b"


def test_render_keeps_directories(session_start):
    config = Config(streamer="Foo", output_template="./recordings/:year/:streamer")
    assert render_filename(config, session_start, "x", platform="linux") == "./recordings/2021/Foo"


# ───── file reservation ───── #
def reserve(reserver: FileReserver, base) -> Path:
    return asyncio.run(reserver.reserve(base))


def test_free_base_is_returned_unchanged(tmp_path):
    base = tmp_path / "X.mp4"
    assert reserve(FileReserver(), base) == base
    assert not base.exists()


def test_existing_base_becomes_part_one(tmp_path):
    base = tmp_path / "X.mp4"
    base.write_text("old")

    target = reserve(FileReserver(), base)

    assert target == tmp_path / "X (part 2).mp4"
    assert not base.exists()
    assert (tmp_path / "X (part 1).mp4").read_text() == "old"


def test_numbering_continues_after_existing_parts(tmp_path):
    (tmp_path / "X (part 1).mp4").write_text("1")
    (tmp_path / "X (part 2).mp4").write_text("2")

    assert reserve(FileReserver(), tmp_path / "X.mp4") == tmp_path / "X (part 3).mp4"


def test_back_to_back_reservations_differ(tmp_path):
    reserver = FileReserver()
    base = tmp_path / "X.mp4"

    first = reserve(reserver, base)
    second = reserve(reserver, base)

    assert first != second


def test_back_to_back_reservations_differ_with_existing_file(tmp_path):
    reserver = FileReserver()
    base = tmp_path / "X.mp4"
    base.write_text("old")

    first = reserve(reserver, base)
    second = reserve(reserver, base)

    assert first == tmp_path / "X (part 2).mp4"
    assert second == tmp_path / "X (part 3).mp4"


def test_missing_directories_are_created(tmp_path):
    base = tmp_path / "a" / "b" / "X.mp4"
    assert reserve(FileReserver(), base) == base
    assert base.parent.is_dir()


def test_rename_failure_does_not_block_reservation(tmp_path, monkeypatch):
    base = tmp_path / "X.mp4"
    base.write_text("old")

    def fail_rename(self, target):
        raise PermissionError("locked")

    monkeypatch.setattr(utils.Path, "rename", fail_rename)

    assert reserve(FileReserver(), base) == tmp_path / "X (part 2).mp4"
    assert base.read_text() == "old"


def test_probe_steps_are_explicit(tmp_path):
    base = tmp_path / "X.mp4"
    reserver = FileReserver()
    assert reserver.probe(ReservationRequest(base, base)) == Final(base)

    (tmp_path / "X (part 1).mp4").write_text("1")
    step = reserver.probe(ReservationRequest(base, base))
    assert isinstance(step, Continue)
    assert step.request.part == 1


# ───── network ───── #
def test_network_reachable(monkeypatch):
    monkeypatch.setattr(socket, "getaddrinfo", lambda *a, **kw: [("ok",)])
    assert asyncio.run(is_network_reachable("twitch.tv")) is True


def test_network_unreachable(monkeypatch):
    def fail(*args, **kwargs):
        raise socket.gaierror("no dns")

    monkeypatch.setattr(socket, "getaddrinfo", fail)
    assert asyncio.run(is_network_reachable("twitch.tv")) is False
