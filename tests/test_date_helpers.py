"""Tests for the calendar helpers and the Portuguese date phrase parser."""

from datetime import date, datetime

import pytest

from leadflow.date_helpers import (
    generate_time_slots,
    is_within_business_hours,
    is_working_day,
    normalize_time,
    parse_date,
    sheet_tab_name,
    weekday_name,
    weekday_number,
)

# Monday 19 October 2026
REFERENCE = datetime(2026, 10, 19, 15, 45)


def test_weekday_number_starts_on_sunday():
    assert weekday_number(date(2026, 10, 18)) == 0  # Sunday
    assert weekday_number(date(2026, 10, 19)) == 1  # Monday
    assert weekday_number(date(2026, 10, 24)) == 6  # Saturday
    assert weekday_name(date(2026, 10, 21)) == "Quarta"


def test_sheet_tab_name():
    assert sheet_tab_name(date(2026, 10, 19)) == "OUTUBRO 2026"
    assert sheet_tab_name(date(2027, 3, 1)) == "MARÇO 2027"


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("14:30", "14:30"),
        ("9", "09:00"),
        ("9h", "09:00"),
        ("9h30", "09:30"),
        ("14hs", "14:00"),
        ("10 horas", "10:00"),
        ("25:00", None),
        ("depois do almoço", None),
    ],
)
def test_normalize_time(raw, expected):
    assert normalize_time(raw) == expected


def test_business_hours_start_inclusive_end_exclusive():
    assert is_within_business_hours("09:00", "09:00", "18:00")
    assert is_within_business_hours("17:59", "09:00", "18:00")
    assert not is_within_business_hours("18:00", "09:00", "18:00")
    assert not is_within_business_hours("08:30", "09:00", "18:00")
    assert not is_within_business_hours("cedo", "09:00", "18:00")


def test_is_working_day():
    mon_to_sat = [1, 2, 3, 4, 5, 6]
    assert is_working_day(date(2026, 10, 19), mon_to_sat)
    assert not is_working_day(date(2026, 10, 25), mon_to_sat)  # Sunday


def test_generate_time_slots():
    slots = generate_time_slots("09:00", "11:00", 30)
    assert slots == ["09:00", "09:30", "10:00", "10:30"]
    assert len(generate_time_slots("09:00", "18:00", 30)) == 18


@pytest.mark.parametrize(
    "phrase, expected",
    [
        ("hoje", datetime(2026, 10, 19)),
        ("amanha", datetime(2026, 10, 20)),
        ("amanhã às 10", datetime(2026, 10, 20)),
        ("depois de amanhã", datetime(2026, 10, 21)),
        ("quarta", datetime(2026, 10, 21)),
        ("sexta-feira", datetime(2026, 10, 23)),
        ("sábado", datetime(2026, 10, 24)),
        ("sab", datetime(2026, 10, 24)),
        # Named day equal to today rolls to next week.
        ("segunda", datetime(2026, 10, 26)),
        ("15/02", datetime(2026, 2, 15)),
        ("20/11/2026", datetime(2026, 11, 20)),
        ("05/01/27", datetime(2027, 1, 5)),
        ("dia 25", datetime(2026, 10, 25)),
        # Day already passed this month rolls to next month.
        ("dia 10", datetime(2026, 11, 10)),
        ("31/02", None),
        ("dia 45", None),
        ("quando der", None),
        ("", None),
    ],
)
def test_parse_date_phrases(phrase, expected):
    assert parse_date(phrase, reference=REFERENCE) == expected


def test_parse_date_returns_midnight():
    parsed = parse_date("amanha", reference=REFERENCE)
    assert (parsed.hour, parsed.minute, parsed.second) == (0, 0, 0)


def test_bare_day_rolling_into_a_short_month_is_rejected():
    # 31 already passed in January; February has no 31st.
    assert parse_date("31", reference=datetime(2026, 1, 31, 12, 0)) == datetime(2026, 1, 31)
    assert parse_date("30", reference=datetime(2027, 1, 31, 12, 0)) is None
