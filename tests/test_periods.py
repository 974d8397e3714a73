from datetime import date

from workforce.periods import (
    Period,
    canonicalize,
    close_all_periods,
    close_current_period,
    has_multi_farm_history,
    move_entry_date,
    open_period_count,
    previous_farm_id,
    reconstruct,
)

TODAY = date(2024, 6, 1)


def test_worker_without_entry_date_has_no_history():
    history = reconstruct([Period(date(2024, 1, 1))], None, TODAY)
    assert history.periods == [] and history.total_days == 0


def test_current_period_synthesized_when_missing():
    stored = [Period(date(2023, 1, 1), date(2023, 2, 1), "fin contrat", farm_id=1)]
    current = Period(date(2024, 1, 1), room_number="R1", farm_id=2)
    history = reconstruct(stored, current, TODAY)
    assert [p.entry_date for p in history.periods] == [date(2023, 1, 1), date(2024, 1, 1)]
    assert history.periods[-1].room_number == "R1"
    assert open_period_count(history.periods) == 1


def test_dedup_keeps_most_complete_period():
    bare = Period(date(2024, 1, 1))
    exit_only = Period(date(2024, 1, 1), date(2024, 3, 1))
    full = Period(date(2024, 1, 1), date(2024, 3, 1), "maladie")
    history = reconstruct([bare, full, exit_only], bare, TODAY)
    assert history.periods == [full]
    assert history.duplicates_removed == 2


def test_dedup_tie_keeps_first_seen():
    first = Period(date(2024, 1, 1), room_number="R1")
    second = Period(date(2024, 1, 1), room_number="R2")
    assert canonicalize([first, second], None) == [first]


def test_day_counts_and_total():
    periods = [
        Period(date(2024, 1, 1), date(2024, 3, 1), "maladie"),
        Period(date(2024, 5, 1)),
    ]
    history = reconstruct(periods, periods[-1], TODAY)
    assert [s.days for s in history.summaries] == [60, 31]
    assert [s.is_open for s in history.summaries] == [False, True]
    assert history.total_days == 91


def test_negative_duration_is_clamped():
    period = Period(date(2024, 7, 1))
    history = reconstruct([period], period, TODAY)
    assert history.summaries[0].days == 0


def test_canonical_history_round_trips():
    canonical = [
        Period(date(2023, 1, 1), date(2023, 1, 31), "fin contrat", "R1", "North", 1),
        Period(date(2023, 6, 1), date(2023, 8, 1), None, "R2", "South", 2),
        Period(date(2024, 1, 1), date(2024, 3, 1), "maladie", "R1", "North", 1),
    ]
    assert canonicalize(canonical, canonical[-1]) == canonical
    assert reconstruct(canonical, canonical[-1], TODAY).periods == canonical


def test_close_current_period_prefers_open_match():
    closed = Period(date(2024, 1, 1), date(2024, 1, 2))
    opened = Period(date(2024, 1, 1))
    result = close_current_period([closed, opened], date(2024, 1, 1), date(2024, 3, 1), "maladie", opened)
    assert Period(date(2024, 1, 1), date(2024, 3, 1), "maladie") in result
    assert closed in result


def test_close_current_period_synthesizes_when_missing(caplog):
    fallback = Period(date(2024, 1, 1), room_number="R1", farm_id=1)
    result = close_current_period([], date(2024, 1, 1), date(2024, 3, 1), None, fallback)
    assert result == [Period(date(2024, 1, 1), date(2024, 3, 1), None, "R1", None, 1)]
    assert "synthesizing" in caplog.text


def test_close_all_periods_uses_entry_date_as_fallback():
    periods = [Period(date(2023, 1, 1)), Period(date(2023, 6, 1), date(2023, 7, 1))]
    closed = close_all_periods(periods)
    assert closed[0].exit_date == date(2023, 1, 1)
    assert closed[1].exit_date == date(2023, 7, 1)
    assert open_period_count(closed) == 0


def test_close_all_periods_with_known_exit():
    closed = close_all_periods([Period(date(2024, 1, 1))], date(2024, 3, 1))
    assert closed[0].exit_date == date(2024, 3, 1)


def test_move_entry_date_rewrites_matching_period():
    periods = [Period(date(2023, 1, 1), date(2023, 2, 1)), Period(date(2024, 1, 1))]
    moved = move_entry_date(periods, date(2024, 1, 1), date(2023, 12, 15))
    assert [p.entry_date for p in moved] == [date(2023, 1, 1), date(2023, 12, 15)]


def test_previous_farm_and_multi_farm_history():
    periods = [
        Period(date(2022, 1, 1), date(2022, 6, 1), farm_id=3),
        Period(date(2023, 1, 1), date(2023, 6, 1), farm_id=1),
        Period(date(2024, 1, 1), farm_id=2),
    ]
    assert previous_farm_id(periods, 2) == 1
    assert previous_farm_id(periods, 1, exclude=2) == 1
    assert previous_farm_id([Period(date(2024, 1, 1), farm_id=1)], 1, exclude=2) == 1
    assert previous_farm_id([Period(date(2024, 1, 1), farm_id=1)], 1) is None
    assert has_multi_farm_history(periods)
    assert not has_multi_farm_history(periods[1:2])
