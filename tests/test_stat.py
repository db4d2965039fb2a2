import dataclasses

import pytest

from d3kernel.naming.stat import MODE_DIR, MODE_FILE, MODE_LINK, Mode, Stat


def test_directory_mode():
    mode = Mode(MODE_DIR)
    assert mode.is_directory() is True
    assert mode.is_file() is False
    assert mode.is_link() is False


def test_file_mode():
    mode = Mode(MODE_FILE)
    assert mode.is_file() is True
    assert mode.is_directory() is False
    assert mode.is_link() is False


def test_link_mode_sets_both_lower_bits():
    mode = Mode(MODE_LINK)
    assert mode.is_link() is True
    assert mode.is_file() is True
    assert mode.is_directory() is True


def test_zero_mode_is_nothing():
    mode = Mode(0)
    assert (mode.is_file(), mode.is_directory(), mode.is_link()) == (False, False, False)


def test_zeroed_stat():
    stat = Stat.zeroed()
    assert stat.mode == Mode(MODE_FILE)
    assert stat.size == 0
    assert (stat.created_time, stat.modified_time, stat.accessed_time) == (0, 0, 0)


def test_stat_constructor_keeps_values():
    stat = Stat(Mode(MODE_DIR), 42)
    assert stat.size == 42
    assert stat.mode.is_directory()
    assert stat.created_time == 0


def test_stat_is_immutable():
    stat = Stat.zeroed()
    with pytest.raises(dataclasses.FrozenInstanceError):
        stat.size = 3
    assert stat.size == 0