from __future__ import annotations

import pytest

from tenant_drive.clients.transfer_queue import MULTIPART, SINGLE, choose_strategy, plan_parts
from tenant_drive.config import MIB


def test_parts_partition_the_object():
    size = 250 * MIB
    parts = plan_parts(size, 20 * MIB)
    assert len(parts) == 13
    assert [p.part_number for p in parts] == list(range(1, 14))
    assert parts[0].start == 0
    assert parts[-1].end == size
    for previous, current in zip(parts, parts[1:]):
        assert previous.end == current.start
    assert all(p.length == 20 * MIB for p in parts[:-1])
    assert parts[-1].length == 10 * MIB


def test_exact_multiple_has_no_empty_tail():
    parts = plan_parts(40, 20)
    assert [(p.start, p.end) for p in parts] == [(0, 20), (20, 40)]


def test_empty_object_has_no_parts():
    assert plan_parts(0, 20) == []


def test_invalid_part_size_rejected():
    with pytest.raises(ValueError):
        plan_parts(10, 0)


def test_threshold_is_inclusive():
    assert choose_strategy(100 * MIB, 100 * MIB) == MULTIPART
    assert choose_strategy(100 * MIB - 1, 100 * MIB) == SINGLE


def test_150_mib_file_splits_into_eight_parts():
    size = 150 * MIB
    assert choose_strategy(size, 100 * MIB) == MULTIPART
    parts = plan_parts(size, 20 * MIB)
    assert len(parts) == 8
    assert parts[-1].length == 10 * MIB
